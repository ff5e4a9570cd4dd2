"""
Google notification parser - Real-Time Developer Notifications over Pub/Sub push.

Google signs the push request, not the body: the Authorization header is
verified before the body is trusted.
https://developer.android.com/google/play/billing/rtdn-reference
"""

import base64
import binascii

from pydantic import ValidationError
from structlog import get_logger

from unified_iap.exceptions import NotificationParseError
from unified_iap.models.google_play import DeveloperNotification, PubSubPushEnvelope
from unified_iap.services.google_trust import GoogleTrustVerifier

logger = get_logger(__name__)


class GoogleNotificationParser:
    """Parses Pub/Sub push bodies carrying Google Play developer notifications."""

    def __init__(self, trust_verifier: GoogleTrustVerifier, expected_audience: str) -> None:
        self.trust_verifier = trust_verifier
        self.expected_audience = expected_audience

    async def parse(
        self,
        authorization_header: str,
        body: str | bytes,
    ) -> tuple[PubSubPushEnvelope, DeveloperNotification]:
        """
        Verify the push request and decode the developer notification.

        Raises:
            InvalidSignatureError: If the Authorization header fails verification
            NotificationParseError: If the envelope, base64 data or inner JSON is malformed
        """
        await self.trust_verifier.verify_and_decode(authorization_header, self.expected_audience)

        try:
            envelope = PubSubPushEnvelope.model_validate_json(body)
        except ValidationError as e:
            logger.warning("google_pubsub_envelope_invalid", error_count=e.error_count())
            raise NotificationParseError("google", "body is not a valid Pub/Sub push envelope") from e

        try:
            data = base64.b64decode(envelope.message.data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise NotificationParseError("google", "message data is not valid base64") from e

        try:
            notification = DeveloperNotification.model_validate_json(data)
        except ValidationError as e:
            logger.warning(
                "google_developer_notification_invalid",
                message_id=envelope.message.message_id,
                error_count=e.error_count(),
            )
            raise NotificationParseError("google", "unrecognized notification shape") from e

        logger.info(
            "google_notification_verified",
            message_id=envelope.message.message_id,
            package_name=notification.package_name,
        )
        return envelope, notification
