"""
Apple notification parser - App Store Server Notifications V2.

Unwraps the POST body, verifies the outer signedPayload and decodes the
nested transaction and renewal info.
https://developer.apple.com/documentation/appstoreservernotifications/responsebodyv2
"""

from dataclasses import dataclass

from pydantic import ValidationError
from structlog import get_logger

from unified_iap.config import APPLE_NOTIFICATION_AUDIENCE
from unified_iap.exceptions import NotificationParseError
from unified_iap.models.apple_storekit import (
    JwsRenewalInfoDecodedPayload,
    JwsTransactionDecodedPayload,
    ResponseBodyV2,
    ResponseBodyV2DecodedPayload,
)
from unified_iap.services.apple_trust import AppleTrustVerifier, ModelT
from unified_iap.services.jws import PayloadDecoder

logger = get_logger(__name__)


@dataclass(frozen=True)
class ParsedAppleNotification:
    """Verified notification with its decoded nested payloads."""

    payload: ResponseBodyV2DecodedPayload
    transaction_info: JwsTransactionDecodedPayload | None
    renewal_info: JwsRenewalInfoDecodedPayload | None


class AppleNotificationParser:
    """
    Parses App Store Server Notifications V2 bodies.

    Nested payloads are separately signed by Apple. With verify_nested=True
    (the default) each is verified against the pinned roots; otherwise they
    are decoded with PayloadDecoder.
    """

    def __init__(
        self,
        trust_verifier: AppleTrustVerifier,
        expected_audience: str = APPLE_NOTIFICATION_AUDIENCE,
        verify_nested: bool = True,
        decoder: PayloadDecoder | None = None,
    ) -> None:
        self.trust_verifier = trust_verifier
        self.expected_audience = expected_audience
        self.verify_nested = verify_nested
        self.decoder = decoder or PayloadDecoder()

    def parse(self, body: str | bytes) -> ParsedAppleNotification:
        """
        Parse and verify a notification body.

        Raises:
            NotificationParseError: If the body is not a ResponseBodyV2 envelope
            InvalidSignatureError / InvalidJwsError: From payload verification
        """
        try:
            wrapper = ResponseBodyV2.model_validate_json(body)
        except ValidationError as e:
            logger.warning("apple_notification_envelope_invalid", error_count=e.error_count())
            raise NotificationParseError("apple", "body is not a valid ResponseBodyV2") from e

        payload = self.trust_verifier.verify_and_decode(
            wrapper.signed_payload,
            ResponseBodyV2DecodedPayload,
            expected_audience=self.expected_audience,
        )

        transaction_info = None
        renewal_info = None
        if payload.data is not None:
            if payload.data.signed_transaction_info:
                transaction_info = self._decode_nested(
                    payload.data.signed_transaction_info, JwsTransactionDecodedPayload
                )
            if payload.data.signed_renewal_info:
                renewal_info = self._decode_nested(
                    payload.data.signed_renewal_info, JwsRenewalInfoDecodedPayload
                )

        logger.info(
            "apple_notification_verified",
            notification_type=payload.notification_type.value,
            subtype=payload.subtype.value if payload.subtype else None,
            has_transaction_info=transaction_info is not None,
            has_renewal_info=renewal_info is not None,
        )
        return ParsedAppleNotification(payload, transaction_info, renewal_info)

    def _decode_nested(self, signed: str, model: type[ModelT]) -> ModelT:
        if self.verify_nested:
            return self.trust_verifier.verify_and_decode(signed, model)
        return self.decoder.decode(signed, model)
