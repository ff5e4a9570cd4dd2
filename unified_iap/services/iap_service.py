"""
IAP Service - Public entry point for purchase verification and notifications.

NO DICTIONARIES - All inputs and outputs are strongly typed.

Composes the vendor API clients, notification parsers and the normalizer.
Callers own persistence, deduplication by notification_id and entitlement
decisions.
"""

import asyncio
from collections.abc import Coroutine
from typing import Any, TypeVar

import httpx
from structlog import get_logger

from unified_iap.config import Settings, get_settings
from unified_iap.exceptions import InvalidResponseError, NotActiveError, ProductKindMismatchError
from unified_iap.models.domain import (
    AppStoreTransactionId,
    GooglePlayPurchaseToken,
    IapDetails,
    IapUpdateNotification,
    ProductId,
    ProductKind,
    PurchaseId,
)
from unified_iap.observability.logging import log_context, redact_token
from unified_iap.services.apple_notifications import AppleNotificationParser
from unified_iap.services.apple_storekit_api import AppleStoreKitApiClient
from unified_iap.services.apple_trust import AppleRootStore, AppleTrustVerifier
from unified_iap.services.google_notifications import GoogleNotificationParser
from unified_iap.services.google_play_api import GooglePlayApiClient
from unified_iap.services.google_trust import GoogleTrustVerifier
from unified_iap.services.normalizer import Normalizer

logger = get_logger(__name__)

A = TypeVar("A")
B = TypeVar("B")


async def _fetch_together(first: Coroutine[Any, Any, A], second: Coroutine[Any, Any, B]) -> tuple[A, B]:
    """Run two vendor calls concurrently; the first failure cancels the other and is raised as-is."""
    try:
        async with asyncio.TaskGroup() as tg:
            first_task = tg.create_task(first)
            second_task = tg.create_task(second)
    except ExceptionGroup as eg:
        raise eg.exceptions[0] from None
    return first_task.result(), second_task.result()


class IapService:
    """
    Unified App Store / Google Play verification service.

    Build one instance per process (see create_iap_service); it is safe to
    use from concurrent tasks.
    """

    def __init__(
        self,
        apple_api: AppleStoreKitApiClient,
        google_api: GooglePlayApiClient,
        apple_parser: AppleNotificationParser,
        google_parser: GoogleNotificationParser,
        normalizer: Normalizer | None = None,
    ) -> None:
        self.apple_api = apple_api
        self.google_api = google_api
        self.apple_parser = apple_parser
        self.google_parser = google_parser
        self.normalizer = normalizer or Normalizer()

    async def verify_and_get_details(
        self,
        product_id: ProductId,
        purchase_id: PurchaseId,
        include_price_info: bool = False,
    ) -> IapDetails:
        """
        Fetch, verify and normalize a purchase.

        Args:
            product_id: Product the client claims to have bought
            purchase_id: Apple transaction id or Google purchase token
            include_price_info: Also populate price_info (an extra callout for Google)

        Returns:
            Normalized details of an active purchase

        Raises:
            NotActiveError: If the purchase exists but is not entitled
            TransportError / InvalidSignatureError / InvalidResponseError: On verification failure
        """
        if isinstance(purchase_id, AppStoreTransactionId):
            details = await self._apple_details(product_id, purchase_id, include_price_info)
        else:
            details = await self._google_details(product_id, purchase_id, include_price_info)

        logger.info(
            "purchase_verified",
            product_kind=product_id.kind.value,
            sku=product_id.sku,
            is_active=details.is_active,
            is_sandbox=details.is_sandbox,
        )

        if not details.is_active:
            raise NotActiveError(details)
        return details

    async def _apple_details(
        self,
        product_id: ProductId,
        purchase_id: AppStoreTransactionId,
        include_price_info: bool,
    ) -> IapDetails:
        transaction = await self.apple_api.get_transaction_info(purchase_id.value)
        if transaction.product_id != product_id.sku:
            raise InvalidResponseError(
                "apple",
                f"transaction is for product {transaction.product_id}, expected {product_id.sku}",
            )
        return self.normalizer.apple_details(product_id, transaction, include_price_info)

    async def _google_details(
        self,
        product_id: ProductId,
        purchase_id: GooglePlayPurchaseToken,
        include_price_info: bool,
    ) -> IapDetails:
        token = purchase_id.value

        if product_id.kind == ProductKind.SUBSCRIPTION:
            if include_price_info:
                subscription, product = await _fetch_together(
                    self.google_api.get_subscription_purchase(token),
                    self.google_api.get_in_app_product(product_id.sku),
                )
            else:
                subscription = await self.google_api.get_subscription_purchase(token)
                product = None
            return self.normalizer.google_subscription_details(product_id, token, subscription, product)

        if include_price_info:
            purchase, product = await _fetch_together(
                self.google_api.get_product_purchase(product_id.sku, token),
                self.google_api.get_in_app_product(product_id.sku),
            )
        else:
            purchase = await self.google_api.get_product_purchase(product_id.sku, token)
            product = None
        return self.normalizer.google_product_details(product_id, token, purchase, product)

    async def parse_apple_notification(self, body: str | bytes) -> IapUpdateNotification:
        """
        Verify and normalize an App Store Server Notification V2 POST body.

        Raises:
            NotificationParseError: Malformed envelope
            InvalidSignatureError / InvalidJwsError: Verification failure
            InvalidResponseError: Notification lacks data it needs
        """
        with log_context(vendor="apple"):
            parsed = self.apple_parser.parse(body)
            with log_context(notification_id=parsed.payload.notification_uuid):
                return self.normalizer.apple_notification(parsed)

    async def parse_google_notification(
        self,
        authorization_header: str,
        body: str | bytes,
    ) -> IapUpdateNotification:
        """
        Verify and normalize a Google Play RTDN Pub/Sub push request.

        Raises:
            InvalidSignatureError: Authorization header failed verification
            NotificationParseError: Malformed envelope or notification
        """
        with log_context(vendor="google"):
            envelope, notification = await self.google_parser.parse(authorization_header, body)
            with log_context(notification_id=envelope.message.message_id):
                return await self.normalizer.google_notification(
                    envelope,
                    notification,
                    self.google_api.get_subscription_purchase,
                )

    async def consume(self, product_id: ProductId, purchase_id: PurchaseId) -> None:
        """
        Mark a consumable purchase as consumed.

        Apple has no server-side consume step, so Apple purchases are a no-op.
        Google errors (including already-consumed tokens) are raised.
        """
        if product_id.kind != ProductKind.CONSUMABLE:
            raise ProductKindMismatchError(product_id.kind, "consume")

        if isinstance(purchase_id, AppStoreTransactionId):
            logger.info("apple_consume_skipped", sku=product_id.sku)
            return

        await self.google_api.consume_product_purchase(product_id.sku, purchase_id.value)
        logger.info(
            "purchase_consumed",
            sku=product_id.sku,
            token_prefix=redact_token(purchase_id.value),
        )

    async def request_test_notification(self, sandbox: bool = False) -> str:
        """Ask Apple to send a TEST notification; returns the test notification token."""
        return await self.apple_api.request_test_notification(sandbox)

    async def close(self) -> None:
        """Close HTTP clients."""
        await self.apple_api.close()
        await self.google_api.close()


def create_iap_service(
    config: Settings | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> IapService:
    """
    Build an IapService from settings.

    FAIL FAST: Raises ConfigurationError for missing settings or unreadable
    pinned roots, and KeyInvalidError for malformed vendor keys.
    """
    config = config or get_settings()
    config.validate_critical_config()

    root_store = AppleRootStore.from_paths(config.extra_apple_root_ca_paths)
    apple_verifier = AppleTrustVerifier(root_store)
    google_verifier = GoogleTrustVerifier(
        jwks_url=config.google_jwks_url,
        cache_seconds=config.google_jwks_cache_seconds,
        expected_email=config.google_pubsub_service_account_email or None,
    )

    service = IapService(
        apple_api=AppleStoreKitApiClient(
            private_key=config.apple_private_key,
            key_id=config.apple_key_id,
            issuer_id=config.apple_issuer_id,
            bundle_id=config.apple_bundle_id,
            trust_verifier=apple_verifier,
            timeout=config.http_timeout_seconds,
            http_client=http_client,
        ),
        google_api=GooglePlayApiClient(
            service_account_json=config.google_service_account_json,
            package_name=config.google_package_name,
            timeout=config.http_timeout_seconds,
            http_client=http_client,
        ),
        apple_parser=AppleNotificationParser(
            apple_verifier,
            expected_audience=config.apple_expected_audience,
            verify_nested=config.apple_verify_nested_payloads,
        ),
        google_parser=GoogleNotificationParser(google_verifier, config.google_pubsub_audience),
    )

    logger.info(
        "iap_service_created",
        bundle_id=config.apple_bundle_id,
        package_name=config.google_package_name,
        pinned_roots=len(root_store),
    )
    return service
