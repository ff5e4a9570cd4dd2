"""
Normalizer - Maps vendor payloads onto the platform-agnostic domain model.

NO DICTIONARIES - Input and output are strongly typed.

Extraction is keyed by ProductKind. Combinations a vendor response cannot
satisfy (e.g. a subscription expiry from a one-time purchase) raise
ProductKindMismatchError; missing vendor fields raise InvalidResponseError
and are never defaulted.
"""

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from structlog import get_logger

from unified_iap.exceptions import InvalidResponseError, ProductKindMismatchError
from unified_iap.models.apple_storekit import (
    REVOCATION_REASONS,
    Environment,
    JwsTransactionDecodedPayload,
    NotificationSubtype,
    NotificationType,
    TransactionType,
)
from unified_iap.models.domain import (
    UNKNOWN,
    AppStoreTransactionId,
    Cancelled,
    ConsumableDetails,
    ConsumableVoided,
    DeclinedPriceIncrease,
    FailedToRenew,
    GooglePlayPurchaseToken,
    IapDetails,
    IapUpdateNotification,
    Known,
    MaybeKnown,
    NonConsumableDetails,
    NonConsumableVoided,
    NotificationDetails,
    OtherNotification,
    Paused,
    PriceInfo,
    ProductId,
    ProductKind,
    StoreTestNotification,
    SubscriptionDetails,
    SubscriptionEnded,
    SubscriptionEndReason,
    SubscriptionExpiryChanged,
    SubscriptionStarted,
    TypeSpecificDetails,
    UnknownEndReason,
    UnknownOneTimePurchaseVoided,
    Voided,
)
from unified_iap.models.google_play import (
    AcknowledgementState,
    ConsumptionState,
    DeveloperNotification,
    InAppProduct,
    ProductPurchase,
    PubSubPushEnvelope,
    PurchaseState,
    PurchaseType,
    RefundType,
    SubscriptionAcknowledgementState,
    SubscriptionNotificationType,
    SubscriptionPurchaseV2,
    SubscriptionState,
    VoidedProductType,
)
from unified_iap.services.apple_notifications import ParsedAppleNotification
from unified_iap.services.regions import alpha2_to_alpha3

logger = get_logger(__name__)

SubscriptionFetcher = Callable[[str], Awaitable[SubscriptionPurchaseV2]]

# Canceled subscriptions stay entitled until their line items expire
GOOGLE_ENTITLED_STATES = frozenset(
    {
        SubscriptionState.ACTIVE,
        SubscriptionState.PAUSED,
        SubscriptionState.ON_HOLD,
        SubscriptionState.CANCELED,
        SubscriptionState.IN_GRACE_PERIOD,
    }
)

APPLE_EXPIRY_CHANGED_TYPES = frozenset(
    {
        NotificationType.DID_RENEW,
        NotificationType.REFUND_REVERSED,
        NotificationType.RENEWAL_EXTENDED,
    }
)

APPLE_ENDED_TYPES = frozenset(
    {
        NotificationType.DID_FAIL_TO_RENEW,
        NotificationType.EXPIRED,
        NotificationType.GRACE_PERIOD_EXPIRED,
    }
)

GOOGLE_EXPIRY_CHANGED_TYPES = frozenset(
    {
        SubscriptionNotificationType.RECOVERED,
        SubscriptionNotificationType.RENEWED,
        SubscriptionNotificationType.IN_GRACE_PERIOD,
        SubscriptionNotificationType.DEFERRED,
    }
)

GOOGLE_RENEWAL_TYPES = frozenset(
    {
        SubscriptionNotificationType.RECOVERED,
        SubscriptionNotificationType.RENEWED,
    }
)

GOOGLE_ENDED_TYPES = frozenset(
    {
        SubscriptionNotificationType.EXPIRED,
        SubscriptionNotificationType.REVOKED,
        SubscriptionNotificationType.PAUSED,
        SubscriptionNotificationType.ON_HOLD,
    }
)


def _price_info(price_micros: int, currency: str, vendor: str) -> PriceInfo:
    try:
        return PriceInfo(price_micros=price_micros, currency=currency)
    except ValueError as e:
        raise InvalidResponseError(vendor, str(e)) from e


class Normalizer:
    """Converts vendor purchase and notification payloads into IapDetails / IapUpdateNotification."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(UTC))

    # ========================================================================
    # Apple
    # ========================================================================

    def apple_details(
        self,
        product_id: ProductId,
        transaction: JwsTransactionDecodedPayload,
        include_price_info: bool = False,
    ) -> IapDetails:
        """Normalize an App Store transaction."""
        now = self._clock()

        is_active = (
            transaction.revocation_date is None
            and transaction.revocation_reason is None
            and (transaction.expires_date is None or transaction.expires_date > now)
        )

        if not transaction.storefront:
            raise InvalidResponseError("apple", "transaction has no storefront")

        price_info = None
        if include_price_info:
            if transaction.price is None or not transaction.currency:
                raise InvalidResponseError("apple", "transaction has no price or currency")
            # Apple reports milli-units
            price_info = _price_info(transaction.price * 1000, transaction.currency, "apple")

        return IapDetails(
            canonical_id=AppStoreTransactionId(transaction.original_transaction_id),
            is_active=is_active,
            is_sandbox=transaction.environment == Environment.SANDBOX,
            is_finalized_by_client=UNKNOWN,
            purchase_time=transaction.purchase_date,
            region=transaction.storefront,
            price_info=price_info,
            type_specific_details=self._apple_type_details(product_id.kind, transaction),
        )

    def _apple_type_details(
        self, kind: ProductKind, transaction: JwsTransactionDecodedPayload
    ) -> TypeSpecificDetails:
        if kind == ProductKind.NON_CONSUMABLE:
            return NonConsumableDetails()
        if kind == ProductKind.CONSUMABLE:
            quantity = transaction.quantity if transaction.quantity is not None else 1
            return ConsumableDetails(is_consumed=UNKNOWN, quantity=quantity)
        if transaction.expires_date is None:
            raise InvalidResponseError("apple", "subscription transaction has no expiresDate")
        return SubscriptionDetails(expiration_time=transaction.expires_date)

    def apple_notification(self, parsed: ParsedAppleNotification) -> IapUpdateNotification:
        """Map a verified App Store Server Notification onto NotificationDetails."""
        payload = parsed.payload
        details = self._apple_notification_details(parsed)
        logger.info(
            "apple_notification_normalized",
            notification_type=payload.notification_type.value,
            subtype=payload.subtype.value if payload.subtype else None,
            result=type(details).__name__,
        )
        return IapUpdateNotification(
            notification_id=payload.notification_uuid,
            time=payload.signed_date,
            details=details,
        )

    def _apple_notification_details(self, parsed: ParsedAppleNotification) -> NotificationDetails:
        payload = parsed.payload
        notification_type = payload.notification_type
        subtype = payload.subtype

        if notification_type == NotificationType.TEST:
            return StoreTestNotification()

        is_expiry_change = notification_type in APPLE_EXPIRY_CHANGED_TYPES or (
            notification_type == NotificationType.DID_FAIL_TO_RENEW
            and subtype == NotificationSubtype.GRACE_PERIOD
        )
        is_ended = notification_type in APPLE_ENDED_TYPES and not is_expiry_change
        is_voided = notification_type in (NotificationType.REFUND, NotificationType.REVOKE)

        if not (
            notification_type == NotificationType.SUBSCRIBED or is_expiry_change or is_ended or is_voided
        ):
            return OtherNotification()

        if payload.data is None:
            raise InvalidResponseError("apple", f"{notification_type.value} notification has no data")
        transaction = parsed.transaction_info
        if transaction is None:
            raise InvalidResponseError(
                "apple", f"{notification_type.value} notification has no transaction info"
            )

        application_id = payload.data.bundle_id
        purchase_id = AppStoreTransactionId(transaction.original_transaction_id)

        if is_voided:
            is_refunded = notification_type == NotificationType.REFUND
            reason = (
                REVOCATION_REASONS.get(transaction.revocation_reason)
                if transaction.revocation_reason is not None
                else None
            )
            if transaction.transaction_type == TransactionType.NON_CONSUMABLE:
                product_id = ProductId.non_consumable(transaction.product_id)
                return NonConsumableVoided(
                    application_id=application_id,
                    product_id=product_id,
                    purchase_id=purchase_id,
                    details=self.apple_details(product_id, transaction),
                    is_refunded=is_refunded,
                    reason=reason,
                )
            if transaction.transaction_type == TransactionType.CONSUMABLE:
                product_id = ProductId.consumable(transaction.product_id)
                return ConsumableVoided(
                    application_id=application_id,
                    product_id=product_id,
                    purchase_id=purchase_id,
                    details=self.apple_details(product_id, transaction),
                    is_refunded=is_refunded,
                    reason=reason,
                )

        product_id = ProductId.subscription(transaction.product_id)
        details = self.apple_details(product_id, transaction)

        if notification_type == NotificationType.SUBSCRIBED:
            return SubscriptionStarted(application_id, product_id, purchase_id, details)

        if is_expiry_change:
            renewal_id = (
                transaction.transaction_id if notification_type == NotificationType.DID_RENEW else None
            )
            return SubscriptionExpiryChanged(application_id, product_id, purchase_id, details, renewal_id)

        if is_voided:
            reason_voided = Voided(is_refunded=notification_type == NotificationType.REFUND)
            return SubscriptionEnded(application_id, product_id, purchase_id, details, reason_voided)

        return SubscriptionEnded(
            application_id,
            product_id,
            purchase_id,
            details,
            self._apple_end_reason(notification_type, subtype),
        )

    @staticmethod
    def _apple_end_reason(
        notification_type: NotificationType,
        subtype: NotificationSubtype | None,
    ) -> SubscriptionEndReason:
        if (
            notification_type == NotificationType.GRACE_PERIOD_EXPIRED
            or subtype == NotificationSubtype.BILLING_RETRY
        ):
            return FailedToRenew()
        if subtype == NotificationSubtype.VOLUNTARY:
            return Cancelled()
        if subtype == NotificationSubtype.PRICE_INCREASE:
            return DeclinedPriceIncrease()
        return UnknownEndReason()

    # ========================================================================
    # Google
    # ========================================================================

    def google_product_details(
        self,
        product_id: ProductId,
        purchase_token: str,
        purchase: ProductPurchase,
        in_app_product: InAppProduct | None = None,
    ) -> IapDetails:
        """Normalize a one-time product purchase."""
        if product_id.kind == ProductKind.SUBSCRIPTION:
            raise ProductKindMismatchError(product_id.kind, "details from a one-time purchase")

        if product_id.kind == ProductKind.CONSUMABLE:
            quantity = purchase.quantity if purchase.quantity is not None else 1
            type_details: TypeSpecificDetails = ConsumableDetails(
                is_consumed=Known(purchase.consumption_state == ConsumptionState.CONSUMED),
                quantity=quantity,
            )
        else:
            type_details = NonConsumableDetails()

        return IapDetails(
            canonical_id=GooglePlayPurchaseToken(purchase_token),
            is_active=purchase.purchase_state == PurchaseState.PURCHASED,
            is_sandbox=purchase.purchase_type == PurchaseType.TEST,
            is_finalized_by_client=Known(
                purchase.acknowledgement_state == AcknowledgementState.ACKNOWLEDGED
            ),
            purchase_time=purchase.purchase_time_millis,
            region=alpha2_to_alpha3(purchase.region_code),
            price_info=self._google_price_info(purchase.region_code, in_app_product),
            type_specific_details=type_details,
        )

    def google_subscription_details(
        self,
        product_id: ProductId,
        purchase_token: str,
        subscription: SubscriptionPurchaseV2,
        in_app_product: InAppProduct | None = None,
    ) -> IapDetails:
        """Normalize a subscription purchase."""
        if product_id.kind != ProductKind.SUBSCRIPTION:
            raise ProductKindMismatchError(product_id.kind, "details from a subscription purchase")

        now = self._clock()
        if not subscription.line_items:
            raise InvalidResponseError("google", "subscription has no line items")
        expiration_time = max(item.expiry_time for item in subscription.line_items)

        if subscription.start_time is None:
            raise InvalidResponseError("google", "subscription has no startTime")
        if not subscription.region_code:
            raise InvalidResponseError("google", "subscription has no regionCode")

        return IapDetails(
            canonical_id=GooglePlayPurchaseToken(purchase_token),
            is_active=subscription.subscription_state in GOOGLE_ENTITLED_STATES
            and expiration_time > now,
            is_sandbox=subscription.test_purchase is not None,
            is_finalized_by_client=self._google_subscription_acknowledged(subscription),
            purchase_time=subscription.start_time,
            region=alpha2_to_alpha3(subscription.region_code),
            price_info=self._google_price_info(subscription.region_code, in_app_product),
            type_specific_details=SubscriptionDetails(expiration_time=expiration_time),
        )

    @staticmethod
    def _google_subscription_acknowledged(subscription: SubscriptionPurchaseV2) -> MaybeKnown[bool]:
        if subscription.acknowledgement_state == SubscriptionAcknowledgementState.ACKNOWLEDGED:
            return Known(True)
        if subscription.acknowledgement_state == SubscriptionAcknowledgementState.PENDING:
            return Known(False)
        return UNKNOWN

    @staticmethod
    def _google_price_info(region_code: str, in_app_product: InAppProduct | None) -> PriceInfo | None:
        if in_app_product is None:
            return None

        price = in_app_product.prices.get(region_code.strip().upper())
        if price is None:
            raise InvalidResponseError(
                "google", f"product {in_app_product.sku} has no price for region {region_code}"
            )
        try:
            price_micros = int(price.price_micros)
        except ValueError as e:
            raise InvalidResponseError("google", f"invalid priceMicros: {price.price_micros!r}") from e
        return _price_info(price_micros, price.currency, "google")

    async def google_notification(
        self,
        envelope: PubSubPushEnvelope,
        notification: DeveloperNotification,
        fetch_subscription: SubscriptionFetcher,
    ) -> IapUpdateNotification:
        """
        Map a Google developer notification onto NotificationDetails.

        fetch_subscription is only awaited for subscription events whose
        outcome depends on the current subscription state.
        """
        details = await self._google_notification_details(notification, fetch_subscription)
        logger.info(
            "google_notification_normalized",
            message_id=envelope.message.message_id,
            result=type(details).__name__,
        )
        return IapUpdateNotification(
            notification_id=envelope.message.message_id,
            time=notification.event_time_millis,
            details=details,
        )

    async def _google_notification_details(
        self,
        notification: DeveloperNotification,
        fetch_subscription: SubscriptionFetcher,
    ) -> NotificationDetails:
        application_id = notification.package_name

        if notification.test_notification is not None:
            return StoreTestNotification()

        if notification.subscription_notification is not None:
            event = notification.subscription_notification
            try:
                event_type = SubscriptionNotificationType(event.notification_type)
            except ValueError:
                return OtherNotification()

            if not (
                event_type == SubscriptionNotificationType.PURCHASED
                or event_type in GOOGLE_EXPIRY_CHANGED_TYPES
                or event_type in GOOGLE_ENDED_TYPES
            ):
                # Restarts, cancellations and schedule changes do not move expiry
                return OtherNotification()

            subscription = await fetch_subscription(event.purchase_token)
            product_id = ProductId.subscription(
                event.subscription_id or self._subscription_product_id(subscription)
            )
            purchase_id = GooglePlayPurchaseToken(event.purchase_token)
            details = self.google_subscription_details(product_id, event.purchase_token, subscription)

            if event_type == SubscriptionNotificationType.PURCHASED:
                return SubscriptionStarted(application_id, product_id, purchase_id, details)
            if event_type in GOOGLE_EXPIRY_CHANGED_TYPES:
                renewal_id = subscription.latest_order_id if event_type in GOOGLE_RENEWAL_TYPES else None
                return SubscriptionExpiryChanged(
                    application_id, product_id, purchase_id, details, renewal_id
                )
            return SubscriptionEnded(
                application_id,
                product_id,
                purchase_id,
                details,
                self._google_end_reason(event_type, subscription),
            )

        if notification.voided_purchase_notification is not None:
            voided = notification.voided_purchase_notification
            is_refunded = voided.refund_type == RefundType.FULL_REFUND
            purchase_id = GooglePlayPurchaseToken(voided.purchase_token)

            if voided.product_type == VoidedProductType.ONE_TIME:
                # The event does not name the product, so nothing can be fetched
                return UnknownOneTimePurchaseVoided(
                    application_id=application_id,
                    purchase_id=purchase_id,
                    is_refunded=is_refunded,
                )

            subscription = await fetch_subscription(voided.purchase_token)
            product_id = ProductId.subscription(self._subscription_product_id(subscription))
            details = self.google_subscription_details(product_id, voided.purchase_token, subscription)
            return SubscriptionEnded(
                application_id, product_id, purchase_id, details, Voided(is_refunded=is_refunded)
            )

        return OtherNotification()

    @staticmethod
    def _subscription_product_id(subscription: SubscriptionPurchaseV2) -> str:
        if not subscription.line_items:
            raise InvalidResponseError("google", "subscription has no line items")
        return subscription.line_items[0].product_id

    @staticmethod
    def _google_end_reason(
        event_type: SubscriptionNotificationType,
        subscription: SubscriptionPurchaseV2,
    ) -> SubscriptionEndReason:
        if event_type == SubscriptionNotificationType.PAUSED:
            return Paused()

        context = subscription.canceled_state_context
        if context is not None and context.system_initiated_cancellation is not None:
            return FailedToRenew()
        if context is not None and context.user_initiated_cancellation is not None:
            survey = context.user_initiated_cancellation.cancel_survey_result
            if survey is None:
                return Cancelled()
            details = survey.reason.value
            if survey.reason_user_input:
                details = f"{details}: {survey.reason_user_input}"
            return Cancelled(details=details)
        return UnknownEndReason()
