"""
Apple StoreKit payload models - Pydantic models for signed App Store payloads.

NO DICTIONARIES - All data uses strongly typed models.

App Store Server API v1 and App Store Server Notifications V2 deliver
JWS (JSON Web Signature) payloads. These models describe the decoded claims.
https://developer.apple.com/documentation/appstoreserverapi
https://developer.apple.com/documentation/appstoreservernotifications
"""

from enum import Enum

from pydantic import Field, model_validator

from unified_iap.models.fields import MillisDatetime, VendorModel, lenient


class AppleModel(VendorModel):
    """Base for decoded Apple payloads."""


# ============================================================================
# Enumerations
# ============================================================================


class Environment(str, Enum):
    SANDBOX = "Sandbox"
    PRODUCTION = "Production"
    UNKNOWN = "Unknown"


class TransactionType(str, Enum):
    AUTO_RENEWABLE_SUBSCRIPTION = "Auto-Renewable Subscription"
    NON_CONSUMABLE = "Non-Consumable"
    CONSUMABLE = "Consumable"
    NON_RENEWING_SUBSCRIPTION = "Non-Renewing Subscription"
    UNKNOWN = "Unknown"


class InAppOwnershipType(str, Enum):
    FAMILY_SHARED = "FAMILY_SHARED"
    PURCHASED = "PURCHASED"
    UNKNOWN = "UNKNOWN"


class TransactionReason(str, Enum):
    PURCHASE = "PURCHASE"
    RENEWAL = "RENEWAL"
    UNKNOWN = "UNKNOWN"


class NotificationType(str, Enum):
    """App Store Server Notifications V2 notificationType values."""

    SUBSCRIBED = "SUBSCRIBED"
    DID_CHANGE_RENEWAL_PREF = "DID_CHANGE_RENEWAL_PREF"
    DID_CHANGE_RENEWAL_STATUS = "DID_CHANGE_RENEWAL_STATUS"
    OFFER_REDEEMED = "OFFER_REDEEMED"
    DID_RENEW = "DID_RENEW"
    EXPIRED = "EXPIRED"
    DID_FAIL_TO_RENEW = "DID_FAIL_TO_RENEW"
    GRACE_PERIOD_EXPIRED = "GRACE_PERIOD_EXPIRED"
    PRICE_INCREASE = "PRICE_INCREASE"
    REFUND = "REFUND"
    REFUND_DECLINED = "REFUND_DECLINED"
    REFUND_REVERSED = "REFUND_REVERSED"
    RENEWAL_EXTENDED = "RENEWAL_EXTENDED"
    RENEWAL_EXTENSION = "RENEWAL_EXTENSION"
    REVOKE = "REVOKE"
    TEST = "TEST"
    EXTERNAL_PURCHASE_TOKEN = "EXTERNAL_PURCHASE_TOKEN"
    ONE_TIME_CHARGE = "ONE_TIME_CHARGE"
    CONSUMPTION_REQUEST = "CONSUMPTION_REQUEST"
    UNKNOWN = "UNKNOWN"


class NotificationSubtype(str, Enum):
    INITIAL_BUY = "INITIAL_BUY"
    RESUBSCRIBE = "RESUBSCRIBE"
    DOWNGRADE = "DOWNGRADE"
    UPGRADE = "UPGRADE"
    AUTO_RENEW_ENABLED = "AUTO_RENEW_ENABLED"
    AUTO_RENEW_DISABLED = "AUTO_RENEW_DISABLED"
    VOLUNTARY = "VOLUNTARY"
    BILLING_RETRY = "BILLING_RETRY"
    PRICE_INCREASE = "PRICE_INCREASE"
    GRACE_PERIOD = "GRACE_PERIOD"
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    BILLING_RECOVERY = "BILLING_RECOVERY"
    PRODUCT_NOT_FOR_SALE = "PRODUCT_NOT_FOR_SALE"
    SUMMARY = "SUMMARY"
    FAILURE = "FAILURE"
    UNREPORTED = "UNREPORTED"
    UNKNOWN = "UNKNOWN"


class ConsumptionRequestReason(str, Enum):
    UNINTENDED_PURCHASE = "UNINTENDED_PURCHASE"
    FULFILLMENT_ISSUE = "FULFILLMENT_ISSUE"
    UNSATISFIED_WITH_PURCHASE = "UNSATISFIED_WITH_PURCHASE"
    LEGAL = "LEGAL"
    OTHER = "OTHER"
    UNKNOWN = "UNKNOWN"


# revocationReason: 0 = refunded for other reasons, 1 = refunded due to an issue in the app
REVOCATION_REASONS = {
    0: "refunded_for_other_reason",
    1: "refunded_due_to_app_issue",
}


# ============================================================================
# Transaction and renewal info
# ============================================================================


class JwsTransactionDecodedPayload(AppleModel):
    """Decoded JWSTransaction.

    https://developer.apple.com/documentation/appstoreserverapi/jwstransactiondecodedpayload
    """

    transaction_id: str
    original_transaction_id: str
    product_id: str
    bundle_id: str
    purchase_date: MillisDatetime
    signed_date: MillisDatetime | None = None
    environment: lenient(Environment) = Environment.PRODUCTION  # type: ignore[valid-type]
    transaction_type: lenient(TransactionType) | None = Field(  # type: ignore[valid-type]
        default=None, alias="type"
    )
    quantity: int | None = None
    original_purchase_date: MillisDatetime | None = None
    expires_date: MillisDatetime | None = None
    revocation_date: MillisDatetime | None = None
    revocation_reason: int | None = None
    # Price multiplied by 1000, in the currency below
    price: int | None = None
    currency: str | None = None
    storefront: str | None = None  # ISO 3166-1 alpha-3
    storefront_id: str | None = None
    app_account_token: str | None = None
    in_app_ownership_type: lenient(InAppOwnershipType) | None = None  # type: ignore[valid-type]
    transaction_reason: lenient(TransactionReason) | None = None  # type: ignore[valid-type]
    is_upgraded: bool = False
    offer_identifier: str | None = None
    offer_type: int | None = None
    subscription_group_identifier: str | None = None
    web_order_line_item_id: str | None = None


class JwsRenewalInfoDecodedPayload(AppleModel):
    """Decoded JWSRenewalInfo.

    https://developer.apple.com/documentation/appstoreserverapi/jwsrenewalinfodecodedpayload
    """

    product_id: str
    auto_renew_product_id: str | None = None
    auto_renew_status: int | None = None  # 0: off, 1: on
    original_transaction_id: str | None = None
    environment: lenient(Environment) = Environment.PRODUCTION  # type: ignore[valid-type]
    signed_date: MillisDatetime | None = None
    expiration_intent: int | None = None
    grace_period_expires_date: MillisDatetime | None = None
    is_in_billing_retry_period: bool = False
    offer_identifier: str | None = None
    offer_type: int | None = None
    price_increase_status: int | None = None
    recent_subscription_start_date: MillisDatetime | None = None
    renewal_date: MillisDatetime | None = None
    renewal_price: int | None = None
    currency: str | None = None
    eligible_win_back_offer_ids: list[str] = Field(default_factory=list)


# ============================================================================
# App Store Server API responses
# ============================================================================


class TransactionInfoResponse(AppleModel):
    signed_transaction_info: str


class SendTestNotificationResponse(AppleModel):
    test_notification_token: str


# ============================================================================
# App Store Server Notifications V2
# ============================================================================


class ResponseBodyV2(AppleModel):
    """Raw notification POST body."""

    signed_payload: str


class NotificationData(AppleModel):
    bundle_id: str
    environment: lenient(Environment) = Environment.PRODUCTION  # type: ignore[valid-type]
    app_apple_id: int | None = None
    bundle_version: str | None = None
    signed_transaction_info: str | None = None
    signed_renewal_info: str | None = None
    status: int | None = None
    consumption_request_reason: lenient(ConsumptionRequestReason) | None = None  # type: ignore[valid-type]


class NotificationSummary(AppleModel):
    request_identifier: str
    bundle_id: str
    product_id: str
    environment: lenient(Environment) = Environment.PRODUCTION  # type: ignore[valid-type]
    app_apple_id: int | None = None
    storefront_country_codes: list[str] = Field(default_factory=list)
    failed_count: int = 0
    succeeded_count: int = 0


class ExternalPurchaseToken(AppleModel):
    external_purchase_id: str
    token_creation_date: MillisDatetime
    bundle_id: str
    app_apple_id: int | None = None


class ResponseBodyV2DecodedPayload(AppleModel):
    """Decoded signedPayload of a V2 notification.

    data, summary and externalPurchaseToken are mutually exclusive.
    """

    notification_type: lenient(NotificationType)  # type: ignore[valid-type]
    subtype: lenient(NotificationSubtype) | None = None  # type: ignore[valid-type]
    notification_uuid: str = Field(alias="notificationUUID")
    version: str = "2.0"
    signed_date: MillisDatetime
    data: NotificationData | None = None
    summary: NotificationSummary | None = None
    external_purchase_token: ExternalPurchaseToken | None = None

    @model_validator(mode="after")
    def validate_exclusive_payload(self) -> "ResponseBodyV2DecodedPayload":
        """Ensure at most one of data, summary, externalPurchaseToken is present."""
        present = [
            name
            for name, value in (
                ("data", self.data),
                ("summary", self.summary),
                ("externalPurchaseToken", self.external_purchase_token),
            )
            if value is not None
        ]
        if len(present) > 1:
            raise ValueError(f"Mutually exclusive fields present together: {', '.join(present)}")
        return self
