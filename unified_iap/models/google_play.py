"""
Google Play payload models - Pydantic models for Play Developer API responses.

NO DICTIONARIES - All data uses strongly typed models.

Covers purchases.products, purchases.subscriptionsv2, inappproducts and
Real-Time Developer Notifications delivered through a Pub/Sub push envelope.
https://developers.google.com/android-publisher/api-ref/rest
https://developer.android.com/google/play/billing/rtdn-reference
"""

from datetime import datetime
from enum import Enum, IntEnum

from pydantic import Field, model_validator

from unified_iap.models.fields import MillisDatetime, VendorModel, lenient


class GoogleModel(VendorModel):
    """Base for decoded Google payloads."""


# ============================================================================
# purchases.products
# ============================================================================


class PurchaseState(IntEnum):
    PURCHASED = 0
    CANCELED = 1
    PENDING = 2


class ConsumptionState(IntEnum):
    NOT_CONSUMED = 0
    CONSUMED = 1


class PurchaseType(IntEnum):
    """Absent for purchases made through the standard in-app billing flow."""

    TEST = 0
    PROMO = 1
    REWARDED = 2


class AcknowledgementState(IntEnum):
    NOT_ACKNOWLEDGED = 0
    ACKNOWLEDGED = 1


class ProductPurchase(GoogleModel):
    """purchases.products resource."""

    purchase_time_millis: MillisDatetime
    purchase_state: PurchaseState
    consumption_state: ConsumptionState = ConsumptionState.NOT_CONSUMED
    acknowledgement_state: AcknowledgementState = AcknowledgementState.NOT_ACKNOWLEDGED
    purchase_type: PurchaseType | None = None
    region_code: str
    quantity: int | None = None
    order_id: str | None = None
    product_id: str | None = None
    purchase_token: str | None = None
    obfuscated_external_account_id: str | None = None
    obfuscated_external_profile_id: str | None = None
    developer_payload: str | None = None
    kind: str | None = None


# ============================================================================
# purchases.subscriptionsv2
# ============================================================================


class SubscriptionState(str, Enum):
    UNSPECIFIED = "SUBSCRIPTION_STATE_UNSPECIFIED"
    PENDING = "SUBSCRIPTION_STATE_PENDING"
    ACTIVE = "SUBSCRIPTION_STATE_ACTIVE"
    PAUSED = "SUBSCRIPTION_STATE_PAUSED"
    IN_GRACE_PERIOD = "SUBSCRIPTION_STATE_IN_GRACE_PERIOD"
    ON_HOLD = "SUBSCRIPTION_STATE_ON_HOLD"
    CANCELED = "SUBSCRIPTION_STATE_CANCELED"
    EXPIRED = "SUBSCRIPTION_STATE_EXPIRED"
    PENDING_PURCHASE_CANCELED = "SUBSCRIPTION_STATE_PENDING_PURCHASE_CANCELED"
    UNKNOWN = "UNKNOWN"


class SubscriptionAcknowledgementState(str, Enum):
    UNSPECIFIED = "ACKNOWLEDGEMENT_STATE_UNSPECIFIED"
    PENDING = "ACKNOWLEDGEMENT_STATE_PENDING"
    ACKNOWLEDGED = "ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED"
    UNKNOWN = "UNKNOWN"


class CancelSurveyReason(str, Enum):
    UNSPECIFIED = "CANCEL_SURVEY_REASON_UNSPECIFIED"
    NOT_ENOUGH_USAGE = "CANCEL_SURVEY_REASON_NOT_ENOUGH_USAGE"
    TECHNICAL_ISSUES = "CANCEL_SURVEY_REASON_TECHNICAL_ISSUES"
    COST_RELATED = "CANCEL_SURVEY_REASON_COST_RELATED"
    FOUND_BETTER_APP = "CANCEL_SURVEY_REASON_FOUND_BETTER_APP"
    OTHERS = "CANCEL_SURVEY_REASON_OTHERS"
    UNKNOWN = "UNKNOWN"


class CancelSurveyResult(GoogleModel):
    reason: lenient(CancelSurveyReason) = CancelSurveyReason.UNSPECIFIED  # type: ignore[valid-type]
    reason_user_input: str | None = None


class UserInitiatedCancellation(GoogleModel):
    cancel_survey_result: CancelSurveyResult | None = None
    cancel_time: datetime | None = None


class SystemInitiatedCancellation(GoogleModel):
    pass


class DeveloperInitiatedCancellation(GoogleModel):
    pass


class ReplacementCancellation(GoogleModel):
    pass


class CanceledStateContext(GoogleModel):
    user_initiated_cancellation: UserInitiatedCancellation | None = None
    system_initiated_cancellation: SystemInitiatedCancellation | None = None
    developer_initiated_cancellation: DeveloperInitiatedCancellation | None = None
    replacement_cancellation: ReplacementCancellation | None = None


class PausedStateContext(GoogleModel):
    auto_resume_time: datetime | None = None


class AutoRenewingPlan(GoogleModel):
    auto_renew_enabled: bool = False


class SubscriptionPurchaseLineItem(GoogleModel):
    product_id: str
    expiry_time: datetime
    auto_renewing_plan: AutoRenewingPlan | None = None
    latest_successful_order_id: str | None = None


class TestPurchase(GoogleModel):
    pass


class SubscriptionPurchaseV2(GoogleModel):
    """purchases.subscriptionsv2 resource."""

    subscription_state: lenient(SubscriptionState) = SubscriptionState.UNSPECIFIED  # type: ignore[valid-type]
    line_items: list[SubscriptionPurchaseLineItem] = Field(default_factory=list)
    start_time: datetime | None = None
    region_code: str | None = None
    latest_order_id: str | None = None
    linked_purchase_token: str | None = None
    acknowledgement_state: lenient(SubscriptionAcknowledgementState) = (  # type: ignore[valid-type]
        SubscriptionAcknowledgementState.UNSPECIFIED
    )
    canceled_state_context: CanceledStateContext | None = None
    paused_state_context: PausedStateContext | None = None
    test_purchase: TestPurchase | None = None
    kind: str | None = None


# ============================================================================
# inappproducts
# ============================================================================


class Price(GoogleModel):
    price_micros: str
    currency: str


class InAppProduct(GoogleModel):
    """inappproducts resource; prices are keyed by alpha-2 region code."""

    sku: str
    package_name: str | None = None
    status: str | None = None
    purchase_type: str | None = None
    default_price: Price | None = None
    prices: dict[str, Price] = Field(default_factory=dict)


# ============================================================================
# Real-Time Developer Notifications
# ============================================================================


class SubscriptionNotificationType(IntEnum):
    RECOVERED = 1
    RENEWED = 2
    CANCELED = 3
    PURCHASED = 4
    ON_HOLD = 5
    IN_GRACE_PERIOD = 6
    RESTARTED = 7
    PRICE_CHANGE_CONFIRMED = 8
    DEFERRED = 9
    PAUSED = 10
    PAUSE_SCHEDULE_CHANGED = 11
    REVOKED = 12
    EXPIRED = 13
    PENDING_PURCHASE_CANCELED = 20


class VoidedProductType(IntEnum):
    SUBSCRIPTION = 1
    ONE_TIME = 2


class RefundType(IntEnum):
    FULL_REFUND = 1
    QUANTITY_BASED_PARTIAL_REFUND = 2


class SubscriptionNotification(GoogleModel):
    version: str | None = None
    # Kept as int so types Google adds later still parse; dispatch treats them as Other
    notification_type: int
    purchase_token: str
    subscription_id: str | None = None


class OneTimeProductNotification(GoogleModel):
    version: str | None = None
    # Only ever mapped to Other, so the raw code is enough
    notification_type: int
    purchase_token: str
    sku: str


class VoidedPurchaseNotification(GoogleModel):
    purchase_token: str
    order_id: str
    product_type: VoidedProductType
    refund_type: RefundType


class GoogleTestNotification(GoogleModel):
    version: str | None = None


class DeveloperNotification(GoogleModel):
    """RTDN payload. Exactly one of the four notification kinds is present."""

    version: str | None = None
    package_name: str
    event_time_millis: MillisDatetime
    subscription_notification: SubscriptionNotification | None = None
    one_time_product_notification: OneTimeProductNotification | None = None
    voided_purchase_notification: VoidedPurchaseNotification | None = None
    test_notification: GoogleTestNotification | None = None

    @model_validator(mode="after")
    def validate_single_kind(self) -> "DeveloperNotification":
        """Ensure exactly one notification kind is populated."""
        present = [
            value
            for value in (
                self.subscription_notification,
                self.one_time_product_notification,
                self.voided_purchase_notification,
                self.test_notification,
            )
            if value is not None
        ]
        if not present:
            raise ValueError("unrecognized notification shape")
        if len(present) > 1:
            raise ValueError("more than one notification kind present")
        return self


class PubSubMessage(GoogleModel):
    data: str
    message_id: str
    attributes: dict[str, str] = Field(default_factory=dict)
    publish_time: datetime | None = None


class PubSubPushEnvelope(GoogleModel):
    """Body of a Pub/Sub push request."""

    message: PubSubMessage
    subscription: str | None = None
