"""
Domain Models - Platform-agnostic purchase state using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.

Every value here is a snapshot built fresh per call. Persistence, deduplication
by notification id, and entitlement decisions belong to the caller.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


# ============================================================================
# Identifiers
# ============================================================================


@dataclass(frozen=True)
class AppStoreTransactionId:
    """Apple transaction id.

    For subscriptions this is always the original transaction id, which is
    stable across renewals.
    """

    value: str

    def __post_init__(self) -> None:
        if not self.value:
            raise ValueError("Transaction id cannot be empty")

    def __str__(self) -> str:
        return f"apple:{self.value}"


@dataclass(frozen=True)
class GooglePlayPurchaseToken:
    """Google Play purchase token. Stable across subscription renewals."""

    value: str

    def __post_init__(self) -> None:
        if not self.value:
            raise ValueError("Purchase token cannot be empty")

    def __str__(self) -> str:
        return f"google:{self.value[:12]}..."


PurchaseId = AppStoreTransactionId | GooglePlayPurchaseToken


class ProductKind(str, Enum):
    """Product type tag deciding the extraction path and details type."""

    NON_CONSUMABLE = "non_consumable"
    CONSUMABLE = "consumable"
    SUBSCRIPTION = "subscription"


@dataclass(frozen=True)
class ProductId:
    """Store product identifier tagged with its product kind."""

    kind: ProductKind
    sku: str

    def __post_init__(self) -> None:
        if not self.sku:
            raise ValueError("Product sku cannot be empty")

    @classmethod
    def non_consumable(cls, sku: str) -> "ProductId":
        return cls(ProductKind.NON_CONSUMABLE, sku)

    @classmethod
    def consumable(cls, sku: str) -> "ProductId":
        return cls(ProductKind.CONSUMABLE, sku)

    @classmethod
    def subscription(cls, sku: str) -> "ProductId":
        return cls(ProductKind.SUBSCRIPTION, sku)


# ============================================================================
# MaybeKnown
# ============================================================================


@dataclass(frozen=True)
class Known(Generic[T]):
    """A value the vendor reported."""

    value: T

    def __bool__(self) -> bool:
        raise TypeError("MaybeKnown cannot be used as a boolean; match Known/Unknown explicitly")


@dataclass(frozen=True)
class Unknown:
    """The vendor does not report this value."""

    def __bool__(self) -> bool:
        raise TypeError("MaybeKnown cannot be used as a boolean; match Known/Unknown explicitly")


UNKNOWN = Unknown()

MaybeKnown = Known[T] | Unknown


# ============================================================================
# Purchase details
# ============================================================================


@dataclass(frozen=True)
class PriceInfo:
    """Price in micro-units of the currency."""

    price_micros: int
    currency: str  # ISO 4217

    def __post_init__(self) -> None:
        if len(self.currency) != 3:
            raise ValueError(f"Invalid currency code: {self.currency}")


@dataclass(frozen=True)
class NonConsumableDetails:
    pass


@dataclass(frozen=True)
class ConsumableDetails:
    is_consumed: MaybeKnown[bool]
    quantity: int


@dataclass(frozen=True)
class SubscriptionDetails:
    expiration_time: datetime


DetailsT = TypeVar("DetailsT", NonConsumableDetails, ConsumableDetails, SubscriptionDetails)

TypeSpecificDetails = NonConsumableDetails | ConsumableDetails | SubscriptionDetails


@dataclass(frozen=True)
class IapDetails(Generic[DetailsT]):
    """Normalized snapshot of a purchase at query time."""

    canonical_id: PurchaseId
    is_active: bool
    is_sandbox: bool
    is_finalized_by_client: MaybeKnown[bool]
    purchase_time: datetime
    region: str  # ISO 3166-1 alpha-3
    price_info: PriceInfo | None
    type_specific_details: DetailsT


# ============================================================================
# Notifications
# ============================================================================


@dataclass(frozen=True)
class Paused:
    pass


@dataclass(frozen=True)
class Cancelled:
    details: str | None = None


@dataclass(frozen=True)
class FailedToRenew:
    pass


@dataclass(frozen=True)
class Voided:
    is_refunded: bool


@dataclass(frozen=True)
class DeclinedPriceIncrease:
    pass


@dataclass(frozen=True)
class UnknownEndReason:
    pass


SubscriptionEndReason = (
    Paused | Cancelled | FailedToRenew | Voided | DeclinedPriceIncrease | UnknownEndReason
)


@dataclass(frozen=True)
class StoreTestNotification:
    pass


@dataclass(frozen=True)
class ConsumableVoided:
    application_id: str
    product_id: ProductId
    purchase_id: PurchaseId
    details: IapDetails[ConsumableDetails]
    is_refunded: bool
    reason: str | None = None


@dataclass(frozen=True)
class NonConsumableVoided:
    application_id: str
    product_id: ProductId
    purchase_id: PurchaseId
    details: IapDetails[NonConsumableDetails]
    is_refunded: bool
    reason: str | None = None


@dataclass(frozen=True)
class UnknownOneTimePurchaseVoided:
    """A one-time purchase was voided; the store does not say which product."""

    application_id: str
    purchase_id: PurchaseId
    is_refunded: bool
    reason: str | None = None


@dataclass(frozen=True)
class SubscriptionStarted:
    application_id: str
    product_id: ProductId
    purchase_id: PurchaseId
    details: IapDetails[SubscriptionDetails]


@dataclass(frozen=True)
class SubscriptionEnded:
    application_id: str
    product_id: ProductId
    purchase_id: PurchaseId
    details: IapDetails[SubscriptionDetails]
    reason: SubscriptionEndReason


@dataclass(frozen=True)
class SubscriptionExpiryChanged:
    """Any event that moves a subscription's expiry: renewal, grace period, extension.

    renewal_id is the store-specific id of the renewal transaction (Apple
    transaction id, Google order id), only set when the change is a renewal.
    """

    application_id: str
    product_id: ProductId
    purchase_id: PurchaseId
    details: IapDetails[SubscriptionDetails]
    renewal_id: str | None = None


@dataclass(frozen=True)
class OtherNotification:
    """An event that does not affect validity or expiry."""

    pass


NotificationDetails = (
    StoreTestNotification
    | ConsumableVoided
    | NonConsumableVoided
    | UnknownOneTimePurchaseVoided
    | SubscriptionStarted
    | SubscriptionEnded
    | SubscriptionExpiryChanged
    | OtherNotification
)


@dataclass(frozen=True)
class IapUpdateNotification:
    notification_id: str
    time: datetime
    details: NotificationDetails
