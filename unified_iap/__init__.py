"""
Unified IAP - App Store and Google Play purchase verification behind one model.
"""

from unified_iap.config import ConfigurationError, Settings, get_settings
from unified_iap.exceptions import (
    IapError,
    InvalidJwsError,
    InvalidResponseError,
    InvalidSignatureError,
    KeyInvalidError,
    NotActiveError,
    NotificationParseError,
    ProductKindMismatchError,
    TransportError,
)
from unified_iap.models.domain import (
    UNKNOWN,
    AppStoreTransactionId,
    GooglePlayPurchaseToken,
    IapDetails,
    IapUpdateNotification,
    Known,
    ProductId,
    ProductKind,
    Unknown,
)
from unified_iap.services.iap_service import IapService, create_iap_service

__version__ = "0.1.0"

__all__ = [
    "UNKNOWN",
    "AppStoreTransactionId",
    "ConfigurationError",
    "GooglePlayPurchaseToken",
    "IapDetails",
    "IapError",
    "IapService",
    "IapUpdateNotification",
    "InvalidJwsError",
    "InvalidResponseError",
    "InvalidSignatureError",
    "KeyInvalidError",
    "Known",
    "NotActiveError",
    "NotificationParseError",
    "ProductId",
    "ProductKind",
    "Settings",
    "TransportError",
    "Unknown",
    "create_iap_service",
    "get_settings",
]
