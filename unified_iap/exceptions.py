"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Signature failures never carry token or claim material in their message.
"""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from unified_iap.models.domain import IapDetails, ProductKind


class IapError(Exception):
    """Base exception for all in-app purchase verification errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class KeyInvalidError(IapError):
    """Raised when vendor credential or key material is malformed."""

    def __init__(self, vendor: str, message: str) -> None:
        self.vendor = vendor
        self.message = message
        Exception.__init__(self, f"Invalid {vendor} API key: {message}")


class TransportError(IapError):
    """Raised when a vendor callout fails to send, returns non-2xx, or is unparseable."""

    def __init__(
        self,
        vendor: str,
        operation: str,
        message: str,
        status_code: int | None = None,
    ) -> None:
        self.vendor = vendor
        self.operation = operation
        self.status_code = status_code
        self.message = message
        status = f" (HTTP {status_code})" if status_code is not None else ""
        Exception.__init__(self, f"{vendor} API error in {operation}{status}: {message}")


class InvalidSignatureError(IapError):
    """Raised when a signed payload fails cryptographic or audience verification."""

    def __init__(self, vendor: str, message: str) -> None:
        self.vendor = vendor
        self.message = message
        Exception.__init__(self, f"Invalid {vendor} signature: {message}")


class InvalidJwsError(IapError):
    """Raised when a JWS/JWT is structurally invalid or its claims have the wrong shape."""

    def __init__(self, message: str) -> None:
        self.message = message
        Exception.__init__(self, f"Invalid JWS: {message}")


class InvalidResponseError(IapError):
    """Raised when a vendor response lacks a field the normalization logic depends on."""

    def __init__(self, vendor: str, message: str) -> None:
        self.vendor = vendor
        self.message = message
        Exception.__init__(self, f"Invalid {vendor} response: {message}")


class NotificationParseError(IapError):
    """Raised when a webhook envelope is malformed."""

    def __init__(self, vendor: str, message: str) -> None:
        self.vendor = vendor
        self.message = message
        Exception.__init__(self, f"Failed to parse {vendor} notification: {message}")


class NotActiveError(IapError):
    """Raised when a verified purchase exists but is not currently entitled."""

    def __init__(self, details: "IapDetails[Any]") -> None:
        self.details = details
        self.message = "Purchase is not active"
        Exception.__init__(self, f"Purchase {details.canonical_id} is not active")


class ProductKindMismatchError(IapError):
    """Raised when an operation is requested for a product kind it cannot apply to."""

    def __init__(self, kind: "ProductKind", operation: str) -> None:
        self.kind = kind
        self.operation = operation
        self.message = f"{operation} is not supported for {kind.value} products"
        Exception.__init__(self, self.message)
