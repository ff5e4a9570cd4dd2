"""
Apple App Store Server API client.

NO DICTIONARIES - Responses are decoded into typed models.

Every callout tries production first and falls back to sandbox; when both
fail the production error is raised.
https://developer.apple.com/documentation/appstoreserverapi
"""

import base64
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx
import jwt
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from pydantic import BaseModel, ValidationError
from structlog import get_logger

from unified_iap.config import APPLE_NOTIFICATION_AUDIENCE
from unified_iap.exceptions import IapError, InvalidResponseError, KeyInvalidError, TransportError
from unified_iap.models.apple_storekit import (
    JwsTransactionDecodedPayload,
    SendTestNotificationResponse,
    TransactionInfoResponse,
)
from unified_iap.services.apple_trust import AppleTrustVerifier

logger = get_logger(__name__)

ResultT = TypeVar("ResultT")
ModelT = TypeVar("ModelT", bound=BaseModel)

PRODUCTION_URL = "https://api.storekit.itunes.apple.com"
SANDBOX_URL = "https://api.storekit-sandbox.itunes.apple.com"

APP_JWT_LIFETIME_SECONDS = 600  # Apple rejects app tokens valid for longer than 60 minutes
APP_JWT_REFRESH_MARGIN_SECONDS = 60


def load_apple_private_key(private_key: str) -> ec.EllipticCurvePrivateKey:
    """
    Load an App Store Connect .p8 key given as PEM or base64 of PEM.

    Raises:
        KeyInvalidError: If the key cannot be parsed or is not an EC key
    """
    pem = private_key.strip()
    if "-----BEGIN" not in pem:
        try:
            pem = base64.b64decode(pem, validate=True).decode("utf-8")
        except (ValueError, UnicodeDecodeError) as e:
            raise KeyInvalidError("apple", "private key is neither PEM nor base64 of PEM") from e

    try:
        key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise KeyInvalidError("apple", "private key could not be parsed") from e

    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise KeyInvalidError("apple", "private key is not an ES256 (EC) key")
    return key


class AppleStoreKitApiClient:
    """
    App Store Server API client.

    Authenticates with an ES256 app JWT and verifies every signed response
    against the pinned Apple roots.
    """

    def __init__(
        self,
        private_key: str,
        key_id: str,
        issuer_id: str,
        bundle_id: str,
        trust_verifier: AppleTrustVerifier,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        production_url: str = PRODUCTION_URL,
        sandbox_url: str = SANDBOX_URL,
    ) -> None:
        self._private_key = load_apple_private_key(private_key)
        self.key_id = key_id
        self.issuer_id = issuer_id
        self.bundle_id = bundle_id
        self.trust_verifier = trust_verifier
        self.timeout = timeout
        self.production_url = production_url.rstrip("/")
        self.sandbox_url = sandbox_url.rstrip("/")
        self._http_client = http_client
        self._jwt_token: str | None = None
        self._jwt_expires_at: float = 0

        logger.info("apple_storekit_api_client_initialized", bundle_id=bundle_id)

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()

    def _generate_jwt(self) -> str:
        """Generate (or reuse) the app JWT for App Store Server API authentication."""
        now = time.time()

        # Reuse cached token until shortly before it expires
        if self._jwt_token and now < (self._jwt_expires_at - APP_JWT_REFRESH_MARGIN_SECONDS):
            return self._jwt_token

        expires_at = now + APP_JWT_LIFETIME_SECONDS
        payload = {
            "iss": self.issuer_id,
            "iat": int(now),
            "exp": int(expires_at),
            "aud": APPLE_NOTIFICATION_AUDIENCE,
            "bid": self.bundle_id,
        }

        try:
            token = jwt.encode(
                payload,
                self._private_key,
                algorithm="ES256",
                headers={"kid": self.key_id},
            )
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            raise KeyInvalidError("apple", "failed to sign app token") from e

        self._jwt_token = token
        self._jwt_expires_at = expires_at
        return token

    async def _request(
        self,
        base_url: str,
        method: str,
        endpoint: str,
        operation: str,
        response_model: type[ModelT],
    ) -> ModelT:
        """Make one authenticated request and decode the JSON body."""
        headers = {
            "Authorization": f"Bearer {self._generate_jwt()}",
            "Content-Type": "application/json",
        }

        try:
            response = await self.http_client.request(
                method,
                f"{base_url}{endpoint}",
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise TransportError("apple", operation, f"request failed: {type(e).__name__}") from e

        if response.status_code >= 400:
            logger.error(
                "apple_storekit_api_error",
                operation=operation,
                status=response.status_code,
                host=base_url,
            )
            raise TransportError(
                "apple",
                operation,
                f"API error: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise TransportError(
                "apple", operation, "response body is not JSON", status_code=response.status_code
            ) from e

        try:
            return response_model.model_validate(body)
        except ValidationError as e:
            raise InvalidResponseError("apple", f"{operation}: unexpected response shape") from e

    async def _with_sandbox_fallback(
        self,
        operation: str,
        call: Callable[[str], Awaitable[ResultT]],
    ) -> ResultT:
        """Try production, then sandbox. If both fail, raise the production error."""
        try:
            return await call(self.production_url)
        except KeyInvalidError:
            raise
        except IapError as e:
            production_error = e

        logger.info(
            "apple_production_callout_failed_trying_sandbox",
            operation=operation,
            error_type=type(production_error).__name__,
        )
        try:
            return await call(self.sandbox_url)
        except KeyInvalidError:
            raise
        except IapError as sandbox_error:
            logger.warning(
                "apple_sandbox_callout_failed",
                operation=operation,
                error_type=type(sandbox_error).__name__,
            )

        raise production_error

    async def get_transaction_info(self, transaction_id: str) -> JwsTransactionDecodedPayload:
        """
        Get transaction information from the App Store Server API.

        Args:
            transaction_id: Any transaction id of the purchase

        Returns:
            Verified, decoded transaction

        Raises:
            TransportError: If the lookup fails on both hosts
            InvalidSignatureError: If the signed transaction fails verification
        """
        logger.info("getting_apple_transaction_info", transaction_id=transaction_id)

        async def call(base_url: str) -> JwsTransactionDecodedPayload:
            result = await self._request(
                base_url,
                "GET",
                f"/inApps/v1/transactions/{transaction_id}",
                "get_transaction_info",
                TransactionInfoResponse,
            )
            return self.trust_verifier.verify_and_decode(
                result.signed_transaction_info,
                JwsTransactionDecodedPayload,
            )

        transaction = await self._with_sandbox_fallback("get_transaction_info", call)

        logger.info(
            "apple_transaction_info_retrieved",
            transaction_id=transaction.transaction_id,
            product_id=transaction.product_id,
            environment=transaction.environment.value,
        )
        return transaction

    async def request_test_notification(self, sandbox: bool) -> str:
        """
        Ask Apple to send a TEST notification to the configured endpoint.

        Args:
            sandbox: Target the sandbox environment instead of production

        Returns:
            Test notification token
        """
        logger.info("requesting_apple_test_notification", sandbox=sandbox)

        result = await self._request(
            self.sandbox_url if sandbox else self.production_url,
            "POST",
            "/inApps/v1/notifications/test",
            "request_test_notification",
            SendTestNotificationResponse,
        )
        return result.test_notification_token
