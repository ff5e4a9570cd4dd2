"""
Google Play Developer API client.

NO DICTIONARIES - Responses are decoded into typed models.

Calls the androidpublisher v3 REST endpoints with a service-account OAuth2
access token.
https://developers.google.com/android-publisher/api-ref/rest
"""

import asyncio
import base64
import json
from typing import Any, TypeVar
from urllib.parse import quote

import google.auth.transport.requests
import httpx
from google.auth.exceptions import GoogleAuthError
from google.oauth2 import service_account
from pydantic import BaseModel, ValidationError
from structlog import get_logger

from unified_iap.exceptions import InvalidResponseError, KeyInvalidError, TransportError
from unified_iap.models.google_play import InAppProduct, ProductPurchase, SubscriptionPurchaseV2
from unified_iap.observability.logging import redact_token

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
API_BASE_URL = "https://androidpublisher.googleapis.com/androidpublisher/v3"


def load_service_account_info(service_account_json: str) -> dict[str, Any]:
    """
    Parse a service account key given as raw JSON or base64 of JSON.

    Raises:
        KeyInvalidError: If the key is neither
    """
    raw = service_account_json.strip()
    if not raw.startswith("{"):
        try:
            raw = base64.b64decode(raw, validate=True).decode("utf-8")
        except (ValueError, UnicodeDecodeError) as e:
            raise KeyInvalidError("google", "service account key is neither JSON nor base64 of JSON") from e

    try:
        info = json.loads(raw)
    except json.JSONDecodeError as e:
        raise KeyInvalidError("google", "service account key is not valid JSON") from e

    if not isinstance(info, dict):
        raise KeyInvalidError("google", "service account key is not a JSON object")
    return info


class GooglePlayApiClient:
    """
    Google Play Developer API client.

    Handles purchase lookups, subscription lookups, product listings and consumption.
    """

    def __init__(
        self,
        service_account_json: str | dict[str, Any],
        package_name: str,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        base_url: str = API_BASE_URL,
        credentials: Any = None,
    ) -> None:
        """
        Initialize Google Play API client.

        Args:
            service_account_json: Service account key (JSON string, base64 JSON, or dict)
            package_name: Android package name (e.g., 'com.example.app')
            timeout: Per-request timeout in seconds
            http_client: Shared HTTP client (created lazily if omitted)
            credentials: Pre-built google-auth credentials (skips key parsing)
        """
        self.package_name = package_name
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self._http_client = http_client
        self._token_lock = asyncio.Lock()

        if credentials is not None:
            self.credentials = credentials
        else:
            info = (
                service_account_json
                if isinstance(service_account_json, dict)
                else load_service_account_info(service_account_json)
            )
            try:
                self.credentials = service_account.Credentials.from_service_account_info(  # type: ignore[no-untyped-call]
                    info,
                    scopes=[ANDROID_PUBLISHER_SCOPE],
                )
            except (ValueError, KeyError) as e:
                raise KeyInvalidError("google", f"invalid service account key: {e}") from e

        logger.info("google_play_api_client_initialized", package_name=package_name)

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

    async def _access_token(self) -> str:
        """Return a valid OAuth2 access token, refreshing when needed."""
        async with self._token_lock:
            if not self.credentials.valid:
                try:
                    # google-auth refresh is blocking
                    await asyncio.to_thread(
                        self.credentials.refresh,
                        google.auth.transport.requests.Request(),
                    )
                except GoogleAuthError as e:
                    logger.error("google_access_token_refresh_failed", error_type=type(e).__name__)
                    raise KeyInvalidError("google", "failed to obtain access token") from e
            return str(self.credentials.token)

    def _url(self, path: str) -> str:
        return f"{self.base_url}/applications/{quote(self.package_name, safe='')}/{path}"

    async def _send(self, method: str, path: str, operation: str) -> httpx.Response:
        """Make one authenticated request; non-2xx responses raise TransportError."""
        headers = {"Authorization": f"Bearer {await self._access_token()}"}

        try:
            response = await self.http_client.request(
                method,
                self._url(path),
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise TransportError("google", operation, f"request failed: {type(e).__name__}") from e

        if response.status_code >= 400:
            logger.error(
                "google_play_api_error",
                operation=operation,
                status=response.status_code,
            )
            raise TransportError(
                "google",
                operation,
                f"API error: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    async def _get(self, path: str, operation: str, response_model: type[ModelT]) -> ModelT:
        """GET a resource and decode the JSON body."""
        response = await self._send("GET", path, operation)

        try:
            body = response.json()
        except ValueError as e:
            raise TransportError(
                "google", operation, "response body is not JSON", status_code=response.status_code
            ) from e

        try:
            return response_model.model_validate(body)
        except ValidationError as e:
            raise InvalidResponseError("google", f"{operation}: unexpected response shape") from e

    @staticmethod
    def _product_token_path(product_id: str, purchase_token: str) -> str:
        return f"purchases/products/{quote(product_id, safe='')}/tokens/{quote(purchase_token, safe='')}"

    async def get_product_purchase(self, product_id: str, purchase_token: str) -> ProductPurchase:
        """Get a one-time product purchase (purchases.products.get)."""
        logger.info(
            "getting_google_product_purchase",
            product_id=product_id,
            token_prefix=redact_token(purchase_token),
        )
        return await self._get(
            self._product_token_path(product_id, purchase_token),
            "get_product_purchase",
            ProductPurchase,
        )

    async def get_subscription_purchase(self, purchase_token: str) -> SubscriptionPurchaseV2:
        """Get a subscription purchase (purchases.subscriptionsv2.get)."""
        logger.info("getting_google_subscription", token_prefix=redact_token(purchase_token))
        subscription = await self._get(
            f"purchases/subscriptionsv2/tokens/{quote(purchase_token, safe='')}",
            "get_subscription_purchase",
            SubscriptionPurchaseV2,
        )
        logger.info(
            "google_subscription_retrieved",
            state=subscription.subscription_state.value,
            line_items=len(subscription.line_items),
        )
        return subscription

    async def get_in_app_product(self, sku: str) -> InAppProduct:
        """Get an in-app product listing with per-region prices (inappproducts.get)."""
        return await self._get(f"inappproducts/{quote(sku, safe='')}", "get_in_app_product", InAppProduct)

    async def consume_product_purchase(self, product_id: str, purchase_token: str) -> None:
        """
        Consume a one-time product purchase (purchases.products.consume).

        Errors from Google, including for an already-consumed token, are raised
        as TransportError.
        """
        await self._send(
            "POST",
            f"{self._product_token_path(product_id, purchase_token)}:consume",
            "consume_product_purchase",
        )
        logger.info(
            "google_purchase_consumed",
            product_id=product_id,
            token_prefix=redact_token(purchase_token),
        )
