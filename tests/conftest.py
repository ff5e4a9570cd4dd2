"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- A generated Apple-style PKI (root, intermediate, leaf) and JWS signing
- A generated Google RSA key with a fake JWKS client and JWT signing
- Vendor payload builders (transactions, notifications, purchases)
- httpx.MockTransport helpers for vendor API clients
"""

import base64
import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import httpx
import jwt
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from unified_iap.services.apple_trust import (
    APPLE_RECEIPT_SIGNING_OID,
    AppleRootStore,
    AppleTrustVerifier,
)
from unified_iap.services.google_trust import GoogleTrustVerifier
from unified_iap.services.normalizer import Normalizer

FIXED_NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)
BUNDLE_ID = "com.example.app"
PACKAGE_NAME = "com.example.app"
PUBSUB_AUDIENCE = "https://iap.example.com/notifications/google"


def to_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


# ============================================================================
# Apple PKI
# ============================================================================


@dataclass
class CertifiedKey:
    cert: x509.Certificate
    key: ec.EllipticCurvePrivateKey

    @property
    def x5c(self) -> str:
        return base64.b64encode(self.cert.public_bytes(serialization.Encoding.DER)).decode()


@dataclass
class ApplePki:
    root: CertifiedKey
    intermediate: CertifiedKey
    leaf: CertifiedKey

    @property
    def chain(self) -> list[str]:
        return [self.leaf.x5c, self.intermediate.x5c, self.root.x5c]


def make_certificate(
    common_name: str,
    issuer: CertifiedKey | None = None,
    is_ca: bool = False,
    receipt_signing: bool = False,
    not_before: datetime | None = None,
    not_after: datetime | None = None,
) -> CertifiedKey:
    """Create an EC P-256 certificate, self-signed when no issuer is given."""
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(UTC)

    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer.cert.subject if issuer else subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
    )
    if receipt_signing:
        builder = builder.add_extension(
            x509.UnrecognizedExtension(APPLE_RECEIPT_SIGNING_OID, b"\x05\x00"),
            critical=False,
        )

    signing_key = issuer.key if issuer else key
    cert = builder.sign(signing_key, hashes.SHA256())
    return CertifiedKey(cert=cert, key=key)


def make_pki(root_name: str = "Test Apple Root CA - G3") -> ApplePki:
    root = make_certificate(root_name, is_ca=True)
    intermediate = make_certificate("Test WWDR Intermediate", issuer=root, is_ca=True)
    leaf = make_certificate("Test Mac App Store Signing", issuer=intermediate, receipt_signing=True)
    return ApplePki(root=root, intermediate=intermediate, leaf=leaf)


@pytest.fixture(scope="session")
def apple_pki() -> ApplePki:
    """Trusted PKI whose root is pinned by apple_verifier."""
    return make_pki()


@pytest.fixture(scope="session")
def rogue_pki() -> ApplePki:
    """Structurally identical PKI whose root is NOT pinned."""
    return make_pki("Rogue Root CA")


@pytest.fixture
def apple_root_store(apple_pki: ApplePki) -> AppleRootStore:
    return AppleRootStore([apple_pki.root.cert])


@pytest.fixture
def apple_verifier(apple_root_store: AppleRootStore) -> AppleTrustVerifier:
    return AppleTrustVerifier(apple_root_store)


@pytest.fixture
def sign_apple(apple_pki: ApplePki) -> Callable[..., str]:
    """Sign claims as Apple would: ES256 with the x5c chain in the header."""

    def _sign(
        claims: dict[str, Any],
        pki: ApplePki | None = None,
        x5c: list[str] | None = None,
    ) -> str:
        pki = pki or apple_pki
        return jwt.encode(
            claims,
            pki.leaf.key,
            algorithm="ES256",
            headers={"x5c": x5c if x5c is not None else pki.chain},
        )

    return _sign


# ============================================================================
# Google JWKS
# ============================================================================


@pytest.fixture(scope="session")
def google_rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def fake_jwk_client(google_rsa_key: rsa.RSAPrivateKey) -> MagicMock:
    """Stands in for PyJWKClient; always resolves to the test key."""
    client = MagicMock(spec=jwt.PyJWKClient)
    client.get_signing_key_from_jwt.return_value = SimpleNamespace(key=google_rsa_key.public_key())
    return client


@pytest.fixture
def google_verifier(fake_jwk_client: MagicMock) -> GoogleTrustVerifier:
    return GoogleTrustVerifier(jwk_client=fake_jwk_client)


@pytest.fixture
def sign_google(google_rsa_key: rsa.RSAPrivateKey) -> Callable[..., str]:
    """Sign a Pub/Sub push OIDC token."""

    def _sign(key: rsa.RSAPrivateKey | None = None, **overrides: Any) -> str:
        now = datetime.now(UTC)
        claims: dict[str, Any] = {
            "iss": "https://accounts.google.com",
            "aud": PUBSUB_AUDIENCE,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(hours=1)).timestamp()),
            "sub": "1234567890",
            "email": "pubsub-push@example-project.iam.gserviceaccount.com",
            "email_verified": True,
        }
        claims.update(overrides)
        claims = {k: v for k, v in claims.items() if v is not None}
        return jwt.encode(claims, key or google_rsa_key, algorithm="RS256", headers={"kid": "test-kid"})

    return _sign


# ============================================================================
# Normalizer
# ============================================================================


@pytest.fixture
def normalizer() -> Normalizer:
    return Normalizer(clock=lambda: FIXED_NOW)


# ============================================================================
# Apple payload builders
# ============================================================================


@pytest.fixture
def apple_transaction_claims() -> Callable[..., dict[str, Any]]:
    """Build JWSTransactionDecodedPayload claims; pass None to drop a field."""

    def _build(**overrides: Any) -> dict[str, Any]:
        claims: dict[str, Any] = {
            "transactionId": "2000000111111111",
            "originalTransactionId": "2000000000000001",
            "webOrderLineItemId": "2000000011111111",
            "bundleId": BUNDLE_ID,
            "productId": "pro_monthly",
            "subscriptionGroupIdentifier": "21000000",
            "purchaseDate": to_millis(FIXED_NOW - timedelta(days=3)),
            "originalPurchaseDate": to_millis(FIXED_NOW - timedelta(days=90)),
            "expiresDate": to_millis(FIXED_NOW + timedelta(days=27)),
            "quantity": 1,
            "type": "Auto-Renewable Subscription",
            "inAppOwnershipType": "PURCHASED",
            "signedDate": to_millis(FIXED_NOW - timedelta(days=3)),
            "environment": "Production",
            "transactionReason": "RENEWAL",
            "storefront": "USA",
            "storefrontId": "143441",
            "price": 9990,
            "currency": "USD",
        }
        claims.update(overrides)
        return {k: v for k, v in claims.items() if v is not None}

    return _build


@pytest.fixture
def apple_notification_claims() -> Callable[..., dict[str, Any]]:
    """Build ResponseBodyV2DecodedPayload claims."""

    def _build(
        notification_type: str,
        subtype: str | None = None,
        signed_transaction_info: str | None = None,
        signed_renewal_info: str | None = None,
        include_data: bool = True,
        **overrides: Any,
    ) -> dict[str, Any]:
        claims: dict[str, Any] = {
            "notificationType": notification_type,
            "notificationUUID": "6b2f1c3e-6a4b-4c2d-9e8f-0a1b2c3d4e5f",
            "version": "2.0",
            "signedDate": to_millis(FIXED_NOW),
            "aud": "appstoreconnect-v1",
        }
        if subtype:
            claims["subtype"] = subtype
        if include_data:
            data: dict[str, Any] = {
                "appAppleId": 1234567890,
                "bundleId": BUNDLE_ID,
                "bundleVersion": "42",
                "environment": "Production",
                "status": 1,
            }
            if signed_transaction_info:
                data["signedTransactionInfo"] = signed_transaction_info
            if signed_renewal_info:
                data["signedRenewalInfo"] = signed_renewal_info
            claims["data"] = data
        claims.update(overrides)
        return claims

    return _build


# ============================================================================
# Google payload builders
# ============================================================================


@pytest.fixture
def google_subscription_json() -> Callable[..., dict[str, Any]]:
    """Build a purchases.subscriptionsv2 resource."""

    def _build(
        state: str = "SUBSCRIPTION_STATE_ACTIVE",
        expiries: list[datetime] | None = None,
        **overrides: Any,
    ) -> dict[str, Any]:
        expiries = expiries if expiries is not None else [FIXED_NOW + timedelta(days=20)]
        resource: dict[str, Any] = {
            "kind": "androidpublisher#subscriptionPurchaseV2",
            "regionCode": "US",
            "startTime": (FIXED_NOW - timedelta(days=40)).isoformat().replace("+00:00", "Z"),
            "subscriptionState": state,
            "latestOrderId": "GPA.3345-1234-5678-90123..1",
            "acknowledgementState": "ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED",
            "lineItems": [
                {
                    "productId": "pro_monthly",
                    "expiryTime": expiry.isoformat().replace("+00:00", "Z"),
                    "autoRenewingPlan": {"autoRenewEnabled": True},
                }
                for expiry in expiries
            ],
        }
        resource.update(overrides)
        return {k: v for k, v in resource.items() if v is not None}

    return _build


@pytest.fixture
def google_product_purchase_json() -> Callable[..., dict[str, Any]]:
    """Build a purchases.products resource."""

    def _build(**overrides: Any) -> dict[str, Any]:
        resource: dict[str, Any] = {
            "kind": "androidpublisher#productPurchase",
            "purchaseTimeMillis": str(to_millis(FIXED_NOW - timedelta(hours=2))),
            "purchaseState": 0,
            "consumptionState": 0,
            "orderId": "GPA.3391-2222-3333-44444",
            "acknowledgementState": 1,
            "regionCode": "DE",
            "quantity": 2,
        }
        resource.update(overrides)
        return {k: v for k, v in resource.items() if v is not None}

    return _build


@pytest.fixture
def in_app_product_json() -> Callable[..., dict[str, Any]]:
    """Build an inappproducts resource."""

    def _build(sku: str = "coins_100", prices: dict[str, dict[str, str]] | None = None) -> dict[str, Any]:
        return {
            "packageName": PACKAGE_NAME,
            "sku": sku,
            "status": "active",
            "purchaseType": "managedUser",
            "defaultPrice": {"priceMicros": "990000", "currency": "USD"},
            "prices": prices
            if prices is not None
            else {
                "DE": {"priceMicros": "1090000", "currency": "EUR"},
                "US": {"priceMicros": "990000", "currency": "USD"},
            },
        }

    return _build


@pytest.fixture
def pubsub_body() -> Callable[..., str]:
    """Wrap a developer notification dict in a Pub/Sub push envelope."""

    def _build(notification: dict[str, Any] | None = None, raw_data: str | None = None) -> str:
        if raw_data is None:
            raw_data = base64.b64encode(json.dumps(notification).encode()).decode()
        return json.dumps(
            {
                "message": {
                    "attributes": {},
                    "data": raw_data,
                    "messageId": "2070443601311540",
                    "message_id": "2070443601311540",
                    "publishTime": "2025-06-01T12:00:00.000Z",
                },
                "subscription": "projects/example/subscriptions/play-rtdn",
            }
        )

    return _build


@pytest.fixture
def developer_notification() -> Callable[..., dict[str, Any]]:
    """Build a DeveloperNotification payload around one notification kind."""

    def _build(**kind: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "version": "1.0",
            "packageName": PACKAGE_NAME,
            "eventTimeMillis": str(to_millis(FIXED_NOW)),
        }
        payload.update(kind)
        return payload

    return _build


# ============================================================================
# HTTP
# ============================================================================


class RecordingTransport:
    """httpx.MockTransport handler that records requests and replays routes.

    Routes map (method, URL prefix) to (status, json body) or a callable.
    """

    def __init__(self, routes: dict[tuple[str, str], Any] | None = None) -> None:
        self.routes = routes or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for (method, prefix), result in self.routes.items():
            if request.method == method and str(request.url).startswith(prefix):
                if callable(result):
                    return result(request)
                status, body = result
                if isinstance(body, str | bytes):
                    return httpx.Response(status, content=body)
                return httpx.Response(status, json=body)
        return httpx.Response(404, json={"errorCode": 4040010, "errorMessage": "Not found"})


@pytest.fixture
def recording_transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def mock_http_client(recording_transport: RecordingTransport) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(recording_transport))


@pytest.fixture(scope="session")
def apple_api_private_key_pem() -> str:
    key = ec.generate_private_key(ec.SECP256R1())
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()


@pytest.fixture
def google_credentials() -> MagicMock:
    """google-auth credentials stub holding a valid access token."""
    credentials = MagicMock()
    credentials.valid = True
    credentials.token = "ya29.test-access-token"
    return credentials
