"""
Apple Trust Verifier - x5c chain validation for Apple-signed JWS payloads.

Apple signs App Store Server API responses and App Store Server Notifications
V2 with ES256. The JWS header carries the signing chain in x5c:
    x5c[0] = leaf (signing certificate)
    x5c[1] = Apple Worldwide Developer Relations intermediate
    x5c[2] = Apple Root CA - G3 (optional)

The chain must end at, or be issued by, a pinned root loaded at startup.
Roots are never fetched over the network.
"""

import base64
import binascii
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import TypeVar

import jwt
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import ObjectIdentifier
from pydantic import BaseModel, ValidationError
from structlog import get_logger

from unified_iap.config import ConfigurationError
from unified_iap.exceptions import InvalidJwsError, InvalidSignatureError

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

BUNDLED_ROOT_CA_PATH = Path(__file__).resolve().parent.parent / "certs" / "AppleRootCA-G3.pem"
APPLE_ROOT_CA_G3_SHA256 = "63343abfb89a6a03ebb57e9b3f5fa7be7c4f5c756f3017b3a8c488c3653e9179"

# Marker extension Apple puts on App Store receipt signing certificates
APPLE_RECEIPT_SIGNING_OID = ObjectIdentifier("1.2.840.113635.100.6.11.1")


def _load_certificate(data: bytes) -> x509.Certificate:
    if b"-----BEGIN CERTIFICATE-----" in data:
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


def _fingerprint(cert: x509.Certificate) -> str:
    return cert.fingerprint(hashes.SHA256()).hex()


class AppleRootStore:
    """Pinned Apple root certificates, read-only after construction."""

    def __init__(self, roots: Iterable[x509.Certificate]) -> None:
        self._roots = {_fingerprint(cert): cert for cert in roots}
        if not self._roots:
            raise ConfigurationError("No pinned Apple root certificates configured")

    @classmethod
    def from_paths(cls, extra_paths: Iterable[str] = (), include_bundled: bool = True) -> "AppleRootStore":
        """
        Load the bundled Apple Root CA - G3 plus any extra PEM/DER roots.

        Raises:
            ConfigurationError: If any certificate cannot be read or parsed,
                or the bundled root does not match its known fingerprint
        """
        roots: list[x509.Certificate] = []

        if include_bundled:
            bundled = cls._read(BUNDLED_ROOT_CA_PATH)
            if _fingerprint(bundled) != APPLE_ROOT_CA_G3_SHA256:
                raise ConfigurationError("Bundled Apple Root CA - G3 fingerprint mismatch")
            roots.append(bundled)

        for path in extra_paths:
            roots.append(cls._read(Path(path)))

        logger.info("apple_root_store_loaded", root_count=len(roots))
        return cls(roots)

    @staticmethod
    def _read(path: Path) -> x509.Certificate:
        try:
            return _load_certificate(path.read_bytes())
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Failed to load Apple root certificate {path}: {e}") from e

    def is_pinned(self, cert: x509.Certificate) -> bool:
        return _fingerprint(cert) in self._roots

    def issuers_of(self, cert: x509.Certificate) -> list[x509.Certificate]:
        return [root for root in self._roots.values() if root.subject == cert.issuer]

    def __len__(self) -> int:
        return len(self._roots)


class AppleTrustVerifier:
    """
    Verifies Apple-signed JWS payloads against pinned roots.

    One instance is built at startup and shared; it holds no per-request state.
    """

    def __init__(
        self,
        root_store: AppleRootStore,
        clock: Callable[[], datetime] | None = None,
        require_receipt_signing_oid: bool = True,
    ) -> None:
        self.root_store = root_store
        self._clock = clock or (lambda: datetime.now(UTC))
        self.require_receipt_signing_oid = require_receipt_signing_oid

    def verify_and_decode(
        self,
        signed_payload: str,
        model: type[ModelT],
        expected_audience: str | None = None,
    ) -> ModelT:
        """
        Verify chain and signature of a compact JWS and decode its claims.

        Args:
            signed_payload: Compact JWS from Apple
            model: Pydantic model for the claims
            expected_audience: Required exact `aud` value; None for payloads
                that carry no audience (nested transaction/renewal info, API responses)

        Raises:
            InvalidJwsError: Header malformed, x5c missing, or claims of the wrong shape
            InvalidSignatureError: Chain, signature or audience check failed
        """
        chain = self._parse_chain(signed_payload)
        self._verify_chain(chain)

        try:
            claims = jwt.decode(
                signed_payload,
                chain[0].public_key(),
                algorithms=["ES256"],
                options={"verify_aud": False},
            )
        except (jwt.InvalidSignatureError, jwt.InvalidAlgorithmError) as e:
            logger.warning("apple_jws_signature_invalid", error_type=type(e).__name__)
            raise InvalidSignatureError("apple", "JWS signature verification failed") from e
        except jwt.DecodeError as e:
            # Segment encoding or payload shape, not the signature
            logger.warning("apple_jws_payload_invalid", error_type=type(e).__name__)
            raise InvalidJwsError("malformed JWS payload") from e
        except jwt.PyJWTError as e:
            logger.warning("apple_jws_signature_invalid", error_type=type(e).__name__)
            raise InvalidSignatureError("apple", "JWS signature verification failed") from e

        # Apple payloads carry a single audience; arrays never match
        if expected_audience is not None and claims.get("aud") != expected_audience:
            logger.warning("apple_jws_audience_mismatch")
            raise InvalidSignatureError("apple", "audience does not match")

        try:
            return model.model_validate(claims)
        except ValidationError as e:
            logger.warning(
                "apple_jws_claims_invalid",
                model=model.__name__,
                error_count=e.error_count(),
            )
            raise InvalidJwsError(f"claims do not match {model.__name__}") from e

    def _parse_chain(self, signed_payload: str) -> list[x509.Certificate]:
        try:
            header = jwt.get_unverified_header(signed_payload)
        except jwt.PyJWTError as e:
            raise InvalidJwsError("malformed JWS header") from e

        x5c = header.get("x5c")
        if x5c is None:
            raise InvalidJwsError("JWS header has no x5c certificate chain")
        if not isinstance(x5c, list) or not all(isinstance(entry, str) for entry in x5c):
            raise InvalidJwsError("x5c header is not a list of certificates")
        if not x5c:
            raise InvalidSignatureError("apple", "empty certificate chain")

        try:
            return [
                x509.load_der_x509_certificate(base64.b64decode(entry, validate=True))
                for entry in x5c
            ]
        except (binascii.Error, ValueError) as e:
            raise InvalidSignatureError("apple", "certificate chain could not be decoded") from e

    def _verify_chain(self, chain: list[x509.Certificate]) -> None:
        now = self._clock()
        leaf = chain[0]

        for cert in chain:
            if not cert.not_valid_before_utc <= now <= cert.not_valid_after_utc:
                raise InvalidSignatureError("apple", "certificate outside its validity period")

        if self.require_receipt_signing_oid and not self.root_store.is_pinned(leaf):
            try:
                leaf.extensions.get_extension_for_oid(APPLE_RECEIPT_SIGNING_OID)
            except x509.ExtensionNotFound as e:
                raise InvalidSignatureError("apple", "leaf is not an App Store signing certificate") from e

        try:
            for child, issuer in zip(chain, chain[1:]):
                if not self._is_ca(issuer):
                    raise InvalidSignatureError("apple", "intermediate is not a CA certificate")
                child.verify_directly_issued_by(issuer)

            top = chain[-1]
            if self.root_store.is_pinned(top):
                return

            for root in self.root_store.issuers_of(top):
                try:
                    top.verify_directly_issued_by(root)
                    return
                except (ValueError, TypeError, InvalidSignature):
                    continue
        except (ValueError, TypeError, InvalidSignature) as e:
            logger.warning("apple_chain_verification_failed", error_type=type(e).__name__)
            raise InvalidSignatureError("apple", "certificate chain verification failed") from e

        logger.warning("apple_chain_untrusted_root", chain_length=len(chain))
        raise InvalidSignatureError("apple", "certificate chain does not end at a pinned root")

    @staticmethod
    def _is_ca(cert: x509.Certificate) -> bool:
        try:
            constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints)
        except x509.ExtensionNotFound:
            return False
        return constraints.value.ca
