"""
Google Trust Verifier - JWKS verification for Pub/Sub push OIDC tokens.

Google signs the push *request* with an RS256 identity token in the
Authorization header. Keys come from Google's published JWKS and are cached
by one long-lived PyJWKClient shared by every verification.
"""

import asyncio
from typing import Any

import jwt
from structlog import get_logger

from unified_iap.config import GOOGLE_JWKS_URL
from unified_iap.exceptions import InvalidSignatureError

logger = get_logger(__name__)

GOOGLE_ISSUERS = ("https://accounts.google.com", "accounts.google.com")
JWKS_CACHE_SECONDS = 300  # Refresh Google's key set at most every 5 minutes


def strip_bearer(value: str) -> str:
    """Remove a leading 'Bearer ' prefix from an Authorization header value."""
    parts = value.split(None, 1)
    if parts and parts[0].lower() == "bearer":
        return parts[1].strip() if len(parts) > 1 else ""
    return value.strip()


class GoogleTrustVerifier:
    """
    Verifies Google-issued JWTs (signature, audience, issuer).

    Build once per process; the JWKS cache lives on the instance.
    """

    def __init__(
        self,
        jwks_url: str = GOOGLE_JWKS_URL,
        cache_seconds: int = JWKS_CACHE_SECONDS,
        expected_email: str | None = None,
        jwk_client: jwt.PyJWKClient | None = None,
    ) -> None:
        self.jwks_url = jwks_url
        self.expected_email = expected_email or None
        self._jwk_client = jwk_client or jwt.PyJWKClient(
            jwks_url,
            cache_keys=True,
            cache_jwk_set=True,
            lifespan=cache_seconds,
        )

    async def verify_and_decode(self, token_or_bearer: str, expected_audience: str) -> dict[str, Any]:
        """
        Verify a Google JWT and return its claims.

        The `aud` claim may be a string or an array; PyJWT matches either shape.

        Raises:
            InvalidSignatureError: On any verification failure. The token is
                never included in the error.
        """
        token = strip_bearer(token_or_bearer)
        if not token:
            raise InvalidSignatureError("google", "missing bearer token")

        try:
            # Key fetch may block on a JWKS refresh
            signing_key = await asyncio.to_thread(self._jwk_client.get_signing_key_from_jwt, token)
            claims: dict[str, Any] = jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256"],
                audience=expected_audience,
                options={"require": ["aud", "exp", "iat"]},
            )
        except jwt.PyJWTError as e:
            logger.warning("google_jwt_verification_failed", error_type=type(e).__name__)
            raise InvalidSignatureError("google", f"token verification failed ({type(e).__name__})") from e

        if claims.get("iss") not in GOOGLE_ISSUERS:
            logger.warning("google_jwt_issuer_mismatch")
            raise InvalidSignatureError("google", "issuer is not Google")

        if self.expected_email is not None:
            if claims.get("email") != self.expected_email or claims.get("email_verified") is not True:
                logger.warning("google_jwt_email_mismatch")
                raise InvalidSignatureError("google", "token was not issued for the push service account")

        return claims
