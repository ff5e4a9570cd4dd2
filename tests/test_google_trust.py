"""
Tests for the Google JWKS verifier.
"""

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from conftest import PUBSUB_AUDIENCE
from unified_iap.exceptions import InvalidSignatureError
from unified_iap.services.google_trust import GoogleTrustVerifier, strip_bearer

PUSH_EMAIL = "pubsub-push@example-project.iam.gserviceaccount.com"


class TestStripBearer:
    """Tests for Authorization header handling."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("Bearer abc.def.ghi", "abc.def.ghi"),
            ("bearer abc.def.ghi", "abc.def.ghi"),
            ("  Bearer   abc.def.ghi  ", "abc.def.ghi"),
            ("abc.def.ghi", "abc.def.ghi"),
            ("", ""),
            ("Bearer ", ""),
            ("Bearer", ""),
            ("  bearer\t ", ""),
        ],
    )
    def test_strip(self, value, expected):
        assert strip_bearer(value) == expected


class TestGoogleTrustVerifier:
    """Tests for GoogleTrustVerifier.verify_and_decode."""

    @pytest.mark.asyncio
    async def test_valid_token_with_bearer_prefix(self, google_verifier, sign_google):
        claims = await google_verifier.verify_and_decode(f"Bearer {sign_google()}", PUBSUB_AUDIENCE)
        assert claims["aud"] == PUBSUB_AUDIENCE
        assert claims["email"] == PUSH_EMAIL

    @pytest.mark.asyncio
    async def test_bare_token_accepted(self, google_verifier, sign_google):
        claims = await google_verifier.verify_and_decode(sign_google(), PUBSUB_AUDIENCE)
        assert claims["iss"] == "https://accounts.google.com"

    @pytest.mark.asyncio
    async def test_audience_array_containing_expected(self, google_verifier, sign_google):
        token = sign_google(aud=["https://other.example.com", PUBSUB_AUDIENCE])
        claims = await google_verifier.verify_and_decode(token, PUBSUB_AUDIENCE)
        assert PUBSUB_AUDIENCE in claims["aud"]

    @pytest.mark.asyncio
    async def test_audience_mismatch_rejected(self, google_verifier, sign_google):
        token = sign_google(aud="https://attacker.example.com")
        with pytest.raises(InvalidSignatureError) as exc_info:
            await google_verifier.verify_and_decode(token, PUBSUB_AUDIENCE)
        assert exc_info.value.vendor == "google"

    @pytest.mark.asyncio
    async def test_missing_audience_rejected(self, google_verifier, sign_google):
        with pytest.raises(InvalidSignatureError):
            await google_verifier.verify_and_decode(sign_google(aud=None), PUBSUB_AUDIENCE)

    @pytest.mark.asyncio
    async def test_wrong_signing_key_rejected(self, google_verifier, sign_google):
        other_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        with pytest.raises(InvalidSignatureError):
            await google_verifier.verify_and_decode(sign_google(key=other_key), PUBSUB_AUDIENCE)

    @pytest.mark.asyncio
    async def test_expired_token_rejected(self, google_verifier, sign_google):
        token = sign_google(iat=1_600_000_000, exp=1_600_003_600)
        with pytest.raises(InvalidSignatureError, match="ExpiredSignatureError"):
            await google_verifier.verify_and_decode(token, PUBSUB_AUDIENCE)

    @pytest.mark.asyncio
    async def test_foreign_issuer_rejected(self, google_verifier, sign_google):
        token = sign_google(iss="https://evil.example.com")
        with pytest.raises(InvalidSignatureError, match="issuer"):
            await google_verifier.verify_and_decode(token, PUBSUB_AUDIENCE)

    @pytest.mark.asyncio
    async def test_short_issuer_form_accepted(self, google_verifier, sign_google):
        claims = await google_verifier.verify_and_decode(sign_google(iss="accounts.google.com"), PUBSUB_AUDIENCE)
        assert claims["iss"] == "accounts.google.com"

    @pytest.mark.asyncio
    async def test_empty_header_rejected(self, google_verifier):
        with pytest.raises(InvalidSignatureError, match="missing"):
            await google_verifier.verify_and_decode("Bearer ", PUBSUB_AUDIENCE)

    @pytest.mark.asyncio
    async def test_garbage_token_rejected(self, google_verifier, fake_jwk_client):
        fake_jwk_client.get_signing_key_from_jwt.side_effect = jwt.DecodeError("Invalid token")
        with pytest.raises(InvalidSignatureError):
            await google_verifier.verify_and_decode("Bearer not-a-jwt", PUBSUB_AUDIENCE)

    @pytest.mark.asyncio
    async def test_token_never_in_error(self, google_verifier, sign_google):
        token = sign_google(aud="https://attacker.example.com")
        with pytest.raises(InvalidSignatureError) as exc_info:
            await google_verifier.verify_and_decode(token, PUBSUB_AUDIENCE)
        assert token not in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_jwks_client_receives_stripped_token(self, google_verifier, fake_jwk_client, sign_google):
        token = sign_google()
        await google_verifier.verify_and_decode(f"Bearer {token}", PUBSUB_AUDIENCE)
        fake_jwk_client.get_signing_key_from_jwt.assert_called_once_with(token)


class TestExpectedEmail:
    """Optional push service account binding."""

    @pytest.mark.asyncio
    async def test_matching_email(self, fake_jwk_client, sign_google):
        verifier = GoogleTrustVerifier(expected_email=PUSH_EMAIL, jwk_client=fake_jwk_client)
        claims = await verifier.verify_and_decode(sign_google(), PUBSUB_AUDIENCE)
        assert claims["email"] == PUSH_EMAIL

    @pytest.mark.asyncio
    async def test_other_email_rejected(self, fake_jwk_client, sign_google):
        verifier = GoogleTrustVerifier(expected_email=PUSH_EMAIL, jwk_client=fake_jwk_client)
        with pytest.raises(InvalidSignatureError, match="service account"):
            await verifier.verify_and_decode(sign_google(email="someone@example.com"), PUBSUB_AUDIENCE)

    @pytest.mark.asyncio
    async def test_unverified_email_rejected(self, fake_jwk_client, sign_google):
        verifier = GoogleTrustVerifier(expected_email=PUSH_EMAIL, jwk_client=fake_jwk_client)
        with pytest.raises(InvalidSignatureError):
            await verifier.verify_and_decode(sign_google(email_verified=False), PUBSUB_AUDIENCE)

    def test_blank_email_disables_check(self, fake_jwk_client):
        verifier = GoogleTrustVerifier(expected_email="", jwk_client=fake_jwk_client)
        assert verifier.expected_email is None
