"""
Payload Decoder - Untrusted decode of general JWS JSON serializations.

Only used on sub-payloads whose trust was established by an outer layer.
No signature is checked here.
"""

import base64
import binascii
import json
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError
from structlog import get_logger

from unified_iap.exceptions import InvalidJwsError

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def b64url_decode(value: str) -> bytes:
    """Decode base64url with or without padding."""
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


class PayloadDecoder:
    """Decodes the payload of a general JWS JSON serialization into a model.

    Accepted shape:
        {"payload": "<base64url>", "signatures": [{"protected": "...", "signature": "..."}]}

    Compact ("a.b.c") and flattened ({"payload", "protected", "signature"})
    serializations are rejected.
    """

    def decode(self, serialized: str | bytes | dict[str, Any], model: type[ModelT]) -> ModelT:
        document = self._parse_general(serialized)
        try:
            raw = b64url_decode(document["payload"])
        except (binascii.Error, ValueError) as exc:
            raise InvalidJwsError("payload is not valid base64url") from exc

        try:
            claims = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise InvalidJwsError("payload is not valid JSON") from exc

        try:
            return model.model_validate(claims)
        except ValidationError as exc:
            logger.warning(
                "jws_payload_shape_mismatch",
                model=model.__name__,
                error_count=exc.error_count(),
            )
            raise InvalidJwsError(f"payload does not match {model.__name__}") from exc

    def _parse_general(self, serialized: str | bytes | dict[str, Any]) -> dict[str, Any]:
        if isinstance(serialized, dict):
            document = serialized
        else:
            try:
                document = json.loads(serialized)
            except (json.JSONDecodeError, UnicodeDecodeError) as exc:
                # Compact serializations land here
                raise InvalidJwsError("not a general JWS JSON serialization") from exc

        if not isinstance(document, dict):
            raise InvalidJwsError("not a general JWS JSON serialization")
        if "signature" in document or "protected" in document:
            raise InvalidJwsError("flattened JWS JSON serialization is not accepted")

        signatures = document.get("signatures")
        if not isinstance(signatures, list) or not signatures:
            raise InvalidJwsError("missing signatures array")
        if not all(isinstance(entry, dict) and "signature" in entry for entry in signatures):
            raise InvalidJwsError("malformed signatures array")

        payload = document.get("payload")
        if not isinstance(payload, str) or not payload:
            raise InvalidJwsError("missing payload")
        return document
