"""
Shared field types for vendor payload models.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict
from pydantic.alias_generators import to_camel


def _from_millis(value: Any) -> Any:
    """Convert UNIX milliseconds (int or numeric string) to an aware datetime."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int | float):
        return datetime.fromtimestamp(value / 1000, tz=UTC)
    if isinstance(value, str) and value.isdigit():
        return datetime.fromtimestamp(int(value) / 1000, tz=UTC)
    return value


MillisDatetime = Annotated[datetime, BeforeValidator(_from_millis)]


def lenient(enum_cls: type[Enum]) -> Any:
    """Annotate a str enum so values the vendor adds later decode as UNKNOWN."""
    known = {member.value for member in enum_cls}

    def coerce(value: Any) -> Any:
        if not isinstance(value, str) or isinstance(value, enum_cls) or value in known:
            return value
        return enum_cls["UNKNOWN"].value

    return Annotated[enum_cls, BeforeValidator(coerce)]


class VendorModel(BaseModel):
    """Base for decoded vendor payloads: camelCase keys, unknown keys ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )
