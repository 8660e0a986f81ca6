from __future__ import annotations

from datetime import datetime, timezone
import json
import math
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


# JavaScript Date.prototype.toString(), e.g. "Sat Jul 22 2023 12:26:40 GMT+0900 (Japan Standard Time)".
_JS_DATE_SUFFIX = re.compile(r"\s*\([^)]*\)\s*$")
_JS_DATE_FORMAT = "%a %b %d %Y %H:%M:%S GMT%z"


class PayloadError(ValueError):
    """Decrypted beacon payload is missing fields or has the wrong shape."""


def parse_display_timestamp(value: str) -> datetime:
    text = value.strip()
    if not text:
        raise ValueError("empty timestamp")
    try:
        parsed = datetime.strptime(_JS_DATE_SUFFIX.sub("", text), _JS_DATE_FORMAT)
    except (ValueError, OverflowError):
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except OverflowError as exc:
        # Offsets can push dates at the calendar edges outside datetime's range.
        raise ValueError("timestamp out of range") from exc


def format_display_timestamp(value: datetime) -> str:
    # Inverse of parse_display_timestamp for the beacon side.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    zone_name = value.tzname() or "UTC"
    return f"{value.strftime(_JS_DATE_FORMAT)} ({zone_name})"


class ConversionPayload(BaseModel):
    # Strict mode keeps primitive types exact: numbers are not coerced from strings and vice versa.
    model_config = ConfigDict(strict=True, populate_by_name=True, extra="ignore")

    yclid: str = Field(min_length=1)
    visited_at: str = Field(alias="visitedAt")
    converted_at: str = Field(alias="conversionedAt")
    amount: int | float
    order_id: str = Field(alias="orderId", min_length=1)
    nonce: str = Field(min_length=1)

    @field_validator("amount")
    @classmethod
    def _finite_amount(cls, value: int | float) -> int | float:
        if isinstance(value, float) and not math.isfinite(value):
            raise ValueError("amount must be finite")
        return value

    @field_validator("visited_at", "converted_at")
    @classmethod
    def _parsable_timestamp(cls, value: str) -> str:
        parse_display_timestamp(value)
        return value

    @property
    def visited_at_utc(self) -> datetime:
        return parse_display_timestamp(self.visited_at)

    @property
    def converted_at_utc(self) -> datetime:
        return parse_display_timestamp(self.converted_at)

    @property
    def amount_minor(self) -> int:
        # Stored as whole currency units.
        return int(round(self.amount))

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def parse_payload(plaintext: bytes) -> ConversionPayload:
    try:
        data = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise PayloadError("payload is not JSON") from exc
    if not isinstance(data, dict):
        raise PayloadError("payload is not a JSON object")
    try:
        return ConversionPayload.model_validate(data)
    except ValidationError as exc:
        fields = ",".join(str(err["loc"][0]) for err in exc.errors() if err.get("loc"))
        raise PayloadError(f"payload failed validation fields={fields}") from exc
