from __future__ import annotations

from datetime import datetime, timezone
import json

import pytest

from cvrelay.services.ingest.payload import (
    PayloadError,
    format_display_timestamp,
    parse_display_timestamp,
    parse_payload,
)


def _payload(**overrides) -> dict:
    data = {
        "yclid": "YSS.1690000000.abc",
        "visitedAt": "Sat Jul 22 2023 12:26:40 GMT+0900 (Japan Standard Time)",
        "conversionedAt": "2023-07-22T04:30:00Z",
        "amount": 1000,
        "orderId": "123",
        "nonce": "n1",
    }
    data.update(overrides)
    return data


def test_parses_browser_display_timestamps() -> None:
    parsed = parse_display_timestamp("Sat Jul 22 2023 12:26:40 GMT+0900 (Japan Standard Time)")
    assert parsed == datetime(2023, 7, 22, 3, 26, 40, tzinfo=timezone.utc)


def test_display_timestamp_round_trip() -> None:
    value = datetime(2024, 1, 5, 23, 59, 1, tzinfo=timezone.utc)
    assert parse_display_timestamp(format_display_timestamp(value)) == value


def test_valid_payload_parses_wire_names() -> None:
    payload = parse_payload(json.dumps(_payload()).encode("utf-8"))
    assert payload.order_id == "123"
    assert payload.amount_minor == 1000
    assert payload.visited_at_utc == datetime(2023, 7, 22, 3, 26, 40, tzinfo=timezone.utc)
    assert payload.converted_at_utc == datetime(2023, 7, 22, 4, 30, tzinfo=timezone.utc)
    assert payload.to_wire()["conversionedAt"] == "2023-07-22T04:30:00Z"


def test_fractional_amount_is_rounded() -> None:
    payload = parse_payload(json.dumps(_payload(amount=1999.6)).encode("utf-8"))
    assert payload.amount_minor == 2000


@pytest.mark.parametrize(
    "overrides",
    [
        {"amount": "1000"},
        {"orderId": 123},
        {"nonce": ""},
        {"yclid": None},
        {"visitedAt": "yesterday"},
        {"amount": True},
    ],
)
def test_wrong_primitive_types_are_rejected(overrides) -> None:
    with pytest.raises(PayloadError):
        parse_payload(json.dumps(_payload(**overrides)).encode("utf-8"))


def test_missing_field_is_rejected() -> None:
    data = _payload()
    del data["nonce"]
    with pytest.raises(PayloadError):
        parse_payload(json.dumps(data).encode("utf-8"))


def test_non_object_plaintext_is_rejected() -> None:
    with pytest.raises(PayloadError):
        parse_payload(b"[1, 2, 3]")
    with pytest.raises(PayloadError):
        parse_payload(b"\xff\xfe")


@pytest.mark.parametrize("value", ["0001-01-01T00:00:00+09:00", "9999-12-31T23:59:59-09:00"])
def test_timestamp_outside_utc_range_is_a_value_error(value) -> None:
    with pytest.raises(ValueError):
        parse_display_timestamp(value)
    with pytest.raises(PayloadError):
        parse_payload(json.dumps(_payload(visitedAt=value)).encode("utf-8"))
