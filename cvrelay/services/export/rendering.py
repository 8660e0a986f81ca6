from __future__ import annotations

import csv
from dataclasses import dataclass
from datetime import datetime, timezone
import io
from typing import Iterable, Literal
from zoneinfo import ZoneInfo

from cvrelay.core.config import get_settings
from cvrelay.domain.models import ConversionRecord


NetworkType = Literal["search", "display"]

# Click identifiers carry the network they were issued by as a dotted prefix.
CLICK_ID_PREFIXES: dict[str, str] = {"search": "YSS", "display": "YJAD"}

HEADER_CLICK_ID = "YCLID"
HEADER_CONVERSION_NAME = "コンバージョン名"
HEADER_CONVERTED_AT = "コンバージョン発生日時"
HEADER_VALUE = "1コンバージョンあたりの価値"
HEADER_CURRENCY = "通貨コード"

_CONVERTED_AT_FORMAT = "%Y%m%d %H%M%S"
_FILE_STAMP_FORMAT = "%Y%m%d_%H%M%S"


@dataclass(frozen=True)
class RenderedBatch:
    file_name: str
    content: bytes
    row_count: int


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def prefix_for(network_type: str) -> str:
    try:
        return CLICK_ID_PREFIXES[network_type]
    except KeyError:
        raise ValueError(f"unknown network type: {network_type}") from None


def header_for(network_type: str) -> list[str]:
    columns = [HEADER_CLICK_ID, HEADER_CONVERSION_NAME, HEADER_CONVERTED_AT, HEADER_VALUE]
    # Only the search network accepts a currency column.
    if network_type == "search":
        columns.append(HEADER_CURRENCY)
    return columns


def render_rows(
    records: Iterable[ConversionRecord],
    *,
    network_type: str,
    conversion_title: str,
) -> list[list[str]]:
    settings = get_settings()
    zone = ZoneInfo(settings.export_timezone)
    rows: list[list[str]] = []
    for record in records:
        row = [
            record.yclid,
            conversion_title,
            _as_utc(record.converted_at).astimezone(zone).strftime(_CONVERTED_AT_FORMAT),
            str(record.amount),
        ]
        if network_type == "search":
            row.append(settings.export_currency)
        rows.append(row)
    return rows


def build_file_name(network_type: str, now: datetime) -> str:
    zone = ZoneInfo(get_settings().export_timezone)
    return f"shopify_cv_{network_type}_{_as_utc(now).astimezone(zone).strftime(_FILE_STAMP_FORMAT)}.csv"


def render_batch(
    records: list[ConversionRecord],
    *,
    network_type: str,
    conversion_title: str,
    now: datetime,
) -> RenderedBatch:
    """Render records as the upload CSV in the destination's legacy encoding.

    Characters the target charset cannot represent fail the whole batch with
    UnicodeEncodeError rather than being replaced silently.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(header_for(network_type))
    writer.writerows(
        render_rows(records, network_type=network_type, conversion_title=conversion_title)
    )
    content = buffer.getvalue().encode(get_settings().export_encoding)
    return RenderedBatch(
        file_name=build_file_name(network_type, now),
        content=content,
        row_count=len(records),
    )
