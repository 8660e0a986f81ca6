from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import re
from urllib.parse import unquote


# Search clicks: _ycl_<account>_aw=GCL.<unix seconds>.<value>
_SEARCH_COOKIE = re.compile(r"_ycl_([0-9]+)_aw")
# Display clicks: _ycl_yjad=YJAD.<unix seconds>.<value>
_DISPLAY_COOKIE = "_ycl_yjad"


@dataclass(frozen=True)
class ClickId:
    value: str
    clicked_at: datetime


def _parse_cookie(name: str, raw_value: str) -> ClickId | None:
    value = unquote(raw_value)
    segments = value.split(".")
    if len(segments) != 3 or not segments[1].isdigit():
        return None
    clicked_at = datetime.fromtimestamp(int(segments[1]), tz=timezone.utc)
    search = _SEARCH_COOKIE.fullmatch(name)
    if search and segments[0] == "GCL":
        return ClickId(value=f"YSS.{search.group(1)}.{segments[2]}", clicked_at=clicked_at)
    if name == _DISPLAY_COOKIE and segments[0] == "YJAD":
        return ClickId(value=value, clicked_at=clicked_at)
    return None


def find_latest_click_id(cookie_header: str | None) -> ClickId | None:
    """Pick the most recent ad click id out of a Cookie header.

    Unknown cookies and malformed values are ignored. Returns None when no
    click id is present, in which case nothing should be sent.
    """
    if not cookie_header:
        return None
    found: list[ClickId] = []
    for pair in cookie_header.split(";"):
        name, sep, raw_value = pair.strip().partition("=")
        if not sep or not raw_value:
            continue
        click = _parse_cookie(name, raw_value)
        if click is not None:
            found.append(click)
    if not found:
        return None
    return max(found, key=lambda click: click.clicked_at)
