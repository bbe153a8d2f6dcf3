"""Replay guard: timestamp freshness for providers that send one."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

DEFAULT_MAX_SKEW = timedelta(minutes=10)

_FRACTION = re.compile(r"\.(\d+)")


def is_fresh(claimed: datetime | None, now: datetime, max_skew: timedelta = DEFAULT_MAX_SKEW) -> bool:
    if claimed is None:
        return False
    return abs(now - claimed) <= max_skew


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse RFC3339 (nanosecond fractions allowed) or epoch seconds to aware UTC."""
    text = (value or "").strip()
    if not text:
        return None
    if text.isdigit():
        try:
            return datetime.fromtimestamp(int(text), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # fromisoformat only takes up to microseconds
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)
