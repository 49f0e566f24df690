"""Log timestamp parsing, ordering and duration formatting helpers."""
from __future__ import annotations

import math
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

_DATE_KEY_PREFIX_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})(?:[ T]|$)")
_LMS_TIMESTAMP_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})(?:[ T](\d{2}):(\d{2}):(\d{2})(?:[,.](\d{1,3}))?)?$"
)
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


def _parse_iso_datetime(token: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(token.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_log_timestamp_ms(value: Optional[str]) -> int | None:
    """Parse an LM Studio log timestamp into epoch milliseconds (UTC).

    Accepts ``YYYY-MM-DD HH:MM:SS`` with an optional ``,ms`` / ``.ms``
    fraction (one to three digits, right padded), a bare date, or any ISO
    8601 value as a fallback. Returns ``None`` for anything unparseable.
    """
    token = (value or "").strip()
    if not token:
        return None

    match = _LMS_TIMESTAMP_RE.match(token)
    if match:
        year, month, day, hour, minute, second, fraction = match.groups()
        millisecond = int(fraction.ljust(3, "0")) if fraction else 0
        try:
            dt = datetime(
                int(year),
                int(month),
                int(day),
                int(hour or 0),
                int(minute or 0),
                int(second or 0),
                millisecond * 1000,
                tzinfo=timezone.utc,
            )
        except ValueError:
            return None
        return (dt - _EPOCH) // _ONE_MS

    parsed = _parse_iso_datetime(token)
    if parsed is None:
        return None
    return (parsed - _EPOCH) // _ONE_MS


def compare_log_timestamps(left: str, right: str) -> int:
    """Ascending comparator: parseable timestamps sort before unparseable ones."""
    left_ms = parse_log_timestamp_ms(left)
    right_ms = parse_log_timestamp_ms(right)
    if left_ms is not None and right_ms is not None:
        return (left_ms > right_ms) - (left_ms < right_ms)
    if left_ms is not None:
        return -1
    if right_ms is not None:
        return 1
    return (left > right) - (left < right)


def extract_date_key(value: str) -> str | None:
    token = (value or "").strip()
    if not token:
        return None
    match = _DATE_KEY_PREFIX_RE.match(token)
    if match:
        return match.group(1)
    parsed = _parse_iso_datetime(token)
    if parsed is None:
        return None
    return parsed.astimezone(timezone.utc).strftime("%Y-%m-%d")


def ms_to_iso(value: int | float | None) -> str | None:
    if value is None:
        return None
    dt = _EPOCH + timedelta(milliseconds=value)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def format_duration_ms(value: int | float | None, unknown_label: str = "Unknown") -> str:
    """Human readable duration: ``850ms``, ``12.40s`` or ``3m 5.00s``."""
    if value is None or not math.isfinite(value):
        return unknown_label

    ms = max(0.0, float(value))
    if ms < 1000:
        return f"{int(ms + 0.5)}ms"

    total_seconds = ms / 1000
    if total_seconds > 60:
        minutes = int(total_seconds // 60)
        seconds = total_seconds - minutes * 60
        return f"{minutes}m {seconds:.2f}s"
    return f"{total_seconds:.2f}s"
