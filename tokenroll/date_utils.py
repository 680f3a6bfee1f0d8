"""Shared timestamp normalization helpers."""
from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Any

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_EPOCH_MS_THRESHOLD = 10_000_000_000


def ensure_utc(value: datetime) -> datetime:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_utc(value: datetime) -> str:
    """Format as `YYYY-MM-DDTHH:MM:SSZ`; lexical order matches time order."""
    dt = ensure_utc(value).replace(microsecond=0)
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    try:
        return datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y/%m/%d %H:%M:%S"):
        try:
            return datetime.strptime(cleaned, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def parse_timestamp(value: Any) -> datetime | None:
    """Convert mixed timestamp inputs into an aware UTC datetime.

    Accepts ISO-8601 strings (with or without `Z`), date-only strings,
    datetimes, and epoch seconds or milliseconds.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        seconds = float(value)
        if seconds > _EPOCH_MS_THRESHOLD:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        token = value.strip()
        if not token:
            return None
        if _DATE_ONLY_RE.match(token):
            try:
                parsed = date.fromisoformat(token)
            except ValueError:
                return None
            return datetime(parsed.year, parsed.month, parsed.day, tzinfo=timezone.utc)
        parsed_dt = _parse_datetime_token(token)
        if parsed_dt:
            return ensure_utc(parsed_dt)
    return None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return format_utc(utc_now())
