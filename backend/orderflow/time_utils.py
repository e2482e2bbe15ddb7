# Overview: UTC time helpers shared by models, services and the gateway adapter.

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

# Gateway timestamps are local time (UTC+7) without an offset
GATEWAY_UTC_OFFSET = timedelta(hours=7)
GATEWAY_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def utcnow() -> datetime:
    """Server-side 'now' as a naive UTC datetime (the stored form)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _as_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_gateway_time(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a gateway timestamp into naive UTC.

    "YYYY-MM-DD HH:MM:SS" is gateway local time. ISO-8601 strings with an
    offset or a trailing 'Z' are converted. Anything else yields None.
    """
    if not value:
        return None
    text = value.strip()
    try:
        return datetime.strptime(text, GATEWAY_TIME_FORMAT) - GATEWAY_UTC_OFFSET
    except ValueError:
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
    try:
        return _as_naive_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """ISO-8601 at seconds precision with a trailing 'Z'; naive input is UTC."""
    if dt is None:
        return None
    return _as_naive_utc(dt).replace(microsecond=0).isoformat() + "Z"
