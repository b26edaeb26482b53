"""
Timestamp and duration helpers.

All timestamps handled by the harvester are timezone-aware UTC datetimes.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Any

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_DURATION_RE = re.compile(
    r"^P(?:(?P<weeks>\d+)W)?(?:(?P<days>\d+)D)?"
    r"(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$"
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """
    Parse an ISO-8601 timestamp as returned by the monitoring API.

    Raises:
        ValueError: if the value is not a datetime or an ISO-8601 string
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str) or not value:
        raise ValueError(f"Invalid timestamp: {value!r}")

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def format_timestamp(value: datetime) -> str:
    """Format a datetime the way the monitoring API expects (``...Z``)."""
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_iso_duration(value: str) -> timedelta:
    """
    Parse an ISO-8601 duration such as ``P7D``, ``PT48H`` or ``P1DT12H``.

    Months and years are not supported by the monitoring API periods.
    """
    match = _DURATION_RE.match(value.strip().upper()) if value else None
    if not match or value.strip().upper() in ("P", "PT"):
        raise ValueError(f"Invalid ISO-8601 duration: {value!r}")

    parts = {k: float(v) for k, v in match.groupdict().items() if v is not None}
    return timedelta(
        weeks=parts.get("weeks", 0),
        days=parts.get("days", 0),
        hours=parts.get("hours", 0),
        minutes=parts.get("minutes", 0),
        seconds=parts.get("seconds", 0),
    )
