"""
RFC3339 timestamp helpers and the reference clock.

All timestamps inside the package are timezone-aware UTC datetimes.
Conversion from and to strings happens only at the boundary, through
parse_rfc3339() and format_rfc3339().
"""

import re
from datetime import datetime, timezone
from typing import Protocol

_RFC3339_RE = re.compile(
    r"^(?P<date>\d{4}-\d{2}-\d{2})[Tt](?P<time>\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<fraction>\d+))?(?P<offset>[Zz]|[+-]\d{2}:\d{2})$"
)


class Clock(Protocol):
    """Reference clock used by validators and stampers."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Convert an aware datetime to UTC; naive datetimes are ambiguous and rejected."""
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError("Naive datetime is not allowed; attach an explicit UTC offset")
    return value.astimezone(timezone.utc)


def parse_rfc3339(value: str) -> datetime:
    """
    Parse an RFC3339 timestamp into an aware UTC datetime.

    Accepts a `Z` suffix or an explicit numeric offset. Local times without
    an offset and epoch numbers are rejected.

    Raises:
        ValueError: if the string is not a valid RFC3339 timestamp
    """
    if not isinstance(value, str):
        raise ValueError(f"RFC3339 timestamp must be a string, got {type(value).__name__}")

    match = _RFC3339_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid RFC3339 timestamp: {value!r}")

    fraction = match.group("fraction") or ""
    # fromisoformat needs exactly six fractional digits on older interpreters
    fraction = (fraction + "000000")[:6] if fraction else ""
    offset = match.group("offset")
    offset = "+00:00" if offset in ("Z", "z") else offset

    normalized = f"{match.group('date')}T{match.group('time')}"
    if fraction:
        normalized += f".{fraction}"
    normalized += offset

    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as e:
        raise ValueError(f"Invalid RFC3339 timestamp: {value!r}") from e
    return parsed.astimezone(timezone.utc)


def format_rfc3339(value: datetime) -> str:
    """Render an aware datetime as an RFC3339 UTC string with a `Z` suffix."""
    value = ensure_utc(value)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text += f".{value.microsecond:06d}"
    return text + "Z"


def format_optional(value: datetime | None) -> str | None:
    return format_rfc3339(value) if value is not None else None
