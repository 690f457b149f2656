"""
Identifier normalization

Every function here is total: bad input returns None, never raises.
Normalized tokens are what gets written to and compared against the
identity graph.
"""

import re
from datetime import datetime, timezone
from typing import Any, Optional

MAX_IDENTIFIER_LENGTH = 200
MAX_EMAIL_LENGTH = 320
MIN_PHONE_DIGITS = 7
MAX_PHONE_DIGITS = 20

CLICKHOUSE_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

# DateTime64 range
MIN_TIMESTAMP_YEAR = 1900
MAX_TIMESTAMP_YEAR = 2299

_NON_DIGITS = re.compile(r"[^0-9]")


def _bounded_string(value: Any, max_length: int = MAX_IDENTIFIER_LENGTH) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed or len(trimmed) > max_length:
        return None
    return trimmed


def normalize_user_id(value: Any) -> Optional[str]:
    return _bounded_string(value)


def normalize_anonymous_id(value: Any) -> Optional[str]:
    return _bounded_string(value)


def normalize_device_fingerprint(value: Any) -> Optional[str]:
    return _bounded_string(value)


def normalize_email(value: Any) -> Optional[str]:
    """Lowercased, trimmed email; must contain '@' and fit in 320 chars"""
    trimmed = _bounded_string(value, MAX_EMAIL_LENGTH)
    if not trimmed:
        return None
    lowered = trimmed.lower()
    if "@" not in lowered:
        return None
    return lowered


def normalize_phone(value: Any) -> Optional[str]:
    """
    Reduce a phone number to its digits.

    "+1 (555) 123-4567" and "15551234567" both become "15551234567",
    which is what phone-based linking matches on.
    """
    if not isinstance(value, str):
        return None
    digits = _NON_DIGITS.sub("", value.strip())
    if len(digits) < MIN_PHONE_DIGITS or len(digits) > MAX_PHONE_DIGITS:
        return None
    return digits


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_clickhouse_timestamp(dt: Optional[datetime] = None) -> str:
    """Render as 'YYYY-MM-DD HH:MM:SS.mmm' in UTC"""
    dt = _to_utc(dt or datetime.now(timezone.utc))
    return f"{dt.strftime(CLICKHOUSE_TIMESTAMP_FORMAT)}.{dt.microsecond // 1000:03d}"


def parse_iso_timestamp(value: Any) -> Optional[datetime]:
    """Parse a client-supplied ISO-8601 string; naive values are taken as UTC"""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = _to_utc(datetime.fromisoformat(text))
    except (ValueError, OverflowError):
        return None
    if not MIN_TIMESTAMP_YEAR <= parsed.year <= MAX_TIMESTAMP_YEAR:
        return None
    return parsed


def parse_clickhouse_timestamp(value: Any) -> Optional[datetime]:
    """Inverse of format_clickhouse_timestamp; returns naive UTC for the driver"""
    if isinstance(value, datetime):
        try:
            return _to_utc(value).replace(tzinfo=None)
        except (ValueError, OverflowError):
            return None
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    base, _, fraction = text.partition(".")
    try:
        parsed = datetime.strptime(base, CLICKHOUSE_TIMESTAMP_FORMAT)
    except ValueError:
        iso = parse_iso_timestamp(text)
        return iso.replace(tzinfo=None) if iso else None
    if fraction.isdigit():
        parsed = parsed.replace(microsecond=int(fraction[:6].ljust(6, "0")))
    return parsed
