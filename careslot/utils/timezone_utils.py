"""
Timezone Utilities

Timezone-aware helpers with ZoneInfo. Patients and specialists report
timezones either as IANA names ('America/Los_Angeles'), fixed offsets
('UTC+5', 'GMT-3', '+05:30') or common abbreviations ('EST').
"""

import logging
import re
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "UTC"

# Common abbreviations, in hours from UTC
ABBREVIATION_OFFSETS = {
    'PST': -8, 'PDT': -7,
    'MST': -7, 'MDT': -6,
    'CST': -6, 'CDT': -5,
    'EST': -5, 'EDT': -4,
    'GMT': 0, 'UTC': 0, 'Z': 0,
    'CET': 1, 'CEST': 2,
    'IST': 5.5,
    'SGT': 8,
    'JST': 9,
    'AEST': 10, 'AEDT': 11,
}

_FIXED_OFFSET_RE = re.compile(r'^(?:UTC|GMT)?\s*([+-])(\d{1,2})(?::?(\d{2}))?$', re.IGNORECASE)


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(dt: datetime) -> datetime:
    """
    Reject naive datetimes and normalise to UTC.

    Raises:
        ValueError: If dt has no tzinfo
    """
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        raise ValueError("datetime must be timezone-aware")
    return dt.astimezone(timezone.utc)


def utc_offset_hours(tz_name: Optional[str], at: Optional[datetime] = None) -> float:
    """
    Resolve a timezone string to its UTC offset in hours at a given instant.

    IANA names honour DST at `at`. Unknown strings resolve to 0 (UTC).
    """
    if not tz_name:
        return 0.0

    tz_name = tz_name.strip()
    at = at or utc_now()

    upper = tz_name.upper()
    if upper in ABBREVIATION_OFFSETS:
        return float(ABBREVIATION_OFFSETS[upper])

    match = _FIXED_OFFSET_RE.match(tz_name)
    if match:
        sign, hours, minutes = match.groups()
        value = int(hours) + int(minutes or 0) / 60.0
        return value if sign == '+' else -value

    try:
        offset = at.astimezone(ZoneInfo(tz_name)).utcoffset()
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{tz_name}', treating as UTC")
        return 0.0

    return offset.total_seconds() / 3600.0 if offset is not None else 0.0


def offset_distance_hours(tz_a: Optional[str], tz_b: Optional[str], at: Optional[datetime] = None) -> float:
    """
    Distance in hours between two timezones' offsets, wrapping around the day.

    UTC-11 and UTC+12 are one hour apart, not 23.
    """
    diff = abs(utc_offset_hours(tz_a, at) - utc_offset_hours(tz_b, at)) % 24
    return min(diff, 24 - diff)
