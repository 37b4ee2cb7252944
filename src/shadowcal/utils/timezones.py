"""Timezone helpers for Google Calendar time payloads.

Google Calendar payloads (examples)
- All-day:
  {"date": "2024-03-01"}
- Timed:
  {"dateTime": "2024-03-01T10:00:00+09:00", "timeZone": "Asia/Tokyo"}
  {"dateTime": "2024-03-01T10:00:00", "timeZone": "UTC"}  # naive dt with explicit tzid

Public API
- get_zoneinfo(tzid) -> ZoneInfo | None
- ensure_tz(dt, tzid, default_tz="UTC") -> datetime
- parse_date(raw) -> date
- parse_datetime(raw, tzid, default_tz="UTC") -> datetime (aware)
- to_rfc3339(dt) -> str (UTC, "Z" suffix), as required by timeMin/timeMax

Notes
- Unknown TZIDs fall back to the default zone, then UTC.
- Aware datetimes are never converted here; comparisons between aware values are
  zone independent anyway.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as dtparser

__all__ = [
    "ensure_tz",
    "get_zoneinfo",
    "parse_date",
    "parse_datetime",
    "to_rfc3339",
]


def get_zoneinfo(tzid: str | None) -> ZoneInfo | None:
    """Resolve a TZID to ZoneInfo, returning None if not found or not provided."""
    if not tzid:
        return None
    try:
        return ZoneInfo(tzid)
    except (ZoneInfoNotFoundError, ValueError):
        if tzid.upper() in {"UTC", "Z", "GMT"}:
            return ZoneInfo("UTC")
        return None


def ensure_tz(dt: datetime, tzid: str | None, default_tz: str = "UTC") -> datetime:
    """Return `dt` unchanged when aware; otherwise localize to tzid, default_tz, then UTC."""
    if dt.tzinfo is not None:
        return dt
    z = get_zoneinfo(tzid) or get_zoneinfo(default_tz) or ZoneInfo("UTC")
    return dt.replace(tzinfo=z)


def parse_date(raw: str) -> date:
    y, m, d = (int(x) for x in raw.strip().split("-"))
    return date(y, m, d)


def parse_datetime(raw: str, tzid: str | None = None, default_tz: str = "UTC") -> datetime:
    return ensure_tz(dtparser.isoparse(raw.strip()), tzid, default_tz=default_tz)


def to_rfc3339(dt: datetime) -> str:
    aware = dt if dt.tzinfo is not None else dt.replace(tzinfo=UTC)
    return aware.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
