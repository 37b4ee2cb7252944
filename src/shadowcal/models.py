"""Domain types shared by the sync engine, the provider client and the state store."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from .utils.timezones import ensure_tz, parse_date, parse_datetime

__all__ = [
    "CalendarEvent",
    "EventMapping",
    "PlaceholderEvent",
    "SourceCalendarRef",
    "SubscriptionChannel",
    "SyncProvenance",
    "TimePoint",
]


@dataclass(frozen=True)
class SourceCalendarRef:
    id: str
    display_name: str


@dataclass(frozen=True)
class TimePoint:
    """Either an all-day `day` or a timed `at`, never both."""

    day: date | None = None
    at: datetime | None = None
    time_zone: str | None = None

    def __post_init__(self) -> None:
        if (self.day is None) == (self.at is None):
            raise ValueError("TimePoint needs exactly one of a date or a date-time")

    @property
    def is_all_day(self) -> bool:
        return self.day is not None

    def instant(self) -> datetime:
        """Aware datetime for ordering timed values."""
        if self.at is None:
            raise ValueError("All-day TimePoint has no instant")
        return ensure_tz(self.at, self.time_zone)

    @classmethod
    def from_google(cls, payload: dict[str, Any] | None) -> TimePoint | None:
        if not payload:
            return None
        tzid = payload.get("timeZone") or None
        if payload.get("date"):
            return cls(day=parse_date(str(payload["date"])), time_zone=tzid)
        if payload.get("dateTime"):
            return cls(at=parse_datetime(str(payload["dateTime"]), tzid), time_zone=tzid)
        return None

    def to_google(self) -> dict[str, str]:
        if self.day is not None:
            return {"date": self.day.isoformat()}
        assert self.at is not None
        out = {"dateTime": self.at.isoformat()}
        if self.time_zone:
            out["timeZone"] = self.time_zone
        return out


@dataclass(frozen=True)
class SyncProvenance:
    source_calendar_id: str
    source_event_id: str
    synced_at: str  # ISO 8601 UTC


@dataclass(frozen=True)
class CalendarEvent:
    """One occurrence as returned by the provider (recurrences pre-expanded)."""

    id: str
    start: TimePoint | None
    end: TimePoint | None
    title: str = ""
    description: str | None = None
    location: str | None = None
    color_tag: str | None = None
    busy_state: str = "opaque"
    visibility: str = "default"
    attendee_self_response: str | None = None
    status: str = "confirmed"
    provenance: SyncProvenance | None = None

    @property
    def cancelled(self) -> bool:
        return self.status == "cancelled"

    @property
    def has_time(self) -> bool:
        return self.start is not None and self.end is not None

    @property
    def declined(self) -> bool:
        return self.attendee_self_response == "declined"


@dataclass(frozen=True)
class PlaceholderEvent:
    """Content-free busy block written to the target calendar."""

    start: TimePoint
    end: TimePoint
    provenance: SyncProvenance
    title: str = "Busy"
    color_id: str = "8"
    busy_state: str = "opaque"
    visibility: str = "private"


@dataclass(frozen=True)
class EventMapping:
    source_calendar_id: str
    source_event_id: str
    target_event_id: str
    content_hash: str | None = None
    synced_at: str | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "target_event_id": self.target_event_id,
            "content_hash": self.content_hash,
            "synced_at": self.synced_at,
        }

    @classmethod
    def from_record(
        cls, source_calendar_id: str, source_event_id: str, rec: Any
    ) -> EventMapping | None:
        if isinstance(rec, str):
            return cls(source_calendar_id, source_event_id, rec)
        if not isinstance(rec, dict) or not rec.get("target_event_id"):
            return None
        return cls(
            source_calendar_id,
            source_event_id,
            str(rec["target_event_id"]),
            content_hash=rec.get("content_hash"),
            synced_at=rec.get("synced_at"),
        )


@dataclass(frozen=True)
class SubscriptionChannel:
    channel_id: str
    resource_id: str
    resource_uri: str
    expires_at: float  # epoch seconds
    calendar_id: str = ""
    address: str = ""

    def to_record(self) -> dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "resource_id": self.resource_id,
            "resource_uri": self.resource_uri,
            "expires_at": self.expires_at,
            "calendar_id": self.calendar_id,
            "address": self.address,
        }

    @classmethod
    def from_record(cls, rec: Any) -> SubscriptionChannel | None:
        if not isinstance(rec, dict) or not rec.get("channel_id"):
            return None
        return cls(
            channel_id=str(rec["channel_id"]),
            resource_id=str(rec.get("resource_id") or ""),
            resource_uri=str(rec.get("resource_uri") or ""),
            expires_at=float(rec.get("expires_at") or 0.0),
            calendar_id=str(rec.get("calendar_id") or ""),
            address=str(rec.get("address") or ""),
        )
