"""Google Calendar Event <-> domain model mapping, and the placeholder transformation.

Rules
- Source events: keep id, times, status, transparency, visibility and the
  authenticated user's own attendee response. Title/description/location are read
  only so they can be dropped; they never reach a placeholder.
- Placeholders: fixed title, fixed colour, opaque, private, no reminders, no guests.
  Only start/end (with their timeZone) are copied from the source event.
- Provenance travels out-of-band in extendedProperties.private:
    shadowcal=1
    shadowcalSourceCalendarId=<calendar id>
    shadowcalSourceEventId=<event id>
    shadowcalSyncedAt=<ISO 8601 UTC>

Public API
- event_from_google(payload) -> CalendarEvent
- build_placeholder(event, source_calendar_id, *, synced_at, title, color_id) -> PlaceholderEvent
- placeholder_to_google(placeholder) -> dict (Events resource body)
- provenance_from_google(payload) -> SyncProvenance | None
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from ..models import CalendarEvent, PlaceholderEvent, SyncProvenance, TimePoint

__all__ = [
    "PROP_MARKER",
    "PROP_SOURCE_CALENDAR",
    "PROP_SOURCE_EVENT",
    "PROP_SYNCED_AT",
    "build_placeholder",
    "event_from_google",
    "placeholder_to_google",
    "provenance_from_google",
]

PROP_MARKER = "shadowcal"
PROP_SOURCE_CALENDAR = "shadowcalSourceCalendarId"
PROP_SOURCE_EVENT = "shadowcalSourceEventId"
PROP_SYNCED_AT = "shadowcalSyncedAt"


def _self_response(event: Mapping[str, Any]) -> str | None:
    for att in event.get("attendees") or []:
        if isinstance(att, Mapping) and att.get("self"):
            status = att.get("responseStatus")
            return str(status) if status else None
    return None


def provenance_from_google(event: Mapping[str, Any]) -> SyncProvenance | None:
    private = ((event.get("extendedProperties") or {}).get("private")) or {}
    if private.get(PROP_MARKER) != "1":
        return None
    cal_id = private.get(PROP_SOURCE_CALENDAR)
    ev_id = private.get(PROP_SOURCE_EVENT)
    if not cal_id or not ev_id:
        return None
    return SyncProvenance(
        source_calendar_id=str(cal_id),
        source_event_id=str(ev_id),
        synced_at=str(private.get(PROP_SYNCED_AT) or ""),
    )


def event_from_google(event: Mapping[str, Any]) -> CalendarEvent:
    """Map a Google Events resource to CalendarEvent.

    Missing or unparseable times yield start/end of None; the reconciler skips those.
    """
    ev_id = event.get("id")
    if not ev_id:
        raise ValueError("Google event missing 'id'.")

    try:
        start = TimePoint.from_google(event.get("start"))
        end = TimePoint.from_google(event.get("end"))
    except ValueError:
        start = end = None

    return CalendarEvent(
        id=str(ev_id),
        start=start,
        end=end,
        title=str(event.get("summary") or ""),
        description=event.get("description"),
        location=event.get("location"),
        color_tag=event.get("colorId"),
        busy_state=str(event.get("transparency") or "opaque"),
        visibility=str(event.get("visibility") or "default"),
        attendee_self_response=_self_response(event),
        status=str(event.get("status") or "confirmed"),
        provenance=provenance_from_google(event),
    )


def build_placeholder(
    event: CalendarEvent,
    source_calendar_id: str,
    *,
    synced_at: str,
    title: str = "Busy",
    color_id: str = "8",
) -> PlaceholderEvent:
    if event.start is None or event.end is None:
        raise ValueError(f"Event {event.id} has no time information.")
    return PlaceholderEvent(
        start=event.start,
        end=event.end,
        provenance=SyncProvenance(
            source_calendar_id=source_calendar_id,
            source_event_id=event.id,
            synced_at=synced_at,
        ),
        title=title,
        color_id=color_id,
    )


def placeholder_to_google(placeholder: PlaceholderEvent) -> dict[str, Any]:
    prov = placeholder.provenance
    return {
        "summary": placeholder.title,
        "start": placeholder.start.to_google(),
        "end": placeholder.end.to_google(),
        "colorId": placeholder.color_id,
        "transparency": placeholder.busy_state,
        "visibility": placeholder.visibility,
        "guestsCanModify": False,
        "guestsCanInviteOthers": False,
        "guestsCanSeeOtherGuests": False,
        "reminders": {"useDefault": False, "overrides": []},
        "extendedProperties": {
            "private": {
                PROP_MARKER: "1",
                PROP_SOURCE_CALENDAR: prov.source_calendar_id,
                PROP_SOURCE_EVENT: prov.source_event_id,
                PROP_SYNCED_AT: prov.synced_at,
            }
        },
    }
