from __future__ import annotations

from datetime import UTC, date, datetime, timedelta, timezone

import pytest

from shadowcal.mapping.events import (
    PROP_MARKER,
    PROP_SOURCE_CALENDAR,
    PROP_SOURCE_EVENT,
    PROP_SYNCED_AT,
    build_placeholder,
    event_from_google,
    placeholder_to_google,
    provenance_from_google,
)
from shadowcal.models import CalendarEvent, EventMapping, TimePoint
from shadowcal.utils.hashing import placeholder_hash
from shadowcal.utils.timezones import parse_datetime, to_rfc3339


def _google_event(**overrides):
    ev = {
        "id": "e1",
        "status": "confirmed",
        "summary": "Dentist",
        "description": "bring insurance card",
        "location": "Main St 1",
        "start": {"dateTime": "2026-10-20T10:00:00+02:00", "timeZone": "Europe/Berlin"},
        "end": {"dateTime": "2026-10-20T11:00:00+02:00", "timeZone": "Europe/Berlin"},
    }
    ev.update(overrides)
    return ev


def test_event_from_google_timed():
    ev = event_from_google(_google_event())

    assert ev.id == "e1"
    assert ev.start.at == datetime(2026, 10, 20, 10, 0, tzinfo=timezone(timedelta(hours=2)))
    assert ev.start.time_zone == "Europe/Berlin"
    assert not ev.start.is_all_day
    assert ev.busy_state == "opaque"
    assert ev.provenance is None
    assert not ev.cancelled and not ev.declined


def test_event_from_google_all_day():
    ev = event_from_google(_google_event(start={"date": "2026-10-20"}, end={"date": "2026-10-21"}))

    assert ev.start.is_all_day
    assert ev.start.day == date(2026, 10, 20)
    assert ev.end.day == date(2026, 10, 21)


def test_event_from_google_declined_by_self():
    ev = event_from_google(
        _google_event(
            attendees=[
                {"email": "boss@example.com", "responseStatus": "accepted"},
                {"email": "me@example.com", "self": True, "responseStatus": "declined"},
            ]
        )
    )

    assert ev.declined


def test_event_from_google_cancelled_without_times():
    ev = event_from_google({"id": "e2", "status": "cancelled"})

    assert ev.cancelled
    assert not ev.has_time


def test_event_from_google_bad_time_is_untimed():
    ev = event_from_google(_google_event(start={"dateTime": "not a time"}))

    assert ev.start is None
    assert not ev.has_time


def test_event_from_google_requires_id():
    with pytest.raises(ValueError):
        event_from_google({"status": "confirmed"})


def test_provenance_roundtrip_through_placeholder():
    source = event_from_google(_google_event())
    ph = build_placeholder(source, "me@example.com", synced_at="2026-10-19T08:00:00Z")
    body = placeholder_to_google(ph)

    prov = provenance_from_google(body)

    assert prov is not None
    assert prov.source_calendar_id == "me@example.com"
    assert prov.source_event_id == "e1"
    assert prov.synced_at == "2026-10-19T08:00:00Z"


def test_provenance_requires_marker_and_ids():
    assert provenance_from_google({"id": "x"}) is None
    assert (
        provenance_from_google(
            {"extendedProperties": {"private": {PROP_SOURCE_CALENDAR: "c", PROP_SOURCE_EVENT: "e"}}}
        )
        is None
    )
    assert provenance_from_google({"extendedProperties": {"private": {PROP_MARKER: "1"}}}) is None


def test_placeholder_body_carries_no_source_content():
    source = event_from_google(_google_event(colorId="11", visibility="public"))
    ph = build_placeholder(source, "me@example.com", synced_at="2026-10-19T08:00:00Z", title="Blocked", color_id="5")

    body = placeholder_to_google(ph)

    assert body["summary"] == "Blocked"
    assert body["colorId"] == "5"
    assert body["transparency"] == "opaque"
    assert body["visibility"] == "private"
    assert body["reminders"] == {"useDefault": False, "overrides": []}
    assert body["start"] == {"dateTime": "2026-10-20T10:00:00+02:00", "timeZone": "Europe/Berlin"}
    assert "description" not in body
    assert "location" not in body
    assert "attendees" not in body
    flat = repr(body)
    assert "Dentist" not in flat
    assert "insurance" not in flat
    assert body["extendedProperties"]["private"][PROP_MARKER] == "1"


def test_build_placeholder_requires_times():
    with pytest.raises(ValueError):
        build_placeholder(CalendarEvent(id="e1", start=None, end=None), "me@example.com", synced_at="")


def test_placeholder_hash_ignores_sync_timestamp():
    source = event_from_google(_google_event())
    a = build_placeholder(source, "me@example.com", synced_at="2026-10-19T08:00:00Z")
    b = build_placeholder(source, "me@example.com", synced_at="2026-10-19T09:30:00Z")

    assert placeholder_to_google(a)["extendedProperties"]["private"][PROP_SYNCED_AT] != (
        placeholder_to_google(b)["extendedProperties"]["private"][PROP_SYNCED_AT]
    )
    assert placeholder_hash(a) == placeholder_hash(b)


def test_placeholder_hash_changes_with_times():
    a = build_placeholder(event_from_google(_google_event()), "me@example.com", synced_at="t")
    moved = event_from_google(_google_event(end={"dateTime": "2026-10-20T12:00:00+02:00", "timeZone": "Europe/Berlin"}))
    b = build_placeholder(moved, "me@example.com", synced_at="t")

    assert placeholder_hash(a) != placeholder_hash(b)


def test_timepoint_requires_exactly_one_value():
    with pytest.raises(ValueError):
        TimePoint()
    with pytest.raises(ValueError):
        TimePoint(day=date(2026, 10, 20), at=datetime(2026, 10, 20, tzinfo=UTC))


def test_naive_datetime_uses_time_zone():
    dt = parse_datetime("2026-10-20T10:00:00", "Asia/Tokyo")

    assert to_rfc3339(dt) == "2026-10-20T01:00:00Z"


def test_unknown_time_zone_falls_back_to_utc():
    dt = parse_datetime("2026-10-20T10:00:00", "Mars/Olympus")

    assert to_rfc3339(dt) == "2026-10-20T10:00:00Z"


def test_mapping_record_accepts_legacy_string():
    m = EventMapping.from_record("me@example.com", "e1", "t1")

    assert m.target_event_id == "t1"
    assert m.content_hash is None
    assert EventMapping.from_record("me@example.com", "e1", {"content_hash": "x"}) is None
