from __future__ import annotations

import pytest
from fakes import SOURCE, WORK

from shadowcal.errors import ValidationError
from shadowcal.ingress import NotificationIngress, calendar_id_from_resource_uri
from shadowcal.sync.debounce import DebounceCoalescer

TOKEN = "s3cret-token"


class RecordingCoalescer(DebounceCoalescer):
    def __init__(self) -> None:
        self.notified: list[tuple[str, str]] = []

    def notify(self, key: str, reason: str = "notification") -> str:
        self.notified.append((key, reason))
        return "scheduled"


def _headers(**overrides: str) -> dict[str, str]:
    h = {
        "X-Goog-Channel-Id": "ch1",
        "X-Goog-Channel-Token": TOKEN,
        "X-Goog-Resource-State": "exists",
        "X-Goog-Resource-Id": "res1",
        "X-Goog-Resource-Uri": "https://www.googleapis.com/calendar/v3/calendars/me%40example.com/events?alt=json",
    }
    h.update(overrides)
    return {k: v for k, v in h.items() if v}


@pytest.fixture
def coalescer() -> RecordingCoalescer:
    return RecordingCoalescer()


@pytest.fixture
def ingress(coalescer) -> NotificationIngress:
    return NotificationIngress(coalescer, token=TOKEN, calendar_ids=[SOURCE.id, WORK.id])


def test_change_notification_is_coalesced(ingress, coalescer) -> None:
    ack = ingress.handle(_headers())

    assert ack.accepted
    assert ack.calendar_id == SOURCE.id
    assert coalescer.notified == [(SOURCE.id, "push-exists")]


def test_header_names_are_case_insensitive(ingress, coalescer) -> None:
    ingress.handle({k.lower(): v for k, v in _headers().items()})

    assert coalescer.notified == [(SOURCE.id, "push-exists")]


def test_token_may_come_from_query(ingress, coalescer) -> None:
    ingress.handle(_headers(**{"X-Goog-Channel-Token": ""}), {"token": TOKEN})

    assert len(coalescer.notified) == 1


@pytest.mark.parametrize("token", ["wrong", ""])
def test_bad_or_missing_token_is_rejected(ingress, coalescer, token) -> None:
    with pytest.raises(ValidationError) as ei:
        ingress.handle(_headers(**{"X-Goog-Channel-Token": token}))

    assert ei.value.status_code == 401
    assert coalescer.notified == []


def test_unconfigured_token_rejects_everything(coalescer) -> None:
    ingress = NotificationIngress(coalescer, token=None, calendar_ids=[SOURCE.id])

    with pytest.raises(ValidationError):
        ingress.handle(_headers())


@pytest.mark.parametrize("missing", ["X-Goog-Channel-Id", "X-Goog-Resource-State"])
def test_missing_required_header_is_bad_request(ingress, missing) -> None:
    with pytest.raises(ValidationError) as ei:
        ingress.handle(_headers(**{missing: ""}))

    assert ei.value.status_code == 400


def test_sync_handshake_is_acknowledged_without_reconciling(ingress, coalescer) -> None:
    ack = ingress.handle(_headers(**{"X-Goog-Resource-State": "sync"}))

    assert ack.accepted
    assert coalescer.notified == []


def test_other_resource_states_are_ignored(ingress, coalescer) -> None:
    ack = ingress.handle(_headers(**{"X-Goog-Resource-State": "not_exists"}))

    assert ack.accepted
    assert coalescer.notified == []


def test_unknown_calendar_is_acknowledged_and_ignored(ingress, coalescer) -> None:
    uri = "https://www.googleapis.com/calendar/v3/calendars/other%40example.com/events"

    ack = ingress.handle(_headers(**{"X-Goog-Resource-Uri": uri}))

    assert ack.accepted
    assert ack.calendar_id == "other@example.com"
    assert coalescer.notified == []


def test_unparseable_resource_uri_is_bad_request(ingress) -> None:
    with pytest.raises(ValidationError) as ei:
        ingress.handle(_headers(**{"X-Goog-Resource-Uri": "https://example.com/nope"}))

    assert ei.value.status_code == 400


def test_calendar_id_from_resource_uri() -> None:
    assert (
        calendar_id_from_resource_uri(
            "https://www.googleapis.com/calendar/v3/calendars/abc%23holiday%40group.v.calendar.google.com/events?maxResults=250"
        )
        == "abc#holiday@group.v.calendar.google.com"
    )
    assert calendar_id_from_resource_uri(None) is None
    assert calendar_id_from_resource_uri("https://www.googleapis.com/calendar/v3/users/me") is None
