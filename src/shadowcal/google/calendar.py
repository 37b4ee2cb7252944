"""Google Calendar API client (events, push channels).

Features
- Full-window listing with pagination (singleEvents=True expands recurrences into
  occurrences; showDeleted=True surfaces cancellations inside the window).
- Placeholder create/update/delete in the target calendar.
- Push notification channels: events.watch / channels.stop.
- Every failure is re-raised as a classified shadowcal.errors.ProviderError; retry
  decisions are made by the caller via shadowcal.utils.retry.

Notes
- delete_event and stop_channel treat 404/410 as success ("already gone").
- A 410 while paging means the page token went stale; it surfaces as
  StaleCursorError so the caller can restart the window from scratch.

Refs:
- https://developers.google.com/calendar/api/v3/reference/events/list
- https://developers.google.com/calendar/api/guides/push
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime
from typing import Any

from ..errors import classify_error, is_not_found
from ..mapping.events import event_from_google, placeholder_to_google
from ..models import CalendarEvent, PlaceholderEvent, SubscriptionChannel
from ..utils.timezones import to_rfc3339

try:
    from googleapiclient.discovery import build as gapi_build  # type: ignore[import-not-found]
except Exception:  # pragma: no cover
    gapi_build = None  # defer import error until client construction

logger = logging.getLogger(__name__)

__all__ = ["CalendarClient"]


def _execute(req: Any) -> Any:
    try:
        return req.execute()  # type: ignore[no-untyped-call]
    except Exception as exc:
        raise classify_error(exc) from exc


class CalendarClient:
    """Calendar API client safe to share across timer and request threads.

    The discovery service sits on an httplib2 transport, which is not thread-safe,
    so each thread gets its own service object built from the shared credentials.
    """

    def __init__(self, credentials: Any, *, page_size: int = 250) -> None:
        if gapi_build is None:  # pragma: no cover
            raise RuntimeError(
                "google-api-python-client is required. Install it to use CalendarClient."
            )
        self._credentials = credentials
        self._local = threading.local()
        self.page_size = page_size
        self._service()  # built eagerly for the constructing thread

    def _service(self) -> Any:
        svc = getattr(self._local, "svc", None)
        if svc is None:
            svc = gapi_build(  # type: ignore[misc]
                "calendar", "v3", credentials=self._credentials, cache_discovery=False
            )
            self._local.svc = svc
        return svc

    # -------------
    # Events
    # -------------

    def list_events(
        self, calendar_id: str, time_min: datetime, time_max: datetime
    ) -> list[CalendarEvent]:
        out: list[CalendarEvent] = []
        page_token: str | None = None
        while True:
            req = self._service().events().list(  # type: ignore[no-untyped-call]
                calendarId=calendar_id,
                pageToken=page_token,
                maxResults=self.page_size,
                timeMin=to_rfc3339(time_min),
                timeMax=to_rfc3339(time_max),
                singleEvents=True,
                showDeleted=True,
                orderBy="startTime",
            )
            resp = _execute(req) or {}
            for ev in resp.get("items", []) or []:
                if not ev.get("id"):
                    continue
                out.append(event_from_google(ev))
            page_token = resp.get("nextPageToken")
            if not page_token:
                break
        logger.debug("listed-events calendar=%s count=%d", calendar_id, len(out))
        return out

    def create_event(self, calendar_id: str, event: PlaceholderEvent) -> str:
        resp = _execute(
            self._service().events().insert(  # type: ignore[no-untyped-call]
                calendarId=calendar_id, body=placeholder_to_google(event)
            )
        )
        return str(resp["id"])

    def update_event(self, calendar_id: str, event_id: str, event: PlaceholderEvent) -> None:
        _execute(
            self._service().events().update(  # type: ignore[no-untyped-call]
                calendarId=calendar_id, eventId=event_id, body=placeholder_to_google(event)
            )
        )

    def delete_event(self, calendar_id: str, event_id: str) -> None:
        try:
            _execute(
                self._service().events().delete(  # type: ignore[no-untyped-call]
                    calendarId=calendar_id, eventId=event_id
                )
            )
        except Exception as exc:
            if is_not_found(exc):
                logger.info("delete-already-gone event=%s", event_id)
                return
            raise

    # -------------
    # Calendars
    # -------------

    def get_calendar(self, calendar_id: str) -> dict[str, Any]:
        return dict(
            _execute(self._service().calendars().get(calendarId=calendar_id))  # type: ignore[no-untyped-call]
            or {}
        )

    # -------------
    # Push channels
    # -------------

    def create_channel(
        self,
        calendar_id: str,
        address: str,
        token: str,
        ttl: int,
        *,
        channel_id: str | None = None,
    ) -> SubscriptionChannel:
        cid = channel_id or str(uuid.uuid4())
        body = {
            "id": cid,
            "type": "web_hook",
            "address": address,
            "token": token,
            "params": {"ttl": str(int(ttl))},
        }
        resp = _execute(
            self._service().events().watch(calendarId=calendar_id, body=body)  # type: ignore[no-untyped-call]
        ) or {}
        # expiration is epoch milliseconds as a string
        raw_exp = resp.get("expiration")
        try:
            expires_at = int(raw_exp) / 1000.0
        except (TypeError, ValueError):
            expires_at = time.time() + int(ttl)
        return SubscriptionChannel(
            channel_id=str(resp.get("id") or cid),
            resource_id=str(resp.get("resourceId") or ""),
            resource_uri=str(resp.get("resourceUri") or ""),
            expires_at=expires_at,
            calendar_id=calendar_id,
            address=address,
        )

    def stop_channel(self, channel_id: str, resource_id: str) -> None:
        try:
            _execute(
                self._service().channels().stop(  # type: ignore[no-untyped-call]
                    body={"id": channel_id, "resourceId": resource_id}
                )
            )
        except Exception as exc:
            if is_not_found(exc):
                logger.info("channel-already-stopped channel=%s", channel_id)
                return
            raise
