"""Validation of inbound Google push notifications.

A notification carries no event data, only "something changed in calendar X".
Accepted notifications are handed to the debounce coalescer; everything else is
acknowledged (so Google stops retrying) or rejected with ValidationError.

Headers used (https://developers.google.com/calendar/api/guides/push):
- X-Goog-Channel-Token    shared secret set when the channel was created
- X-Goog-Channel-Id       required
- X-Goog-Resource-State   required; "sync" on channel creation, "exists" on change
- X-Goog-Resource-Uri     .../calendars/<url-encoded calendar id>/events?...
"""

from __future__ import annotations

import hmac
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from urllib.parse import unquote

from .errors import ValidationError
from .sync.debounce import DebounceCoalescer

log = logging.getLogger(__name__)

__all__ = ["Ack", "NotificationIngress", "calendar_id_from_resource_uri"]

_RESOURCE_URI_RE = re.compile(r"/calendars/([^/]+)/events")


@dataclass(frozen=True)
class Ack:
    accepted: bool
    message: str
    calendar_id: str | None = None
    resource_state: str | None = None


def calendar_id_from_resource_uri(uri: str | None) -> str | None:
    if not uri:
        return None
    m = _RESOURCE_URI_RE.search(uri)
    return unquote(m.group(1)) if m else None


class NotificationIngress:
    def __init__(
        self,
        coalescer: DebounceCoalescer,
        *,
        token: str | None,
        calendar_ids: Iterable[str],
    ) -> None:
        self.coalescer = coalescer
        self._token = token or ""
        self._calendar_ids = frozenset(calendar_ids)

    def authorized(self, presented: str | None) -> bool:
        # no configured secret means nothing is trusted
        if not self._token or not presented:
            return False
        return hmac.compare_digest(presented.encode("utf-8"), self._token.encode("utf-8"))

    def handle(self, headers: Mapping[str, str], query: Mapping[str, str] | None = None) -> Ack:
        """Validate one notification and schedule a reconciliation for it.

        Raises:
            ValidationError: 401 on a bad token, 400 on missing headers or an
                unparseable resource URI.
        """
        h = {k.lower(): v for k, v in headers.items()}
        presented = (query or {}).get("token") or h.get("x-goog-channel-token")
        if not self.authorized(presented):
            log.warning("notification-rejected bad token", extra={"channel_id": h.get("x-goog-channel-id")})
            raise ValidationError("invalid channel token", status_code=401)

        channel_id = h.get("x-goog-channel-id")
        state = h.get("x-goog-resource-state")
        if not channel_id or not state:
            raise ValidationError("missing X-Goog-Channel-Id or X-Goog-Resource-State")

        if state == "sync":
            log.info("notification-sync-handshake", extra={"channel_id": channel_id})
            return Ack(True, "sync handshake acknowledged", resource_state=state)
        if state != "exists":
            log.info("notification-ignored", extra={"channel_id": channel_id, "resource_state": state})
            return Ack(True, f"resource state {state!r} ignored", resource_state=state)

        calendar_id = calendar_id_from_resource_uri(h.get("x-goog-resource-uri"))
        if calendar_id is None:
            raise ValidationError("cannot extract calendar id from X-Goog-Resource-Uri")

        if calendar_id not in self._calendar_ids:
            log.info("notification-unknown-calendar", extra={"calendar_id": calendar_id})
            return Ack(True, "calendar not monitored", calendar_id=calendar_id, resource_state=state)

        self.coalescer.notify(calendar_id, reason=f"push-{state}")
        return Ack(True, "reconciliation scheduled", calendar_id=calendar_id, resource_state=state)
