"""Narrow interfaces the sync engine consumes.

CalendarProvider is implemented by shadowcal.google.calendar.CalendarClient; the
key-value store by shadowcal.state.State. Tests substitute in-memory fakes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from .models import CalendarEvent, PlaceholderEvent, SubscriptionChannel

__all__ = ["CalendarProvider", "KeyValueStore"]


class CalendarProvider(Protocol):
    def list_events(
        self, calendar_id: str, time_min: datetime, time_max: datetime
    ) -> list[CalendarEvent]: ...

    def create_event(self, calendar_id: str, event: PlaceholderEvent) -> str: ...

    def update_event(self, calendar_id: str, event_id: str, event: PlaceholderEvent) -> None: ...

    def delete_event(self, calendar_id: str, event_id: str) -> None: ...

    def create_channel(
        self, calendar_id: str, address: str, token: str, ttl: int
    ) -> SubscriptionChannel: ...

    def stop_channel(self, channel_id: str, resource_id: str) -> None: ...


class KeyValueStore(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl: float | None = None) -> None: ...

    def delete(self, key: str) -> None: ...

    def exists(self, key: str) -> bool: ...
