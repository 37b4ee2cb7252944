"""Reconciliation engine (source calendar -> shadow placeholders).

One run for one source calendar:
1. Re-fetch the full window [now - lookback, now + lookahead] from the source and
   the target calendar (no provider-side cursor; a stale page token restarts the
   window once).
2. Source events that are already placeholders (carry our provenance) are ignored.
3. Deletions: cancelled, declined, untimed (or free, when configured) events retire
   their placeholders, and placeholders of this source whose event vanished from
   the window are deleted.
4. Remaining events, against the placeholders that survived step 3:
   - mapping present  -> update in place unless the content hash is unchanged
   - no mapping       -> adopt a placeholder with the same provenance, else skip when
                         another placeholder already covers the window, else create

Per-event failures are collected into the result; only a failed fetch aborts the run.
Runs for the same source calendar are serialized with a per-calendar lock.

Notes:
- A crash between "create" and "persist mapping" leaves an unmapped placeholder;
  the next run adopts it through its provenance instead of creating a duplicate.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TypeVar

from ..config import AppConfig
from ..errors import StaleCursorError, classify_error, is_not_found
from ..mapping.events import build_placeholder
from ..models import CalendarEvent, EventMapping, PlaceholderEvent, SourceCalendarRef
from ..provider import CalendarProvider, KeyValueStore
from ..state import last_sync_key, mapping_key
from ..utils.hashing import placeholder_hash
from ..utils.retry import RetryPolicy, with_retry

log = logging.getLogger(__name__)

__all__ = ["EventError", "ReconcileResult", "Reconciler", "window_contains"]

T = TypeVar("T")


@dataclass(frozen=True)
class EventError:
    event_id: str | None
    kind: str
    message: str


@dataclass
class ReconcileResult:
    calendar_id: str
    fetched: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: list[EventError] = field(default_factory=list)
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors

    def as_dict(self) -> dict[str, object]:
        return {
            "calendar_id": self.calendar_id,
            "fetched": self.fetched,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "errors": [e.__dict__ for e in self.errors],
            "dry_run": self.dry_run,
        }


def window_contains(outer: CalendarEvent, inner: CalendarEvent) -> bool:
    """True when `outer` covers `inner`.

    Timed windows use containment; all-day windows require the exact same date range.
    Mixed all-day/timed pairs never match.
    """
    if not (outer.has_time and inner.has_time):
        return False
    assert outer.start and outer.end and inner.start and inner.end
    if outer.start.is_all_day or inner.start.is_all_day:
        return (
            outer.start.is_all_day
            and inner.start.is_all_day
            and outer.start.day == inner.start.day
            and outer.end.day == inner.end.day
        )
    return (
        outer.start.instant() <= inner.start.instant()
        and outer.end.instant() >= inner.end.instant()
    )


def _placeholders_of(
    placeholders: list[CalendarEvent], calendar_id: str, source_event_id: str
) -> list[CalendarEvent]:
    return [
        ph
        for ph in placeholders
        if ph.provenance
        and ph.provenance.source_calendar_id == calendar_id
        and ph.provenance.source_event_id == source_event_id
    ]


class Reconciler:
    def __init__(
        self,
        provider: CalendarProvider,
        store: KeyValueStore,
        target_calendar_id: str,
        *,
        retry: RetryPolicy | None = None,
        lookback_days: int = 7,
        lookahead_days: int = 90,
        mapping_ttl_days: int = 90,
        placeholder_title: str = "Busy",
        placeholder_color_id: str = "8",
        delete_missing: bool = True,
        skip_free_events: bool = False,
        dry_run: bool = False,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not target_calendar_id:
            raise ValueError("target_calendar_id is required")
        self.provider = provider
        self.store = store
        self.target_calendar_id = target_calendar_id
        self.retry = retry or RetryPolicy()
        self.lookback = timedelta(days=lookback_days)
        self.lookahead = timedelta(days=lookahead_days)
        self.mapping_ttl = mapping_ttl_days * 24 * 3600
        self.placeholder_title = placeholder_title
        self.placeholder_color_id = placeholder_color_id
        self.delete_missing = delete_missing
        self.skip_free_events = skip_free_events
        self.dry_run = dry_run
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._sleep = sleep
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def from_config(
        cls, cfg: AppConfig, provider: CalendarProvider, store: KeyValueStore, **kwargs: object
    ) -> Reconciler:
        return cls(
            provider,
            store,
            cfg.google.target_calendar_id,
            retry=RetryPolicy(
                max_attempts=cfg.retry.max_attempts,
                base_delay=cfg.retry.base_delay_sec,
                max_delay=cfg.retry.max_delay_sec,
                backoff_multiplier=cfg.retry.backoff_multiplier,
            ),
            lookback_days=cfg.sync.lookback_days,
            lookahead_days=cfg.sync.lookahead_days,
            mapping_ttl_days=cfg.sync.mapping_ttl_days,
            placeholder_title=cfg.sync.placeholder_title,
            placeholder_color_id=cfg.sync.placeholder_color_id,
            delete_missing=cfg.sync.delete_missing,
            skip_free_events=cfg.sync.skip_free_events,
            dry_run=cfg.sync.dry_run,
            **kwargs,  # type: ignore[arg-type]
        )

    # -------------
    # Public API
    # -------------

    def window(self) -> tuple[datetime, datetime]:
        now = self._clock()
        return now - self.lookback, now + self.lookahead

    def reconcile(self, source: SourceCalendarRef) -> ReconcileResult:
        """Bring the target placeholders for `source` in line with its current events.

        Raises only when the source or target listing fails after retries.
        """
        with self._lock_for(source.id):
            return self._reconcile_locked(source)

    # -------------
    # Internals
    # -------------

    def _lock_for(self, calendar_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(calendar_id, threading.Lock())

    def _call(self, label: str, fn: Callable[[], T]) -> T:
        return with_retry(fn, self.retry, label=label, sleep=self._sleep)

    def _fetch(self, calendar_id: str, time_min: datetime, time_max: datetime) -> list[CalendarEvent]:
        label = f"list-events:{calendar_id}"

        def op() -> list[CalendarEvent]:
            return self.provider.list_events(calendar_id, time_min, time_max)

        try:
            return self._call(label, op)
        except StaleCursorError:
            log.warning("listing-cursor-stale refetching window", extra={"calendar_id": calendar_id})
            return self._call(label, op)

    def _reconcile_locked(self, source: SourceCalendarRef) -> ReconcileResult:
        now = self._clock()
        time_min, time_max = now - self.lookback, now + self.lookahead
        synced_at = now.astimezone(UTC).isoformat()

        source_events = self._fetch(source.id, time_min, time_max)
        target_events = self._fetch(self.target_calendar_id, time_min, time_max)

        placeholders = [ev for ev in target_events if ev.provenance and not ev.cancelled]
        result = ReconcileResult(
            calendar_id=source.id, fetched=len(source_events), dry_run=self.dry_run
        )
        log.info(
            "reconcile-started",
            extra={
                "calendar_id": source.id,
                "source_events": len(source_events),
                "placeholders": len(placeholders),
            },
        )

        live: list[CalendarEvent] = []
        retired: list[CalendarEvent] = []
        for ev in source_events:
            if ev.provenance is not None:
                # one of our own placeholders showing up in a source calendar
                result.skipped += 1
            elif self._excluded(ev):
                retired.append(ev)
            else:
                live.append(ev)

        # deletions first: a placeholder going away must not count as cover below
        for ev in retired:
            try:
                self._retire(source.id, ev.id, placeholders, result)
            except Exception as exc:
                self._record_error(result, ev.id, exc)

        if self.delete_missing:
            seen = {ev.id for ev in source_events}
            for ph in list(placeholders):
                prov = ph.provenance
                if prov is None or prov.source_calendar_id != source.id:
                    continue
                if prov.source_event_id in seen:
                    continue
                try:
                    self._delete_placeholder(source.id, prov.source_event_id, ph.id, result)
                    placeholders.remove(ph)
                except Exception as exc:
                    self._record_error(result, prov.source_event_id, exc)

        for ev in live:
            try:
                self._apply(source, ev, placeholders, synced_at, result)
            except Exception as exc:
                self._record_error(result, ev.id, exc)

        if not self.dry_run:
            self.store.set(last_sync_key(source.id), synced_at)

        log.info(
            "reconcile-finished",
            extra={
                "calendar_id": source.id,
                "created_count": result.created,
                "updated_count": result.updated,
                "deleted_count": result.deleted,
                "skipped_count": result.skipped,
                "error_count": len(result.errors),
            },
        )
        return result

    def _record_error(self, result: ReconcileResult, event_id: str | None, exc: Exception) -> None:
        err = classify_error(exc)
        result.errors.append(EventError(event_id=event_id, kind=type(err).__name__, message=str(exc)))
        log.warning(
            "reconcile-event-failed",
            extra={"calendar_id": result.calendar_id, "event_id": event_id, "error": str(exc)},
        )

    def _excluded(self, ev: CalendarEvent) -> bool:
        if ev.cancelled or ev.declined or not ev.has_time:
            return True
        return self.skip_free_events and ev.busy_state == "transparent"

    def _apply(
        self,
        source: SourceCalendarRef,
        ev: CalendarEvent,
        placeholders: list[CalendarEvent],
        synced_at: str,
        result: ReconcileResult,
    ) -> None:
        same_source = _placeholders_of(placeholders, source.id, ev.id)
        placeholder = build_placeholder(
            ev,
            source.id,
            synced_at=synced_at,
            title=self.placeholder_title,
            color_id=self.placeholder_color_id,
        )
        content_hash = placeholder_hash(placeholder)
        mapping = self._get_mapping(source.id, ev.id)

        if mapping is not None:
            if mapping.content_hash == content_hash:
                result.skipped += 1
                return
            if self._update(mapping.target_event_id, placeholder):
                self._put_mapping(source.id, ev.id, mapping.target_event_id, content_hash, synced_at)
                result.updated += 1
                return
            # placeholder was removed behind our back; forget it and recreate
            log.info(
                "placeholder-missing recreating",
                extra={"calendar_id": source.id, "event_id": ev.id},
            )
            if not self.dry_run:
                self.store.delete(mapping_key(source.id, ev.id))
            placeholders[:] = [ph for ph in placeholders if ph.id != mapping.target_event_id]
            same_source = [ph for ph in same_source if ph.id != mapping.target_event_id]

        if same_source:
            # unmapped placeholder with our provenance: adopt it
            target_id = same_source[0].id
            if self._update(target_id, placeholder):
                self._put_mapping(source.id, ev.id, target_id, content_hash, synced_at)
                result.updated += 1
                return
            placeholders[:] = [ph for ph in placeholders if ph.id != target_id]

        covering = next((ph for ph in placeholders if window_contains(ph, ev)), None)
        if covering is not None:
            log.debug(
                "placeholder-covered skip",
                extra={"calendar_id": source.id, "event_id": ev.id, "covering_id": covering.id},
            )
            result.skipped += 1
            return

        if self.dry_run:
            result.created += 1
            return

        target_id = self._call(
            f"create-event:{ev.id}",
            lambda: self.provider.create_event(self.target_calendar_id, placeholder),
        )
        self._put_mapping(source.id, ev.id, target_id, content_hash, synced_at)
        placeholders.append(
            CalendarEvent(
                id=target_id,
                start=placeholder.start,
                end=placeholder.end,
                title=placeholder.title,
                provenance=placeholder.provenance,
            )
        )
        result.created += 1

    def _update(self, target_id: str, placeholder: PlaceholderEvent) -> bool:
        """Update in place; False when the target placeholder no longer exists."""
        if self.dry_run:
            return True
        try:
            self._call(
                f"update-event:{target_id}",
                lambda: self.provider.update_event(self.target_calendar_id, target_id, placeholder),
            )
        except Exception as exc:
            if is_not_found(exc):
                return False
            raise
        return True

    def _retire(
        self,
        calendar_id: str,
        source_event_id: str,
        placeholders: list[CalendarEvent],
        result: ReconcileResult,
    ) -> None:
        mapping = self._get_mapping(calendar_id, source_event_id)
        target_ids = [ph.id for ph in _placeholders_of(placeholders, calendar_id, source_event_id)]
        if mapping is not None and mapping.target_event_id not in target_ids:
            target_ids.insert(0, mapping.target_event_id)
        if not target_ids:
            result.skipped += 1
            return
        for target_id in target_ids:
            self._delete_placeholder(calendar_id, source_event_id, target_id, result)
        placeholders[:] = [ph for ph in placeholders if ph.id not in target_ids]

    def _delete_placeholder(
        self, calendar_id: str, source_event_id: str, target_id: str, result: ReconcileResult
    ) -> None:
        if not self.dry_run:
            self._call(
                f"delete-event:{target_id}",
                lambda: self.provider.delete_event(self.target_calendar_id, target_id),
            )
            self.store.delete(mapping_key(calendar_id, source_event_id))
        result.deleted += 1

    def _get_mapping(self, calendar_id: str, source_event_id: str) -> EventMapping | None:
        rec = self.store.get(mapping_key(calendar_id, source_event_id))
        if rec is None:
            return None
        return EventMapping.from_record(calendar_id, source_event_id, rec)

    def _put_mapping(
        self,
        calendar_id: str,
        source_event_id: str,
        target_id: str,
        content_hash: str,
        synced_at: str,
    ) -> None:
        if self.dry_run:
            return
        mapping = EventMapping(calendar_id, source_event_id, target_id, content_hash, synced_at)
        self.store.set(mapping_key(calendar_id, source_event_id), mapping.to_record(), ttl=self.mapping_ttl)
