"""Per-calendar debounce for change notifications.

Google sends a burst of push notifications for a single edit (and more while the
user keeps editing). Reconciliation is a full-window re-fetch, so bursts are
coalesced into one run per calendar:

- first notification: schedule a run after `window_sec`
- later notification: cancel and re-schedule after `window_sec` (trailing edge),
  but never later than `ceiling_sec` after the first notification of the burst
- a notification arriving once the ceiling has already passed schedules the run
  with no delay, so a calendar that never goes quiet is still reconciled at
  least every `ceiling_sec`

Timers run on daemon threads (threading.Timer). The burst state for a calendar is
cleared when its run starts, so notifications that arrive during a run open a new
burst instead of being lost. The scheduler and clock are injectable so tests can
drive time by hand.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

log = logging.getLogger(__name__)

__all__ = [
    "DebounceCoalescer",
    "Scheduler",
    "ThreadingScheduler",
    "TimerHandle",
]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def schedule(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run `callback` after `delay` seconds. Must not invoke it synchronously."""
        ...


class ThreadingScheduler:
    def schedule(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(max(0.0, delay), callback)
        timer.daemon = True
        timer.start()
        return timer


@dataclass
class _Burst:
    first_event_at: float
    last_event_at: float
    notifications: int
    reason: str
    generation: int
    handle: TimerHandle


class DebounceCoalescer:
    def __init__(
        self,
        fire: Callable[[str], Any],
        *,
        window_sec: float = 300.0,
        ceiling_sec: float = 1800.0,
        scheduler: Scheduler | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ceiling_sec < window_sec:
            raise ValueError("ceiling_sec must be >= window_sec")
        self._fire_cb = fire
        self.window_sec = window_sec
        self.ceiling_sec = ceiling_sec
        self._scheduler = scheduler or ThreadingScheduler()
        self._clock = clock
        self._bursts: dict[str, _Burst] = {}
        self._lock = threading.Lock()
        self._generations = itertools.count(1)

    def notify(self, key: str, reason: str = "notification") -> str:
        """Record a change for `key` and (re)schedule its run.

        Returns "scheduled", "rescheduled" or "forced" (ceiling reached, no delay).
        """
        with self._lock:
            now = self._clock()
            burst = self._bursts.get(key)
            if burst is None:
                first, count, delay, action = now, 1, self.window_sec, "scheduled"
            else:
                burst.handle.cancel()
                first, count = burst.first_event_at, burst.notifications + 1
                remaining = self.ceiling_sec - (now - first)
                if remaining <= 0:
                    delay, action = 0.0, "forced"
                else:
                    delay, action = min(self.window_sec, remaining), "rescheduled"

            generation = next(self._generations)
            handle = self._scheduler.schedule(delay, lambda: self._run(key, generation))
            self._bursts[key] = _Burst(first, now, count, reason, generation, handle)

        log.info(
            "debounce-%s",
            action,
            extra={"calendar_id": key, "delay_sec": delay, "notifications": count, "reason": reason},
        )
        return action

    def pending(self) -> dict[str, dict[str, Any]]:
        """Snapshot of open bursts, keyed by calendar id."""
        with self._lock:
            now = self._clock()
            return {
                key: {
                    "notifications": b.notifications,
                    "reason": b.reason,
                    "since_first_sec": round(now - b.first_event_at, 3),
                    "since_last_sec": round(now - b.last_event_at, 3),
                }
                for key, b in self._bursts.items()
            }

    def cancel_all(self) -> int:
        with self._lock:
            bursts = list(self._bursts.values())
            self._bursts.clear()
        for b in bursts:
            b.handle.cancel()
        if bursts:
            log.info("debounce-cancelled", extra={"count": len(bursts)})
        return len(bursts)

    def _run(self, key: str, generation: int) -> None:
        with self._lock:
            burst = self._bursts.get(key)
            # a timer that lost the race against cancel() must not run
            if burst is None or burst.generation != generation:
                return
            del self._bursts[key]

        log.info("debounce-fired", extra={"calendar_id": key, "notifications": burst.notifications})
        try:
            self._fire_cb(key)
        except Exception:
            # nothing upstream to report to on a timer thread
            log.exception("debounced-run-failed", extra={"calendar_id": key})
