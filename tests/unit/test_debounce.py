from __future__ import annotations

import pytest

from shadowcal.sync.debounce import DebounceCoalescer, ThreadingScheduler

WINDOW = 300.0
CEILING = 1800.0


@pytest.fixture
def fired() -> list[tuple[str, float]]:
    return []


@pytest.fixture
def coalescer(scheduler, fired) -> DebounceCoalescer:
    return DebounceCoalescer(
        lambda key: fired.append((key, scheduler.now)),
        window_sec=WINDOW,
        ceiling_sec=CEILING,
        scheduler=scheduler,
        clock=scheduler.clock,
    )


def test_burst_collapses_into_one_run(coalescer, scheduler, fired) -> None:
    for _ in range(5):
        coalescer.notify("cal")
        scheduler.advance(30)

    scheduler.advance(WINDOW)

    assert len(fired) == 1
    # trailing edge: one window after the last notification
    assert fired[0] == ("cal", 120 + WINDOW)


def test_first_notification_schedules_after_window(coalescer, scheduler, fired) -> None:
    assert coalescer.notify("cal") == "scheduled"

    scheduler.advance(WINDOW - 1)
    assert fired == []
    scheduler.advance(1)
    assert fired == [("cal", WINDOW)]


def test_calendars_are_debounced_independently(coalescer, scheduler, fired) -> None:
    coalescer.notify("a")
    scheduler.advance(100)
    coalescer.notify("b")

    scheduler.advance(WINDOW)

    assert fired == [("a", WINDOW), ("b", 100 + WINDOW)]


def test_ceiling_bounds_delay_for_calendar_that_never_goes_quiet(coalescer, scheduler, fired) -> None:
    for _ in range(0, 35 * 60, 120):
        coalescer.notify("cal")
        scheduler.advance(120)

    # the burst started at 0 runs at the ceiling; later notifications open a new burst
    assert fired[0] == ("cal", CEILING)
    scheduler.advance(WINDOW)
    assert len(fired) == 2


def test_reschedule_near_ceiling_uses_remaining_time(coalescer, scheduler, fired) -> None:
    coalescer.notify("cal")
    scheduler.now = CEILING - 100

    assert coalescer.notify("cal") == "rescheduled"
    assert scheduler.live()[-1].due == CEILING


def test_notification_past_ceiling_forces_immediate_run(coalescer, scheduler, fired) -> None:
    coalescer.notify("cal")
    # the timer thread has not run yet when the next notification lands
    scheduler.now = CEILING + 5

    assert coalescer.notify("cal") == "forced"
    scheduler.advance(0)
    assert fired == [("cal", CEILING + 5)]


def test_notification_during_run_opens_new_burst(scheduler) -> None:
    fired: list[float] = []
    holder: dict[str, DebounceCoalescer] = {}

    def run(key: str) -> None:
        fired.append(scheduler.now)
        if len(fired) == 1:
            # burst state is already cleared when the run starts
            assert holder["c"].pending() == {}
            holder["c"].notify(key, reason="during-run")

    holder["c"] = DebounceCoalescer(
        run, window_sec=WINDOW, ceiling_sec=CEILING, scheduler=scheduler, clock=scheduler.clock
    )
    holder["c"].notify("cal")
    scheduler.advance(WINDOW)
    scheduler.advance(WINDOW)

    assert fired == [WINDOW, 2 * WINDOW]


def test_pending_reports_open_bursts(coalescer, scheduler) -> None:
    coalescer.notify("cal", reason="push-exists")
    scheduler.advance(60)
    coalescer.notify("cal", reason="push-exists")
    scheduler.advance(10)

    snap = coalescer.pending()

    assert snap["cal"]["notifications"] == 2
    assert snap["cal"]["since_first_sec"] == 70
    assert snap["cal"]["since_last_sec"] == 10
    assert snap["cal"]["reason"] == "push-exists"


def test_cancel_all_drops_every_timer(coalescer, scheduler, fired) -> None:
    coalescer.notify("a")
    coalescer.notify("b")

    assert coalescer.cancel_all() == 2
    scheduler.advance(CEILING)

    assert fired == []
    assert coalescer.pending() == {}


def test_failing_run_is_logged_not_raised(scheduler, caplog) -> None:
    def boom(key: str) -> None:
        raise RuntimeError("fetch failed")

    c = DebounceCoalescer(boom, scheduler=scheduler, clock=scheduler.clock)
    c.notify("cal")
    scheduler.advance(WINDOW)

    assert "debounced-run-failed" in caplog.text


def test_ceiling_must_cover_window() -> None:
    with pytest.raises(ValueError):
        DebounceCoalescer(lambda k: None, window_sec=600, ceiling_sec=300)


def test_threading_scheduler_runs_and_cancels() -> None:
    import threading

    done = threading.Event()
    ThreadingScheduler().schedule(0.0, done.set)
    assert done.wait(2.0)

    never = threading.Event()
    handle = ThreadingScheduler().schedule(5.0, never.set)
    handle.cancel()
    assert not never.wait(0.05)
