"""Top-level wiring and run entry points.

Responsibilities
- Construct dependencies from config (credentials, provider client, state store)
- One-shot runs (CLI, cron endpoints): reconcile every source calendar, renew channels
- Long-running server: debounce coalescer + notification ingress + FastAPI app
- Enforce a single one-shot run per host with a filesystem lock file

Exit codes
- 0: success
- 2: partial (per-event errors, or some calendars could not be reconciled)
- 3: fatal (could not start/run)
"""

from __future__ import annotations

import errno
import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass, field
from types import TracebackType
from typing import TYPE_CHECKING, Any

from ..config import AppConfig
from ..errors import describe_error
from ..models import SourceCalendarRef
from ..provider import CalendarProvider, KeyValueStore
from ..state import State, last_sync_key, mapping_key
from .debounce import DebounceCoalescer, Scheduler
from .reconcile import Reconciler, ReconcileResult
from .subscriptions import RenewalReport, SubscriptionManager

if TYPE_CHECKING:  # pragma: no cover
    from fastapi import FastAPI

log = logging.getLogger(__name__)

__all__ = ["FileLock", "Orchestrator", "RunSummary"]


@dataclass(frozen=True)
class RunSummary:
    calendars: dict[str, ReconcileResult] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)

    def aggregate(self) -> dict[str, int]:
        total = {"fetched": 0, "created": 0, "updated": 0, "deleted": 0, "skipped": 0, "errors": 0}
        for res in self.calendars.values():
            for k in ("fetched", "created", "updated", "deleted", "skipped"):
                total[k] += getattr(res, k)
            total["errors"] += len(res.errors)
        total["errors"] += len(self.failures)
        return total

    @property
    def exit_code(self) -> int:
        if self.failures and not self.calendars:
            return 3
        return 0 if self.aggregate()["errors"] == 0 else 2

    def as_dict(self) -> dict[str, Any]:
        return {
            "totals": self.aggregate(),
            "calendars": {cid: res.as_dict() for cid, res in self.calendars.items()},
            "failures": dict(self.failures),
        }


class FileLock:
    """Non-blocking PID file lock using O_CREAT|O_EXCL.

    A lock left behind by a dead process is detected by its PID and replaced.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._fd: int | None = None

    def _create(self) -> None:
        self._fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        os.write(self._fd, str(os.getpid()).encode("utf-8"))
        os.fsync(self._fd)

    def acquire(self) -> None:
        try:
            self._create()
        except OSError as e:
            if e.errno != errno.EEXIST:
                raise
            if self._is_stale_lock():
                log.warning("Removing stale lock file at %s", self.path)
                try:
                    os.unlink(self.path)
                    self._create()
                    return
                except OSError:
                    # Another process might have created the lock in the meantime
                    pass
            raise RuntimeError(f"Another instance is running (lock exists at {self.path})") from e

    def _is_stale_lock(self) -> bool:
        """True when the lock file holds no PID or the PID of a dead process."""
        try:
            with open(self.path, encoding="utf-8") as f:
                pid_str = f.read().strip()
        except (FileNotFoundError, PermissionError):
            return True
        if not pid_str.isdigit():
            return True
        try:
            os.kill(int(pid_str), 0)  # signal 0 only checks existence
        except PermissionError:
            return False  # alive, owned by someone else
        except OSError:
            return True
        return False

    def release(self) -> None:
        if self._fd is not None:
            try:
                os.close(self._fd)
            except OSError:
                pass
            self._fd = None
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


class Orchestrator:
    def __init__(
        self,
        cfg: AppConfig,
        *,
        provider: CalendarProvider | None = None,
        store: KeyValueStore | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        """Wire every collaborator up front.

        Timer and request threads only ever see fully built, shared instances, so
        the reconciler's per-calendar locks are the same for every caller.

        Raises:
            ValueError: google.target_calendar_id is not configured.
        """
        if not cfg.google.target_calendar_id:
            raise ValueError("google.target_calendar_id is not configured")
        self.cfg = cfg
        self._scheduler = scheduler
        self.store: KeyValueStore = store if store is not None else self._build_state()
        self.provider: CalendarProvider = provider if provider is not None else self._build_provider()
        self.reconciler = Reconciler.from_config(cfg, self.provider, self.store)
        self.subscriptions = SubscriptionManager.from_config(cfg, self.provider, self.store)

    # -------------
    # Dependencies
    # -------------

    def _build_state(self) -> State:
        return State(self.cfg.state.db_path)

    def _build_provider(self) -> CalendarProvider:
        from ..google.auth import SCOPES_CALENDAR, get_credentials
        from ..google.calendar import CalendarClient

        creds = get_credentials(self.cfg.google, scopes=SCOPES_CALENDAR)
        return CalendarClient(creds, page_size=self.cfg.sync.page_size)

    def sources(self, calendar_ids: Iterable[str] | None = None) -> list[SourceCalendarRef]:
        refs = self.cfg.google.sources()
        if calendar_ids is None:
            return refs
        wanted = set(calendar_ids)
        unknown = wanted - {r.id for r in refs}
        if unknown:
            raise ValueError(f"Not a configured source calendar: {', '.join(sorted(unknown))}")
        return [r for r in refs if r.id in wanted]

    # -------------
    # Reconciliation
    # -------------

    def sync_calendar(self, calendar_id: str) -> ReconcileResult:
        """Reconcile one source calendar (the debounce timer's callback)."""
        (source,) = self.sources([calendar_id])
        return self.reconciler.reconcile(source)

    def sync_all(self, calendar_ids: Iterable[str] | None = None) -> RunSummary:
        """Reconcile every (or the selected) source calendar; one failure does not stop the rest."""
        if isinstance(self.store, State):
            purged = self.store.purge_expired()
            if purged:
                log.info("state-purged", extra={"rows": purged})

        results: dict[str, ReconcileResult] = {}
        failures: dict[str, str] = {}
        for source in self.sources(calendar_ids):
            try:
                results[source.id] = self.reconciler.reconcile(source)
            except Exception as exc:
                failures[source.id] = describe_error(exc)
                log.exception("reconcile-failed", extra={"calendar_id": source.id})
        summary = RunSummary(calendars=results, failures=failures)
        log.info("sync-finished", extra={"totals": summary.aggregate()})
        return summary

    def run(self, calendar_ids: Iterable[str] | None = None) -> tuple[int, RunSummary]:
        """One-shot run under the host-wide lock; returns exit code and summary."""
        lock_path = self.cfg.runtime.lock_path
        log.info("acquiring-lock %s", lock_path)
        lock = FileLock(lock_path)
        try:
            lock.acquire()
        except Exception as e:
            log.error("lock-failed %s", e)
            return 3, RunSummary()

        try:
            summary = self.sync_all(calendar_ids)
        except Exception:
            log.exception("sync-fatal")
            return 3, RunSummary()
        finally:
            lock.release()
        return summary.exit_code, summary

    # -------------
    # Subscriptions
    # -------------

    def renew_all(self, *, force: bool = False) -> tuple[int, RenewalReport]:
        ids = [s.id for s in self.sources()]
        if force:
            report = RenewalReport()
            for cid in ids:
                try:
                    self.subscriptions.renew(cid)
                    report.renewed += 1
                except Exception as exc:
                    report.failed += 1
                    report.errors[cid] = describe_error(exc)
                    log.error("channel-renewal-failed", extra={"calendar_id": cid, "error": str(exc)})
        else:
            report = self.subscriptions.ensure_all(ids)
        return (0 if report.failed == 0 else 2), report

    def status(self) -> list[dict[str, Any]]:
        """Per source calendar: channel state, expiry, last sync and mapping count."""
        rows: list[dict[str, Any]] = []
        for cid, state, channel in self.subscriptions.list_all(s.id for s in self.sources()):
            mappings: int | None = None
            if isinstance(self.store, State):
                mappings = len(self.store.keys(mapping_key(cid, "")))
            rows.append(
                {
                    "calendar_id": cid,
                    "channel": state.value,
                    "channel_id": channel.channel_id if channel else None,
                    "expires_at": channel.expires_at if channel else None,
                    "last_sync": self.store.get(last_sync_key(cid)),
                    "mappings": mappings,
                }
            )
        return rows

    def verify(self) -> dict[str, str]:
        """Check that the credentials can read every configured calendar."""
        out: dict[str, str] = {}
        get_calendar = getattr(self.provider, "get_calendar", None)
        ids = [self.cfg.google.target_calendar_id, *(s.id for s in self.sources())]
        for cid in filter(None, ids):
            if get_calendar is None:
                out[cid] = "skipped"
                continue
            try:
                get_calendar(cid)
                out[cid] = "ok"
            except Exception as exc:
                out[cid] = describe_error(exc)
        return out

    # -------------
    # Server
    # -------------

    def build_app(self) -> FastAPI:
        from ..ingress import NotificationIngress
        from ..server import create_app

        coalescer = DebounceCoalescer(
            self.sync_calendar,
            window_sec=self.cfg.debounce.window_sec,
            ceiling_sec=self.cfg.debounce.ceiling_sec,
            scheduler=self._scheduler,
        )
        ingress = NotificationIngress(
            coalescer,
            token=self.cfg.subscription.token,
            calendar_ids=[s.id for s in self.sources()],
        )

        def renew() -> dict[str, Any]:
            _code, report = self.renew_all()
            return {
                "renewed": report.renewed,
                "failed": report.failed,
                "unchanged": report.unchanged,
                "errors": report.errors,
            }

        return create_app(
            ingress,
            cron_secret=self.cfg.server.cron_secret,
            sync_all=lambda: self.sync_all().as_dict(),
            renew_all=renew,
        )
