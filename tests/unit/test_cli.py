from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

import shadowcal.cli as cli
from shadowcal.sync.orchestrator import RunSummary
from shadowcal.sync.reconcile import EventError, ReconcileResult
from shadowcal.sync.subscriptions import RenewalReport

runner = CliRunner()


class FakeOrchestrator:
    """Stands in for Orchestrator; records how the CLI drove it."""

    instances: list[FakeOrchestrator] = []
    summary = RunSummary()
    report = RenewalReport()
    access: dict[str, str] = {}

    def __init__(self, cfg) -> None:
        self.cfg = cfg
        self.run_args: list = []
        self.renew_args: list = []
        FakeOrchestrator.instances.append(self)

    def run(self, calendar_ids=None):
        self.run_args.append(calendar_ids)
        return self.summary.exit_code, self.summary

    def renew_all(self, force=False):
        self.renew_args.append(force)
        return (0 if self.report.failed == 0 else 2), self.report

    def status(self):
        return [
            {
                "calendar_id": "me@example.com",
                "channel": "active",
                "channel_id": "ch-1",
                "expires_at": 1_795_000_000.0,
                "last_sync": "2026-10-19T08:00:00.000000Z",
                "mappings": 4,
            }
        ]

    def verify(self):
        return self.access


@pytest.fixture(autouse=True)
def fake_orchestrator(monkeypatch):
    FakeOrchestrator.instances = []
    FakeOrchestrator.summary = RunSummary()
    FakeOrchestrator.report = RenewalReport()
    FakeOrchestrator.access = {}
    monkeypatch.setattr(cli, "Orchestrator", FakeOrchestrator)
    return FakeOrchestrator


def test_sync_prints_summary_and_succeeds():
    FakeOrchestrator.summary = RunSummary(
        calendars={"me@example.com": ReconcileResult("me@example.com", fetched=5, created=2, skipped=1)}
    )

    result = runner.invoke(cli.app, ["sync", "--calendar", "me@example.com"])

    assert result.exit_code == 0
    assert "fetched=5 created=2 updated=0 deleted=0 skipped=1 errors=0" in result.output
    assert FakeOrchestrator.instances[0].run_args == [["me@example.com"]]


def test_sync_dry_run_reaches_config():
    result = runner.invoke(cli.app, ["sync", "--dry-run"])

    assert result.exit_code == 0
    orch = FakeOrchestrator.instances[0]
    assert orch.cfg.sync.dry_run is True
    assert orch.run_args == [None]


def test_sync_partial_failure_exit_code():
    FakeOrchestrator.summary = RunSummary(
        calendars={
            "me@example.com": ReconcileResult(
                "me@example.com", errors=[EventError("e1", "create", "HTTP 500")]
            )
        },
        failures={"work@example.com": "Google API temporarily unavailable"},
    )

    result = runner.invoke(cli.app, ["sync"])

    assert result.exit_code == 2
    assert "errors=2" in result.output


def test_sync_all_calendars_failed_exit_code():
    FakeOrchestrator.summary = RunSummary(failures={"me@example.com": "No access"})

    result = runner.invoke(cli.app, ["sync"])

    assert result.exit_code == 3


def test_invalid_config_exits_3(tmp_path):
    cfg = tmp_path / "config.yaml"
    cfg.write_text("logging:\n  level: TRACE\n", encoding="utf-8")

    result = runner.invoke(cli.app, ["sync", "--config", str(cfg)])

    assert result.exit_code == 3
    assert FakeOrchestrator.instances == []


def test_renew_force():
    FakeOrchestrator.report = RenewalReport(renewed=2)

    result = runner.invoke(cli.app, ["renew", "--force"])

    assert result.exit_code == 0
    assert "renewed=2 unchanged=0 failed=0" in result.output
    assert FakeOrchestrator.instances[0].renew_args == [True]


def test_renew_failure_exit_code():
    FakeOrchestrator.report = RenewalReport(failed=1, errors={"me@example.com": "quota"})

    result = runner.invoke(cli.app, ["renew"])

    assert result.exit_code == 2


def test_status_text_and_json():
    text = runner.invoke(cli.app, ["status"])
    as_json = runner.invoke(cli.app, ["status", "--json"])

    assert text.exit_code == 0
    assert "me@example.com: channel=active" in text.output
    assert "mappings=4" in text.output
    assert as_json.exit_code == 0
    assert json.loads(as_json.output)[0]["channel_id"] == "ch-1"


def test_verify_reports_denied_calendar():
    FakeOrchestrator.access = {"shadow": "ok", "me@example.com": "No access to the calendar"}

    result = runner.invoke(cli.app, ["verify"])

    assert result.exit_code == 2
    assert "me@example.com: No access" in result.output


def test_serve_requires_channel_token(monkeypatch):
    monkeypatch.delenv("SHADOWCAL__subscription__token", raising=False)

    result = runner.invoke(cli.app, ["serve"])

    assert result.exit_code == 3
    assert FakeOrchestrator.instances == []


def test_orchestrator_startup_failure_exits_3(monkeypatch):
    def no_credentials(cfg):
        raise RuntimeError("No Google credentials available")

    monkeypatch.setattr(cli, "Orchestrator", no_credentials)

    result = runner.invoke(cli.app, ["status"])

    assert result.exit_code == 3
    assert "No Google credentials" in result.output
