"""CLI entrypoint for shadowcal.

Commands
- serve:       run the notification receiver (FastAPI + uvicorn) with debounced reconciliation
- sync:        one-shot full reconciliation of every (or selected) source calendar
- renew:       create channels that are absent or near expiry (--force: all of them)
- status:      channel state, expiry, last sync and mapping count per source calendar
- unsubscribe: stop channels and forget them
- verify:      check that the credentials can read every configured calendar
- init:        verify, subscribe and run the first reconciliation
- authorize:   one-time browser consent for an authorized-user token (no service account)

Notes
- Configuration precedence: CLI > ENV (SHADOWCAL__) > YAML file, see config loader.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import typer

from .config import AppConfig, load_config
from .logging import setup_logging
from .sync.orchestrator import Orchestrator

log = logging.getLogger(__name__)

app = typer.Typer(add_completion=False, help="Mirror busy time from source calendars into a shadow calendar")

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    exists=False,
    readable=True,
    help="Path to YAML config file.",
)
VerboseOption = typer.Option(
    False,
    "--verbose",
    "-v",
    help="Set log level to DEBUG (overrides config.logging.level).",
)


def _load(config: Path | None, overrides: dict[str, Any] | None = None, verbose: bool = False) -> AppConfig:
    merged: dict[str, Any] = dict(overrides or {})
    if verbose:
        merged.setdefault("logging", {})["level"] = "DEBUG"
    try:
        cfg = load_config(file_path=str(config) if config else None, cli_overrides=merged)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=3) from exc
    setup_logging(level=cfg.logging.level, json=cfg.logging.as_json)
    return cfg


def _orchestrator(cfg: AppConfig) -> Orchestrator:
    try:
        return Orchestrator(cfg)
    except (ValueError, RuntimeError, OSError) as exc:
        typer.echo(f"cannot start: {exc}", err=True)
        raise typer.Exit(code=3) from exc


def _fmt_ts(epoch: float | None) -> str:
    if not epoch:
        return "-"
    return datetime.fromtimestamp(epoch, tz=UTC).isoformat(timespec="seconds")


@app.command(help="Run the push notification receiver.")
def serve(
    config: Path | None = ConfigOption,
    host: str | None = typer.Option(None, "--host", help="Bind address (overrides server.host)."),
    port: int | None = typer.Option(None, "--port", min=1, max=65535, help="Bind port (overrides server.port)."),
    verbose: bool = VerboseOption,
) -> None:
    import uvicorn

    server_over: dict[str, Any] = {}
    if host:
        server_over["host"] = host
    if port:
        server_over["port"] = port
    cfg = _load(config, {"server": server_over} if server_over else None, verbose)
    if not cfg.subscription.token:
        typer.echo("subscription.token must be set to accept notifications", err=True)
        raise typer.Exit(code=3)

    orch = _orchestrator(cfg)
    uvicorn.run(orch.build_app(), host=cfg.server.host, port=cfg.server.port, log_config=None)


@app.command(help="Reconcile source calendars into the shadow calendar once.")
def sync(
    config: Path | None = ConfigOption,
    calendar: list[str] | None = typer.Option(
        None,
        "--calendar",
        help="Source calendar id to reconcile (repeatable). Default: all configured.",
        show_default=False,
    ),
    dry_run: bool | None = typer.Option(
        None,
        "--dry-run/--no-dry-run",
        help="Do not write placeholders or state; log intended actions.",
        show_default=False,
    ),
    verbose: bool = VerboseOption,
) -> None:
    overrides = {"sync": {"dry_run": dry_run}} if dry_run is not None else None
    cfg = _load(config, overrides, verbose)

    orch = _orchestrator(cfg)
    try:
        exit_code, summary = orch.run(calendar or None)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=3) from exc
    agg = summary.aggregate()
    typer.echo(
        "shadowcal sync summary: "
        f"fetched={agg['fetched']} created={agg['created']} updated={agg['updated']} "
        f"deleted={agg['deleted']} skipped={agg['skipped']} errors={agg['errors']}"
    )
    for cid, reason in summary.failures.items():
        typer.echo(f"  {cid}: {reason}", err=True)
    raise typer.Exit(code=exit_code)


@app.command(help="Renew push channels that are absent or close to expiry.")
def renew(
    config: Path | None = ConfigOption,
    force: bool = typer.Option(False, "--force", help="Recreate every channel regardless of state."),
    verbose: bool = VerboseOption,
) -> None:
    cfg = _load(config, verbose=verbose)
    exit_code, report = _orchestrator(cfg).renew_all(force=force)
    typer.echo(
        f"shadowcal renew summary: renewed={report.renewed} unchanged={report.unchanged} failed={report.failed}"
    )
    for cid, reason in report.errors.items():
        typer.echo(f"  {cid}: {reason}", err=True)
    raise typer.Exit(code=exit_code)


@app.command(help="Show channel and sync status per source calendar.")
def status(
    config: Path | None = ConfigOption,
    as_json: bool = typer.Option(False, "--json", help="Print machine-readable JSON."),
    verbose: bool = VerboseOption,
) -> None:
    cfg = _load(config, verbose=verbose)
    rows = _orchestrator(cfg).status()
    if as_json:
        typer.echo(json.dumps(rows, indent=2, default=str))
        raise typer.Exit(code=0)
    for row in rows:
        typer.echo(
            f"{row['calendar_id']}: channel={row['channel']} expires={_fmt_ts(row['expires_at'])} "
            f"last_sync={row['last_sync'] or '-'} mappings={row['mappings'] if row['mappings'] is not None else '-'}"
        )
    raise typer.Exit(code=0)


@app.command(help="Stop push channels and forget them.")
def unsubscribe(
    config: Path | None = ConfigOption,
    calendar: list[str] | None = typer.Option(
        None, "--calendar", help="Source calendar id (repeatable). Default: all configured."
    ),
    verbose: bool = VerboseOption,
) -> None:
    cfg = _load(config, verbose=verbose)
    orch = _orchestrator(cfg)
    failed = 0
    for source in orch.sources(calendar or None):
        try:
            stopped = orch.subscriptions.stop(source.id)
        except Exception as exc:
            failed += 1
            typer.echo(f"{source.id}: stop failed: {exc}", err=True)
            continue
        typer.echo(f"{source.id}: {'stopped' if stopped else 'no channel'}")
    raise typer.Exit(code=0 if failed == 0 else 2)


@app.command(help="Check access to the target and every source calendar.")
def verify(
    config: Path | None = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    cfg = _load(config, verbose=verbose)
    results = _orchestrator(cfg).verify()
    for cid, outcome in results.items():
        typer.echo(f"{cid}: {outcome}")
    ok = all(v in {"ok", "skipped"} for v in results.values())
    raise typer.Exit(code=0 if ok else 2)


@app.command(help="Verify access, subscribe every source calendar and run the first sync.")
def init(
    config: Path | None = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    cfg = _load(config, verbose=verbose)
    orch = _orchestrator(cfg)

    access = orch.verify()
    denied = {cid: outcome for cid, outcome in access.items() if outcome not in {"ok", "skipped"}}
    if denied:
        for cid, outcome in denied.items():
            typer.echo(f"{cid}: {outcome}", err=True)
        raise typer.Exit(code=3)

    renew_code, report = orch.renew_all()
    typer.echo(f"channels: renewed={report.renewed} unchanged={report.unchanged} failed={report.failed}")
    sync_code, summary = orch.run()
    agg = summary.aggregate()
    typer.echo(f"first sync: created={agg['created']} skipped={agg['skipped']} errors={agg['errors']}")
    raise typer.Exit(code=max(renew_code, sync_code))


@app.command(help="Create the authorized-user token store via browser consent.")
def authorize(
    client_secrets: Path = typer.Option(
        ..., "--client-secrets", exists=True, readable=True, help="OAuth client secrets JSON."
    ),
    config: Path | None = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    from .google.auth import authorize as run_authorize

    cfg = _load(config, verbose=verbose)
    run_authorize(cfg.google, str(client_secrets))
    typer.echo(f"token written to {cfg.google.token_store}")
    raise typer.Exit(code=0)


if __name__ == "__main__":  # pragma: no cover
    app()
