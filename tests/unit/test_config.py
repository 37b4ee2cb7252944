from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml

from shadowcal.config import AppConfig, load_config, read_env_config

BASE: dict[str, Any] = {
    "google": {
        "target_calendar_id": "shadow@group.calendar.google.com",
        "source_calendars": [
            {"id": "me@example.com", "display_name": "Private"},
            {"id": "work@example.com"},
        ],
    },
    "subscription": {"address": "https://sync.example.com/webhook/calendar"},
}


def _write_yaml(p: Path, data: dict[str, Any]) -> None:
    p.write_text(yaml.safe_dump(data, sort_keys=True), encoding="utf-8")


def test_defaults() -> None:
    cfg = AppConfig()

    assert cfg.sync.lookback_days == 7
    assert cfg.sync.lookahead_days == 90
    assert cfg.sync.placeholder_title == "Busy"
    assert cfg.sync.placeholder_color_id == "8"
    assert cfg.debounce.window_sec == 300
    assert cfg.debounce.ceiling_sec == 1800
    assert cfg.subscription.ttl_sec == 30 * 24 * 3600
    assert cfg.subscription.renewal_margin_sec == 3600
    assert (cfg.retry.max_attempts, cfg.retry.base_delay_sec, cfg.retry.max_delay_sec) == (3, 1.0, 10.0)
    assert cfg.logging.as_json is True


def test_config_precedence_file_env_cli(tmp_path, monkeypatch) -> None:
    cfg_path = tmp_path / "config.yaml"
    _write_yaml(cfg_path, {**BASE, "sync": {"lookahead_days": 30, "dry_run": False}})

    monkeypatch.setenv("SHADOWCAL__sync__lookahead_days", "60")
    monkeypatch.setenv("SHADOWCAL__subscription__token", "12345678")
    monkeypatch.setenv("SHADOWCAL__logging__json", "false")

    cfg = load_config(cfg_path, cli_overrides={"sync": {"dry_run": True}})

    assert cfg.sync.lookahead_days == 60
    assert cfg.sync.dry_run is True
    # secrets stay strings even when they look numeric
    assert cfg.subscription.token == "12345678"
    assert cfg.logging.as_json is False
    assert [s.id for s in cfg.google.sources()] == ["me@example.com", "work@example.com"]
    assert cfg.google.sources()[1].display_name == "work@example.com"


def test_missing_file_means_defaults(tmp_path) -> None:
    cfg = load_config(tmp_path / "absent.yaml")

    assert cfg.google.source_calendars == []


def test_env_coercion(monkeypatch) -> None:
    monkeypatch.setenv("SHADOWCAL__debounce__window_sec", "120.5")
    monkeypatch.setenv("SHADOWCAL__sync__delete_missing", "no")
    monkeypatch.setenv("SHADOWCAL__server__cron_secret", "true")

    env = read_env_config()

    assert env["debounce"]["window_sec"] == 120.5
    assert env["sync"]["delete_missing"] is False
    assert env["server"]["cron_secret"] == "true"


@pytest.mark.parametrize(
    "override,match",
    [
        ({"subscription": {"address": "http://insecure.example.com/hook"}}, "https://"),
        ({"debounce": {"window_sec": 600, "ceiling_sec": 300}}, "ceiling_sec"),
        ({"logging": {"level": "TRACE"}}, "logging.level"),
        (
            {"google": {"target_calendar_id": "me@example.com", "source_calendars": [{"id": "me@example.com"}]}},
            "must not also be a source",
        ),
        (
            {"google": {"source_calendars": [{"id": "a@example.com"}, {"id": "a@example.com"}]}},
            "unique",
        ),
    ],
)
def test_invalid_configuration(tmp_path, override, match) -> None:
    with pytest.raises(ValueError, match=match):
        load_config(cli_overrides={**BASE, **override})


def test_top_level_yaml_must_be_mapping(tmp_path) -> None:
    p = tmp_path / "config.yaml"
    p.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ValueError, match="mapping"):
        load_config(p)
