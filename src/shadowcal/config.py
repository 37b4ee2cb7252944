"""Configuration loader for shadowcal.

This module provides:
- Typed config models (pydantic BaseModel)
- Precedence-aware loader: file (YAML) < ENV (SHADOWCAL__*) < CLI overrides
- Minimal coercion for ENV values (bool/int/float/list)

ENV format (nested via delimiter):
  SHADOWCAL__google__target_calendar_id=shadow@group.calendar.google.com
  SHADOWCAL__subscription__address=https://sync.example.com/webhook/calendar
  SHADOWCAL__subscription__token=change-me
  SHADOWCAL__debounce__window_sec=300

Source calendars are a list and are easiest to declare in YAML:
  google:
    target_calendar_id: shadow@group.calendar.google.com
    source_calendars:
      - {id: me@example.com, display_name: Private}
      - {id: work@example.com, display_name: Work}

Example:
  cfg = load_config("/data/config.yaml", cli_overrides={"sync": {"dry_run": True}})
  print(cfg.google.target_calendar_id)
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping, MutableMapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .models import SourceCalendarRef

# ----------------------------
# Pydantic models (typed config)
# ----------------------------


class SourceCalendarConfig(BaseModel):
    id: str = Field(min_length=1)
    display_name: str = ""

    def to_ref(self) -> SourceCalendarRef:
        return SourceCalendarRef(id=self.id, display_name=self.display_name or self.id)


class GoogleConfig(BaseModel):
    service_account_file: str | None = None  # or GOOGLE_SERVICE_ACCOUNT_JSON via ENV
    token_store: str = "/data/google_token.json"
    target_calendar_id: str = ""
    source_calendars: list[SourceCalendarConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_calendars(self) -> GoogleConfig:
        ids = [c.id for c in self.source_calendars]
        if len(ids) != len(set(ids)):
            raise ValueError("google.source_calendars ids must be unique")
        if self.target_calendar_id and self.target_calendar_id in ids:
            raise ValueError("google.target_calendar_id must not also be a source calendar")
        return self

    def sources(self) -> list[SourceCalendarRef]:
        return [c.to_ref() for c in self.source_calendars]


class SyncConfig(BaseModel):
    lookback_days: int = Field(7, ge=0, le=365)
    lookahead_days: int = Field(90, ge=1, le=730)
    # Mapping retention; source events older than the window roll off on their own
    mapping_ttl_days: int = Field(90, ge=1, le=1825)
    placeholder_title: str = Field("Busy", min_length=1)
    placeholder_color_id: str = "8"
    delete_missing: bool = True
    skip_free_events: bool = False
    dry_run: bool = False
    page_size: int = Field(250, ge=1, le=2500)


class DebounceConfig(BaseModel):
    window_sec: float = Field(300.0, ge=0)
    ceiling_sec: float = Field(1800.0, gt=0)

    @model_validator(mode="after")
    def _ceiling_covers_window(self) -> DebounceConfig:
        if self.ceiling_sec < self.window_sec:
            raise ValueError("debounce.ceiling_sec must be >= debounce.window_sec")
        return self


class SubscriptionConfig(BaseModel):
    address: str | None = None
    token: str | None = None  # recommended to use ENV
    ttl_sec: int = Field(30 * 24 * 3600, ge=60)
    renewal_margin_sec: int = Field(3600, ge=0)

    @field_validator("address")
    @classmethod
    def _validate_address(cls, v: str | None) -> str | None:
        # Google only delivers push notifications to HTTPS endpoints
        if v is not None and not v.startswith("https://"):
            raise ValueError("subscription.address must start with https://")
        return v


class RetryConfig(BaseModel):
    max_attempts: int = Field(3, ge=1, le=10)
    base_delay_sec: float = Field(1.0, ge=0, le=60)
    max_delay_sec: float = Field(10.0, ge=0, le=600)
    backoff_multiplier: float = Field(2.0, ge=1, le=10)


class StateConfig(BaseModel):
    db_path: str = "/data/shadowcal.sqlite"


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = Field(8080, ge=1, le=65535)
    cron_secret: str | None = None


class LoggingConfig(BaseModel):
    # Allow using alias "json" in config/env while avoiding BaseModel.json clash
    model_config = ConfigDict(populate_by_name=True)
    level: str = "INFO"
    as_json: bool = Field(True, alias="json")

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, v: str) -> str:
        lv = (v or "INFO").upper()
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if lv not in allowed:
            raise ValueError(f"logging.level must be one of {sorted(allowed)}")
        return lv


class RuntimeConfig(BaseModel):
    lock_path: str = "/tmp/shadowcal.lock"


def _default_logging_config() -> LoggingConfig:
    return LoggingConfig(json=True)


class AppConfig(BaseModel):
    google: GoogleConfig = Field(default_factory=GoogleConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    debounce: DebounceConfig = Field(default_factory=DebounceConfig)
    subscription: SubscriptionConfig = Field(default_factory=SubscriptionConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=_default_logging_config)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)


__all__ = [
    "AppConfig",
    "DebounceConfig",
    "GoogleConfig",
    "LoggingConfig",
    "RetryConfig",
    "RuntimeConfig",
    "ServerConfig",
    "SourceCalendarConfig",
    "StateConfig",
    "SubscriptionConfig",
    "SyncConfig",
    "load_config",
    "merge_dicts",
    "read_env_config",
]


# ----------------------------
# Utilities
# ----------------------------


_BOOL_TRUE = {"1", "true", "yes", "on", "y", "t"}
_BOOL_FALSE = {"0", "false", "no", "off", "n", "f"}

_LIST_SPLIT_RE = re.compile(r"\s*,\s*")


def _coerce_value(val: str) -> Any:
    """Best-effort coercion for ENV values."""
    s = val.strip()

    ls = s.lower()
    if ls in _BOOL_TRUE:
        return True
    if ls in _BOOL_FALSE:
        return False

    if re.fullmatch(r"[+-]?\d+", s):
        return int(s)
    if re.fullmatch(r"[+-]?\d+\.\d*", s):
        return float(s)

    if "," in s:
        return [p for p in _LIST_SPLIT_RE.split(s) if p != ""]

    return s


def merge_dicts(
    base: MutableMapping[str, Any], override: Mapping[str, Any]
) -> MutableMapping[str, Any]:
    """Deep-merge override into base (mutates base). Lists/atoms are replaced."""
    for k, v in override.items():
        if k in base and isinstance(base[k], dict) and isinstance(v, Mapping):
            merge_dicts(base[k], v)
        else:
            base[k] = v
    return base


def read_yaml_config(path: Path | None) -> dict[str, Any]:
    if not path:
        return {}
    p = Path(path).resolve()
    if not p.exists():
        return {}
    with p.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Top-level YAML must be a mapping in {p}")
        return data


def read_env_config(prefix: str = "SHADOWCAL__", nested_delim: str = "__") -> dict[str, Any]:
    """Build nested dict from environment variables.

    Keys must start with `prefix` (default 'SHADOWCAL__').
    Nested keys split by `nested_delim`.
    """
    if not prefix.endswith(nested_delim):
        raise ValueError("prefix must end with the nested_delim (default 'SHADOWCAL__' and '__').")

    result: dict[str, Any] = {}
    plen = len(prefix)
    for key, raw in os.environ.items():
        if not key.startswith(prefix):
            continue
        path_parts = key[plen:].split(nested_delim)
        cursor = result
        for part in path_parts[:-1]:
            cursor = cursor.setdefault(part, {})
        # Secrets must never be coerced (a numeric token is still a string)
        if path_parts[-1] in {"token", "cron_secret"}:
            cursor[path_parts[-1]] = raw
        else:
            cursor[path_parts[-1]] = _coerce_value(raw)
    return result


# ----------------------------
# Loader (precedence: file < env < cli_overrides)
# ----------------------------


def load_config(
    file_path: str | Path | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
    env_prefix: str = "SHADOWCAL__",
    env_nested_delim: str = "__",
) -> AppConfig:
    """Load AppConfig with precedence: file < env < CLI overrides.

    Raises:
        ValueError: when the merged configuration does not validate.
    """
    merged: dict[str, Any] = {}

    merge_dicts(merged, read_yaml_config(Path(file_path) if file_path else None))
    merge_dicts(merged, read_env_config(prefix=env_prefix, nested_delim=env_nested_delim))

    if cli_overrides:
        if not isinstance(cli_overrides, Mapping):
            raise TypeError("cli_overrides must be a mapping (nested dict-like).")
        merge_dicts(merged, cli_overrides)

    try:
        return AppConfig.model_validate(merged)
    except ValidationError as ve:
        raise ValueError(f"Invalid configuration: {ve}") from ve
