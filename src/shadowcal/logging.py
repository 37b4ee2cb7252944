"""Structured logging with optional JSON output and redaction.

Exports:
- setup_logging(level: str = "INFO", json: bool = False) -> None
- mask_secrets(text: str) -> str

Redaction:
- Email addresses (calendar ids are usually emails): a***z@example.com
- Token-like values ("token=...", "X-Goog-Channel-Token: ...", "Bearer ..."): partially masked
- Source event content never reaches the log: the extras summary/description/location
  are replaced wholesale

Notes:
- Placeholders are content-free, but source events are not; log event ids, never titles.
- SHADOWCAL_FORCE_JSON_LOGS=1 forces JSON output (useful in containers).
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, ClassVar

__all__ = ["JsonFormatter", "RedactingFilter", "mask_secrets", "setup_logging"]


_EMAIL_RE = re.compile(r"(?P<user>[A-Za-z0-9._%+-]{1,64})@(?P<host>[A-Za-z0-9.-]+\.[A-Za-z]{2,})")
_TOKEN_RE = re.compile(
    r"(?i)(?P<key>(?:x-goog-channel-)?token|cron_secret|secret|bearer)(?P<sep>\s*[:=]\s*|\s+)(?P<val>[A-Za-z0-9\-_\.~+/]{8,})"
)


def _mask_email(match: re.Match[str]) -> str:
    user = match.group("user")
    host = match.group("host")
    if len(user) <= 2:
        masked_user = "*"
    else:
        masked_user = f"{user[0]}***{user[-1]}"
    return f"{masked_user}@{host}"


def _mask_value(val: str) -> str:
    if len(val) <= 12:
        return "********"
    return f"{val[:3]}********{val[-3:]}"


def _mask_token(match: re.Match[str]) -> str:
    key = match.group("key")
    sep = " " if key.lower() == "bearer" else ": "
    return f"{key}{sep}{_mask_value(match.group('val'))}"


def mask_secrets(text: str) -> str:
    """Mask emails and token-like values in freeform text."""
    if not text:
        return text
    # Tokens first so a secret containing "@" is not half-treated as an email
    t = _TOKEN_RE.sub(_mask_token, text)
    return _EMAIL_RE.sub(_mask_email, t)


class RedactingFilter(logging.Filter):
    """A logging filter that redacts record messages and selected extras."""

    SECRET_EXTRAS: ClassVar[set[str]] = {"token", "channel_token", "cron_secret", "access_token"}
    CONTENT_EXTRAS: ClassVar[set[str]] = {"summary", "title", "description", "location"}

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str):
            record.msg = mask_secrets(record.msg)
            # Mark as redacted to avoid double-masking downstream formatters
            record._redacted = True

        for k in self.SECRET_EXTRAS:
            val = record.__dict__.get(k)
            if isinstance(val, str):
                record.__dict__[k] = _mask_value(val)
        for k in self.CONTENT_EXTRAS:
            if record.__dict__.get(k) is not None:
                record.__dict__[k] = "[redacted]"
        return True


@dataclass
class JsonFormatter(logging.Formatter):
    """Minimal JSON formatter.

    Fields:
    - ts (ISO8601), level, name, msg, and custom extras if present.
    """

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        message = self._format_message(record)
        base: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "name": record.name,
            "msg": message if getattr(record, "_redacted", False) else mask_secrets(message),
        }

        for attr in ("funcName", "lineno", "module"):
            base[attr] = getattr(record, attr, None)

        # Inject any custom extras that are not default LogRecord attributes
        default_attrs = set(vars(logging.LogRecord("", 0, "", 0, "", (), None)))
        for k, v in record.__dict__.items():
            if k in default_attrs or k in {"msg", "args", "_redacted", "message"}:
                continue
            if isinstance(v, str):
                base[k] = mask_secrets(v)
            elif isinstance(v, int | float | bool) or v is None:
                base[k] = v
            elif isinstance(v, Mapping):
                base[k] = {
                    str(kk): (mask_secrets(vv) if isinstance(vv, str) else vv)
                    for kk, vv in list(v.items())[:20]
                }
            else:
                # Avoid large dumps
                base[k] = f"[{type(v).__name__}]"

        if record.exc_info:
            base["exc"] = mask_secrets(self.formatException(record.exc_info))

        return json.dumps(base, ensure_ascii=False, default=str)

    def _format_message(self, record: logging.LogRecord) -> str:
        if record.args:
            try:
                return record.msg % record.args  # type: ignore[operator]
            except (TypeError, ValueError):
                return str(record.msg)
        return str(record.msg)


def setup_logging(level: str = "INFO", json: bool = False) -> None:
    """Configure the root logger for CLI and server execution.

    - Level from config or CLI flag (DEBUG/INFO/WARNING/ERROR)
    - JSON or console formatting
    - Redaction filter applied globally
    """
    if os.getenv("SHADOWCAL_FORCE_JSON_LOGS", "").lower() in {"1", "true", "yes"}:
        json = True

    # Reset handlers in case of repeated setup in tests
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)

    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.addFilter(RedactingFilter())

    if json:
        fmt: logging.Formatter = JsonFormatter()
    else:
        fmt = logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )
    handler.setFormatter(fmt)

    root.addHandler(handler)

    # Reduce noise from third-party libs at default INFO
    for name in ("googleapiclient", "google", "urllib3", "httpx", "uvicorn.access"):
        logging.getLogger(name).setLevel(logging.WARNING)
