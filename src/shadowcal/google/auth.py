"""Google credential helpers.

Responsibilities
- Service account credentials (preferred for an unattended webhook receiver):
  GOOGLE_SERVICE_ACCOUNT_JSON (inline), GOOGLE_SERVICE_ACCOUNT_FILE, or
  google.service_account_file.
- Fallback: an authorized-user token stored at google.token_store, refreshed
  headlessly. `authorize()` runs the one-time browser consent that creates it.

Security
- Never log raw keys or tokens; shadowcal.logging redacts token-like strings.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover
    from google.auth.credentials import Credentials  # type: ignore[import-not-found]

from ..config import GoogleConfig

__all__ = [
    "SCOPES_CALENDAR",
    "authorize",
    "get_credentials",
]

log = logging.getLogger(__name__)

# Read sources, write placeholders, open watch channels
SCOPES_CALENDAR: list[str] = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
]


def _read_service_account_info(google_cfg: GoogleConfig) -> dict[str, Any] | None:
    """Service account key JSON from env or file; None when not configured.

    Priority:
    - GOOGLE_SERVICE_ACCOUNT_JSON (inline JSON)
    - GOOGLE_SERVICE_ACCOUNT_FILE (path)
    - google_cfg.service_account_file
    """
    env_inline = os.getenv("GOOGLE_SERVICE_ACCOUNT_JSON")
    if env_inline:
        try:
            return json.loads(env_inline)
        except json.JSONDecodeError as exc:
            raise ValueError("Invalid JSON in GOOGLE_SERVICE_ACCOUNT_JSON") from exc

    file_path = os.getenv("GOOGLE_SERVICE_ACCOUNT_FILE") or google_cfg.service_account_file
    if not file_path:
        return None
    p = Path(file_path)
    if not p.exists():
        raise FileNotFoundError(f"Service account key file not found: {p}")
    with p.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def _service_account_credentials(info: dict[str, Any], scopes: Sequence[str]) -> Credentials:
    from google.oauth2 import service_account  # type: ignore[import-not-found]

    # Keys copied from env files often carry literal "\n" sequences
    if isinstance(info.get("private_key"), str):
        info = {**info, "private_key": info["private_key"].replace("\\n", "\n")}
    return service_account.Credentials.from_service_account_info(  # type: ignore[no-untyped-call]
        info, scopes=list(scopes)
    )


def _load_saved_credentials(token_store: str, scopes: Sequence[str]) -> Credentials | None:
    from google.oauth2.credentials import Credentials  # type: ignore[import-not-found]

    p = Path(token_store)
    if not p.exists():
        return None
    try:
        return Credentials.from_authorized_user_file(str(p), scopes=list(scopes))  # type: ignore[no-untyped-call]
    except (ValueError, json.JSONDecodeError) as exc:
        log.warning("token-store-unreadable %s: %s", p, exc)
        return None


def _save_credentials(token_store: str, creds: Credentials) -> None:
    p = Path(token_store)
    if p.parent and not p.parent.exists():
        p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("w", encoding="utf-8") as fh:
        fh.write(creds.to_json())  # type: ignore[attr-defined]
    p.chmod(0o600)


def _refresh_if_needed(creds: Credentials) -> None:
    from google.auth.transport.requests import Request  # type: ignore[import-not-found]

    if getattr(creds, "expired", False) and getattr(creds, "refresh_token", None):
        creds.refresh(Request())  # type: ignore[no-untyped-call]


def get_credentials(
    google_cfg: GoogleConfig, scopes: Sequence[str] = tuple(SCOPES_CALENDAR)
) -> Credentials:
    """Return credentials for google-api-python-client, never prompting.

    Raises RuntimeError when neither a service account nor a usable token is available.
    """
    info = _read_service_account_info(google_cfg)
    if info:
        return _service_account_credentials(info, scopes)

    creds = _load_saved_credentials(google_cfg.token_store, scopes)
    if creds:
        _refresh_if_needed(creds)
        if getattr(creds, "valid", False):
            _save_credentials(google_cfg.token_store, creds)
            return creds

    raise RuntimeError(
        "No Google credentials available. Configure a service account key or run "
        "`shadowcal authorize` once to create the token store."
    )


def authorize(
    google_cfg: GoogleConfig, client_secrets_file: str, scopes: Sequence[str] = tuple(SCOPES_CALENDAR)
) -> Credentials:
    """Run the installed-app browser consent and persist the resulting token."""
    from google_auth_oauthlib.flow import InstalledAppFlow  # type: ignore[import-not-found]

    flow = InstalledAppFlow.from_client_secrets_file(client_secrets_file, scopes=list(scopes))  # type: ignore[no-untyped-call]
    creds = flow.run_local_server(  # type: ignore[no-untyped-call]
        open_browser=True, host="localhost", port=0, authorization_prompt_message=""
    )
    _save_credentials(google_cfg.token_store, creds)
    log.info("token-store-written %s", google_cfg.token_store)
    return creds
