"""Deterministic hashing of placeholder bodies.

Goals
- Two placeholders for the same source event hash equally unless something a
  reader of the target calendar could see has changed (times, title, colour...).
- Volatile fields (the sync timestamp inside provenance) are excluded, so a
  re-run with no source changes produces the same hash and no update call.

Public API
- placeholder_hash(placeholder) -> str
- sha256_hex(data) -> str
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from hashlib import sha256
from typing import Any

from ..mapping.events import PROP_SYNCED_AT, placeholder_to_google
from ..models import PlaceholderEvent

__all__ = ["placeholder_hash", "sha256_hex"]

VOLATILE_PRIVATE_PROPS: Sequence[str] = (PROP_SYNCED_AT,)


def sha256_hex(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return sha256(data).hexdigest()


def _strip_volatile(body: dict[str, Any]) -> dict[str, Any]:
    private = dict(((body.get("extendedProperties") or {}).get("private")) or {})
    for key in VOLATILE_PRIVATE_PROPS:
        private.pop(key, None)
    return {**body, "extendedProperties": {"private": private}}


def placeholder_hash(placeholder: PlaceholderEvent) -> str:
    body = _strip_volatile(placeholder_to_google(placeholder))
    return sha256_hex(json.dumps(body, sort_keys=True, separators=(",", ":")))
