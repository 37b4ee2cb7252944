"""Error taxonomy and provider error classification.

Every provider call site either retries or surfaces a failure; this module decides which.

Taxonomy
- TransientProviderError: rate limits, 429, 5xx, network hiccups (retryable)
- PermanentProviderError: 404 / 409 / bad credentials and other 4xx (never retried)
- StaleCursorError: 410 Gone (caller falls back to a full window re-fetch)
- RetryExhaustedError: a retryable error persisted past the attempt budget
- ValidationError: malformed or unauthenticated inbound notification

Classification of Google API errors follows the status code, with 403 split on the
error reason: quota and rate-limit reasons are transient, everything else is a
permission problem that retrying cannot fix.
"""

from __future__ import annotations

import json
import socket
from typing import Any

import httpx

__all__ = [
    "PermanentProviderError",
    "ProviderError",
    "RetryExhaustedError",
    "ShadowCalError",
    "StaleCursorError",
    "TransientProviderError",
    "ValidationError",
    "classify_error",
    "describe_error",
    "is_not_found",
]

RETRYABLE_STATUSES: frozenset[int] = frozenset({429, 500, 502, 503, 504})
RATE_LIMIT_REASONS: frozenset[str] = frozenset(
    {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded", "dailyLimitExceeded"}
)
_TRANSIENT_MARKERS = ("econnreset", "etimedout", "enotfound", "timed out", "connection reset")


class ShadowCalError(Exception):
    """Base class for all shadowcal errors."""


class ProviderError(ShadowCalError):
    """An error reported by (or while talking to) the calendar provider."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        reason: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.reason = reason
        self.cause = cause


class TransientProviderError(ProviderError):
    retryable = True


class PermanentProviderError(ProviderError):
    retryable = False


class StaleCursorError(ProviderError):
    retryable = False


class RetryExhaustedError(ShadowCalError):
    """Raised by with_retry once a retryable operation used up every attempt."""

    def __init__(self, label: str, attempts: int, last_error: ProviderError) -> None:
        super().__init__(f"{label} failed after {attempts} attempt(s): {last_error}")
        self.label = label
        self.attempts = attempts
        self.last_error = last_error

    @property
    def status(self) -> int | None:
        return self.last_error.status


class ValidationError(ShadowCalError):
    """Inbound notification rejected at the boundary."""

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


def _status_of(exc: BaseException) -> int | None:
    code = getattr(exc, "status_code", None)
    if code is None:
        code = getattr(getattr(exc, "resp", None), "status", None)
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def _reason_of(exc: BaseException) -> str | None:
    """Pull the first `errors[].reason` out of a Google JSON error body, if any."""
    details = getattr(exc, "error_details", None)
    if isinstance(details, list):
        for d in details:
            if isinstance(d, dict) and d.get("reason"):
                return str(d["reason"])
    content = getattr(exc, "content", None)
    if isinstance(content, bytes | bytearray):
        try:
            payload: Any = json.loads(content.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return None
        errs = (payload.get("error") or {}).get("errors") if isinstance(payload, dict) else None
        if isinstance(errs, list) and errs and isinstance(errs[0], dict):
            r = errs[0].get("reason")
            return str(r) if r else None
    return None


def _classify_status(
    status: int, reason: str | None, message: str, exc: BaseException | None
) -> ProviderError:
    low = message.lower()
    if status in RETRYABLE_STATUSES:
        return TransientProviderError(message, status=status, reason=reason, cause=exc)
    if status == 403:
        if (reason in RATE_LIMIT_REASONS) or "rate limit" in low or "quota" in low:
            return TransientProviderError(message, status=status, reason=reason, cause=exc)
        return PermanentProviderError(message, status=status, reason=reason, cause=exc)
    if status == 410:
        return StaleCursorError(message, status=status, reason=reason, cause=exc)
    return PermanentProviderError(message, status=status, reason=reason, cause=exc)


def classify_error(exc: BaseException) -> ProviderError:
    """Map any exception raised by a provider call onto the taxonomy.

    Already-classified errors pass through unchanged. Unknown exceptions with no
    status and no network signature are treated as permanent.
    """
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, RetryExhaustedError):
        return exc.last_error

    message = str(exc) or type(exc).__name__
    status = _status_of(exc)
    if status is not None:
        return _classify_status(status, _reason_of(exc), message, exc)

    if isinstance(exc, httpx.TransportError):
        return TransientProviderError(message, cause=exc)
    if isinstance(exc, socket.gaierror | TimeoutError | ConnectionError):
        return TransientProviderError(message, cause=exc)
    # httplib2.ServerNotFoundError and friends do not share a base class we can import
    if type(exc).__name__ in {"ServerNotFoundError", "RedirectMissingLocation"}:
        return TransientProviderError(message, cause=exc)
    if isinstance(exc, OSError) or any(m in message.lower() for m in _TRANSIENT_MARKERS):
        return TransientProviderError(message, cause=exc)
    return PermanentProviderError(message, cause=exc)


def is_not_found(exc: BaseException) -> bool:
    """True for 404/410 style "already gone" responses."""
    err = classify_error(exc)
    return err.status in (404, 410)


def describe_error(exc: BaseException) -> str:
    """Short operator-facing explanation of a provider error."""
    err = classify_error(exc)
    status = err.status
    if status == 401:
        return "Google authentication failed; check the service account or stored token."
    if status == 403:
        if isinstance(err, TransientProviderError):
            return "Google Calendar API quota or rate limit reached; retry later."
        return "No access to the calendar; share it with the service account."
    if status == 404:
        return "Calendar or event not found; check the calendar id."
    if status == 409:
        return "Conflicting update; the same event was modified concurrently."
    if status == 410:
        return "Listing cursor expired; a full window re-fetch is required."
    if status == 429:
        return "Too many requests; retry later."
    if status in (500, 502, 503, 504):
        return "Google server error; retry later."
    if isinstance(err, TransientProviderError):
        return f"Network error talking to Google: {err}"
    return str(err)
