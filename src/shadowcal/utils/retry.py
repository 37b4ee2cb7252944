"""Bounded exponential-backoff retry for provider calls.

Intended use:
- Wrap every Google Calendar call in `with_retry(lambda: ..., policy, label=...)`.
- Classification happens before every retry decision (see shadowcal.errors).

Delay schedule (between attempts, never before the first):
  delay(attempt) = min(base_delay * multiplier ** (attempt - 1), max_delay)
with optional +/- jitter.

Notes:
- Partial side effects of a retried operation are the caller's problem; this
  module only decides whether to try again.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from ..errors import ProviderError, RetryExhaustedError, classify_error

log = logging.getLogger(__name__)

__all__ = [
    "RetryPolicy",
    "compute_delay",
    "with_retry",
]

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    jitter_frac: float = 0.0  # +/- fraction of the computed delay

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")


def compute_delay(attempt: int, policy: RetryPolicy) -> float:
    # attempt starts at 1 (the attempt that just failed)
    base = policy.base_delay * (policy.backoff_multiplier ** (attempt - 1))
    delay = min(base, policy.max_delay)
    if policy.jitter_frac > 0:
        jitter = delay * policy.jitter_frac
        delay = max(0.0, min(delay + random.uniform(-jitter, jitter), policy.max_delay))
    return delay


def with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy | None = None,
    *,
    label: str = "provider-call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run `operation` until it succeeds, fails permanently, or attempts run out.

    Raises:
        PermanentProviderError / StaleCursorError: immediately, on the first such failure.
        RetryExhaustedError: after `max_attempts` retryable failures (wraps the last one).
    """
    cfg = policy or RetryPolicy()
    last_err: ProviderError | None = None

    for attempt in range(1, cfg.max_attempts + 1):
        try:
            return operation()
        except Exception as exc:
            err = classify_error(exc)
            if not getattr(err, "retryable", False):
                if err is exc:
                    raise
                raise err from exc
            last_err = err

        if attempt < cfg.max_attempts:
            delay = compute_delay(attempt, cfg)
            log.warning(
                "retrying %s attempt=%d/%d delay=%.2fs error=%s",
                label,
                attempt,
                cfg.max_attempts,
                delay,
                last_err,
            )
            if delay > 0:
                sleep(delay)

    assert last_err is not None
    raise RetryExhaustedError(label, cfg.max_attempts, last_err) from last_err
