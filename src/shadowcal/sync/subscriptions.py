"""Push-channel lifecycle per source calendar.

A calendar's channel is ABSENT (no record, or the record expired), ACTIVE, or
NEAR_EXPIRY (expires within `renewal_margin_sec`). Renewal never leaves a calendar
without a channel on failure:

1. create the new channel (with retry)
2. persist it, replacing the old record (TTL = time to expiry, capped at 30 days)
3. stop the old channel, best effort (a failure there is only logged)

If step 1 fails the stored record is left untouched.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

from ..config import AppConfig
from ..errors import describe_error
from ..models import SubscriptionChannel
from ..provider import CalendarProvider, KeyValueStore
from ..state import subscription_key
from ..utils.retry import RetryPolicy, with_retry

log = logging.getLogger(__name__)

__all__ = ["ChannelState", "RenewalReport", "SubscriptionManager"]

MAX_RECORD_TTL_SEC = 30 * 24 * 3600


class ChannelState(str, Enum):
    ABSENT = "absent"
    ACTIVE = "active"
    NEAR_EXPIRY = "near_expiry"


@dataclass
class RenewalReport:
    renewed: int = 0
    failed: int = 0
    unchanged: int = 0
    errors: dict[str, str] = field(default_factory=dict)


class SubscriptionManager:
    def __init__(
        self,
        provider: CalendarProvider,
        store: KeyValueStore,
        *,
        address: str | None,
        token: str | None,
        ttl_sec: int = MAX_RECORD_TTL_SEC,
        renewal_margin_sec: int = 3600,
        retry: RetryPolicy | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.provider = provider
        self.store = store
        self.address = address
        self.token = token
        self.ttl_sec = ttl_sec
        self.renewal_margin_sec = renewal_margin_sec
        self.retry = retry or RetryPolicy()
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_config(
        cls, cfg: AppConfig, provider: CalendarProvider, store: KeyValueStore, **kwargs: object
    ) -> SubscriptionManager:
        return cls(
            provider,
            store,
            address=cfg.subscription.address,
            token=cfg.subscription.token,
            ttl_sec=cfg.subscription.ttl_sec,
            renewal_margin_sec=cfg.subscription.renewal_margin_sec,
            retry=RetryPolicy(
                max_attempts=cfg.retry.max_attempts,
                base_delay=cfg.retry.base_delay_sec,
                max_delay=cfg.retry.max_delay_sec,
                backoff_multiplier=cfg.retry.backoff_multiplier,
            ),
            **kwargs,  # type: ignore[arg-type]
        )

    # -------------
    # Queries
    # -------------

    def get(self, calendar_id: str) -> SubscriptionChannel | None:
        return SubscriptionChannel.from_record(self.store.get(subscription_key(calendar_id)))

    def _expires_soon(self, channel: SubscriptionChannel) -> bool:
        return channel.expires_at - self._clock() <= self.renewal_margin_sec

    def is_near_expiry(self, calendar_id: str) -> bool:
        """True when the stored channel for `calendar_id` is within the renewal margin.

        A calendar with no live record is ABSENT, not near expiry.
        """
        return self.state(calendar_id) is ChannelState.NEAR_EXPIRY

    def state(self, calendar_id: str) -> ChannelState:
        channel = self.get(calendar_id)
        if channel is None or channel.expires_at <= self._clock():
            return ChannelState.ABSENT
        if self._expires_soon(channel):
            return ChannelState.NEAR_EXPIRY
        return ChannelState.ACTIVE

    def list_all(
        self, calendar_ids: Iterable[str]
    ) -> list[tuple[str, ChannelState, SubscriptionChannel | None]]:
        return [(cid, self.state(cid), self.get(cid)) for cid in calendar_ids]

    # -------------
    # Lifecycle
    # -------------

    def ensure(self, calendar_id: str) -> bool:
        """Renew the channel unless the stored one is ACTIVE. True when renewed.

        Calling it again while the channel is comfortably valid is a no-op.
        """
        if self.state(calendar_id) is ChannelState.ACTIVE:
            return False
        self.renew(calendar_id)
        return True

    def renew(self, calendar_id: str) -> SubscriptionChannel:
        """Create a fresh channel for `calendar_id` and retire the previous one."""
        if not self.address or not self.token:
            raise ValueError("subscription.address and subscription.token must be configured")

        previous = self.get(calendar_id)
        address, token = self.address, self.token
        channel = with_retry(
            lambda: self.provider.create_channel(calendar_id, address, token, self.ttl_sec),
            self.retry,
            label=f"create-channel:{calendar_id}",
            sleep=self._sleep,
        )

        ttl = min(max(channel.expires_at - self._clock(), 1.0), MAX_RECORD_TTL_SEC)
        self.store.set(subscription_key(calendar_id), channel.to_record(), ttl=ttl)
        log.info(
            "channel-created",
            extra={
                "calendar_id": calendar_id,
                "channel_id": channel.channel_id,
                "expires_at": channel.expires_at,
            },
        )

        if previous is not None and previous.channel_id != channel.channel_id:
            try:
                self.provider.stop_channel(previous.channel_id, previous.resource_id)
            except Exception as exc:
                # the old channel expires on its own; duplicate notifications are coalesced
                log.warning(
                    "channel-stop-failed",
                    extra={
                        "calendar_id": calendar_id,
                        "channel_id": previous.channel_id,
                        "error": str(exc),
                    },
                )
        return channel

    def ensure_all(self, calendar_ids: Iterable[str]) -> RenewalReport:
        report = RenewalReport()
        for cid in calendar_ids:
            try:
                if self.ensure(cid):
                    report.renewed += 1
                else:
                    report.unchanged += 1
            except Exception as exc:
                report.failed += 1
                report.errors[cid] = describe_error(exc)
                log.error("channel-renewal-failed", extra={"calendar_id": cid, "error": str(exc)})
        log.info(
            "channel-renewal-finished",
            extra={"renewed": report.renewed, "failed": report.failed, "unchanged": report.unchanged},
        )
        return report

    def stop(self, calendar_id: str) -> bool:
        """Stop the stored channel and forget it. False when there was none."""
        channel = self.get(calendar_id)
        if channel is None:
            return False
        with_retry(
            lambda: self.provider.stop_channel(channel.channel_id, channel.resource_id),
            self.retry,
            label=f"stop-channel:{calendar_id}",
            sleep=self._sleep,
        )
        self.store.delete(subscription_key(calendar_id))
        log.info("channel-stopped", extra={"calendar_id": calendar_id, "channel_id": channel.channel_id})
        return True
