"""
decision_sdk.tier3_decisioning.frequency
──────────────────────────────────────────
Per-(user, rule) delivery caps over a sliding window.

    max_frequency = {"limit": 2, "period": "day"}

counts the user's deliveries for the rule with created_at strictly inside
the last 24 hours; the rule may fire again only while that count is below
the limit. A limit of 0 blocks the rule entirely.

No max_frequency, or a period this module does not know, means no cap.

The window helpers, within_window() and count_since(), are shared with the
compliance monitor's frequency-threshold rules.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable, TypeVar

from decision_sdk.tier0_core.logging import get_logger
from decision_sdk.tier1_runtime.clock import Clock, ensure_utc, get_clock
from decision_sdk.tier2_storage.entities import MaxFrequency
from decision_sdk.tier2_storage.store import Stores

log = get_logger(__name__)

T = TypeVar("T")

PERIOD_SECONDS: dict[str, int] = {
    "hour": 60 * 60,
    "day": 24 * 60 * 60,
    "week": 7 * 24 * 60 * 60,
    "month": 30 * 24 * 60 * 60,
}


def period_seconds(period: str) -> int | None:
    return PERIOD_SECONDS.get(period)


def within_window(items: Iterable[T], since: datetime, timestamp: Callable[[T], datetime]) -> list[T]:
    """Items whose timestamp is strictly after *since*, in input order."""
    cutoff = ensure_utc(since)
    return [item for item in items if ensure_utc(timestamp(item)) > cutoff]


def count_since(timestamps: Iterable[datetime], since: datetime) -> int:
    """Number of timestamps strictly after *since*."""
    return len(within_window(timestamps, since, lambda ts: ts))


class FrequencyLimiter:
    """
    Usage:
        limiter = FrequencyLimiter(stores)
        if await limiter.allowed(user_id, rule.id, rule.engagement_action.max_frequency):
            ...
    """

    def __init__(self, stores: Stores, clock: Clock | None = None) -> None:
        self.stores = stores
        self._clock = clock

    @property
    def clock(self) -> Clock:
        return self._clock or get_clock()

    async def recent_count(self, user_id: str, rule_id: str, window_seconds: float) -> int:
        since = self.clock.since(window_seconds)
        deliveries = await self.stores.deliveries.filter(
            lambda d: d.user_id == user_id and d.rule_id == rule_id
        )
        return count_since((d.created_at for d in deliveries), since)

    async def allowed(
        self,
        user_id: str,
        rule_id: str,
        max_frequency: MaxFrequency | None,
    ) -> bool:
        if max_frequency is None:
            return True
        window = period_seconds(max_frequency.period)
        if window is None:
            log.debug("frequency.unknown_period", rule_id=rule_id, period=max_frequency.period)
            return True
        count = await self.recent_count(user_id, rule_id, window)
        return count < max_frequency.limit


__all__ = ["FrequencyLimiter", "PERIOD_SECONDS", "period_seconds", "count_since", "within_window"]
