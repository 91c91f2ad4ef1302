"""
decision_sdk.tier1_runtime.clock
──────────────────────────────────
Mockable time source. Frequency windows, timing conditions and conversion
timestamps all read the time through this module instead of datetime.now(),
so tests can freeze or advance it.

Also owns timestamp parsing: callers hand the core ISO-8601 strings, epoch
seconds or datetimes, and every comparison happens on aware UTC datetimes.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable


# ── Clock implementation ───────────────────────────────────────────────────

class Clock:
    """Mockable clock. Override now_fn to control time in tests."""

    def __init__(self, now_fn: Callable[[], datetime] | None = None) -> None:
        self._now_fn = now_fn or (lambda: datetime.now(tz=timezone.utc))

    def now(self) -> datetime:
        """Return the current UTC datetime."""
        return self._now_fn()

    def freeze(self, dt: datetime) -> "Clock":
        """Return a new Clock frozen at the given datetime."""
        frozen = ensure_utc(dt)
        return Clock(now_fn=lambda: frozen)

    def advance(self, seconds: float) -> "Clock":
        """Return a new Clock frozen *seconds* after this clock's current time."""
        base = self.now() + timedelta(seconds=seconds)
        return Clock(now_fn=lambda: base)

    def since(self, seconds: float) -> datetime:
        """Start of a lookback window of *seconds* ending now."""
        return self.now() - timedelta(seconds=seconds)

    def elapsed_seconds(self, anchor: datetime) -> float:
        """Seconds between *anchor* and now (negative if anchor is in the future)."""
        return (self.now() - ensure_utc(anchor)).total_seconds()


# ── Timestamp parsing ──────────────────────────────────────────────────────

def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """
    Parse a datetime, epoch seconds, or ISO-8601 string into an aware UTC datetime.
    Raises ValueError for anything else.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return ensure_utc(datetime.fromisoformat(text))
    raise ValueError(f"Not a timestamp: {value!r}")


# ── Module-level singleton ─────────────────────────────────────────────────

_clock = Clock()


def get_clock() -> Clock:
    """Return the global clock instance."""
    return _clock


def set_clock(clock: Clock) -> None:
    """Replace the global clock (use in tests)."""
    global _clock
    _clock = clock


def now() -> datetime:
    """Return the current UTC datetime."""
    return _clock.now()


__all__ = [
    "Clock", "get_clock", "set_clock", "now",
    "ensure_utc", "parse_timestamp",
]
