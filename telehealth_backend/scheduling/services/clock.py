"""Time sources for the availability engine.

Services take a clock instead of calling ``timezone.now()`` directly so that
"past" slots and cache ages are deterministic under test.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta

from django.utils import timezone


class SystemClock:
    """Wall clock for instants, monotonic clock for cache ages."""

    def now(self) -> datetime:
        return timezone.now()

    def monotonic(self) -> float:
        return time.monotonic()


class FixedClock:
    """A clock that only moves when told to."""

    def __init__(self, now: datetime):
        if timezone.is_naive(now):
            raise ValueError("FixedClock needs an aware datetime")
        self._now = now
        self._monotonic = 0.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, **kwargs) -> None:
        delta = timedelta(**kwargs)
        self._now += delta
        self._monotonic += delta.total_seconds()
