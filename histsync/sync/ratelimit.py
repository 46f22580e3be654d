"""Composite sliding-window rate limiting for remote stream fetches.

A ``RateLimiter`` keeps the timestamps of reservations made inside its
window.  A ``RateLimiterGroup`` only grants a reservation when every member
would allow one more, so per-minute, per-hour and per-day quotas all hold at
once.  Ledgers are written to ``StateStorage`` after every reservation and
reloaded at startup, so a restart never hands out a fresh quota early.

Usage::

    group = build_rate_limiter_group(config.rate_limits, storage)
    await group.load()
    await group.wait()        # suspends until all windows allow one more
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Iterator

from histsync.services.state import StateStorage

if TYPE_CHECKING:
    from histsync.sync.config_loader import RateLimitConfig

logger = logging.getLogger("histsync.sync.ratelimit")

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]


class RateLimiter:
    """At most ``limit`` reservations in any ``period`` seconds.

    With ``spread`` enabled reservations are also paced at least
    ``period / limit`` apart, instead of allowing the full quota as a burst.
    """

    def __init__(
        self,
        label: str,
        *,
        period: float,
        limit: int,
        spread: bool = False,
        storage: StateStorage | None = None,
        clock: Clock = time.time,
    ) -> None:
        if period <= 0 or limit <= 0:
            raise ValueError(f"{label}: period and limit must be positive")
        self.label = label
        self.period = float(period)
        self.limit = int(limit)
        self.spread = spread
        self.storage = storage
        self.clock = clock
        self._events: list[float] = []

    @property
    def storage_key(self) -> str:
        return f"hist-rate-limiter-{self.label}"

    @property
    def events(self) -> list[float]:
        return list(self._events)

    async def load(self) -> None:
        """Restore the ledger; a missing or unreadable one starts empty."""
        self._events = []
        if self.storage is None:
            return
        try:
            state = await self.storage.get(self.storage_key)
            if state is None:
                return
            self._events = sorted(float(x) for x in state["events"])
        except (ValueError, TypeError, KeyError, OSError) as exc:
            logger.warning("Discarding unreadable rate limiter state for %s: %s", self.label, exc)
            self._events = []
            return
        self._cleanup(self.clock())
        logger.debug("Loaded %s with %d recent events", self.label, len(self._events))

    async def save(self) -> None:
        if self.storage is not None:
            await self.storage.set(
                self.storage_key, {"label": self.label, "events": self._events}
            )

    def _cleanup(self, now: float) -> None:
        cutoff = now - self.period
        self._events = [t for t in self._events if t > cutoff]

    def will_suspend_for(self) -> float:
        """Seconds until one more reservation would be allowed (0 = now)."""
        now = self.clock()
        self._cleanup(now)
        wait = 0.0
        if len(self._events) >= self.limit:
            wait = self._events[-self.limit] + self.period - now
        if self.spread and self._events:
            wait = max(wait, self._events[-1] + self.period / self.limit - now)
        return max(wait, 0.0)

    def reserve(self) -> float:
        now = self.clock()
        self._cleanup(now)
        self._events.append(now)
        return now

    async def increment(self) -> None:
        self.reserve()
        await self.save()

    def __str__(self) -> str:
        return (
            f"RateLimiter<{self.label}> [{len(self._events)}/{self.limit} per {self.period:g}s"
            f"{', spread' if self.spread else ''}]"
        )


class RateLimiterGroup:
    """All member limiters must permit a reservation before it is granted."""

    def __init__(self, limiters: Iterable[RateLimiter] = (), *, sleep: Sleep = asyncio.sleep) -> None:
        self._limiters: list[RateLimiter] = list(limiters)
        self._sleep = sleep
        self._lock = asyncio.Lock()

    def add(self, limiter: RateLimiter) -> None:
        self._limiters.append(limiter)

    def __iter__(self) -> Iterator[RateLimiter]:
        return iter(self._limiters)

    def __len__(self) -> int:
        return len(self._limiters)

    async def load(self) -> None:
        for limiter in self._limiters:
            await limiter.load()

    def will_suspend_for(self) -> float:
        return max((x.will_suspend_for() for x in self._limiters), default=0.0)

    def suspended(self) -> bool:
        return self.will_suspend_for() > 0

    def resumes(self) -> float | None:
        """Epoch seconds when a suspended group next allows a reservation."""
        delay = self.will_suspend_for()
        if not delay or not self._limiters:
            return None
        return self._limiters[0].clock() + delay

    async def wait(self) -> None:
        """Suspend until every limiter allows one more, then reserve it.

        The check and the reservation happen under one lock; sleeping happens
        outside it so other waiters can re-check as time passes.
        """
        while True:
            async with self._lock:
                delay = self.will_suspend_for()
                if delay <= 0:
                    for limiter in self._limiters:
                        limiter.reserve()
                    for limiter in self._limiters:
                        await limiter.save()
                    return
            logger.debug("Rate limited for %.1fs", delay)
            await self._sleep(delay)

    async def increment(self) -> None:
        """Record usage made outside ``wait()`` (e.g. by another client)."""
        async with self._lock:
            for limiter in self._limiters:
                limiter.reserve()
            for limiter in self._limiters:
                await limiter.save()


def build_rate_limiter_group(
    configs: Iterable[RateLimitConfig],
    storage: StateStorage | None = None,
    *,
    clock: Clock = time.time,
    sleep: Sleep = asyncio.sleep,
) -> RateLimiterGroup:
    """Build the stream fetch limiter group from config entries."""
    return RateLimiterGroup(
        (
            RateLimiter(
                c.label,
                period=c.period_seconds,
                limit=c.limit,
                spread=c.spread,
                storage=storage,
                clock=clock,
            )
            for c in configs
        ),
        sleep=sleep,
    )
