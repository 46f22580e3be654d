"""Typed sync notifications and the channel that delivers them.

Jobs and the manager publish ``SyncEvent`` instances; API handlers and tests
subscribe per athlete and iterate them asynchronously.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar

logger = logging.getLogger("histsync.sync.events")


@dataclass(frozen=True)
class SyncEvent:
    athlete: int

    kind: ClassVar[str] = "event"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, **asdict(self)}


@dataclass(frozen=True)
class StatusChanged(SyncEvent):
    status: str
    kind: ClassVar[str] = "status"


@dataclass(frozen=True)
class Progress(SyncEvent):
    counts: dict[str, int] = field(default_factory=dict)
    kind: ClassVar[str] = "progress"


@dataclass(frozen=True)
class RateLimited(SyncEvent):
    suspended: bool
    until: float | None = None
    kind: ClassVar[str] = "rate-limited"


@dataclass(frozen=True)
class SyncFailed(SyncEvent):
    error: str
    kind: ClassVar[str] = "error"


@dataclass(frozen=True)
class ActiveChanged(SyncEvent):
    active: bool
    kind: ClassVar[str] = "active"


@dataclass(frozen=True)
class AthleteEnabled(SyncEvent):
    kind: ClassVar[str] = "enable"


@dataclass(frozen=True)
class AthleteDisabled(SyncEvent):
    kind: ClassVar[str] = "disable"


class Subscription:
    """Async iterator over events for one athlete (or all when None)."""

    def __init__(self, channel: EventChannel, athlete: int | None) -> None:
        self.athlete = athlete
        self._channel = channel
        self._queue: asyncio.Queue[SyncEvent] = asyncio.Queue()

    def matches(self, event: SyncEvent) -> bool:
        return self.athlete is None or event.athlete == self.athlete

    def deliver(self, event: SyncEvent) -> None:
        self._queue.put_nowait(event)

    async def get(self) -> SyncEvent:
        return await self._queue.get()

    def close(self) -> None:
        self._channel.unsubscribe(self)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> SyncEvent:
        return await self._queue.get()

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class EventChannel:
    """Fan-out of published events to every matching subscription."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(self, athlete: int | None = None) -> Subscription:
        sub = Subscription(self, athlete)
        self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def publish(self, event: SyncEvent) -> None:
        logger.debug("event %s athlete=%s", event.kind, event.athlete)
        for sub in list(self._subscriptions):
            if sub.matches(event):
                sub.deliver(event)
