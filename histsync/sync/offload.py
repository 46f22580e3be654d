"""Stage unit contracts for local processing.

A local stage's ``unit`` is either

* an async callable taking a ``StageContext``; the pipeline awaits it for
  each group of ready activities, or
* an ``OffloadProcessor`` subclass; the pipeline creates one long-lived
  instance per job, feeds it with ``put_incoming`` and collects finished
  activities with ``get_batch``.  Work inside ``process_batch`` usually goes
  to the worker pool.

In both cases a unit marks failures with ``activity.set_sync_error``; any
activity it leaves unflagged is recorded as a success.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from histsync.sync.base import Activity, Athlete

if TYPE_CHECKING:
    from histsync.services.store import Stores
    from histsync.sync.manifest import SyncStage
    from histsync.workers.pool import WorkerPool

logger = logging.getLogger("histsync.sync.offload")


@dataclass
class StageContext:
    """Everything an inline stage unit may touch.

    Attributes:
        stage:         The stage being run.
        athlete:       Owning athlete snapshot.
        activities:    Activities to process; mutate in place.
        stores:        Record stores, for reading streams and writing derived records.
        cancel_event:  Job cancellation signal.
        pool:          Worker pool, if the process has one.
        now:           Clock reading used for error timestamps.
    """

    stage: SyncStage
    athlete: Athlete
    activities: list[Activity]
    stores: Stores
    cancel_event: asyncio.Event
    pool: WorkerPool | None = None
    now: float = field(default_factory=time.time)


class OffloadProcessor:
    """Batching accumulator that runs a stage outside the pipeline loop.

    Incoming activities are processed ``batch_size`` at a time.  A partial
    batch only runs after ``flush()``, which the pipeline calls once no more
    data can arrive.  After a flush the processor drains what it holds and
    finishes.

    Subclasses implement ``process_batch``.
    """

    def __init__(
        self,
        *,
        stage: SyncStage,
        athlete: Athlete,
        stores: Stores,
        cancel_event: asyncio.Event,
        pool: WorkerPool | None = None,
        batch_size: int = 50,
        clock: Any = time.time,
    ) -> None:
        self.stage = stage
        self.athlete = athlete
        self.stores = stores
        self.cancel_event = cancel_event
        self.pool = pool
        self.batch_size = max(1, batch_size)
        self.clock = clock
        self._incoming: list[Activity] = []
        self._finished: list[Activity] = []
        self._pending: dict[int, Activity] = {}
        self._flushing = False
        self._wake = asyncio.Event()
        self._ready = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"offload-{stage.qualifier}")

    # ------------------------------------------------------------------
    # Pipeline side
    # ------------------------------------------------------------------

    async def put_incoming(self, activities: list[Activity]) -> None:
        for a in activities:
            self._incoming.append(a)
            self._pending[a.id] = a
        self._wake.set()

    def get_batch(self, limit: int) -> list[Activity]:
        """Pop up to ``limit`` finished activities."""
        if limit <= 0:
            return []
        batch = self._finished[:limit]
        del self._finished[:limit]
        for a in batch:
            self._pending.pop(a.id, None)
        if not self._finished and not self.done():
            self._ready.clear()
        return batch

    def flush(self) -> None:
        self._flushing = True
        self._wake.set()

    def done(self) -> bool:
        return self._task.done()

    def close(self) -> None:
        """Stop processing; held activities stay pending."""
        if not self._task.done():
            self._task.cancel()

    @property
    def size(self) -> int:
        return len(self._finished)

    @property
    def pending(self) -> list[Activity]:
        """Activities accepted but not yet handed back."""
        return list(self._pending.values())

    async def wait(self) -> None:
        """Block until finished activities are available or the processor ends."""
        await self._ready.wait()

    async def result(self) -> None:
        """Await the processor task, re-raising its failure."""
        await self._task

    # ------------------------------------------------------------------
    # Processing side
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        try:
            while not self.cancel_event.is_set():
                if len(self._incoming) >= self.batch_size or (self._flushing and self._incoming):
                    batch = self._incoming[: self.batch_size]
                    del self._incoming[: self.batch_size]
                    await self.process_batch(batch)
                    self._finished.extend(batch)
                    self._ready.set()
                    continue
                if self._flushing:
                    break
                self._wake.clear()
                await self._wait_for_wake()
        finally:
            self._ready.set()

    async def _wait_for_wake(self) -> None:
        wake = asyncio.ensure_future(self._wake.wait())
        cancel = asyncio.ensure_future(self.cancel_event.wait())
        try:
            await asyncio.wait({wake, cancel}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            wake.cancel()
            cancel.cancel()

    async def process_batch(self, activities: list[Activity]) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.stage.qualifier} pending={len(self._pending)}>"
