"""Bounded hand-off queue between the fetch and local processing pipelines."""

from __future__ import annotations

import asyncio


class HandoffQueue(asyncio.Queue):
    """``asyncio.Queue`` that can be closed and awaited for readiness.

    ``wait()`` returns once an item is available or the producer closed the
    queue, without consuming anything, so a consumer can wait on this queue
    and other sources at the same time.
    """

    def _init(self, maxsize: int) -> None:
        super()._init(maxsize)
        self._ready = asyncio.Event()
        self._closed = False

    def _put(self, item) -> None:
        super()._put(item)
        self._ready.set()

    def _get(self):
        item = super()._get()
        if not self._queue and not self._closed:
            self._ready.clear()
        return item

    def close(self) -> None:
        self._closed = True
        self._ready.set()

    @property
    def closed(self) -> bool:
        return self._closed

    def drained(self) -> bool:
        """Closed and empty: nothing more will ever come out."""
        return self._closed and self.empty()

    async def wait(self) -> None:
        await self._ready.wait()
