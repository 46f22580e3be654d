"""Process pool for CPU-bound stage work.

Workers are spawned lazily up to ``size``; callers beyond that wait for a
free slot.  Every call carries a monotonic ``call_id`` and all workers answer
on one shared response queue, which a reader thread drains and hands back to
the event loop.  Idle workers are stopped after ``idle_timeout`` seconds.

A worker process that dies mid-call is detected by the reader's liveness
check; its call fails with ``WorkerDiedError`` and the worker is never handed
out again.

Usage::

    pool = WorkerPool(size=4)
    result = await pool.execute("find-peaks", items, periods, distances)
    await pool.shutdown()
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import multiprocessing
import os
import queue
import threading
from dataclasses import dataclass, field
from typing import Any

from histsync.errors import WorkerDiedError, WorkerError, WorkerPoolClosedError
from histsync.workers.worker import worker_main

logger = logging.getLogger("histsync.workers.pool")


@dataclass(eq=False)
class _Worker:
    id: int
    process: Any
    requests: Any
    dead: bool = False
    calls: set[int] = field(default_factory=set)
    idle_handle: asyncio.TimerHandle | None = None

    def stop(self) -> None:
        if self.idle_handle is not None:
            self.idle_handle.cancel()
            self.idle_handle = None
        if not self.dead and self.process.is_alive():
            try:
                self.requests.put(None)
            except (OSError, ValueError):
                logger.debug("Worker %d request queue already closed", self.id)


class WorkerPool:
    """Spawned worker processes addressed by operation name.

    Attributes:
        size:           Maximum live workers (default ``2 × cpu_count``).
        idle_timeout:   Seconds an idle worker is kept before it is stopped.
        poll_interval:  Reader thread wakeup used for liveness checks.
    """

    def __init__(
        self,
        size: int | None = None,
        *,
        idle_timeout: float = 30.0,
        poll_interval: float = 0.5,
    ) -> None:
        self.size = size or 2 * (os.cpu_count() or 1)
        self.idle_timeout = idle_timeout
        self.poll_interval = poll_interval
        self._ctx = multiprocessing.get_context("spawn")
        self._responses = self._ctx.Queue()
        self._slots = asyncio.Semaphore(self.size)
        self._call_ids = itertools.count(1)
        self._worker_ids = itertools.count(1)
        self._workers: dict[int, _Worker] = {}
        self._idle: list[_Worker] = []
        self._calls: dict[int, tuple[asyncio.Future, _Worker]] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._reader: threading.Thread | None = None
        self._reader_stop = threading.Event()
        self._closed = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def live_workers(self) -> int:
        return sum(1 for w in self._workers.values() if not w.dead)

    @property
    def idle_workers(self) -> int:
        return len(self._idle)

    async def execute(self, operation: str, *args: Any) -> Any:
        """Run ``operation`` in a worker process and return its value.

        Raises:
            WorkerPoolClosedError: If the pool is shut down.
            WorkerDiedError:       If the worker process exits mid-call.
            WorkerError:           If the operation raised in the worker.
        """
        if self._closed:
            raise WorkerPoolClosedError("Worker pool is closed")
        self._ensure_reader()
        async with self._slots:
            if self._closed:
                raise WorkerPoolClosedError("Worker pool is closed")
            worker = self._acquire()
            call_id = next(self._call_ids)
            future = self._loop.create_future()
            self._calls[call_id] = (future, worker)
            worker.calls.add(call_id)
            try:
                worker.requests.put({"operation": operation, "args": args, "call_id": call_id})
                return await future
            finally:
                self._calls.pop(call_id, None)
                worker.calls.discard(call_id)
                self._release(worker)

    async def shutdown(self) -> None:
        """Fail outstanding calls and stop every worker and the reader."""
        if self._closed:
            return
        self._closed = True
        logger.info("Shutting down worker pool (%d workers)", len(self._workers))
        for future, _ in self._calls.values():
            if not future.done():
                future.set_exception(WorkerPoolClosedError("Worker pool is closed"))
        workers = list(self._workers.values())
        self._workers.clear()
        self._idle.clear()
        for worker in workers:
            worker.stop()
        loop = asyncio.get_running_loop()
        for worker in workers:
            await loop.run_in_executor(None, self._join_process, worker)
        self._reader_stop.set()
        if self._reader is not None:
            self._responses.put(None)
            await loop.run_in_executor(None, self._reader.join)
            self._reader = None

    # ------------------------------------------------------------------
    # Worker management (event loop thread only)
    # ------------------------------------------------------------------

    def _ensure_reader(self) -> None:
        if self._reader is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._reader = threading.Thread(
            target=self._read_responses, name="histsync-pool-reader", daemon=True
        )
        self._reader.start()

    def _spawn(self) -> _Worker:
        worker_id = next(self._worker_ids)
        requests = self._ctx.Queue()
        process = self._ctx.Process(
            target=worker_main,
            args=(worker_id, requests, self._responses),
            name=f"histsync-worker-{worker_id}",
            daemon=True,
        )
        process.start()
        worker = _Worker(id=worker_id, process=process, requests=requests)
        self._workers[worker_id] = worker
        logger.debug("Spawned worker %d (pid %s)", worker_id, process.pid)
        return worker

    def _acquire(self) -> _Worker:
        while self._idle:
            worker = self._idle.pop()
            if worker.idle_handle is not None:
                worker.idle_handle.cancel()
                worker.idle_handle = None
            if not worker.dead and worker.process.is_alive():
                return worker
            self._discard(worker)
        return self._spawn()

    def _release(self, worker: _Worker) -> None:
        if worker.dead or self._closed:
            self._discard(worker)
            return
        self._idle.append(worker)
        worker.idle_handle = self._loop.call_later(self.idle_timeout, self._reap, worker)

    def _reap(self, worker: _Worker) -> None:
        if worker not in self._idle:
            return
        logger.debug("Stopping idle worker %d", worker.id)
        self._idle.remove(worker)
        worker.idle_handle = None
        self._discard(worker)

    def _discard(self, worker: _Worker) -> None:
        self._workers.pop(worker.id, None)
        worker.stop()
        self._loop.run_in_executor(None, self._join_process, worker)

    @staticmethod
    def _join_process(worker: _Worker, timeout: float = 5.0) -> None:
        worker.process.join(timeout)
        if worker.process.is_alive():
            logger.warning("Worker %d did not exit; terminating", worker.id)
            worker.process.terminate()
            worker.process.join(timeout)

    def _deliver(self, message: dict[str, Any]) -> None:
        entry = self._calls.get(message.get("call_id"))
        if entry is None:
            logger.debug("Ignoring response for unknown call: %s", message.get("call_id"))
            return
        future, _ = entry
        if future.done():
            return
        if message.get("success"):
            future.set_result(message.get("value"))
        else:
            future.set_exception(WorkerError(message.get("error") or "Worker operation failed"))

    def _check_workers(self) -> None:
        for worker in list(self._workers.values()):
            if worker.dead or worker.process.is_alive():
                continue
            worker.dead = True
            logger.error("Worker %d died (exit code %s)", worker.id, worker.process.exitcode)
            for call_id in list(worker.calls):
                entry = self._calls.get(call_id)
                if entry is not None and not entry[0].done():
                    entry[0].set_exception(
                        WorkerDiedError(f"Worker {worker.id} died during call {call_id}")
                    )
            if worker in self._idle:
                self._idle.remove(worker)
                self._discard(worker)

    # ------------------------------------------------------------------
    # Reader thread
    # ------------------------------------------------------------------

    def _read_responses(self) -> None:
        while not self._reader_stop.is_set():
            try:
                message = self._responses.get(timeout=self.poll_interval)
            except queue.Empty:
                callback, args = self._check_workers, ()
            except (EOFError, OSError):
                logger.warning("Worker response queue closed")
                return
            else:
                if message is None:
                    return
                callback, args = self._deliver, (message,)
            try:
                self._loop.call_soon_threadsafe(callback, *args)
            except RuntimeError:
                # Event loop closed underneath us.
                return
