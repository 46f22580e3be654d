"""Tests for the spawned worker pool.

These start real worker processes, so each test shuts its pool down.
"""

from __future__ import annotations

import asyncio

import pytest

from histsync.errors import WorkerDiedError, WorkerError, WorkerPoolClosedError
from histsync.workers.pool import WorkerPool
from histsync.workers.worker import OPERATIONS, ping

from histsync.tests.conftest import make_streams


class TestWorkerOperations:
    """The operation table runs in-process too."""

    def test_ping(self) -> None:
        assert ping() == "pong"

    def test_find_peaks_registered(self) -> None:
        result = OPERATIONS["find-peaks"](
            [{"id": 1, "ts": 0, "basetype": "run", "streams": make_streams()}], [60], [1000]
        )
        assert result["errors"] == []
        assert {p["type"] for p in result["peaks"]} == {"hr", "pace"}


class TestWorkerPool:
    """Tests for WorkerPool.execute() and its failure modes."""

    @pytest.mark.asyncio
    async def test_ping_roundtrip(self) -> None:
        pool = WorkerPool(size=2, poll_interval=0.1)
        try:
            assert await pool.execute("ping") == "pong"
            results = await asyncio.gather(*(pool.execute("ping", 0.1) for _ in range(4)))
            assert results == ["pong"] * 4
            assert pool.live_workers <= 2
            assert pool.idle_workers >= 1
        finally:
            await pool.shutdown()

    @pytest.mark.asyncio
    async def test_operation_error(self) -> None:
        pool = WorkerPool(size=1, poll_interval=0.1)
        try:
            with pytest.raises(WorkerError) as info:
                await pool.execute("no-such-operation")
            assert "KeyError" in str(info.value)
            # the worker survives an operation error
            assert await pool.execute("ping") == "pong"
        finally:
            await pool.shutdown()

    @pytest.mark.asyncio
    async def test_worker_death_fails_call(self) -> None:
        pool = WorkerPool(size=1, poll_interval=0.1)
        try:
            call = asyncio.create_task(pool.execute("ping", 5))
            for _ in range(100):
                if pool._workers:
                    break
                await asyncio.sleep(0.05)
            worker = next(iter(pool._workers.values()))
            while not worker.process.is_alive():
                await asyncio.sleep(0.05)
            worker.process.kill()
            with pytest.raises(WorkerDiedError):
                await asyncio.wait_for(call, timeout=10)
            # a replacement worker is spawned for the next call
            assert await pool.execute("ping") == "pong"
        finally:
            await pool.shutdown()

    @pytest.mark.asyncio
    async def test_closed_pool_rejects_calls(self) -> None:
        pool = WorkerPool(size=1)
        await pool.shutdown()
        assert pool.closed
        with pytest.raises(WorkerPoolClosedError):
            await pool.execute("ping")

    @pytest.mark.asyncio
    async def test_idle_workers_are_reaped(self) -> None:
        pool = WorkerPool(size=1, idle_timeout=0.2, poll_interval=0.1)
        try:
            await pool.execute("ping")
            assert pool.idle_workers == 1
            await asyncio.sleep(0.5)
            assert pool.idle_workers == 0
            assert pool.live_workers == 0
        finally:
            await pool.shutdown()
