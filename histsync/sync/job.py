"""One sync run for one athlete.

A ``SyncJob`` moves through ``init -> activity-scan -> data-sync`` and ends in
``complete`` or ``error``.  The data-sync phase runs two cooperating tasks:

* the stream fetch pipeline walks activities that still owe a remote stage,
  newest first, gated by the shared rate limiter group.  Fetched and
  no-data activities are handed to the local pipeline through a bounded
  queue, which is closed when fetching ends.
* the local processing pipeline groups ready activities by their next
  eligible local stage and runs each group inline or through the stage's
  offload processor.  Batches start small and grow geometrically.

Cancellation is one ``asyncio.Event`` checked at every suspension point.
Once it is observed no further activity or stream records are written and
the loops return normally.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable

from histsync.errors import FetchError, ThrottledFetchError
from histsync.services.remote import RemoteClient
from histsync.services.store import Stores
from histsync.sync.base import ACTIVITY_LIST_VERSION, Activity, Athlete, Stream
from histsync.sync.config_loader import SyncConfig
from histsync.sync.counts import ActivityCounts, activity_counts, content_hash
from histsync.sync.discovery import PeerActivityDiscovery, SelfActivityDiscovery
from histsync.sync.events import Progress, RateLimited, StatusChanged, SyncEvent
from histsync.sync.manifest import LOCAL, REMOTE, ManifestRegistry, SyncStage
from histsync.sync.offload import OffloadProcessor, StageContext
from histsync.sync.queues import HandoffQueue
from histsync.sync.ratelimit import RateLimiterGroup
from histsync.sync.transport import retry_fetch

logger = logging.getLogger("histsync.sync.job")

UpdateAthlete = Callable[[int, dict[str, Any]], Awaitable[Any]]

_CANCELLED = object()


class JobStatus(str, Enum):
    INIT = "init"
    ACTIVITY_SCAN = "activity-scan"
    DATA_SYNC = "data-sync"
    ERROR = "error"
    COMPLETE = "complete"


@dataclass
class SyncOptions:
    """Knobs for one job run.

    Attributes:
        no_activity_scan:       Skip discovery.
        no_streams_fetch:       Skip the remote pipeline (local reprocessing only).
        force_activity_update:  Rescan and merge metadata of known activities.
        sync_hash:              Manifest hash recorded on success.
    """

    no_activity_scan: bool = False
    no_streams_fetch: bool = False
    force_activity_update: bool = False
    sync_hash: str | None = None


async def _first_completed(aws: Iterable[Awaitable[Any]]) -> None:
    tasks = [asyncio.ensure_future(x) for x in aws]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for t in tasks:
            if not t.done():
                t.cancel()


class SyncJob:
    """Discovery, stream fetch and local processing for one athlete."""

    def __init__(
        self,
        athlete: Athlete,
        *,
        is_self: bool,
        stores: Stores,
        registry: ManifestRegistry,
        client: RemoteClient,
        rate_limiters: RateLimiterGroup,
        config: SyncConfig,
        pool: Any = None,
        emit: Callable[[SyncEvent], None] | None = None,
        update_athlete: UpdateAthlete | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.athlete = athlete
        self.is_self = is_self
        self.stores = stores
        self.registry = registry
        self.client = client
        self.rate_limiters = rate_limiters
        self.config = config
        self.pool = pool
        self._emit = emit
        self._update_athlete = update_athlete
        self._clock = clock
        self._sleep = sleep
        self._cancel_event = asyncio.Event()
        self._queue = HandoffQueue(maxsize=config.pipeline.handoff_queue_size)
        self._task: asyncio.Task | None = None
        self.all_activities: dict[int, Activity] = {}
        self.counts: ActivityCounts | None = None
        self.status = JobStatus.INIT

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def run(self, options: SyncOptions | None = None) -> asyncio.Task:
        self._task = asyncio.create_task(self._run(options or SyncOptions()), name=f"sync-{self.athlete.id}")
        return self._task

    async def wait(self) -> None:
        """Wait for the job to end, re-raising its failure."""
        if self._task is not None:
            await self._task

    def cancel(self) -> None:
        self._cancel_event.set()

    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def emit(self, event: SyncEvent) -> None:
        if self._emit is not None:
            self._emit(event)

    def set_status(self, status: JobStatus) -> None:
        self.status = status
        self.emit(StatusChanged(athlete=self.athlete.id, status=status.value))

    async def _race_cancel(self, aw: Awaitable[Any]) -> bool:
        """Await ``aw`` unless cancellation comes first.  True if cancelled."""
        if self.cancelled():
            if asyncio.iscoroutine(aw):
                aw.close()
            return True
        task = asyncio.ensure_future(aw)
        cancel = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait({task, cancel}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel.cancel()
            if not task.done():
                task.cancel()
        if task.done() and not task.cancelled():
            task.result()
            return False
        return True

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _run(self, options: SyncOptions) -> None:
        try:
            if not options.no_activity_scan:
                self.set_status(JobStatus.ACTIVITY_SCAN)
                await self._scan(options)
            if not self.cancelled():
                self.set_status(JobStatus.DATA_SYNC)
                await self._sync_data(options)
        except Exception:
            self.set_status(JobStatus.ERROR)
            raise
        self.set_status(JobStatus.COMPLETE)

    async def _scan(self, options: SyncOptions) -> None:
        cls = SelfActivityDiscovery if self.is_self else PeerActivityDiscovery
        discovery = cls(
            self.client,
            self.stores,
            config=self.config.discovery,
            transport=self.config.transport,
            update_athlete=self._update_athlete,
            cancel_event=self._cancel_event,
            clock=self._clock,
            sleep=self._sleep,
        )
        await discovery.run(self.athlete, force_update=options.force_activity_update)
        if not self.cancelled() and self._update_athlete is not None:
            await self._update_athlete(
                self.athlete.id, {"last_sync_activity_list_version": ACTIVITY_LIST_VERSION}
            )

    async def _sync_data(self, options: SyncOptions) -> None:
        activities = await self.stores.activities.get_all_for_athlete(self.athlete.id)
        self.all_activities = {a.id: a for a in activities}
        now = self._clock()
        unfetched: list[Activity] = []
        local_ready: list[Activity] = []
        deferred = 0
        for a in activities:
            if self.registry.is_group_current(a, REMOTE):
                if not self.registry.is_group_current(a, LOCAL):
                    if self.registry.next_eligible_stage(a, LOCAL, now):
                        local_ready.append(a)
                    else:
                        deferred += 1
            elif self.registry.next_eligible_stage(a, REMOTE, now):
                unfetched.append(a)
            else:
                deferred += 1
        if deferred:
            logger.warning("Deferring sync of %d activities due to error backoff", deferred)

        tasks: list[asyncio.Task] = []
        if unfetched and not options.no_streams_fetch:
            tasks.append(asyncio.create_task(self._fetch_streams_worker(unfetched)))
        elif not local_ready:
            logger.debug("No activity sync required for: %s", self.athlete)
            return
        else:
            self._queue.close()
        tasks.append(asyncio.create_task(self._local_process_worker(local_ready)))
        try:
            await asyncio.gather(*tasks)
        finally:
            for t in tasks:
                if not t.done():
                    t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug("Activity sync completed for: %s", self.athlete)

    # ------------------------------------------------------------------
    # Stream fetch pipeline
    # ------------------------------------------------------------------

    async def _fetch_streams_worker(self, activities: list[Activity]) -> None:
        try:
            await self._fetch_streams_loop(activities)
        finally:
            self._queue.close()

    async def _fetch_streams_loop(self, activities: list[Activity]) -> None:
        activities.sort(key=lambda a: a.ts, reverse=True)  # newest -> oldest
        local_stages = self.registry.get_stages(LOCAL)
        for activity in activities:
            while not self.cancelled():
                stage = self.registry.next_eligible_stage(activity, REMOTE, self._clock())
                if stage is None:
                    break
                activity.begin_stage(stage)
                for m in local_stages:
                    activity.clear_sync_state(m)
                data: Any = None
                error: Exception | None = None
                try:
                    data = await self._fetch_streams(activity, stage)
                except Exception as exc:
                    # Often an activity that was made private.
                    logger.warning("Fetch streams error for %s (will retry later): %s", activity, exc)
                    error = exc
                if self.cancelled() or data is _CANCELLED:
                    logger.info("Sync streams cancelled for: %s", self.athlete)
                    return
                if error is not None:
                    activity.set_sync_error(stage, error, self._clock())
                elif data is None:
                    activity.set_sync_not_applicable(stage)
                else:
                    await self.stores.streams.put_many(
                        Stream(activity=activity.id, athlete=self.athlete.id, stream=name, data=values)
                        for name, values in data.items()
                        if isinstance(values, list)
                    )
                    activity.set_sync_success(stage)
                await self.stores.activities.put(activity)
                if error is not None:
                    break
            if self.cancelled():
                return
            if self.registry.is_group_current(activity, REMOTE):
                if await self._race_cancel(self._queue.put(activity)):
                    return
        logger.info("Completed streams fetch for: %s", self.athlete)

    async def _fetch_streams(self, activity: Activity, stage: SyncStage) -> Any:
        """Fetch one activity's stream bundle.

        Returns the stream dict, None when the remote has no streams, or the
        ``_CANCELLED`` marker.
        """
        params = {"stream_types[]": list(stage.data.get("streams") or ())}
        notice = self.config.pipeline.rate_limit_notice_seconds
        attempt = 0
        while True:
            attempt += 1
            impending = self.rate_limiters.will_suspend_for()
            if impending > notice:
                logger.info("Rate limited for %d minutes", round(impending / 60))
                for limiter in self.rate_limiters:
                    if limiter.will_suspend_for():
                        logger.debug("%s", limiter)
                self.emit(RateLimited(athlete=self.athlete.id, suspended=True, until=self._clock() + impending))
            if await self._race_cancel(self.rate_limiters.wait()):
                return _CANCELLED
            if impending > notice:
                self.emit(RateLimited(athlete=self.athlete.id, suspended=False))
            logger.debug("Fetching streams for: %s", activity)
            try:
                response = await retry_fetch(
                    self.client,
                    f"/activities/{activity.id}/streams",
                    params,
                    max_retries=self.config.transport.max_retries,
                    retry_delay=self.config.transport.retry_delay_seconds,
                    sleep=self._sleep,
                )
                return response.json()
            except ThrottledFetchError:
                delay = self.config.transport.throttle_delay_seconds * attempt
                logger.warning("Hit throttle limits: delaying next request for %ds", delay)
                if await self._race_cancel(self._sleep(delay)):
                    return _CANCELLED
                logger.info("Resuming after throttle period")
            except FetchError as exc:
                if exc.status == 404:
                    return None
                raise

    # ------------------------------------------------------------------
    # Local processing pipeline
    # ------------------------------------------------------------------

    async def _local_set_sync_error(self, activities: list[Activity], stage: SyncStage, exc: BaseException) -> None:
        logger.exception("Top level local processing error (%s) v%d", stage.name, stage.version, exc_info=exc)
        if self.cancelled():
            return
        now = self._clock()
        for a in activities:
            a.set_sync_error(stage, exc, now)
        await self.stores.activities.put_many(activities)

    async def _local_set_sync_done(self, activities: list[Activity], stage: SyncStage) -> None:
        # Units may flag failures with set_sync_error() but are not required
        # to report success; anything left unflagged is recorded as done.
        if self.cancelled():
            return
        for a in activities:
            if not a.has_sync_error(stage):
                a.set_sync_success(stage)
        await self.stores.activities.put_many(activities)

    async def _local_process_worker(self, initial: list[Activity]) -> None:
        offloaded: list[OffloadProcessor] = []
        try:
            await self._local_process_loop(initial, offloaded)
        finally:
            for proc in offloaded:
                proc.close()
            await asyncio.gather(*(proc.result() for proc in offloaded), return_exceptions=True)

    async def _local_process_loop(self, initial: list[Activity], offloaded: list[OffloadProcessor]) -> None:
        pipeline = self.config.pipeline
        batch_limit = pipeline.initial_batch_size
        backlog = deque(initial)
        batch: dict[int, Activity] = {}
        active: dict[str, OffloadProcessor] = {}
        attempted: dict[int, set[str]] = {}
        last_progress: str | None = None
        while not self.cancelled():
            for proc in list(offloaded):
                finished = proc.get_batch(batch_limit - len(batch))
                if finished:
                    for a in finished:
                        batch[a.id] = a
                    await self._local_set_sync_done(finished, proc.stage)
                if proc.done() and not proc.size:
                    try:
                        await proc.result()
                    except Exception as exc:
                        await self._local_set_sync_error(proc.pending, proc.stage, exc)
                    logger.debug("Offload processor finished: %s", proc.stage.name)
                    offloaded.remove(proc)
                    if active.get(proc.stage.qualifier) is proc:
                        del active[proc.stage.qualifier]
                if len(batch) >= batch_limit:
                    break
            while backlog and len(batch) < batch_limit:
                a = backlog.popleft()
                batch[a.id] = a
            while not self._queue.empty() and len(batch) < batch_limit:
                a = self._queue.get_nowait()
                batch[a.id] = a
            batch_limit = min(pipeline.max_batch_size, math.ceil(batch_limit * pipeline.batch_growth))
            if batch:
                await self._process_batch(batch, offloaded, active, attempted)
                progress = self._progress_counts()
                digest = content_hash(progress.as_dict())
                if digest != last_progress:
                    last_progress = digest
                    self.emit(Progress(athlete=self.athlete.id, counts=progress.as_dict()))
                continue
            if self._queue.drained() and not backlog and not offloaded:
                break
            waiters = [proc.wait() for proc in offloaded]
            if self._queue.closed:
                # No more incoming data; let offload processors run partial batches.
                for proc in offloaded:
                    proc.flush()
            else:
                waiters.append(self._queue.wait())
            await self._race_cancel(_first_completed(waiters))

    async def _process_batch(
        self,
        batch: dict[int, Activity],
        offloaded: list[OffloadProcessor],
        active: dict[str, OffloadProcessor],
        attempted: dict[int, set[str]],
    ) -> None:
        while batch and not self.cancelled():
            now = self._clock()
            groups: dict[str, tuple[SyncStage, list[Activity]]] = {}
            for a in list(batch.values()):
                done = attempted.setdefault(a.id, set())
                stage = self.registry.next_eligible_stage(a, LOCAL, now, skip=done)
                if stage is None:
                    del batch[a.id]
                    continue
                done.add(stage.qualifier)
                groups.setdefault(stage.qualifier, (stage, []))[1].append(a)
                a.begin_stage(stage)
            for stage, activities in groups.values():
                if self.cancelled():
                    return
                if stage.is_offloaded:
                    proc = active.get(stage.qualifier)
                    if proc is None or proc.done():
                        logger.info("Creating new offload processor: %s", stage.name)
                        proc = stage.unit(
                            stage=stage,
                            athlete=self.athlete,
                            stores=self.stores,
                            cancel_event=self._cancel_event,
                            pool=self.pool,
                            batch_size=self.config.pipeline.offload_batch_size,
                            clock=self._clock,
                        )
                        active[stage.qualifier] = proc
                        offloaded.append(proc)
                    await proc.put_incoming(activities)
                    for a in activities:
                        del batch[a.id]
                    logger.debug("%s: enqueued %d activities", stage.name, len(activities))
                else:
                    started = time.monotonic()
                    ctx = StageContext(
                        stage=stage,
                        athlete=self.athlete,
                        activities=activities,
                        stores=self.stores,
                        cancel_event=self._cancel_event,
                        pool=self.pool,
                        now=now,
                    )
                    try:
                        await stage.unit(ctx)
                    except Exception as exc:
                        await self._local_set_sync_error(activities, stage, exc)
                    else:
                        await self._local_set_sync_done(activities, stage)
                    logger.debug(
                        "%s: %.0fms for %d activities",
                        stage.name, (time.monotonic() - started) * 1000, len(activities),
                    )

    def _progress_counts(self) -> ActivityCounts:
        self.counts = activity_counts(self.all_activities.values(), self.registry)
        return self.counts
