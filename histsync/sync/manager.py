"""Multi-athlete sync scheduling.

The ``SyncManager`` owns at most one ``SyncJob`` per athlete.  Its refresh
loop starts a job for every enabled, idle athlete that is due:

1. a refresh was requested explicitly,
2. the manifest version hash differs from the athlete's last successful sync,
3. the activity list format changed (forces a metadata rescan), or
4. the last sync is older than the refresh interval.

After a failed job only an explicit request starts a new one before the
post-error backoff expires.

Jobs of different athletes run concurrently; they share the stream rate
limiter group and the worker pool.  Athlete records are only written under
one lock, as a read-modify-write of the changed fields, so concurrent job
completions never lose each other's updates.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, fields
from typing import Any, Awaitable, Callable, Iterable

from histsync.errors import (
    ActivityNotFoundError,
    AthleteNotFoundError,
    SyncDisabledError,
    SyncJobError,
    UnknownStageError,
)
from histsync.processing.peaks import PEAK_TYPES
from histsync.services.remote import RemoteClient
from histsync.services.store import Stores
from histsync.sync.base import ACTIVITY_LIST_VERSION, Activity, Athlete, HistoryValue, Peak
from histsync.sync.config_loader import SyncConfig
from histsync.sync.counts import ActivityCounts, activity_counts
from histsync.sync.events import (
    ActiveChanged,
    AthleteDisabled,
    AthleteEnabled,
    EventChannel,
    SyncEvent,
    SyncFailed,
)
from histsync.sync.job import SyncJob, SyncOptions
from histsync.sync.maintenance import IntegrityReport, integrity_check
from histsync.sync.manifest import GROUPS, LOCAL, ManifestRegistry
from histsync.sync.ratelimit import RateLimiterGroup

logger = logging.getLogger("histsync.sync.manager")

_OPTION_NAMES = {f.name for f in fields(SyncOptions)} - {"sync_hash"}
_ATHLETE_FIELDS = {f.name for f in fields(Athlete)} - {"id"}


@dataclass
class SyncStatus:
    """Live view of one athlete's sync.

    Attributes:
        athlete:                  Athlete id.
        active:                   A job is running.
        status:                   Job status of the running (or last) job.
        error:                    Error message of the last failed job.
        rate_limiter_suspended:   Stream fetches are currently held back.
        rate_limiter_resumes:     Epoch seconds fetching resumes, when suspended.
        last_sync:                Epoch seconds of the last finished job.
        next_sync:                Earliest scheduled refresh, epoch seconds.
    """

    athlete: int
    active: bool = False
    status: str | None = None
    error: str | None = None
    rate_limiter_suspended: bool = False
    rate_limiter_resumes: float | None = None
    last_sync: float = 0.0
    next_sync: float | None = None


class SyncManager:
    """Schedules sync jobs for every enabled athlete."""

    def __init__(
        self,
        *,
        stores: Stores,
        registry: ManifestRegistry,
        client: RemoteClient,
        rate_limiters: RateLimiterGroup,
        config: SyncConfig,
        current_athlete: int | None = None,
        pool: Any = None,
        events: EventChannel | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.stores = stores
        self.registry = registry
        self.client = client
        self.rate_limiters = rate_limiters
        self.config = config
        self.current_athlete = current_athlete
        self.pool = pool
        self.events = events or EventChannel()
        self.refresh_interval = config.manager.refresh_interval_seconds
        self.refresh_error_backoff = config.manager.refresh_error_backoff_seconds
        self.active_jobs: dict[int, SyncJob] = {}
        self._job_tasks: dict[int, asyncio.Task] = {}
        self._state: dict[int, SyncStatus] = {}
        self._clock = clock
        self._sleep = sleep
        self._stopping = False
        self._athlete_lock = asyncio.Lock()
        self._refresh_requests: dict[int, dict[str, Any]] = {}
        self._refresh_event = asyncio.Event()
        self._loop_task: asyncio.Task | None = None
        self._sync_hash: str | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def sync_hash(self) -> str:
        if self._sync_hash is None:
            self._sync_hash = self.registry.version_hash()
        return self._sync_hash

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        """Freeze the manifest and start the refresh loop."""
        self.registry.freeze()
        self._sync_hash = self.registry.version_hash()
        logger.info("Starting sync manager (current athlete: %s)", self.current_athlete)
        self._loop_task = asyncio.create_task(self.refresh_loop(), name="sync-manager")

    def stop(self) -> None:
        self._stopping = True
        for job in self.active_jobs.values():
            job.cancel()
        self._refresh_event.set()

    async def join(self) -> None:
        await asyncio.gather(*self._job_tasks.values(), return_exceptions=True)
        if self._loop_task is not None:
            await self._loop_task

    def emit(self, event: SyncEvent) -> None:
        state = self._state.setdefault(event.athlete, SyncStatus(athlete=event.athlete))
        kind = event.kind
        if kind == "active":
            state.active = event.active
            if event.active:
                state.error = None
        elif kind == "status":
            state.status = event.status
        elif kind == "error":
            state.error = event.error
        self.events.publish(event)

    # ------------------------------------------------------------------
    # Refresh loop
    # ------------------------------------------------------------------

    async def _wait_refresh(self, timeout: float | None) -> None:
        waiter = asyncio.ensure_future(self._refresh_event.wait())
        tasks = {waiter}
        if timeout is not None:
            tasks.add(asyncio.ensure_future(self._sleep(max(timeout, 0.0))))
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in tasks:
                t.cancel()

    async def refresh_loop(self) -> None:
        error_backoff = self.config.manager.loop_error_backoff_seconds
        while not self._stopping:
            try:
                await self._refresh()
            except Exception:
                logger.exception("Sync manager refresh failed")
                error_backoff *= 1.5
                await self._sleep(error_backoff)
            if self._stopping:
                break
            self._refresh_event.clear()
            enabled = await self.stores.athletes.get_enabled()
            now = self._clock()
            due = [self.next_due(a) for a in enabled if not self.is_active_sync(a.id)]
            if not due:
                logger.debug("No idle athletes enabled for sync")
                await self._wait_refresh(None)
            else:
                deadline = min(due) - now
                logger.debug("Next sync manager refresh in %d seconds", deadline)
                await self._wait_refresh(deadline)
        logger.info("Sync manager stopped")

    def _deferred_until(self, athlete: Athlete) -> float:
        if not athlete.last_sync_error:
            return 0.0
        backoff = min(
            self.refresh_error_backoff * max(athlete.sync_error_count, 1),
            self.refresh_interval,
        )
        return athlete.last_sync_error + backoff

    def _is_deferred(self, athlete: Athlete, now: float) -> bool:
        return now < self._deferred_until(athlete)

    def _is_stale(self, athlete: Athlete) -> bool:
        return (
            athlete.last_sync_version_hash != self.sync_hash
            or athlete.last_sync_activity_list_version != ACTIVITY_LIST_VERSION
        )

    def next_due(self, athlete: Athlete) -> float:
        """Epoch seconds at which an idle athlete next becomes due."""
        deferred = self._deferred_until(athlete)
        if self._is_stale(athlete):
            return deferred
        return max(athlete.last_sync + self.refresh_interval, deferred)

    def should_sync(self, athlete: Athlete, now: float) -> bool:
        """Explicit refresh requests bypass the post-error backoff; nothing else does."""
        if athlete.id in self._refresh_requests:
            return True
        if self._is_deferred(athlete, now):
            return False
        return self._is_stale(athlete) or now - athlete.last_sync > self.refresh_interval

    async def _refresh(self) -> None:
        now = self._clock()
        for athlete in await self.stores.athletes.get_enabled():
            if self.is_active_sync(athlete.id) or not self.should_sync(athlete, now):
                continue
            options = SyncOptions(
                force_activity_update=athlete.last_sync_activity_list_version != ACTIVITY_LIST_VERSION,
                sync_hash=self.sync_hash,
            )
            for key, value in self._refresh_requests.pop(athlete.id, {}).items():
                setattr(options, key, value)
            self.run_sync_job(athlete, options)
        # requests for athletes that are no longer enabled are dropped
        for athlete_id in list(self._refresh_requests):
            if not self.is_active_sync(athlete_id):
                athlete = await self.stores.athletes.get(athlete_id)
                if athlete is None or not athlete.sync_enabled:
                    del self._refresh_requests[athlete_id]

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def is_active_sync(self, athlete_id: int) -> bool:
        return athlete_id in self.active_jobs

    def run_sync_job(self, athlete: Athlete, options: SyncOptions) -> asyncio.Task:
        logger.debug("Starting sync job for: %s", athlete)
        job = SyncJob(
            athlete,
            is_self=athlete.id == self.current_athlete,
            stores=self.stores,
            registry=self.registry,
            client=self.client,
            rate_limiters=self.rate_limiters,
            config=self.config,
            pool=self.pool,
            emit=self.emit,
            update_athlete=self.update_athlete,
            clock=self._clock,
            sleep=self._sleep,
        )
        self.active_jobs[athlete.id] = job
        self.emit(ActiveChanged(athlete=athlete.id, active=True))
        task = asyncio.create_task(self._run_sync_job(job, options), name=f"sync-job-{athlete.id}")
        self._job_tasks[athlete.id] = task
        return task

    async def _run_sync_job(self, job: SyncJob, options: SyncOptions) -> None:
        athlete_id = job.athlete.id
        started = time.monotonic()
        updates: dict[str, Any] = {}
        failed = False
        job.run(options)
        try:
            await job.wait()
            if not job.cancelled():
                updates["last_sync_version_hash"] = options.sync_hash
                updates["sync_error_count"] = 0
                updates["last_sync_error"] = 0.0
        except Exception as exc:
            logger.exception("Sync job failed for athlete %s", athlete_id)
            failed = True
            updates["last_sync_error"] = self._clock()
            self.emit(SyncFailed(athlete=athlete_id, error=str(exc) or type(exc).__name__))
        finally:
            updates["last_sync"] = self._clock()
            try:
                await self._record_job_result(athlete_id, updates, failed)
            except AthleteNotFoundError:
                logger.warning("Athlete %s was removed during sync", athlete_id)
            self.active_jobs.pop(athlete_id, None)
            self._job_tasks.pop(athlete_id, None)
            self._refresh_event.set()
            self.emit(ActiveChanged(athlete=athlete_id, active=False))
            logger.debug("Sync completed in %.0fms for: %s", (time.monotonic() - started) * 1000, athlete_id)

    async def _record_job_result(self, athlete_id: int, updates: dict[str, Any], failed: bool) -> None:
        async with self._athlete_lock:
            athlete = await self.stores.athletes.get(athlete_id)
            if athlete is None:
                raise AthleteNotFoundError(athlete_id)
            for key, value in updates.items():
                setattr(athlete, key, value)
            if failed:
                athlete.sync_error_count += 1
            await self.stores.athletes.put(athlete)

    # ------------------------------------------------------------------
    # Athlete control
    # ------------------------------------------------------------------

    async def get_athlete(self, athlete_id: int) -> Athlete:
        athlete = await self.stores.athletes.get(athlete_id)
        if athlete is None:
            raise AthleteNotFoundError(athlete_id)
        return athlete

    async def add_athlete(self, athlete_id: int, *, name: str, gender: str, **data: Any) -> Athlete:
        """Create an athlete, or merge ``data`` into an existing one."""
        if not athlete_id or not name or not gender:
            raise TypeError("id, gender and name values are required")
        async with self._athlete_lock:
            athlete = await self.stores.athletes.get(athlete_id)
            if athlete is None:
                athlete = Athlete(id=athlete_id)
            self._apply(athlete, {"name": name, "gender": gender, **data})
            await self.stores.athletes.put(athlete)
        return athlete

    @staticmethod
    def _apply(athlete: Athlete, updates: dict[str, Any]) -> None:
        unknown = set(updates) - _ATHLETE_FIELDS
        if unknown:
            raise TypeError(f"Unknown athlete fields: {sorted(unknown)}")
        for key, value in updates.items():
            setattr(athlete, key, value)

    async def update_athlete(self, athlete_id: int, updates: dict[str, Any]) -> Athlete:
        """Read-modify-write of the given fields under the athlete lock."""
        if not athlete_id:
            raise TypeError("Athlete ID arg required")
        async with self._athlete_lock:
            athlete = await self.stores.athletes.get(athlete_id)
            if athlete is None:
                raise AthleteNotFoundError(athlete_id)
            self._apply(athlete, updates)
            await self.stores.athletes.put(athlete)
        return athlete

    async def enable_athlete(self, athlete_id: int) -> Athlete:
        athlete = await self.update_athlete(athlete_id, {
            "sync_enabled": True,
            "last_sync": 0.0,
            "last_sync_error": 0.0,
            "sync_error_count": 0,
            "last_sync_activity_list_version": None,
        })
        self._refresh_event.set()
        self.emit(AthleteEnabled(athlete=athlete_id))
        return athlete

    async def disable_athlete(self, athlete_id: int) -> Athlete:
        athlete = await self.update_athlete(athlete_id, {"sync_enabled": False})
        job = self.active_jobs.get(athlete_id)
        if job is not None:
            job.cancel()
        self._refresh_requests.pop(athlete_id, None)
        self._refresh_event.set()
        self.emit(AthleteDisabled(athlete=athlete_id))
        return athlete

    def refresh_request(self, athlete_id: int, **options: Any) -> None:
        """Ask the refresh loop to sync ``athlete_id`` with the given job options."""
        if not athlete_id:
            raise TypeError("Athlete ID arg required")
        unknown = set(options) - _OPTION_NAMES
        if unknown:
            raise TypeError(f"Unknown sync options: {sorted(unknown)}")
        self._refresh_requests[athlete_id] = options
        self._refresh_event.set()

    async def sync_athlete(self, athlete_id: int, *, wait: bool = True, **options: Any) -> None:
        """Request a sync and, with ``wait``, block until that job finishes.

        Raises:
            SyncDisabledError: If the athlete is not enabled for sync.
            SyncJobError:      If the job ends in error.
        """
        athlete = await self.get_athlete(athlete_id)
        if not athlete.sync_enabled:
            raise SyncDisabledError(f"Sync is not enabled for athlete {athlete_id}")
        if not wait:
            self.refresh_request(athlete_id, **options)
            return
        with self.events.subscribe(athlete_id) as sub:
            self.refresh_request(athlete_id, **options)
            if not self.running:
                # No refresh loop to pick the request up; start the job here.
                task = self._job_tasks.get(athlete_id)
                if task is not None:
                    await asyncio.gather(task, return_exceptions=True)
                await self._refresh()
            started = False
            error: str | None = None
            async for event in sub:
                if event.kind == "active":
                    if event.active:
                        started = True
                    elif started:
                        break
                elif event.kind == "error" and started:
                    error = event.error
                elif event.kind == "disable":
                    raise SyncDisabledError(f"Sync was disabled for athlete {athlete_id}")
        if error is not None:
            raise SyncJobError(error)

    async def cancel_and_wait(self, athlete_id: int) -> bool:
        """Cancel the athlete's running job and wait for it to end."""
        job = self.active_jobs.get(athlete_id)
        task = self._job_tasks.get(athlete_id)
        if job is None:
            return False
        job.cancel()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return True

    async def get_status(self, athlete_id: int) -> SyncStatus:
        athlete = await self.get_athlete(athlete_id)
        state = self._state.get(athlete_id) or SyncStatus(athlete=athlete_id)
        active = self.is_active_sync(athlete_id)
        job = self.active_jobs.get(athlete_id)
        suspended = active and self.rate_limiters.suspended()
        return SyncStatus(
            athlete=athlete_id,
            active=active,
            status=job.status.value if job is not None else state.status,
            error=state.error,
            rate_limiter_suspended=suspended,
            rate_limiter_resumes=self.rate_limiters.resumes() if suspended else None,
            last_sync=athlete.last_sync,
            next_sync=self.next_due(athlete) if athlete.sync_enabled else None,
        )

    # ------------------------------------------------------------------
    # Data maintenance
    # ------------------------------------------------------------------

    async def activity_counts(self, athlete_id: int) -> ActivityCounts:
        await self.get_athlete(athlete_id)
        activities = await self.stores.activities.get_all_for_athlete(athlete_id)
        return activity_counts(activities, self.registry)

    def _qualifiers(self, group: str, name: str | None) -> list[str]:
        if group not in GROUPS:
            raise UnknownStageError(f"Unknown processor group: {group!r}")
        stages = self.registry.get_stages(group)
        if name is not None:
            stages = [s for s in stages if s.name == name]
            if not stages:
                raise UnknownStageError(f"Unknown sync stage: {group}/{name}")
        return [s.qualifier for s in stages]

    async def _resync_local(self, athlete: Athlete, sync: bool) -> None:
        if sync and athlete.sync_enabled and self.running:
            await self.sync_athlete(athlete.id, no_activity_scan=True, no_streams_fetch=True)

    async def invalidate_athlete_sync_state(
        self, athlete_id: int, group: str, name: str | None = None, *, sync: bool = True
    ) -> int:
        """Clear a stage (or a whole group) for every activity of an athlete.

        A running job is cancelled first.  With ``sync`` the athlete is then
        reprocessed locally (no discovery, no stream fetch).
        """
        qualifiers = self._qualifiers(group, name)
        athlete = await self.get_athlete(athlete_id)
        await self.cancel_and_wait(athlete_id)
        count = await self.stores.activities.invalidate_for_athlete(athlete_id, qualifiers)
        logger.info("Invalidated %s for %d activities of athlete %s", qualifiers, count, athlete_id)
        await self._resync_local(athlete, sync)
        return count

    async def invalidate_activity_sync_state(
        self, activity_id: int, group: str, name: str | None = None, *, sync: bool = True
    ) -> None:
        qualifiers = self._qualifiers(group, name)
        activity = await self.stores.activities.get(activity_id)
        if activity is None:
            raise ActivityNotFoundError(activity_id)
        athlete = await self.get_athlete(activity.athlete)
        await self.cancel_and_wait(athlete.id)
        for q in qualifiers:
            activity.sync_state.pop(q, None)
        await self.stores.activities.put(activity)
        await self._resync_local(athlete, sync)

    async def set_athlete_history_values(
        self, athlete_id: int, key: str, values: list[HistoryValue | dict], *, sync: bool = True
    ) -> list[HistoryValue]:
        """Replace a history table; activity stats depend on it, so they are invalidated."""
        async with self._athlete_lock:
            athlete = await self.stores.athletes.get(athlete_id)
            if athlete is None:
                raise AthleteNotFoundError(athlete_id)
            clean = athlete.set_history_values(key, values)
            await self.stores.athletes.put(athlete)
        if self.registry.get_stage(LOCAL, "activity-stats") is not None:
            await self.invalidate_athlete_sync_state(athlete_id, LOCAL, "activity-stats", sync=sync)
        return clean

    async def integrity_check(self, athlete_id: int, *, repair: bool = False, prune: bool = False) -> IntegrityReport:
        await self.get_athlete(athlete_id)
        if repair:
            await self.cancel_and_wait(athlete_id)
        return await integrity_check(self.stores, self.registry, athlete_id, repair=repair, prune=prune)

    async def purge_athlete_data(self, athlete_id: int, *, include_athlete: bool = False) -> int:
        """Delete every activity, stream and peak of an athlete.  Use with care."""
        await self.cancel_and_wait(athlete_id)
        count = await self.stores.activities.delete_for_athlete(athlete_id)
        await self.stores.streams.delete_for_athlete(athlete_id)
        await self.stores.peaks.delete_for_athlete(athlete_id)
        if include_athlete:
            async with self._athlete_lock:
                await self.stores.athletes.delete(athlete_id)
        logger.warning("Purged %d activities for athlete %s", count, athlete_id)
        return count

    # ------------------------------------------------------------------
    # Peaks
    # ------------------------------------------------------------------

    @staticmethod
    def _check_peak_type(type: str) -> None:
        if type not in PEAK_TYPES:
            raise ValueError(f"Unknown peak type: {type!r}")

    async def get_peaks_for_athlete(
        self, athlete_id: int, type: str, periods: Iterable[float], *, limit: int | None = None
    ) -> list[Peak]:
        """Best-first peaks of one athlete, grouped by period in the order given.

        ``limit`` applies to each period separately.
        """
        self._check_peak_type(type)
        await self.get_athlete(athlete_id)
        peaks: list[Peak] = []
        for period in periods:
            peaks.extend(await self.stores.peaks.get_for_athlete(athlete_id, type, period, limit=limit))
        return peaks

    async def get_peaks(self, type: str, periods: Iterable[float], *, limit: int | None = None) -> list[Peak]:
        """Like ``get_peaks_for_athlete`` but ranked across every athlete."""
        self._check_peak_type(type)
        peaks: list[Peak] = []
        for period in periods:
            peaks.extend(await self.stores.peaks.get_for(type, period, limit=limit))
        return peaks

    async def expand_peak_activities(self, peaks: list[Peak]) -> list[tuple[Peak, Activity | None]]:
        """Pair each peak with its activity record; deleted activities pair with None."""
        activities = await self.stores.activities.get_many(p.activity for p in peaks)
        return list(zip(peaks, activities))

    async def increment_streams_usage(self) -> None:
        """Account for a streams request made outside the sync engine."""
        await self.rate_limiters.increment()
