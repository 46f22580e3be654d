"""Tests for multi-athlete scheduling and athlete control in SyncManager."""

from __future__ import annotations

import asyncio
import re

import httpx
import pytest

from histsync.errors import (
    AthleteNotFoundError,
    RegistryFrozenError,
    SyncDisabledError,
    SyncJobError,
    UnknownStageError,
)
from histsync.services.store import Stores
from histsync.sync.base import ACTIVITY_LIST_VERSION, Athlete, Peak
from histsync.sync.config_loader import SyncConfig
from histsync.sync.manager import SyncManager
from histsync.sync.manifest import LOCAL, REMOTE, ManifestRegistry, SyncStage
from histsync.sync.ratelimit import RateLimiterGroup

from histsync.tests.conftest import (
    TEST_ATHLETE_ID,
    TEST_NOW,
    FakeClock,
    activity_model,
    make_activity,
    make_streams,
    training_activities_page,
)

_STREAMS_PATH = re.compile(r"^/activities/(\d+)/streams$")


def _remote_handler(fail_listing: bool = False):
    models = [
        activity_model(1, "2023-10-01T07:00:00Z", "Run"),
        activity_model(2, "2023-10-02T07:00:00Z", "Ride"),
        activity_model(3, "2023-10-03T07:00:00Z", "Run"),
    ]
    streams = {1: make_streams("run"), 2: make_streams("ride")}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/athlete/training_activities":
            if fail_listing:
                return httpx.Response(403)
            page = int(request.url.params["page"])
            return httpx.Response(200, json=training_activities_page(models, page, 20))
        activity_id = int(_STREAMS_PATH.match(request.url.path).group(1))
        if activity_id in streams:
            return httpx.Response(200, json=streams[activity_id])
        return httpx.Response(404)

    return handler


@pytest.fixture
def make_manager(make_remote, stores: Stores, registry: ManifestRegistry, rate_limiters: RateLimiterGroup,
                 sync_config: SyncConfig, clock: FakeClock):
    def _make(fail_listing: bool = False) -> SyncManager:
        return SyncManager(
            stores=stores,
            registry=registry,
            client=make_remote(_remote_handler(fail_listing)),
            rate_limiters=rate_limiters,
            config=sync_config,
            current_athlete=TEST_ATHLETE_ID,
            clock=clock.time,
            sleep=clock.sleep,
        )

    return _make


@pytest.fixture
def manager(make_manager) -> SyncManager:
    return make_manager()


async def _add_enabled(manager: SyncManager, athlete: Athlete) -> Athlete:
    await manager.add_athlete(athlete.id, name=athlete.name, gender=athlete.gender,
                              max_hr_history=athlete.max_hr_history, ftp_history=athlete.ftp_history)
    return await manager.enable_athlete(athlete.id)


class TestAthleteControl:
    """Tests for adding, updating, enabling and disabling athletes."""

    @pytest.mark.asyncio
    async def test_add_requires_identity(self, manager: SyncManager) -> None:
        with pytest.raises(TypeError):
            await manager.add_athlete(5, name="", gender="male")

    @pytest.mark.asyncio
    async def test_add_merges_existing(self, manager: SyncManager) -> None:
        await manager.add_athlete(5, name="Five", gender="male")
        athlete = await manager.add_athlete(5, name="Five Again", gender="male")
        assert athlete.name == "Five Again"
        assert len(await manager.stores.athletes.get_all()) == 1

    @pytest.mark.asyncio
    async def test_update_unknown_field_rejected(self, manager: SyncManager) -> None:
        await manager.add_athlete(5, name="Five", gender="male")
        with pytest.raises(TypeError):
            await manager.update_athlete(5, {"shoe_size": 44})

    @pytest.mark.asyncio
    async def test_update_missing_athlete(self, manager: SyncManager) -> None:
        with pytest.raises(AthleteNotFoundError):
            await manager.update_athlete(99, {"name": "x"})

    @pytest.mark.asyncio
    async def test_enable_resets_bookkeeping(self, manager: SyncManager) -> None:
        await manager.add_athlete(5, name="Five", gender="male", sync_error_count=4, last_sync=123.0)
        with manager.events.subscribe(5) as sub:
            athlete = await manager.enable_athlete(5)
            event = await sub.get()
        assert athlete.sync_enabled
        assert athlete.sync_error_count == 0
        assert athlete.last_sync == 0.0
        assert athlete.last_sync_activity_list_version is None
        assert event.kind == "enable"

    @pytest.mark.asyncio
    async def test_history_values_sorted_and_validated(self, manager: SyncManager) -> None:
        await manager.add_athlete(5, name="Five", gender="male")
        values = await manager.set_athlete_history_values(
            5, "ftp_history", [{"ts": 200, "value": 260}, {"ts": 100, "value": 240}]
        )
        assert [v.ts for v in values] == [100, 200]
        athlete = await manager.get_athlete(5)
        assert athlete.value_at("ftp_history", 50) == 240
        assert athlete.value_at("ftp_history", 150) == 240
        assert athlete.value_at("ftp_history", 250) == 260
        with pytest.raises(ValueError):
            await manager.set_athlete_history_values(5, "ftp_history", [{"ts": 1, "value": 0}])
        with pytest.raises(ValueError):
            await manager.set_athlete_history_values(5, "shoe_history", [])


class TestScheduling:
    """Tests for should_sync() and next_due()."""

    def test_fresh_athlete_is_due(self, manager: SyncManager, clock: FakeClock) -> None:
        athlete = Athlete(id=1, sync_enabled=True)
        assert manager.should_sync(athlete, clock.now)
        assert manager.next_due(athlete) == 0.0

    def _synced(self, manager: SyncManager, clock: FakeClock, **kwargs) -> Athlete:
        return Athlete(
            id=1,
            sync_enabled=True,
            last_sync=clock.now,
            last_sync_version_hash=manager.sync_hash,
            last_sync_activity_list_version=ACTIVITY_LIST_VERSION,
            **kwargs,
        )

    def test_recent_sync_is_not_due(self, manager: SyncManager, clock: FakeClock) -> None:
        athlete = self._synced(manager, clock)
        assert not manager.should_sync(athlete, clock.now + 60)
        assert manager.should_sync(athlete, clock.now + manager.refresh_interval + 1)
        assert manager.next_due(athlete) == clock.now + manager.refresh_interval

    def test_hash_change_forces_sync(self, manager: SyncManager, clock: FakeClock) -> None:
        athlete = self._synced(manager, clock)
        athlete.last_sync_version_hash = "stale"
        assert manager.should_sync(athlete, clock.now)

    def test_list_version_change_forces_sync(self, manager: SyncManager, clock: FakeClock) -> None:
        athlete = self._synced(manager, clock)
        athlete.last_sync_activity_list_version = ACTIVITY_LIST_VERSION - 1
        assert manager.should_sync(athlete, clock.now)

    def test_error_backoff_defers_sync(self, manager: SyncManager, clock: FakeClock) -> None:
        last = clock.now - manager.refresh_interval - 10
        athlete = self._synced(manager, clock, last_sync_error=clock.now - 60, sync_error_count=1)
        athlete.last_sync = last
        assert not manager.should_sync(athlete, clock.now)
        retry_at = clock.now - 60 + manager.refresh_error_backoff
        assert manager.next_due(athlete) == retry_at
        assert manager.should_sync(athlete, retry_at + 1)

    def test_error_backoff_capped_at_interval(self, manager: SyncManager, clock: FakeClock) -> None:
        athlete = self._synced(manager, clock, last_sync_error=clock.now, sync_error_count=100)
        athlete.last_sync = 0.0
        assert manager.next_due(athlete) == clock.now + manager.refresh_interval

    def test_stale_manifest_respects_error_backoff(self, manager: SyncManager, clock: FakeClock) -> None:
        athlete = Athlete(id=1, sync_enabled=True, last_sync_error=clock.now, sync_error_count=1)
        retry_at = clock.now + manager.refresh_error_backoff
        assert not manager.should_sync(athlete, clock.now + 1)
        assert manager.next_due(athlete) == retry_at
        assert manager.should_sync(athlete, retry_at)
        manager.refresh_request(1)
        assert manager.should_sync(athlete, clock.now + 1)

    def test_refresh_request_forces_sync(self, manager: SyncManager, clock: FakeClock) -> None:
        athlete = self._synced(manager, clock)
        manager.refresh_request(1, force_activity_update=True)
        assert manager.should_sync(athlete, clock.now)

    def test_refresh_request_rejects_unknown_option(self, manager: SyncManager) -> None:
        with pytest.raises(TypeError):
            manager.refresh_request(1, turbo=True)


class TestSyncAthlete:
    """End-to-end syncs driven through the manager."""

    @pytest.mark.asyncio
    async def test_sync_records_success(self, manager: SyncManager, athlete: Athlete, clock: FakeClock) -> None:
        await _add_enabled(manager, athlete)
        await manager.sync_athlete(athlete.id)

        stored = await manager.get_athlete(athlete.id)
        assert stored.last_sync_version_hash == manager.sync_hash
        assert stored.last_sync_activity_list_version == ACTIVITY_LIST_VERSION
        assert stored.sync_error_count == 0
        assert stored.last_sync > 0
        assert not manager.should_sync(stored, clock.now)
        counts = await manager.activity_counts(athlete.id)
        assert counts.as_dict() == {
            "total": 3, "imported": 2, "unavailable": 1, "processed": 3, "unprocessable": 0,
        }
        status = await manager.get_status(athlete.id)
        assert not status.active
        assert status.status == "complete"
        assert status.error is None
        assert not manager.active_jobs

    @pytest.mark.asyncio
    async def test_failed_sync_raises_and_backs_off(
        self, make_manager, athlete: Athlete, clock: FakeClock
    ) -> None:
        manager = make_manager(fail_listing=True)
        await _add_enabled(manager, athlete)
        with pytest.raises(SyncJobError):
            await manager.sync_athlete(athlete.id)

        stored = await manager.get_athlete(athlete.id)
        assert stored.sync_error_count == 1
        assert stored.last_sync_error == clock.now
        assert stored.last_sync_version_hash is None
        status = await manager.get_status(athlete.id)
        assert status.error
        assert status.status == "error"

    @pytest.mark.asyncio
    async def test_success_clears_error_state(self, manager: SyncManager, athlete: Athlete, clock: FakeClock) -> None:
        await _add_enabled(manager, athlete)
        await manager.update_athlete(athlete.id, {"last_sync_error": clock.now - 10, "sync_error_count": 2})
        await manager.sync_athlete(athlete.id)
        stored = await manager.get_athlete(athlete.id)
        assert stored.last_sync_error == 0.0
        assert stored.sync_error_count == 0
        assert manager.next_due(stored) == stored.last_sync + manager.refresh_interval

    @pytest.mark.asyncio
    async def test_failing_first_sync_backs_off_in_loop(
        self, make_manager, athlete: Athlete, clock: FakeClock
    ) -> None:
        manager = make_manager(fail_listing=True)
        await _add_enabled(manager, athlete)
        starts: list[float] = []
        run_sync_job = manager.run_sync_job

        def recording(a: Athlete, options):
            starts.append(clock.now)
            return run_sync_job(a, options)

        manager.run_sync_job = recording
        manager.start()
        try:
            for _ in range(300):
                await asyncio.sleep(0)
        finally:
            manager.stop()
            await manager.join()

        assert starts
        stored = await manager.get_athlete(athlete.id)
        assert stored.sync_error_count <= len(starts)
        for failures, (prev, nxt) in enumerate(zip(starts, starts[1:]), 1):
            backoff = min(manager.refresh_error_backoff * failures, manager.refresh_interval)
            assert nxt - prev >= backoff - 1e-6

    @pytest.mark.asyncio
    async def test_disabled_athlete_cannot_sync(self, manager: SyncManager, athlete: Athlete) -> None:
        await manager.add_athlete(athlete.id, name=athlete.name, gender=athlete.gender)
        with pytest.raises(SyncDisabledError):
            await manager.sync_athlete(athlete.id)

    @pytest.mark.asyncio
    async def test_missing_athlete(self, manager: SyncManager) -> None:
        with pytest.raises(AthleteNotFoundError):
            await manager.sync_athlete(12345)

    @pytest.mark.asyncio
    async def test_one_job_per_athlete(self, manager: SyncManager, athlete: Athlete) -> None:
        await _add_enabled(manager, athlete)
        manager.refresh_request(athlete.id)
        await manager._refresh()
        first = manager.active_jobs[athlete.id]
        manager.refresh_request(athlete.id)
        await manager._refresh()
        assert manager.active_jobs[athlete.id] is first
        await manager.cancel_and_wait(athlete.id)
        assert not manager.is_active_sync(athlete.id)

    @pytest.mark.asyncio
    async def test_refresh_skips_disabled(self, manager: SyncManager, athlete: Athlete) -> None:
        await manager.add_athlete(athlete.id, name=athlete.name, gender=athlete.gender)
        manager.refresh_request(athlete.id)
        await manager._refresh()
        assert not manager.active_jobs
        assert athlete.id not in manager._refresh_requests

    @pytest.mark.asyncio
    async def test_disable_cancels_running_job(self, manager: SyncManager, athlete: Athlete) -> None:
        await _add_enabled(manager, athlete)
        manager.refresh_request(athlete.id)
        await manager._refresh()
        task = manager._job_tasks[athlete.id]
        await manager.disable_athlete(athlete.id)
        await asyncio.gather(task, return_exceptions=True)
        stored = await manager.get_athlete(athlete.id)
        assert not stored.sync_enabled
        # a cancelled job never records the manifest hash
        assert stored.last_sync_version_hash is None

    @pytest.mark.asyncio
    async def test_start_and_stop(self, manager: SyncManager) -> None:
        manager.start()
        assert manager.running
        assert manager.registry.frozen
        with pytest.raises(RegistryFrozenError):
            manager.registry.register(SyncStage(LOCAL, "late", 1))
        await asyncio.sleep(0)
        manager.stop()
        await manager.join()
        assert not manager.running


class TestMaintenance:
    """Tests for invalidation, integrity checks and purging."""

    @pytest.mark.asyncio
    async def test_invalidate_stage(self, manager: SyncManager, athlete: Athlete) -> None:
        await _add_enabled(manager, athlete)
        await manager.sync_athlete(athlete.id)

        count = await manager.invalidate_athlete_sync_state(athlete.id, LOCAL, "activity-stats", sync=False)
        assert count == 3
        stage = manager.registry.get_stage(LOCAL, "activity-stats")
        for a in await manager.stores.activities.get_all_for_athlete(athlete.id):
            assert a.get_sync_state(stage) is None
            assert manager.registry.is_group_current(a, REMOTE)
        assert (await manager.activity_counts(athlete.id)).processed == 0

        # local reprocessing restores it without touching the remote
        await manager.sync_athlete(athlete.id, no_activity_scan=True, no_streams_fetch=True)
        assert (await manager.activity_counts(athlete.id)).processed == 3

    @pytest.mark.asyncio
    async def test_invalidate_unknown_stage(self, manager: SyncManager, athlete: Athlete) -> None:
        await _add_enabled(manager, athlete)
        with pytest.raises(UnknownStageError):
            await manager.invalidate_athlete_sync_state(athlete.id, LOCAL, "nope")
        with pytest.raises(UnknownStageError):
            await manager.invalidate_athlete_sync_state(athlete.id, "sideways")

    @pytest.mark.asyncio
    async def test_invalidate_single_activity(self, manager: SyncManager, athlete: Athlete) -> None:
        await _add_enabled(manager, athlete)
        await manager.sync_athlete(athlete.id)
        await manager.invalidate_activity_sync_state(1, REMOTE, sync=False)
        activity = await manager.stores.activities.get(1)
        assert not manager.registry.is_group_current(activity, REMOTE)
        other = await manager.stores.activities.get(2)
        assert manager.registry.is_group_current(other, REMOTE)

    @pytest.mark.asyncio
    async def test_history_update_invalidates_stats(self, manager: SyncManager, athlete: Athlete) -> None:
        await _add_enabled(manager, athlete)
        await manager.sync_athlete(athlete.id)
        await manager.set_athlete_history_values(
            athlete.id, "ftp_history", [{"ts": 0, "value": 300}], sync=False
        )
        stage = manager.registry.get_stage(LOCAL, "activity-stats")
        for a in await manager.stores.activities.get_all_for_athlete(athlete.id):
            assert not a.is_current(stage)

    @pytest.mark.asyncio
    async def test_purge(self, manager: SyncManager, athlete: Athlete) -> None:
        await _add_enabled(manager, athlete)
        await manager.sync_athlete(athlete.id)
        deleted = await manager.purge_athlete_data(athlete.id)
        assert deleted == 3
        assert await manager.stores.streams.values(athlete.id) == []
        assert await manager.stores.peaks.get_for_activity(1) == []
        assert await manager.get_athlete(athlete.id)

        await manager.purge_athlete_data(athlete.id, include_athlete=True)
        with pytest.raises(AthleteNotFoundError):
            await manager.get_athlete(athlete.id)

    @pytest.mark.asyncio
    async def test_streams_usage_counts_against_limits(self, manager: SyncManager) -> None:
        before = [len(x.events) for x in manager.rate_limiters]
        await manager.increment_streams_usage()
        assert [len(x.events) for x in manager.rate_limiters] == [n + 1 for n in before]


def _peak(activity: int, type_: str, period: float, value: float, athlete: int = TEST_ATHLETE_ID) -> Peak:
    return Peak(activity=activity, athlete=athlete, type=type_, period=period, value=value, ts=TEST_NOW)


class TestPeaks:
    """Best-first peak queries across periods."""

    @pytest.mark.asyncio
    async def test_for_athlete_per_period(self, manager: SyncManager, athlete: Athlete) -> None:
        await manager.add_athlete(athlete.id, name=athlete.name, gender=athlete.gender)
        await manager.stores.peaks.put_many([
            _peak(1, "power", 60, 300), _peak(2, "power", 60, 350), _peak(3, "power", 60, 320),
            _peak(1, "power", 300, 250), _peak(2, "power", 300, 240),
            _peak(1, "hr", 60, 170),
            _peak(9, "power", 60, 400, athlete=2002),
        ])

        peaks = await manager.get_peaks_for_athlete(athlete.id, "power", [60, 300], limit=2)
        assert [(p.period, p.value) for p in peaks] == [(60, 350), (60, 320), (300, 250), (300, 240)]
        assert await manager.get_peaks_for_athlete(athlete.id, "power", [5]) == []

    @pytest.mark.asyncio
    async def test_pace_ranks_lowest_first(self, manager: SyncManager, athlete: Athlete) -> None:
        await manager.add_athlete(athlete.id, name=athlete.name, gender=athlete.gender)
        await manager.stores.peaks.put_many([_peak(1, "pace", 1000, 290), _peak(2, "pace", 1000, 260)])
        peaks = await manager.get_peaks_for_athlete(athlete.id, "pace", [1000])
        assert [p.activity for p in peaks] == [2, 1]

    @pytest.mark.asyncio
    async def test_across_athletes(self, manager: SyncManager) -> None:
        await manager.stores.peaks.put_many([
            _peak(1, "np", 1200, 280), _peak(9, "np", 1200, 310, athlete=2002),
        ])
        peaks = await manager.get_peaks("np", [1200], limit=1)
        assert [(p.athlete, p.value) for p in peaks] == [(2002, 310)]

    @pytest.mark.asyncio
    async def test_rejects_unknown_type_and_athlete(self, manager: SyncManager, athlete: Athlete) -> None:
        with pytest.raises(AthleteNotFoundError):
            await manager.get_peaks_for_athlete(404, "power", [60])
        await manager.add_athlete(athlete.id, name=athlete.name, gender=athlete.gender)
        with pytest.raises(ValueError, match="Unknown peak type"):
            await manager.get_peaks_for_athlete(athlete.id, "vo2", [60])
        with pytest.raises(ValueError):
            await manager.get_peaks("cadence", [60])

    @pytest.mark.asyncio
    async def test_expand_activities(self, manager: SyncManager) -> None:
        await manager.stores.activities.put(make_activity(1))
        peaks = [_peak(1, "hr", 60, 170), _peak(2, "hr", 60, 165)]
        expanded = await manager.expand_peak_activities(peaks)
        assert [p.activity for p, _ in expanded] == [1, 2]
        assert expanded[0][1].id == 1
        assert expanded[1][1] is None
