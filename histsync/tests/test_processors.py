"""Tests for the built-in local processing units."""

from __future__ import annotations

import asyncio

import pytest

from histsync.processing.processors import (
    PeaksProcessor,
    TrainingLoadProcessor,
    activity_stats,
    estimate_cycling_power,
    extra_streams,
    hr_zones,
)
from histsync.services.store import Stores
from histsync.sync.base import Activity, Athlete, Stream
from histsync.sync.manifest import LOCAL, ManifestRegistry
from histsync.sync.offload import StageContext

from histsync.tests.conftest import TEST_NOW, make_activity, make_streams


async def _store_streams(stores: Stores, activity: Activity, streams: dict[str, list]) -> None:
    await stores.streams.put_many(
        Stream(activity=activity.id, athlete=activity.athlete, stream=name, data=data)
        for name, data in streams.items()
    )


def _ctx(registry: ManifestRegistry, name: str, athlete: Athlete, activities: list[Activity],
         stores: Stores) -> StageContext:
    return StageContext(
        stage=registry.get_stage(LOCAL, name),
        athlete=athlete,
        activities=activities,
        stores=stores,
        cancel_event=asyncio.Event(),
        now=TEST_NOW,
    )


class TestHrZones:
    @pytest.mark.asyncio
    async def test_time_in_zones(self, stores: Stores, registry: ManifestRegistry, athlete: Athlete) -> None:
        activity = make_activity(1, athlete.id)
        # max HR 190: zone bounds 114 / 133 / 152 / 171
        await _store_streams(stores, activity, {
            "time": [0, 10, 20, 30, 40],
            "heartrate": [100, 120, 140, 160, 180],
        })
        await hr_zones(_ctx(registry, "hr-zones", athlete, [activity], stores))
        assert activity.hr_zones_time == [0, 10, 10, 10, 10]

    @pytest.mark.asyncio
    async def test_without_max_hr(self, stores: Stores, registry: ManifestRegistry) -> None:
        athlete = Athlete(id=5, name="x", gender="male")
        activity = make_activity(1, athlete.id)
        await _store_streams(stores, activity, make_streams())
        await hr_zones(_ctx(registry, "hr-zones", athlete, [activity], stores))
        assert activity.hr_zones_time is None

    @pytest.mark.asyncio
    async def test_pauses_are_not_counted(self, stores: Stores, registry: ManifestRegistry, athlete: Athlete) -> None:
        activity = make_activity(1, athlete.id)
        await _store_streams(stores, activity, {
            "time": [0, 10, 600, 610],
            "heartrate": [150, 150, 150, 150],
        })
        await hr_zones(_ctx(registry, "hr-zones", athlete, [activity], stores))
        assert sum(activity.hr_zones_time) == 20


class TestExtraStreams:
    @pytest.mark.asyncio
    async def test_active_stream_from_speed(self, stores: Stores, registry: ManifestRegistry, athlete: Athlete) -> None:
        activity = make_activity(1, athlete.id)
        await _store_streams(stores, activity, {"time": [0, 1, 2], "velocity_smooth": [0, 2.0, 0.1]})
        await extra_streams(_ctx(registry, "extra-streams", athlete, [activity], stores))
        active = await stores.streams.get(1, "active")
        assert active.data == [False, True, False]
        assert await stores.streams.get(1, "watts_calc") is None

    @pytest.mark.asyncio
    async def test_moving_stream_wins(self, stores: Stores, registry: ManifestRegistry, athlete: Athlete) -> None:
        activity = make_activity(1, athlete.id)
        await _store_streams(stores, activity, {
            "time": [0, 1, 2], "moving": [True, True, False], "velocity_smooth": [0, 0, 0],
        })
        await extra_streams(_ctx(registry, "extra-streams", athlete, [activity], stores))
        assert (await stores.streams.get(1, "active")).data == [True, True, False]

    @pytest.mark.asyncio
    async def test_estimated_power_for_rides(self, stores: Stores, registry: ManifestRegistry, athlete: Athlete) -> None:
        activity = make_activity(1, athlete.id, basetype="ride")
        await _store_streams(stores, activity, make_streams("run"))
        await extra_streams(_ctx(registry, "extra-streams", athlete, [activity], stores))
        watts = await stores.streams.get(1, "watts_calc")
        assert watts is not None
        assert len(watts.data) == 121
        assert all(w > 0 for w in watts.data[1:])

    @pytest.mark.asyncio
    async def test_no_time_stream(self, stores: Stores, registry: ManifestRegistry, athlete: Athlete) -> None:
        activity = make_activity(1, athlete.id)
        await extra_streams(_ctx(registry, "extra-streams", athlete, [activity], stores))
        assert await stores.streams.get_for_activity(1) == {}

    @pytest.mark.asyncio
    async def test_cancelled_writes_nothing(self, stores: Stores, registry: ManifestRegistry, athlete: Athlete) -> None:
        activity = make_activity(1, athlete.id)
        await _store_streams(stores, activity, make_streams())
        ctx = _ctx(registry, "extra-streams", athlete, [activity], stores)
        ctx.cancel_event.set()
        await extra_streams(ctx)
        assert await stores.streams.get(1, "active") is None

    def test_power_estimate_flat_and_climbing(self) -> None:
        time = [0, 1, 2]
        flat = estimate_cycling_power(time, [0, 8, 16], [100, 100, 100], 70)
        climb = estimate_cycling_power(time, [0, 8, 16], [100, 100.5, 101], 70)
        assert flat[0] == 0
        assert climb[1] > flat[1] > 0


class TestActivityStats:
    @pytest.mark.asyncio
    async def test_power_stats_and_tss(self, stores: Stores, registry: ManifestRegistry, athlete: Athlete) -> None:
        activity = make_activity(1, athlete.id, basetype="ride")
        time = list(range(0, 3601, 5))
        await _store_streams(stores, activity, {
            "time": time,
            "watts": [250] * len(time),
            "heartrate": [150] * len(time),
            "distance": [t * 8.0 for t in time],
        })
        await activity_stats(_ctx(registry, "activity-stats", athlete, [activity], stores))
        stats = activity.stats
        assert stats["elapsed_time"] == 3600
        assert stats["active_time"] == 3600
        assert stats["distance"] == 3600 * 8.0
        assert stats["power_avg"] == 250
        assert stats["estimate"] is False
        # one hour at FTP is 100 TSS
        assert stats["intensity"] == pytest.approx(1.0)
        assert stats["tss"] == pytest.approx(100)
        assert "trimp" not in stats

    @pytest.mark.asyncio
    async def test_trimp_without_power(self, stores: Stores, registry: ManifestRegistry, athlete: Athlete) -> None:
        activity = make_activity(1, athlete.id)
        await _store_streams(stores, activity, make_streams())
        await activity_stats(_ctx(registry, "activity-stats", athlete, [activity], stores))
        assert activity.stats["hr_max"] == 150
        assert activity.stats["trimp"] > 0
        assert "tss" not in activity.stats

    @pytest.mark.asyncio
    async def test_no_streams(self, stores: Stores, registry: ManifestRegistry, athlete: Athlete) -> None:
        activity = make_activity(1, athlete.id)
        activity.stats = {"stale": True}
        await activity_stats(_ctx(registry, "activity-stats", athlete, [activity], stores))
        assert activity.stats is None


class TestOffloadProcessors:
    """PeaksProcessor and TrainingLoadProcessor driven directly."""

    @pytest.mark.asyncio
    async def test_peaks_replace_previous(self, stores: Stores, registry: ManifestRegistry, athlete: Athlete) -> None:
        activity = make_activity(1, athlete.id)
        await _store_streams(stores, activity, make_streams())
        proc = PeaksProcessor(
            stage=registry.get_stage(LOCAL, "peaks"),
            athlete=athlete,
            stores=stores,
            cancel_event=asyncio.Event(),
            batch_size=10,
        )
        await proc.put_incoming([activity])
        proc.flush()
        await proc.result()
        first = await stores.peaks.get_for_activity(1)
        assert first
        assert proc.get_batch(10) == [activity]

        proc = PeaksProcessor(
            stage=registry.get_stage(LOCAL, "peaks"),
            athlete=athlete,
            stores=stores,
            cancel_event=asyncio.Event(),
        )
        await proc.put_incoming([activity])
        proc.flush()
        await proc.result()
        assert len(await stores.peaks.get_for_activity(1)) == len(first)
        best = await stores.peaks.get_for_athlete(athlete.id, "pace", 1000)
        assert best and best[0].value == pytest.approx(1000 / 3.0)

    @pytest.mark.asyncio
    async def test_training_load_replays_history(
        self, stores: Stores, registry: ManifestRegistry, athlete: Athlete
    ) -> None:
        day = 86400
        history = []
        for i in range(3):
            a = make_activity(i + 1, athlete.id, ts=TEST_NOW + i * day)
            a.stats = {"tss": 100}
            history.append(a)
        await stores.activities.put_many(history)

        proc = TrainingLoadProcessor(
            stage=registry.get_stage(LOCAL, "training-load"),
            athlete=athlete,
            stores=stores,
            cancel_event=asyncio.Event(),
        )
        await proc.put_incoming([history[1]])
        proc.flush()
        await proc.result()

        assert history[1].training_load is not None
        first = await stores.activities.get(1)
        third = await stores.activities.get(3)
        assert first.training_load["tsb"] == 0
        assert third.training_load["atl"] > history[1].training_load["atl"] > first.training_load["atl"]
        assert third.training_load["tsb"] < 0
        # the batch activity itself is left for the pipeline to persist
        assert (await stores.activities.get(2)).training_load is None
