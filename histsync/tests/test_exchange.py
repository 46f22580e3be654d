"""Tests for bulk export and import."""

from __future__ import annotations

import pytest

from histsync.services.store import Stores
from histsync.sync.base import Athlete, Stream
from histsync.sync.config_loader import ExchangeConfig
from histsync.sync.exchange import DataExchange

from histsync.tests.conftest import TEST_ATHLETE_ID, make_activity, make_streams


async def _seed(stores: Stores, athlete: Athlete) -> None:
    await stores.athletes.put(athlete)
    await stores.athletes.put(Athlete(id=2002, name="other"))
    activities = [make_activity(i, athlete.id) for i in (1, 2)] + [make_activity(3, 2002)]
    await stores.activities.put_many(activities)
    for a in activities:
        await stores.streams.put_many(
            Stream(activity=a.id, athlete=a.athlete, stream=name, data=data)
            for name, data in make_streams().items()
        )


async def _collect(exchange: DataExchange) -> list[list[dict]]:
    return [batch async for batch in exchange.export()]


class TestExport:
    @pytest.mark.asyncio
    async def test_single_athlete(self, stores: Stores, athlete: Athlete) -> None:
        await _seed(stores, athlete)
        batches = await _collect(DataExchange(stores, athlete_id=TEST_ATHLETE_ID))
        assert len(batches) == 1
        records = batches[0]
        by_store: dict[str, list[dict]] = {}
        for r in records:
            by_store.setdefault(r["store"], []).append(r["data"])
        assert [a["id"] for a in by_store["athletes"]] == [TEST_ATHLETE_ID]
        assert sorted(a["id"] for a in by_store["activities"]) == [1, 2]
        assert {s["activity"] for s in by_store["streams"]} == {1, 2}
        # athletes first, then activities, then streams
        order = [r["store"] for r in records]
        assert order == sorted(order, key=["athletes", "activities", "streams"].index)

    @pytest.mark.asyncio
    async def test_everything_in_bounded_batches(self, stores: Stores, athlete: Athlete) -> None:
        await _seed(stores, athlete)
        config = ExchangeConfig(batch_size_limit_bytes=2000)
        batches = await _collect(DataExchange(stores, config))
        assert len(batches) > 1
        assert all(batches)
        flat = [r for batch in batches for r in batch]
        assert sum(r["store"] == "athletes" for r in flat) == 2
        assert sum(r["store"] == "activities" for r in flat) == 3

    @pytest.mark.asyncio
    async def test_missing_athlete(self, stores: Stores) -> None:
        assert await _collect(DataExchange(stores, athlete_id=404)) == []


class TestImport:
    @pytest.mark.asyncio
    async def test_roundtrip_into_empty_stores(self, stores: Stores, athlete: Athlete) -> None:
        await _seed(stores, athlete)
        batches = await _collect(DataExchange(stores, athlete_id=TEST_ATHLETE_ID))

        target = Stores()
        importer = DataExchange(target)
        for batch in batches:
            await importer.import_records(batch)
        counts = await importer.flush()

        assert counts["athletes"] == 1
        assert counts["activities"] == 2
        assert counts["streams"] == 2 * len(make_streams())
        restored = await target.athletes.get(TEST_ATHLETE_ID)
        assert restored.ftp_history == athlete.ftp_history
        assert (await target.streams.get(2, "heartrate")).data == make_streams()["heartrate"]

    @pytest.mark.asyncio
    async def test_flushes_past_threshold(self, stores: Stores) -> None:
        importer = DataExchange(stores, ExchangeConfig(import_flush_threshold=2))
        records = [{"store": "athletes", "data": Athlete(id=i).to_dict()} for i in range(3)]
        await importer.import_records(records)
        assert importer.imported["athletes"] == 3
        assert importer.importing["athletes"] == []
        assert len(await stores.athletes.get_all()) == 3

    @pytest.mark.asyncio
    async def test_rejects_unknown_store(self, stores: Stores) -> None:
        importer = DataExchange(stores)
        with pytest.raises(ValueError, match="Unknown store"):
            await importer.import_records([{"store": "peaks", "data": {}}])

    @pytest.mark.asyncio
    async def test_rejects_missing_data(self, stores: Stores) -> None:
        importer = DataExchange(stores)
        with pytest.raises(ValueError, match="no data"):
            await importer.import_records([{"store": "athletes"}])
