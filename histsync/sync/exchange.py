"""Bulk export and import of athletes, activities and streams.

The transfer format is a sequence of batches, each a list of
``{"store": <name>, "data": <record dict>}`` entries.  Export keeps every
batch under ``batch_size_limit_bytes`` using per-record size estimates
instead of serializing twice.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator

from histsync.services.store import Stores
from histsync.sync.base import Activity, Athlete, Stream
from histsync.sync.config_loader import ExchangeConfig

logger = logging.getLogger("histsync.sync.exchange")

STORES = ("athletes", "activities", "streams")


class DataExchange:
    """Export or import one athlete's records (or everything when ``athlete_id`` is None)."""

    def __init__(self, stores: Stores, config: ExchangeConfig | None = None, athlete_id: int | None = None) -> None:
        self.stores = stores
        self.config = config or ExchangeConfig()
        self.athlete_id = athlete_id
        self.importing: dict[str, list[dict[str, Any]]] = {name: [] for name in STORES}
        self.imported: dict[str, int] = {name: 0 for name in STORES}

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    async def export(self) -> AsyncIterator[list[dict[str, Any]]]:
        """Yield size-bounded batches of tagged records."""
        cfg = self.config
        batch: list[dict[str, Any]] = []
        size = 0.0

        if self.athlete_id is not None:
            athlete = await self.stores.athletes.get(self.athlete_id)
            athletes = [athlete] if athlete else []
        else:
            athletes = await self.stores.athletes.get_all()

        records: list[tuple[str, Any, float]] = [
            ("athletes", a.to_dict(), cfg.athlete_size_estimate) for a in athletes
        ]
        for a in await self.stores.activities.values(self.athlete_id):
            records.append(("activities", a.to_dict(), cfg.activity_size_estimate))
        for s in await self.stores.streams.values(self.athlete_id):
            estimate = cfg.stream_base_size_estimate + len(s.data) * cfg.stream_entry_size_estimate
            records.append(("streams", s.to_dict(), estimate))

        for store, data, estimate in records:
            batch.append({"store": store, "data": data})
            size += estimate
            if size >= cfg.batch_size_limit_bytes:
                yield batch
                batch = []
                size = 0.0
        if batch:
            yield batch

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    async def import_records(self, records: list[dict[str, Any]]) -> None:
        """Buffer tagged records, flushing once the buffer is large.

        Raises:
            ValueError: For an unknown store name or a malformed record.
        """
        for x in records:
            store = x.get("store")
            if store not in self.importing:
                raise ValueError(f"Unknown store in import record: {store!r}")
            if not isinstance(x.get("data"), dict):
                raise ValueError(f"Import record for {store} has no data")
            self.importing[store].append(x["data"])
        if sum(len(v) for v in self.importing.values()) > self.config.import_flush_threshold:
            await self.flush()

    async def flush(self) -> dict[str, int]:
        athletes = [Athlete.from_dict(x) for x in self.importing["athletes"]]
        activities = [Activity.from_dict(x) for x in self.importing["activities"]]
        streams = [Stream.from_dict(x) for x in self.importing["streams"]]
        await self.stores.athletes.put_many(athletes)
        await self.stores.activities.put_many(activities)
        await self.stores.streams.put_many(streams)
        for name, items in zip(STORES, (athletes, activities, streams)):
            self.imported[name] += len(items)
            self.importing[name].clear()
        logger.info(
            "Imported %d athletes, %d activities, %d streams",
            len(athletes), len(activities), len(streams),
        )
        return dict(self.imported)
