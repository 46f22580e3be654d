"""Keyed record stores for athletes, activities, streams and peaks.

The engine only depends on the async methods below: point get/put/delete,
batch put/update, ordered range scans by ``(athlete, ts)`` and the secondary
index lookups (by athlete, by athlete + stream, enabled athletes).  This
module ships the in-memory implementation used by the API process and tests.
Records are stored as plain dicts and rebuilt on every read, so callers never
share mutable state with the store.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from histsync.processing.peaks import LOWER_IS_BETTER
from histsync.sync.base import Activity, Athlete, Peak, Stream

logger = logging.getLogger("histsync.services.store")


class ActivitiesStore:
    """Activities keyed by id with an ``(athlete, ts)`` ordering."""

    def __init__(self) -> None:
        self._records: dict[int, dict[str, Any]] = {}

    async def get(self, activity_id: int) -> Activity | None:
        record = self._records.get(activity_id)
        return Activity.from_dict(copy.deepcopy(record)) if record else None

    async def get_many(self, activity_ids: Iterable[int]) -> list[Activity | None]:
        return [await self.get(activity_id) for activity_id in activity_ids]

    async def put(self, activity: Activity) -> None:
        self._records[activity.id] = activity.to_dict()

    async def put_many(self, activities: Iterable[Activity]) -> None:
        for activity in activities:
            self._records[activity.id] = activity.to_dict()

    async def update_many(self, updates: dict[int, dict[str, Any]]) -> None:
        """Merge field updates into existing records, creating missing ones."""
        for activity_id, data in updates.items():
            existing = self._records.get(activity_id)
            if existing is None:
                self._records[activity_id] = Activity.from_dict({"id": activity_id, **data}).to_dict()
            else:
                merged = {**existing, **copy.deepcopy(data)}
                self._records[activity_id] = Activity.from_dict(merged).to_dict()

    async def delete(self, activity_id: int) -> None:
        self._records.pop(activity_id, None)

    def _for_athlete(self, athlete_id: int) -> list[dict[str, Any]]:
        rows = [r for r in self._records.values() if r["athlete"] == athlete_id]
        rows.sort(key=lambda r: r["ts"])
        return rows

    async def get_all_for_athlete(
        self, athlete_id: int, *, reverse: bool = False, limit: int | None = None
    ) -> list[Activity]:
        rows = self._for_athlete(athlete_id)
        if reverse:
            rows.reverse()
        if limit is not None:
            rows = rows[:limit]
        return [Activity.from_dict(copy.deepcopy(r)) for r in rows]

    async def get_all_keys_for_athlete(self, athlete_id: int) -> list[int]:
        return [r["id"] for r in self._for_athlete(athlete_id)]

    async def oldest_for_athlete(self, athlete_id: int) -> Activity | None:
        rows = await self.get_all_for_athlete(athlete_id, limit=1)
        return rows[0] if rows else None

    async def count_for_athlete(self, athlete_id: int) -> int:
        return sum(1 for r in self._records.values() if r["athlete"] == athlete_id)

    async def delete_for_athlete(self, athlete_id: int) -> int:
        ids = [k for k, r in self._records.items() if r["athlete"] == athlete_id]
        for activity_id in ids:
            del self._records[activity_id]
        return len(ids)

    async def invalidate_for_athlete(self, athlete_id: int, qualifiers: Iterable[str]) -> int:
        """Drop the given stage states from every activity of an athlete."""
        qualifiers = set(qualifiers)
        count = 0
        for record in self._records.values():
            if record["athlete"] != athlete_id:
                continue
            state = record.get("sync_state") or {}
            if qualifiers & state.keys():
                for q in qualifiers:
                    state.pop(q, None)
                count += 1
        return count

    async def values(self, athlete_id: int | None = None) -> list[Activity]:
        if athlete_id is not None:
            return await self.get_all_for_athlete(athlete_id)
        return [Activity.from_dict(copy.deepcopy(r)) for r in self._records.values()]


class StreamsStore:
    """Streams keyed by ``(activity, stream)`` with by-athlete lookups."""

    def __init__(self) -> None:
        self._records: dict[tuple[int, str], dict[str, Any]] = {}

    async def get(self, activity_id: int, stream: str) -> Stream | None:
        record = self._records.get((activity_id, stream))
        return Stream.from_dict(record) if record else None

    async def get_for_activity(
        self, activity_id: int, streams: Iterable[str] | None = None
    ) -> dict[str, list[Any]]:
        wanted = set(streams) if streams is not None else None
        return {
            name: list(r["data"])
            for (aid, name), r in self._records.items()
            if aid == activity_id and (wanted is None or name in wanted)
        }

    async def put(self, stream: Stream) -> None:
        self._records[(stream.activity, stream.stream)] = copy.deepcopy(stream.to_dict())

    async def put_many(self, streams: Iterable[Stream]) -> None:
        for stream in streams:
            await self.put(stream)

    async def activity_ids_for_athlete(self, athlete_id: int, stream: str | None = None) -> set[int]:
        return {
            aid
            for (aid, name), r in self._records.items()
            if r["athlete"] == athlete_id and (stream is None or name == stream)
        }

    async def delete_for_activity(self, activity_id: int) -> int:
        keys = [k for k in self._records if k[0] == activity_id]
        for key in keys:
            del self._records[key]
        return len(keys)

    async def delete_for_athlete(self, athlete_id: int) -> int:
        keys = [k for k, r in self._records.items() if r["athlete"] == athlete_id]
        for key in keys:
            del self._records[key]
        return len(keys)

    async def values(self, athlete_id: int | None = None) -> list[Stream]:
        return [
            Stream.from_dict(r)
            for r in self._records.values()
            if athlete_id is None or r["athlete"] == athlete_id
        ]

    async def count(self) -> int:
        return len(self._records)


class AthletesStore:
    """Athletes keyed by id with an enabled-for-sync index."""

    def __init__(self) -> None:
        self._records: dict[int, dict[str, Any]] = {}

    async def get(self, athlete_id: int) -> Athlete | None:
        record = self._records.get(athlete_id)
        return Athlete.from_dict(copy.deepcopy(record)) if record else None

    async def put(self, athlete: Athlete) -> None:
        self._records[athlete.id] = athlete.to_dict()

    async def put_many(self, athletes: Iterable[Athlete]) -> None:
        for athlete in athletes:
            await self.put(athlete)

    async def delete(self, athlete_id: int) -> None:
        self._records.pop(athlete_id, None)

    async def get_all(self) -> list[Athlete]:
        return [Athlete.from_dict(copy.deepcopy(r)) for r in self._records.values()]

    async def get_enabled(self) -> list[Athlete]:
        return [
            Athlete.from_dict(copy.deepcopy(r))
            for r in self._records.values()
            if r.get("sync_enabled")
        ]


class PeaksStore:
    """Peaks keyed by ``(activity, type, period)``."""

    def __init__(self) -> None:
        self._records: dict[tuple[int, str, float], dict[str, Any]] = {}

    async def put_many(self, peaks: Iterable[Peak]) -> None:
        for peak in peaks:
            self._records[(peak.activity, peak.type, peak.period)] = peak.to_dict()

    async def get_for_activity(self, activity_id: int) -> list[Peak]:
        return [Peak(**r) for k, r in self._records.items() if k[0] == activity_id]

    @staticmethod
    def _best(rows: list[Peak], type: str, limit: int | None) -> list[Peak]:
        rows.sort(key=lambda p: p.value, reverse=type not in LOWER_IS_BETTER)
        return rows[:limit] if limit is not None else rows

    async def get_for_athlete(
        self, athlete_id: int, type: str, period: float, *, limit: int | None = None
    ) -> list[Peak]:
        """Best-first peaks of one type and period across an athlete's activities."""
        rows = [
            Peak(**r)
            for r in self._records.values()
            if r["athlete"] == athlete_id and r["type"] == type and r["period"] == period
        ]
        return self._best(rows, type, limit)

    async def get_for(self, type: str, period: float, *, limit: int | None = None) -> list[Peak]:
        """Best-first peaks of one type and period across every athlete."""
        rows = [Peak(**r) for r in self._records.values() if r["type"] == type and r["period"] == period]
        return self._best(rows, type, limit)

    async def delete_for_activity(self, activity_id: int) -> int:
        keys = [k for k in self._records if k[0] == activity_id]
        for key in keys:
            del self._records[key]
        return len(keys)

    async def delete_for_athlete(self, athlete_id: int) -> int:
        keys = [k for k, r in self._records.items() if r["athlete"] == athlete_id]
        for key in keys:
            del self._records[key]
        return len(keys)


@dataclass
class Stores:
    """The four record stores the engine works against."""

    activities: ActivitiesStore = field(default_factory=ActivitiesStore)
    streams: StreamsStore = field(default_factory=StreamsStore)
    athletes: AthletesStore = field(default_factory=AthletesStore)
    peaks: PeaksStore = field(default_factory=PeaksStore)
