"""Activity discovery: converge the local activity list on the remote one.

Both variants fetch remote listings in rounds whose concurrency starts at 1
and doubles up to ``max_concurrency``, dedupe against already known ids and
write new records in one batch per round.

* ``SelfActivityDiscovery`` walks the paged training-activities API.  It stops
  once the known count reaches the remote total and a full round added
  nothing, or when every page has been read.
* ``PeerActivityDiscovery`` walks calendar months backward through the
  scraped interval feed.  A run of empty months means the start of history:
  the oldest scanned month is saved as the athlete's activity sentinel.  A run
  of months with nothing new means it has caught up.  Without a sentinel the
  previous backfill never finished, so after scanning from now it resumes
  from the oldest known activity.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterator

from histsync.services.remote import RemoteClient
from histsync.services.store import Stores
from histsync.sync.base import Activity, Athlete
from histsync.sync.config_loader import DiscoveryConfig, TransportConfig
from histsync.sync.peer_feed import parse_interval_feed
from histsync.sync.transport import retry_fetch

logger = logging.getLogger("histsync.sync.discovery")

UpdateAthlete = Callable[[int, dict[str, Any]], Awaitable[Any]]

# Listing keys that are presentation only and not worth storing.
FILTERED_KEYS = frozenset({
    "activity_url",
    "activity_url_for_twitter",
    "distance",
    "elapsed_time",
    "elevation_gain",
    "elevation_unit",
    "moving_time",
    "long_unit",
    "short_unit",
    "start_date",
    "start_day",
    "start_time",
    "static_map",
    "twitter_msg",
})

_BASETYPE_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"EBikeRide"), "ebike"),
    (re.compile(r"Ride"), "ride"),
    (re.compile(r"Run|Hike|Walk"), "run"),
    (re.compile(r"Swim"), "swim"),
    (re.compile(r"Ski|Snowboard"), "ski"),
]


def base_type(activity_type: str | None) -> str:
    """Map a remote activity type to a coarse basetype ('unknown' if unmapped)."""
    if activity_type:
        for pattern, basetype in _BASETYPE_PATTERNS:
            if pattern.search(activity_type):
                return basetype
    return "unknown"


def _parse_start_time(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).replace("Z", "+00:00")
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def year_month_range(year: int, month: int) -> Iterator[tuple[int, int]]:
    """Yield (year, month) pairs walking backward from the given month."""
    while True:
        yield year, month
        month -= 1
        if month == 0:
            year -= 1
            month = 12


def month_start(year: int, month: int) -> float:
    return datetime(year, month, 1, tzinfo=timezone.utc).timestamp()


@dataclass
class DiscoveryResult:
    """Outcome of one discovery scan.

    Attributes:
        added:     New (or, with force_update, refreshed) activities written.
        rounds:    Fetch rounds executed.
        requests:  Pages or month windows requested.
        sentinel:  Activity sentinel saved by this scan, if any.
    """

    added: int = 0
    rounds: int = 0
    requests: int = 0
    sentinel: float | None = None


class ActivityDiscovery:
    """Shared plumbing for the discovery variants."""

    def __init__(
        self,
        client: RemoteClient,
        stores: Stores,
        *,
        config: DiscoveryConfig | None = None,
        transport: TransportConfig | None = None,
        update_athlete: UpdateAthlete | None = None,
        cancel_event: asyncio.Event | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.stores = stores
        self.config = config or DiscoveryConfig()
        self.transport = transport or TransportConfig()
        self._update_athlete = update_athlete
        self._cancel_event = cancel_event or asyncio.Event()
        self._clock = clock
        self._sleep = sleep

    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def _fetch(self, path: str, params: dict[str, Any]):
        return await retry_fetch(
            self.client,
            path,
            params,
            max_retries=self.transport.max_retries,
            retry_delay=self.transport.retry_delay_seconds,
            sleep=self._sleep,
        )

    async def _known_ids(self, athlete: Athlete, force_update: bool) -> set[int]:
        if force_update:
            return set()
        return set(await self.stores.activities.get_all_keys_for_athlete(athlete.id))

    async def _store(self, adding: list[Activity], force_update: bool) -> None:
        if force_update:
            logger.info("Updating %d activities", len(adding))
            updates = {}
            for a in adding:
                data = a.to_dict()
                # never clobber sync progress of an existing record
                for key in ("sync_state", "stats", "hr_zones_time", "training_load"):
                    data.pop(key)
                updates[a.id] = data
            await self.stores.activities.update_many(updates)
        else:
            logger.info("Adding %d new activities", len(adding))
            await self.stores.activities.put_many(adding)

    def _next_concurrency(self, concurrency: int) -> int:
        return min(concurrency * 2, self.config.max_concurrency)


class SelfActivityDiscovery(ActivityDiscovery):
    """Paged scan of the authenticated athlete's own activities."""

    path = "/athlete/training_activities"

    async def _fetch_page(self, page: int) -> dict[str, Any]:
        response = await self._fetch(self.path, {"new_activity_only": "false", "page": page})
        return response.json()

    def _record(self, athlete: Athlete, model: dict[str, Any]) -> Activity:
        extra = {k: v for k, v in model.items() if k not in FILTERED_KEYS}
        for key in ("id", "name", "type"):
            extra.pop(key, None)
        return Activity(
            id=int(model["id"]),
            athlete=athlete.id,
            ts=_parse_start_time(model["start_time"]),
            basetype=base_type(model.get("type")),
            name=model.get("name"),
            type=model.get("type"),
            extra=extra,
        )

    async def run(self, athlete: Athlete, *, force_update: bool = False) -> DiscoveryResult:
        result = DiscoveryResult()
        known = await self._known_ids(athlete, force_update)
        page = 1
        page_count: int | None = None
        total: int | None = None
        concurrency = 1
        while not self.cancelled():
            pages: list[int] = []
            while page == 1 or (page_count is not None and page <= page_count and len(pages) < concurrency):
                pages.append(page)
                page += 1
            if not pages:
                break
            responses = await asyncio.gather(*(self._fetch_page(p) for p in pages))
            result.rounds += 1
            result.requests += len(pages)
            if self.cancelled():
                break
            adding: list[Activity] = []
            for data in responses:
                if total is None:
                    total = int(data.get("total") or 0)
                    per_page = int(data.get("perPage") or 1)
                    page_count = math.ceil(total / per_page)
                for model in data.get("models") or []:
                    if int(model["id"]) in known:
                        continue
                    adding.append(self._record(athlete, model))
                    known.add(int(model["id"]))
            # Deleted remote activities can leave ``known`` above ``total``, so
            # a round that added nothing is also required before stopping.
            if adding:
                await self._store(adding, force_update)
                result.added += len(adding)
            elif total is None or len(known) >= total:
                break
            concurrency = self._next_concurrency(concurrency)
        logger.debug(
            "Self discovery for %s: %d added in %d rounds", athlete, result.added, result.rounds
        )
        return result


class PeerActivityDiscovery(ActivityDiscovery):
    """Month-window backfill of another athlete's activities."""

    async def _fetch_month(self, athlete: Athlete, year: int, month: int) -> list[Activity]:
        response = await self._fetch(
            f"/athletes/{athlete.id}/interval",
            {
                "interval_type": "month",
                "chart_type": "miles",
                "year_offset": "0",
                "interval": f"{year}{month:02d}",
            },
        )
        return parse_interval_feed(response.text, athlete.id)

    async def _batch_import(
        self,
        athlete: Athlete,
        start: tuple[int, int],
        known: set[int],
        force_update: bool,
        result: DiscoveryResult,
    ) -> None:
        months = year_month_range(*start)
        concurrency = 1
        while not self.cancelled():
            window = [next(months) for _ in range(concurrency)]
            batches = await asyncio.gather(*(self._fetch_month(athlete, y, m) for y, m in window))
            result.rounds += 1
            result.requests += len(window)
            if self.cancelled():
                return
            empty = redundant = 0
            adding: list[Activity] = []
            for batch in batches:
                if not batch:
                    empty += 1
                    continue
                found_new = False
                for a in batch:
                    if a.id not in known:
                        adding.append(a)
                        known.add(a.id)
                        found_new = True
                if not found_new:
                    redundant += 1
            if adding:
                await self._store(adding, force_update)
                result.added += len(adding)
            elif empty >= self.config.min_empty_windows and empty >= concurrency:
                oldest_year, oldest_month = window[-1]
                sentinel = month_start(oldest_year, oldest_month)
                if self._update_athlete is not None:
                    await self._update_athlete(athlete.id, {"activity_sentinel": sentinel})
                athlete.activity_sentinel = sentinel
                result.sentinel = sentinel
                logger.info("Reached start of history for %s at %d-%02d", athlete, oldest_year, oldest_month)
                return
            elif redundant >= self.config.min_redundant_windows and redundant >= concurrency:
                return
            concurrency = self._next_concurrency(concurrency)

    async def run(self, athlete: Athlete, *, force_update: bool = False) -> DiscoveryResult:
        result = DiscoveryResult()
        known = await self._known_ids(athlete, force_update)
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        await self._batch_import(athlete, (now.year, now.month), known, force_update, result)
        if not self.cancelled() and not athlete.activity_sentinel:
            oldest = await self.stores.activities.oldest_for_athlete(athlete.id)
            if oldest is not None:
                start = datetime.fromtimestamp(oldest.ts, tz=timezone.utc)
                logger.info("Resuming incomplete backfill for %s from %d-%02d", athlete, start.year, start.month)
                await self._batch_import(athlete, (start.year, start.month), known, force_update, result)
        return result
