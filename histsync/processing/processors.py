"""Local processing stages.

Inline units take a ``StageContext`` and mutate ``ctx.activities`` in place;
the pipeline persists them afterwards.  ``PeaksProcessor`` and
``TrainingLoadProcessor`` are offload processors: peaks are computed in the
worker pool and training load needs the athlete's whole history in order.

Each unit flags per-activity failures with ``set_sync_error``; anything it
leaves unflagged is recorded as a success.
"""

from __future__ import annotations

import asyncio
import bisect
import logging
import math
from typing import Any

from histsync.processing.peaks import find_peaks_batch, normalized_power
from histsync.sync.base import Activity, Peak, Stream
from histsync.sync.offload import OffloadProcessor, StageContext

logger = logging.getLogger("histsync.processing.processors")

# Fractions of max heart rate separating the five zones.
HR_ZONE_BOUNDS = (0.6, 0.7, 0.8, 0.9)
# Samples further apart than this are a pause, not elapsed effort.
MAX_SAMPLE_GAP = 30.0
ACTIVE_SPEED = 0.5  # m/s

# Cycling power estimate
BIKE_WEIGHT = 8.0        # kg
GRAVITY = 9.80665
ROLLING_RESISTANCE = 0.0050
AIR_DENSITY = 1.225      # kg/m³
DRAG_AREA = 0.32         # CdA, m²
DEFAULT_RESTING_HR = 60.0

ATL_DAYS = 7
CTL_DAYS = 42


async def _load_streams(ctx: StageContext, activity: Activity, names: tuple[str, ...]) -> dict[str, list[Any]]:
    return await ctx.stores.streams.get_for_activity(activity.id, names)


def _deltas(time: list[float], active: list[bool] | None = None) -> list[float]:
    """Seconds attributed to each sample (first sample gets zero)."""
    out = [0.0]
    for i in range(1, len(time)):
        dt = time[i] - time[i - 1]
        if dt > MAX_SAMPLE_GAP or (active is not None and not active[i]):
            dt = 0.0
        out.append(dt)
    return out


# ---------------------------------------------------------------------------
# Inline units
# ---------------------------------------------------------------------------


async def hr_zones(ctx: StageContext) -> None:
    """Seconds spent in each heart rate zone, from the athlete's max HR history."""
    for a in ctx.activities:
        streams = await _load_streams(ctx, a, ("time", "heartrate", "active"))
        time, hr = streams.get("time"), streams.get("heartrate")
        max_hr = ctx.athlete.value_at("max_hr_history", a.ts)
        if not time or not hr or not max_hr:
            a.hr_zones_time = None
            continue
        bounds = [max_hr * x for x in HR_ZONE_BOUNDS]
        zones = [0.0] * (len(bounds) + 1)
        for dt, value in zip(_deltas(time, streams.get("active")), hr):
            if value:
                zones[bisect.bisect_right(bounds, value)] += dt
        a.hr_zones_time = zones


def _active_stream(streams: dict[str, list[Any]]) -> list[bool]:
    time = streams["time"]
    moving = streams.get("moving")
    if moving and len(moving) == len(time):
        return [bool(x) for x in moving]
    speed = streams.get("velocity_smooth")
    if speed and len(speed) == len(time):
        return [bool(v and v > ACTIVE_SPEED) for v in speed]
    return [True] * len(time)


def estimate_cycling_power(
    time: list[float],
    distance: list[float],
    altitude: list[float] | None,
    weight: float,
) -> list[float]:
    """Steady-state power from rolling resistance, gravity and air drag."""
    mass = weight + BIKE_WEIGHT
    watts = [0.0]
    for i in range(1, len(time)):
        dt = time[i] - time[i - 1]
        dd = distance[i] - distance[i - 1]
        if dt <= 0 or dd <= 0:
            watts.append(0.0)
            continue
        v = dd / dt
        grade = (altitude[i] - altitude[i - 1]) / dd if altitude else 0.0
        force = mass * GRAVITY * (ROLLING_RESISTANCE + grade)
        power = force * v + 0.5 * AIR_DENSITY * DRAG_AREA * v ** 3
        watts.append(max(0.0, power))
    return watts


async def extra_streams(ctx: StageContext) -> None:
    """Derive the 'active' stream and, for rides without a meter, 'watts_calc'."""
    for a in ctx.activities:
        streams = await _load_streams(
            ctx, a, ("time", "moving", "velocity_smooth", "watts", "distance", "altitude")
        )
        if not streams.get("time"):
            continue
        out = [Stream(activity=a.id, athlete=a.athlete, stream="active", data=_active_stream(streams))]
        weight = ctx.athlete.value_at("weight_history", a.ts)
        if a.basetype == "ride" and not streams.get("watts") and streams.get("distance") and weight:
            try:
                watts = estimate_cycling_power(
                    streams["time"], streams["distance"], streams.get("altitude"), weight
                )
            except (TypeError, ZeroDivisionError, IndexError) as exc:
                a.set_sync_error(ctx.stage, exc, ctx.now)
                continue
            out.append(Stream(activity=a.id, athlete=a.athlete, stream="watts_calc", data=watts))
        if ctx.cancel_event.is_set():
            return
        await ctx.stores.streams.put_many(out)


def _trimp(time: list[float], hr: list[float], active: list[bool] | None, max_hr: float, gender: str | None) -> float:
    """Banister training impulse."""
    k, b = (0.86, 1.67) if gender == "female" else (0.64, 1.92)
    reserve = max_hr - DEFAULT_RESTING_HR
    total = 0.0
    for dt, value in zip(_deltas(time, active), hr):
        if not value or not dt:
            continue
        ratio = min(max((value - DEFAULT_RESTING_HR) / reserve, 0.0), 1.0)
        total += dt / 60 * ratio * k * math.exp(b * ratio)
    return total


async def activity_stats(ctx: StageContext) -> None:
    """Summary statistics plus a training load score (TSS, else TRIMP)."""
    for a in ctx.activities:
        streams = await _load_streams(
            ctx, a, ("time", "active", "heartrate", "watts", "watts_calc", "distance")
        )
        time = streams.get("time")
        if not time:
            a.stats = None
            continue
        active = streams.get("active")
        deltas = _deltas(time, active)
        stats: dict[str, Any] = {
            "elapsed_time": time[-1] - time[0],
            "active_time": sum(deltas),
        }
        distance = streams.get("distance")
        if distance:
            stats["distance"] = distance[-1] - distance[0]
        hr = streams.get("heartrate")
        if hr:
            values = [x for x in hr if x]
            if values:
                stats["hr_avg"] = sum(values) / len(values)
                stats["hr_max"] = max(values)
        watts = streams.get("watts") or streams.get("watts_calc")
        if watts:
            stats["estimate"] = not streams.get("watts")
            stats["power_avg"] = sum(w or 0 for w in watts) / len(watts)
            np = normalized_power(time, watts)
            if np:
                stats["np"] = np
                ftp = ctx.athlete.value_at("ftp_history", a.ts)
                if ftp:
                    intensity = np / ftp
                    stats["intensity"] = intensity
                    stats["tss"] = stats["active_time"] * np * intensity / (ftp * 3600) * 100
        if "tss" not in stats and hr:
            max_hr = ctx.athlete.value_at("max_hr_history", a.ts)
            if max_hr and max_hr > DEFAULT_RESTING_HR:
                stats["trimp"] = _trimp(time, hr, active, max_hr, ctx.athlete.gender)
        a.stats = stats


# ---------------------------------------------------------------------------
# Offload processors
# ---------------------------------------------------------------------------


PEAK_STREAMS = ("time", "active", "heartrate", "watts", "watts_calc", "distance", "grade_adjusted_distance")


class PeaksProcessor(OffloadProcessor):
    """Best efforts per period/distance, computed in the worker pool."""

    async def process_batch(self, activities: list[Activity]) -> None:
        items = []
        for a in activities:
            streams = await self.stores.streams.get_for_activity(a.id, PEAK_STREAMS)
            items.append({"id": a.id, "ts": a.ts, "basetype": a.basetype, "streams": streams})
        periods = list(self.stage.data.get("periods") or ())
        distances = list(self.stage.data.get("distances") or ())
        if self.pool is not None:
            result = await self.pool.execute("find-peaks", items, periods, distances)
        else:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(None, find_peaks_batch, items, periods, distances)
        if self.cancel_event.is_set():
            return
        by_id = {a.id: a for a in activities}
        now = self.clock()
        for error in result["errors"]:
            logger.warning("Peaks failed for activity %s: %s", error["activity"], error["error"])
            activity = by_id.get(error["activity"])
            if activity is not None:
                activity.set_sync_error(self.stage, error["error"], now)
        for a in activities:
            await self.stores.peaks.delete_for_activity(a.id)
        await self.stores.peaks.put_many(
            Peak(athlete=self.athlete.id, **p) for p in result["peaks"]
        )


def _load_score(activity: Activity) -> float:
    stats = activity.stats or {}
    return stats.get("tss") or stats.get("trimp") or 0.0


class TrainingLoadProcessor(OffloadProcessor):
    """Acute/chronic training load as exponentially weighted daily sums.

    Load depends on every earlier activity, so each batch replays the
    athlete's full history in time order.  Activities outside the batch are
    updated directly in the store; batch activities are updated in place.
    """

    async def process_batch(self, activities: list[Activity]) -> None:
        batch = {a.id: a for a in activities}
        history = await self.stores.activities.get_all_for_athlete(self.athlete.id)
        stored = {a.id for a in history}
        ordered = [batch.get(a.id, a) for a in history]
        ordered.extend(a for a in activities if a.id not in stored)
        ordered.sort(key=lambda a: a.ts)
        atl = ctl = 0.0
        last_ts: float | None = None
        updates: dict[int, dict[str, Any]] = {}
        for a in ordered:
            if last_ts is not None:
                days = max(a.ts - last_ts, 0) / 86400
                atl *= math.exp(-days / ATL_DAYS)
                ctl *= math.exp(-days / CTL_DAYS)
            load = _load_score(a)
            tsb = ctl - atl
            atl += load * (1 - math.exp(-1 / ATL_DAYS))
            ctl += load * (1 - math.exp(-1 / CTL_DAYS))
            last_ts = a.ts
            values = {"atl": atl, "ctl": ctl, "tsb": tsb}
            if a.id in batch:
                a.training_load = values
            elif a.training_load != values:
                updates[a.id] = {"training_load": values}
        if updates and not self.cancel_event.is_set():
            await self.stores.activities.update_many(updates)
