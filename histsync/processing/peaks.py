"""Rolling peak calculations over activity streams.

Pure functions only; ``find_peaks_batch`` runs inside worker processes, so
its inputs and outputs are plain lists and dicts.
"""

from __future__ import annotations

import math
from collections import deque
from typing import Any, Sequence

PEAK_TYPES = ("hr", "power", "np", "pace", "gap")
# pace and gap are seconds per kilometer, so lower values are better.
LOWER_IS_BETTER = ("pace", "gap")

# Estimated power is too noisy for short efforts.
MIN_ESTIMATE_PERIOD = 300
# Normalized power needs at least this much data to be meaningful.
MIN_NP_PERIOD = 300
NP_WINDOW = 30


def rolling_best_average(
    time: Sequence[float], values: Sequence[float | None], period: float
) -> tuple[float, int, int] | None:
    """Best average of ``values`` over any window spanning at least ``period`` seconds.

    Returns:
        ``(average, start_index, end_index)`` or None when the stream is shorter than
        ``period``.  Missing samples count as zero.
    """
    best: tuple[float, int, int] | None = None
    total = 0.0
    start = 0
    for end, value in enumerate(values):
        total += value or 0
        while start < end and time[end] - time[start + 1] >= period:
            total -= values[start] or 0
            start += 1
        if time[end] - time[start] >= period:
            avg = total / (end - start + 1)
            if best is None or avg > best[0]:
                best = (avg, start, end)
    return best


def best_distance_time(
    time: Sequence[float], distance: Sequence[float], target: float
) -> tuple[float, float, float] | None:
    """Fastest time to cover ``target`` meters.

    Returns:
        ``(pace, start_ts, end_ts)`` with pace in seconds per kilometer, or None
        when the activity never covers ``target``.
    """
    best: tuple[float, float, float] | None = None
    start = 0
    for end in range(len(distance)):
        while start < end and distance[end] - distance[start + 1] >= target:
            start += 1
        covered = distance[end] - distance[start]
        if covered < target:
            continue
        elapsed = time[end] - time[start]
        if elapsed <= 0:
            continue
        pace = elapsed / (covered / 1000)
        if best is None or pace < best[0]:
            best = (pace, time[start], time[end])
    return best


def normalized_power(time: Sequence[float], watts: Sequence[float | None]) -> float | None:
    """Fourth-power mean of the 30 second rolling average power."""
    if not time or time[-1] - time[0] < NP_WINDOW:
        return None
    window: deque[tuple[float, float]] = deque()
    total = 0.0
    fourth = 0.0
    samples = 0
    for t, w in zip(time, watts):
        w = w or 0
        window.append((t, w))
        total += w
        while t - window[0][0] >= NP_WINDOW:
            total -= window.popleft()[1]
        if t - time[0] >= NP_WINDOW:
            fourth += (total / len(window)) ** 4
            samples += 1
    if not samples:
        return None
    return (fourth / samples) ** 0.25


def _peaks_for(item: dict[str, Any], periods: Sequence[float], distances: Sequence[float]) -> list[dict[str, Any]]:
    streams = item.get("streams") or {}
    time = streams.get("time")
    if not time:
        return []
    peaks: list[dict[str, Any]] = []

    def add(type_: str, period: float, value: float | None) -> None:
        if value is not None and math.isfinite(value) and value > 0:
            peaks.append({"activity": item["id"], "type": type_, "period": period, "value": value, "ts": item["ts"]})

    heartrate = streams.get("heartrate")
    if heartrate:
        for period in periods:
            roll = rolling_best_average(time, heartrate, period)
            add("hr", period, roll and roll[0])

    is_run = item.get("basetype") == "run"
    watts = streams.get("watts") or streams.get("watts_calc")
    if watts and not is_run:
        estimate = not streams.get("watts")
        for period in periods:
            if estimate and period < MIN_ESTIMATE_PERIOD:
                continue
            roll = rolling_best_average(time, watts, period)
            if roll is None:
                continue
            add("power", period, roll[0])
            if not estimate and period >= MIN_NP_PERIOD:
                # NP of the best average power window, not the best NP window.
                start, end = roll[1], roll[2] + 1
                add("np", period, normalized_power(time[start:end], watts[start:end]))

    distance = streams.get("distance")
    if is_run and distance:
        gap = streams.get("grade_adjusted_distance")
        for target in distances:
            roll = best_distance_time(time, distance, target)
            add("pace", target, roll and roll[0])
            if gap:
                roll = best_distance_time(time, gap, target)
                add("gap", target, roll and roll[0])
    return peaks


def find_peaks_batch(
    items: list[dict[str, Any]], periods: Sequence[float], distances: Sequence[float]
) -> dict[str, list[dict[str, Any]]]:
    """Compute peaks for a batch of activities.

    Args:
        items:      ``{"id", "ts", "basetype", "streams": {name: list}}`` per activity.
        periods:    Rolling window lengths in seconds.
        distances:  Target distances in meters (runs only).

    Returns:
        ``{"peaks": [...], "errors": [{"activity", "error"}]}``.  A failure
        for one activity never affects the others.
    """
    peaks: list[dict[str, Any]] = []
    errors: list[dict[str, Any]] = []
    for item in items:
        try:
            peaks.extend(_peaks_for(item, periods, distances))
        except Exception as exc:
            errors.append({"activity": item.get("id"), "error": f"{type(exc).__name__}: {exc}"})
    return {"peaks": peaks, "errors": errors}
