"""Tests for rolling peak calculations."""

from __future__ import annotations

import pytest

from histsync.processing.peaks import (
    MIN_ESTIMATE_PERIOD,
    best_distance_time,
    find_peaks_batch,
    normalized_power,
    rolling_best_average,
)


class TestRollingBestAverage:
    def test_finds_best_window(self) -> None:
        time = [0, 1, 2, 3, 4, 5]
        values = [100, 100, 300, 300, 100, 100]
        avg, start, end = rolling_best_average(time, values, 1)
        assert avg == 300
        assert (start, end) == (2, 3)

    def test_too_short(self) -> None:
        assert rolling_best_average([0, 1, 2], [1, 2, 3], 10) is None

    def test_missing_samples_count_as_zero(self) -> None:
        avg, _, _ = rolling_best_average([0, 1, 2], [None, 10, None], 2)
        assert avg == pytest.approx(10 / 3)


class TestBestDistanceTime:
    def test_constant_speed(self) -> None:
        time = [float(t) for t in range(0, 601)]
        distance = [t * 4.0 for t in time]  # 4 m/s = 250 s/km
        pace, start_ts, end_ts = best_distance_time(time, distance, 1000)
        assert pace == pytest.approx(250)
        assert end_ts - start_ts == pytest.approx(250)

    def test_picks_fastest_segment(self) -> None:
        time = [0, 100, 200, 300]
        distance = [0, 500, 1500, 2000]
        pace, start_ts, _ = best_distance_time(time, distance, 1000)
        assert pace == pytest.approx(100)
        assert start_ts == 100

    def test_never_reaches_target(self) -> None:
        assert best_distance_time([0, 10], [0, 50], 1000) is None


class TestNormalizedPower:
    def test_steady_power(self) -> None:
        time = list(range(0, 120))
        assert normalized_power(time, [200] * 120) == pytest.approx(200)

    def test_variable_power_exceeds_average(self) -> None:
        time = list(range(0, 600))
        watts = [400 if (t // 60) % 2 else 0 for t in time]
        assert normalized_power(time, watts) > sum(watts) / len(watts)

    def test_too_short(self) -> None:
        assert normalized_power(list(range(10)), [100] * 10) is None
        assert normalized_power([], []) is None


class TestFindPeaksBatch:
    """Tests for find_peaks_batch()."""

    @staticmethod
    def _ride(estimate: bool = False) -> dict:
        time = list(range(0, 900))
        key = "watts_calc" if estimate else "watts"
        return {
            "id": 7,
            "ts": 1000.0,
            "basetype": "ride",
            "streams": {"time": time, key: [250] * 900, "heartrate": [140] * 900},
        }

    def test_ride_power_and_np(self) -> None:
        result = find_peaks_batch([self._ride()], [5, 300], [1000])
        types = {(p["type"], p["period"]) for p in result["peaks"]}
        assert types == {("hr", 5), ("hr", 300), ("power", 5), ("power", 300), ("np", 300)}
        assert all(p["activity"] == 7 and p["ts"] == 1000.0 for p in result["peaks"])

    def test_estimated_power_skips_short_periods(self) -> None:
        result = find_peaks_batch([self._ride(estimate=True)], [5, MIN_ESTIMATE_PERIOD], [])
        power = {p["period"] for p in result["peaks"] if p["type"] == "power"}
        assert power == {MIN_ESTIMATE_PERIOD}
        assert not [p for p in result["peaks"] if p["type"] == "np"]

    def test_run_pace_and_gap(self) -> None:
        time = [float(t) for t in range(0, 601)]
        item = {
            "id": 8,
            "ts": 0.0,
            "basetype": "run",
            "streams": {
                "time": time,
                "distance": [t * 4.0 for t in time],
                "grade_adjusted_distance": [t * 5.0 for t in time],
            },
        }
        result = find_peaks_batch([item], [], [1000])
        by_type = {p["type"]: p["value"] for p in result["peaks"]}
        assert by_type["pace"] == pytest.approx(250)
        assert by_type["gap"] == pytest.approx(200)

    def test_one_failure_does_not_spoil_batch(self) -> None:
        broken = {"id": 9, "ts": 0.0, "basetype": "ride", "streams": {"time": [0, "x", 2], "heartrate": [1, 2, 3]}}
        result = find_peaks_batch([broken, self._ride()], [5], [])
        assert [e["activity"] for e in result["errors"]] == [9]
        assert "TypeError" in result["errors"][0]["error"]
        assert {p["activity"] for p in result["peaks"]} == {7}

    def test_no_streams(self) -> None:
        assert find_peaks_batch([{"id": 1, "ts": 0, "basetype": "run", "streams": {}}], [5], [400]) == {
            "peaks": [],
            "errors": [],
        }
