"""Canonical records for the sync engine: athletes, activities, streams, peaks.

These dataclasses are what the record stores persist and what every stage of
the pipeline reads and mutates.  They round-trip through plain dicts
(``to_dict`` / ``from_dict``) so the bulk exchange format and the stores share
one representation.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from histsync.sync.manifest import SyncStage

logger = logging.getLogger("histsync.sync.base")

# Bump to force every athlete through a full activity metadata rescan.
ACTIVITY_LIST_VERSION = 1

# Stage outcomes
OUTCOME_SUCCESS = "success"
OUTCOME_NOT_APPLICABLE = "not-applicable"
OUTCOME_ERROR = "error"

BASETYPES = ("ride", "run", "swim", "ski", "ebike", "workout", "unknown")

HISTORY_KEYS = ("ftp_history", "weight_history", "max_hr_history")


# ---------------------------------------------------------------------------
# Per-stage sync state
# ---------------------------------------------------------------------------


@dataclass
class StageState:
    """Recorded progress of one activity through one stage.

    Attributes:
        version:       Highest stage version completed for this activity.
        outcome:       'success', 'not-applicable', 'error' or None.
        error_count:   Consecutive failures; scales the error backoff.
        error_ts:      Epoch seconds of the most recent failure.
        error_message: Text of the most recent failure.
    """

    version: int = 0
    outcome: str | None = None
    error_count: int = 0
    error_ts: float | None = None
    error_message: str | None = None

    def in_backoff(self, backoff: float, now: float) -> bool:
        """True while a failed stage must not be retried."""
        if self.error_ts is None or not self.error_count:
            return False
        return now - self.error_ts < self.error_count * backoff


@dataclass
class Activity:
    """One remote activity plus the derived fields local stages attach to it.

    Attributes:
        id:             Remote-assigned activity id.
        athlete:        Owning athlete id.
        ts:             Start time, epoch seconds.
        basetype:       Coarse category (see ``BASETYPES``).
        name:           Activity title, if known.
        type:           Remote activity type (e.g. 'Ride', 'VirtualRun').
        extra:          Unfiltered remote metadata.
        stats:          Output of the activity-stats stage.
        hr_zones_time:  Seconds spent in each heart rate zone.
        training_load:  ATL/CTL/TSB as of this activity.
        sync_state:     Stage qualifier ('group/name') -> StageState.
    """

    id: int
    athlete: int
    ts: float
    basetype: str = "unknown"
    name: str | None = None
    type: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    stats: dict[str, Any] | None = None
    hr_zones_time: list[float] | None = None
    training_load: dict[str, float] | None = None
    sync_state: dict[str, StageState] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Sync state
    # ------------------------------------------------------------------

    def get_sync_state(self, stage: SyncStage) -> StageState | None:
        return self.sync_state.get(stage.qualifier)

    def _state(self, stage: SyncStage) -> StageState:
        return self.sync_state.setdefault(stage.qualifier, StageState())

    def is_current(self, stage: SyncStage) -> bool:
        """An activity is current for a stage once it holds the stage's version
        or a definitive not-applicable outcome."""
        state = self.get_sync_state(stage)
        if state is None:
            return False
        return state.version >= stage.version or state.outcome == OUTCOME_NOT_APPLICABLE

    def is_not_applicable(self, stage: SyncStage) -> bool:
        state = self.get_sync_state(stage)
        return state is not None and state.outcome == OUTCOME_NOT_APPLICABLE

    def has_sync_success(self, stage: SyncStage) -> bool:
        state = self.get_sync_state(stage)
        return (
            state is not None
            and state.outcome == OUTCOME_SUCCESS
            and state.version >= stage.version
        )

    def has_sync_error(self, stage: SyncStage) -> bool:
        state = self.get_sync_state(stage)
        return state is not None and state.error_ts is not None

    def in_error_backoff(self, stage: SyncStage, now: float) -> bool:
        state = self.get_sync_state(stage)
        return state is not None and state.in_backoff(stage.error_backoff, now)

    def set_sync_success(self, stage: SyncStage) -> None:
        self.sync_state[stage.qualifier] = StageState(
            version=stage.version, outcome=OUTCOME_SUCCESS
        )

    def set_sync_not_applicable(self, stage: SyncStage) -> None:
        self.sync_state[stage.qualifier] = StageState(
            version=stage.version, outcome=OUTCOME_NOT_APPLICABLE
        )

    def set_sync_error(self, stage: SyncStage, error: BaseException | str, now: float) -> None:
        state = self._state(stage)
        state.outcome = OUTCOME_ERROR
        state.error_count += 1
        state.error_ts = now
        state.error_message = str(error)

    def begin_stage(self, stage: SyncStage) -> None:
        """Reset the per-run error marker before a stage executes.

        The error count survives so repeated failures keep growing the backoff.
        """
        state = self._state(stage)
        state.error_ts = None
        state.error_message = None
        if state.outcome == OUTCOME_ERROR:
            state.outcome = None

    def clear_sync_state(self, stage: SyncStage) -> None:
        self.sync_state.pop(stage.qualifier, None)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Activity:
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["sync_state"] = {
            q: s if isinstance(s, StageState) else StageState(**s)
            for q, s in (data.get("sync_state") or {}).items()
        }
        return cls(**kwargs)

    def __str__(self) -> str:
        return str(self.id)


# ---------------------------------------------------------------------------
# Athlete
# ---------------------------------------------------------------------------


@dataclass
class HistoryValue:
    """A value that took effect at ``ts`` (epoch seconds)."""

    ts: float
    value: float


@dataclass
class Athlete:
    """A tracked athlete and its sync bookkeeping.

    Attributes:
        id:                               Remote athlete id.
        name:                             Display name.
        gender:                           'male' / 'female' / other.
        sync_enabled:                     Eligible for scheduled sync.
        last_sync:                        Epoch seconds the last job finished.
        last_sync_error:                  Epoch seconds the last job failed.
        sync_error_count:                 Consecutive failed jobs.
        last_sync_version_hash:           Manifest hash of the last successful job.
        last_sync_activity_list_version:  ``ACTIVITY_LIST_VERSION`` of the last scan.
        activity_sentinel:                Start of exhausted history (peer backfill).
        ftp_history / weight_history / max_hr_history:
                                          Ascending ``HistoryValue`` tables.
    """

    id: int
    name: str | None = None
    gender: str | None = None
    sync_enabled: bool = False
    last_sync: float = 0.0
    last_sync_error: float = 0.0
    sync_error_count: int = 0
    last_sync_version_hash: str | None = None
    last_sync_activity_list_version: int | None = None
    activity_sentinel: float | None = None
    ftp_history: list[HistoryValue] = field(default_factory=list)
    weight_history: list[HistoryValue] = field(default_factory=list)
    max_hr_history: list[HistoryValue] = field(default_factory=list)

    def value_at(self, key: str, ts: float) -> float | None:
        """Return the history value in effect at ``ts``.

        Before the first entry the earliest value applies; with no entries
        the result is None.
        """
        values: list[HistoryValue] = getattr(self, key)
        if not values:
            return None
        current = values[0].value
        for entry in values:
            if entry.ts > ts:
                break
            current = entry.value
        return current

    def set_history_values(self, key: str, values: list[HistoryValue | dict]) -> list[HistoryValue]:
        """Replace a history table, validating and sorting it ascending by ts."""
        if key not in HISTORY_KEYS:
            raise ValueError(f"Unknown history key: {key}")
        clean: list[HistoryValue] = []
        for entry in values:
            if isinstance(entry, dict):
                entry = HistoryValue(ts=float(entry["ts"]), value=float(entry["value"]))
            if entry.value <= 0:
                raise ValueError(f"{key} values must be positive, got {entry.value!r}")
            clean.append(entry)
        clean.sort(key=lambda x: x.ts)
        setattr(self, key, clean)
        return clean

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Athlete:
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        for key in HISTORY_KEYS:
            kwargs[key] = [
                x if isinstance(x, HistoryValue) else HistoryValue(**x)
                for x in (data.get(key) or [])
            ]
        return cls(**kwargs)

    def __str__(self) -> str:
        return str(self.id)


# ---------------------------------------------------------------------------
# Streams / peaks
# ---------------------------------------------------------------------------


@dataclass
class Stream:
    """One time series for one activity, keyed by ``(activity, stream)``."""

    activity: int
    athlete: int
    stream: str
    data: list[Any]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Stream:
        return cls(
            activity=data["activity"],
            athlete=data["athlete"],
            stream=data["stream"],
            data=list(data["data"]),
        )


@dataclass
class Peak:
    """Best rolling value of ``type`` over ``period`` (seconds or meters)."""

    activity: int
    athlete: int
    type: str
    period: float
    value: float
    ts: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
