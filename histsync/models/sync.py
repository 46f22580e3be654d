"""Pydantic models for athletes, activities and sync control."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import Field

from histsync.models.base import HistSyncBase


# ---------- Athletes ----------

class HistoryValueIn(HistSyncBase):
    ts: float
    value: float = Field(gt=0)


class AthleteCreate(HistSyncBase):
    id: int = Field(gt=0)
    name: str = Field(min_length=1)
    gender: str = Field(min_length=1)
    sync_enabled: bool = False


class AthleteUpdate(HistSyncBase):
    name: str | None = None
    gender: str | None = None


class AthleteRead(HistSyncBase):
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
    ftp_history: list[HistoryValueIn] = Field(default_factory=list)
    weight_history: list[HistoryValueIn] = Field(default_factory=list)
    max_hr_history: list[HistoryValueIn] = Field(default_factory=list)


# ---------- Activities ----------

class StageStateRead(HistSyncBase):
    version: int = 0
    outcome: str | None = None
    error_count: int = 0
    error_ts: float | None = None
    error_message: str | None = None


class ActivityRead(HistSyncBase):
    id: int
    athlete: int
    ts: float
    basetype: str
    name: str | None = None
    type: str | None = None
    stats: dict[str, Any] | None = None
    hr_zones_time: list[float] | None = None
    training_load: dict[str, float] | None = None
    sync_state: dict[str, StageStateRead] = Field(default_factory=dict)


class PeakRead(HistSyncBase):
    athlete: int
    activity: int
    type: str
    period: float
    value: float
    ts: float
    activity_record: ActivityRead | None = None


# ---------- Sync control ----------

class SyncRequest(HistSyncBase):
    wait: bool = False
    no_activity_scan: bool = False
    no_streams_fetch: bool = False
    force_activity_update: bool = False


class SyncStatusRead(HistSyncBase):
    athlete: int
    active: bool
    status: str | None = None
    error: str | None = None
    rate_limiter_suspended: bool = False
    rate_limiter_resumes: float | None = None
    last_sync: float = 0.0
    next_sync: float | None = None


class ActivityCountsRead(HistSyncBase):
    total: int
    imported: int
    unavailable: int
    processed: int
    unprocessable: int


class InvalidateRequest(HistSyncBase):
    group: Literal["remote", "local"]
    name: str | None = None
    sync: bool = True


class InvalidateResult(HistSyncBase):
    invalidated: int


class IntegrityRequest(HistSyncBase):
    repair: bool = False
    prune: bool = False


class IntegrityReportRead(HistSyncBase):
    clean: bool
    missing_streams_for: list[int]
    detached_streams_for: list[int]
    in_false_error_state: list[int]


class PurgeResult(HistSyncBase):
    deleted: int


# ---------- Exchange ----------

class ExchangeRecord(HistSyncBase):
    store: Literal["athletes", "activities", "streams"]
    data: dict[str, Any]


class ImportResult(HistSyncBase):
    athletes: int = 0
    activities: int = 0
    streams: int = 0
