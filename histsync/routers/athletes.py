"""Athlete registration and sync control endpoints."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from typing import Any, AsyncIterator

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import StreamingResponse

from histsync.dependencies import SyncManagerDep
from histsync.errors import AthleteNotFoundError, SyncDisabledError, SyncJobError
from histsync.models.base import ErrorDetail
from histsync.models.sync import (
    ActivityCountsRead,
    ActivityRead,
    AthleteCreate,
    AthleteRead,
    AthleteUpdate,
    HistoryValueIn,
    IntegrityReportRead,
    IntegrityRequest,
    InvalidateRequest,
    InvalidateResult,
    PeakRead,
    PurgeResult,
    SyncRequest,
    SyncStatusRead,
)
from histsync.sync.base import HISTORY_KEYS

router = APIRouter(
    prefix="/athletes",
    tags=["athletes"],
    responses={404: {"model": ErrorDetail}, 503: {"model": ErrorDetail}},
)
logger = logging.getLogger("histsync.routers.athletes")


def _not_found(exc: AthleteNotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(exc))


# ---------- Athletes ----------

@router.get("", response_model=list[AthleteRead])
async def list_athletes(manager: SyncManagerDep) -> Any:
    return [a.to_dict() for a in await manager.stores.athletes.get_all()]


@router.post("", response_model=AthleteRead, status_code=201)
async def create_athlete(manager: SyncManagerDep, body: AthleteCreate) -> Any:
    try:
        athlete = await manager.add_athlete(body.id, name=body.name, gender=body.gender)
        if body.sync_enabled:
            athlete = await manager.enable_athlete(body.id)
    except TypeError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return athlete.to_dict()


@router.get("/{athlete_id}", response_model=AthleteRead)
async def get_athlete(athlete_id: int, manager: SyncManagerDep) -> Any:
    try:
        return (await manager.get_athlete(athlete_id)).to_dict()
    except AthleteNotFoundError as exc:
        raise _not_found(exc) from exc


@router.patch("/{athlete_id}", response_model=AthleteRead)
async def update_athlete(athlete_id: int, manager: SyncManagerDep, body: AthleteUpdate) -> Any:
    updates = body.model_dump(exclude_unset=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")
    try:
        return (await manager.update_athlete(athlete_id, updates)).to_dict()
    except AthleteNotFoundError as exc:
        raise _not_found(exc) from exc


@router.post("/{athlete_id}/enable", response_model=AthleteRead)
async def enable_athlete(athlete_id: int, manager: SyncManagerDep) -> Any:
    try:
        return (await manager.enable_athlete(athlete_id)).to_dict()
    except AthleteNotFoundError as exc:
        raise _not_found(exc) from exc


@router.post("/{athlete_id}/disable", response_model=AthleteRead)
async def disable_athlete(athlete_id: int, manager: SyncManagerDep) -> Any:
    try:
        return (await manager.disable_athlete(athlete_id)).to_dict()
    except AthleteNotFoundError as exc:
        raise _not_found(exc) from exc


@router.put("/{athlete_id}/history/{key}", response_model=list[HistoryValueIn])
async def set_history_values(
    athlete_id: int, key: str, manager: SyncManagerDep, body: list[HistoryValueIn]
) -> Any:
    if key not in HISTORY_KEYS:
        raise HTTPException(status_code=400, detail=f"Unknown history key: {key}")
    try:
        values = await manager.set_athlete_history_values(
            athlete_id, key, [v.model_dump() for v in body]
        )
    except AthleteNotFoundError as exc:
        raise _not_found(exc) from exc
    except (SyncDisabledError, SyncJobError) as exc:
        # The values are saved; only the follow-up reprocessing failed.
        logger.warning("Reprocessing after history update failed: %s", exc)
        athlete = await manager.get_athlete(athlete_id)
        values = getattr(athlete, key)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [asdict(v) for v in values]


@router.delete("/{athlete_id}/data", response_model=PurgeResult)
async def purge_athlete_data(
    athlete_id: int,
    manager: SyncManagerDep,
    include_athlete: bool = Query(default=False),
) -> Any:
    deleted = await manager.purge_athlete_data(athlete_id, include_athlete=include_athlete)
    return {"deleted": deleted}


# ---------- Activities ----------

@router.get("/{athlete_id}/activities", response_model=list[ActivityRead])
async def list_activities(
    athlete_id: int,
    manager: SyncManagerDep,
    reverse: bool = Query(default=True),
    limit: int = Query(default=50, ge=1, le=1000),
) -> Any:
    try:
        await manager.get_athlete(athlete_id)
    except AthleteNotFoundError as exc:
        raise _not_found(exc) from exc
    activities = await manager.stores.activities.get_all_for_athlete(
        athlete_id, reverse=reverse, limit=limit
    )
    return [a.to_dict() for a in activities]


@router.get("/{athlete_id}/counts", response_model=ActivityCountsRead)
async def activity_counts(athlete_id: int, manager: SyncManagerDep) -> Any:
    try:
        return (await manager.activity_counts(athlete_id)).as_dict()
    except AthleteNotFoundError as exc:
        raise _not_found(exc) from exc


@router.get("/{athlete_id}/peaks", response_model=list[PeakRead])
async def list_peaks(
    athlete_id: int,
    manager: SyncManagerDep,
    peak_type: str = Query(alias="type"),
    period: list[float] = Query(),
    limit: int | None = Query(default=None, ge=1, le=1000),
    expand_activities: bool = Query(default=False),
) -> Any:
    """Best-first peaks for each requested period, optionally with their activities."""
    try:
        peaks = await manager.get_peaks_for_athlete(athlete_id, peak_type, period, limit=limit)
    except AthleteNotFoundError as exc:
        raise _not_found(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not expand_activities:
        return [p.to_dict() for p in peaks]
    return [
        {**p.to_dict(), "activity_record": a.to_dict() if a is not None else None}
        for p, a in await manager.expand_peak_activities(peaks)
    ]


# ---------- Sync control ----------

@router.post("/{athlete_id}/sync", response_model=SyncStatusRead, status_code=202)
async def sync_athlete(athlete_id: int, manager: SyncManagerDep, body: SyncRequest) -> Any:
    options = body.model_dump(exclude={"wait"}, exclude_defaults=True)
    try:
        await manager.sync_athlete(athlete_id, wait=body.wait, **options)
    except AthleteNotFoundError as exc:
        raise _not_found(exc) from exc
    except SyncDisabledError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except SyncJobError as exc:
        raise HTTPException(status_code=502, detail=f"Sync failed: {exc}") from exc
    return asdict(await manager.get_status(athlete_id))


@router.post("/{athlete_id}/cancel", response_model=SyncStatusRead)
async def cancel_sync(athlete_id: int, manager: SyncManagerDep) -> Any:
    try:
        await manager.get_athlete(athlete_id)
    except AthleteNotFoundError as exc:
        raise _not_found(exc) from exc
    await manager.cancel_and_wait(athlete_id)
    return asdict(await manager.get_status(athlete_id))


@router.get("/{athlete_id}/status", response_model=SyncStatusRead)
async def sync_status(athlete_id: int, manager: SyncManagerDep) -> Any:
    try:
        return asdict(await manager.get_status(athlete_id))
    except AthleteNotFoundError as exc:
        raise _not_found(exc) from exc


@router.get("/{athlete_id}/events")
async def sync_events(athlete_id: int, manager: SyncManagerDep) -> StreamingResponse:
    """NDJSON stream of sync events for one athlete, until the client disconnects."""
    try:
        await manager.get_athlete(athlete_id)
    except AthleteNotFoundError as exc:
        raise _not_found(exc) from exc
    sub = manager.events.subscribe(athlete_id)

    async def stream() -> AsyncIterator[str]:
        with sub:
            async for event in sub:
                yield json.dumps(event.to_dict()) + "\n"

    return StreamingResponse(stream(), media_type="application/x-ndjson")


@router.post("/{athlete_id}/invalidate", response_model=InvalidateResult)
async def invalidate(athlete_id: int, manager: SyncManagerDep, body: InvalidateRequest) -> Any:
    try:
        count = await manager.invalidate_athlete_sync_state(
            athlete_id, body.group, body.name, sync=body.sync
        )
    except AthleteNotFoundError as exc:
        raise _not_found(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except SyncJobError as exc:
        raise HTTPException(status_code=502, detail=f"Reprocessing failed: {exc}") from exc
    return {"invalidated": count}


@router.post("/{athlete_id}/integrity", response_model=IntegrityReportRead)
async def integrity_check(athlete_id: int, manager: SyncManagerDep, body: IntegrityRequest) -> Any:
    try:
        report = await manager.integrity_check(athlete_id, repair=body.repair, prune=body.prune)
    except AthleteNotFoundError as exc:
        raise _not_found(exc) from exc
    return {
        "clean": report.clean,
        "missing_streams_for": sorted(report.missing_streams_for),
        "detached_streams_for": sorted(report.detached_streams_for),
        "in_false_error_state": sorted(report.in_false_error_state),
    }
