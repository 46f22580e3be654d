"""Bulk export/import of athletes, activities and streams as NDJSON batches."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import StreamingResponse

from histsync.dependencies import SyncManagerDep
from histsync.models.sync import ExchangeRecord, ImportResult
from histsync.sync.exchange import DataExchange

router = APIRouter(prefix="/exchange", tags=["exchange"])


@router.get("/export")
async def export_data(
    manager: SyncManagerDep,
    athlete: int | None = Query(default=None),
) -> StreamingResponse:
    """One JSON array of ``{store, data}`` records per line."""
    exchange = DataExchange(manager.stores, manager.config.exchange, athlete_id=athlete)

    async def stream() -> AsyncIterator[str]:
        async for batch in exchange.export():
            yield json.dumps(batch) + "\n"

    return StreamingResponse(stream(), media_type="application/x-ndjson")


@router.post("/import", response_model=ImportResult)
async def import_data(manager: SyncManagerDep, body: list[ExchangeRecord]) -> Any:
    exchange = DataExchange(manager.stores, manager.config.exchange)
    try:
        await exchange.import_records([r.model_dump() for r in body])
        return await exchange.flush()
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid import record: {exc}") from exc
