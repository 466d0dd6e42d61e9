"""Sync endpoints: preview, execute, bulk add, discovery and run inspection.

Long-running operations respond with a ``text/event-stream`` of progress
events (``data: {...}`` frames).  Errors that happen before the stream opens
map to HTTP status codes; after that they arrive as a terminal ``error``
event.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query
from fastapi.responses import StreamingResponse

from src.dependencies import (
    AppSettings,
    Audit,
    Client,
    Coordinator,
    Discovery,
    Engine,
    Store,
)
from src.exercise_sync.base import ProgressEvent
from src.exercise_sync.errors import AuthError, ConfigError, SyncError
from src.exercise_sync.reconciliation import SyncPlan
from src.exercise_sync.stream import MEDIA_TYPE, encode_stream
from src.models.sync import (
    BulkAddRequest,
    DiscoverRequest,
    SyncExecuteRequest,
    SyncPreviewRead,
    SyncRunRead,
)

router = APIRouter(tags=["sync"])
logger = logging.getLogger("exercise_sync.api")


def http_error(exc: SyncError) -> HTTPException:
    if isinstance(exc, ConfigError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, AuthError):
        return HTTPException(status_code=502, detail=f"Remote API rejected credentials: {exc}")
    return HTTPException(status_code=502, detail=f"Remote API error: {exc}")


def event_stream(
    events: AsyncIterator[ProgressEvent], background: BackgroundTasks | None = None
) -> StreamingResponse:
    return StreamingResponse(
        encode_stream(events),
        media_type=MEDIA_TYPE,
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        background=background,
    )


async def _plan(engine: Engine, client: Client, store: Store, user_ids: list[int]) -> SyncPlan:
    try:
        return await engine.plan(lambda: client.discover_exercises(user_ids), store)
    except SyncError as exc:
        logger.error("Sync plan failed: %s", exc)
        raise http_error(exc) from exc


# ---------- Reconciliation ----------

@router.get("/sync/preview", response_model=SyncPreviewRead)
async def preview_sync(
    engine: Engine,
    client: Client,
    store: Store,
    user_ids: list[int] = Query(...),
) -> Any:
    """Classify discovered remote exercises without writing anything."""
    plan = await _plan(engine, client, store, user_ids)
    return SyncPreviewRead.from_plan(plan)


@router.post("/sync/execute")
async def execute_sync(
    body: SyncExecuteRequest,
    engine: Engine,
    client: Client,
    store: Store,
    coordinator: Coordinator,
) -> StreamingResponse:
    """Re-plan against the current snapshot and apply creates/updates."""
    plan = await _plan(engine, client, store, body.user_ids)
    operations = plan.operations
    if body.operation_ids is not None:
        wanted = set(body.operation_ids)
        operations = [op for op in operations if op.id in wanted]
    logger.info("Executing %d of %d planned operations", len(operations), len(plan.operations))
    return event_stream(coordinator.apply_operations(operations))


@router.get("/sync/runs", response_model=list[SyncRunRead])
async def list_runs(audit: Audit, limit: int = Query(default=50, ge=1, le=200)) -> Any:
    return [SyncRunRead.from_record(r) for r in await audit.list_runs(limit)]


@router.get("/sync/runs/{run_id}", response_model=SyncRunRead)
async def get_run(run_id: str, audit: Audit) -> Any:
    record = await audit.get_run(run_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Sync run not found")
    return SyncRunRead.from_record(record)


# ---------- Exercises ----------

@router.put("/exercises/bulk-add")
async def bulk_add_exercises(
    body: BulkAddRequest,
    coordinator: Coordinator,
    settings: AppSettings,
) -> StreamingResponse:
    """Create local exercises on the remote side, streaming progress."""
    skip_existing = settings.skip_existing if body.skip_existing is None else body.skip_existing
    check_duplicates = (
        settings.check_for_duplicates
        if body.check_for_duplicates is None
        else body.check_for_duplicates
    )
    return event_stream(
        coordinator.bulk_add_to_remote(
            body.exercise_ids,
            skip_existing=skip_existing,
            check_for_duplicates=check_duplicates,
        )
    )


@router.post("/exercises/discover")
async def discover_exercises(
    body: DiscoverRequest,
    coordinator: Coordinator,
    discovery: Discovery,
) -> StreamingResponse:
    """Discover exercises for the given users and save them locally."""
    if discovery.running:
        raise HTTPException(status_code=409, detail="A discovery run is already in progress")
    token = discovery.begin()

    async def events() -> AsyncIterator[ProgressEvent]:
        try:
            async for event in coordinator.discover_and_save(body.user_ids, cancel=token):
                yield event
        finally:
            discovery.end(token)

    # background tasks also run when the body was never iterated
    release = BackgroundTasks()
    release.add_task(discovery.end, token)
    return event_stream(events(), background=release)


@router.post("/exercises/discover/cancel")
async def cancel_discovery(discovery: Discovery) -> dict:
    if discovery.token is None:
        return {"cancelled": False, "detail": "No discovery run in progress"}
    discovery.token.cancel()
    logger.info("Discovery cancellation requested")
    return {"cancelled": True}
