"""Workout endpoints: single add/update and streamed bulk runs."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse

from src.dependencies import Client, WorkoutCoordinator, WorkoutTemplates
from src.exercise_sync.base import utc_now
from src.exercise_sync.errors import RemoteValidationError, SyncError
from src.exercise_sync.workouts import WorkoutStore, WorkoutTemplate, template_row
from src.models.workouts import (
    WorkoutAddRequest,
    WorkoutBulkSyncRequest,
    WorkoutExtractRequest,
    WorkoutUpdateRequest,
    WorkoutWriteRead,
)
from src.routers.sync import event_stream, http_error

router = APIRouter(tags=["workouts"])
logger = logging.getLogger("exercise_sync.api")


def _remote_error(exc: SyncError) -> HTTPException:
    if isinstance(exc, RemoteValidationError):
        return HTTPException(status_code=400, detail=exc.errors or str(exc))
    return http_error(exc)


async def _save_local(
    store: WorkoutStore, workout_id: str, definition: dict[str, Any]
) -> WorkoutTemplate | None:
    """Mirror a written workout locally. The remote write already happened."""
    now = utc_now()
    try:
        return await store.upsert_by_external_id(
            {**template_row(workout_id, definition), "synced_at": now, "updated_at": now}
        )
    except Exception as exc:
        logger.error("Workout %s saved remotely but not locally: %s", workout_id, exc)
        return None


@router.post("/workouts/add", response_model=WorkoutWriteRead)
async def add_workout(
    body: WorkoutAddRequest,
    client: Client,
    store: WorkoutTemplates,
) -> Any:
    """Create a workout definition remotely and mirror it locally."""
    definition = body.workout_def.to_definition()
    try:
        workout_id = await client.add_workout(
            definition,
            view=body.type,
            user_id=body.user_id,
            training_plan_id=body.training_plan_id,
        )
    except SyncError as exc:
        logger.error("Adding workout %r failed: %s", definition["name"], exc)
        raise _remote_error(exc) from exc

    saved = await _save_local(store, workout_id, definition)
    return WorkoutWriteRead(workout_id=workout_id, local_id=saved.id if saved else None)


@router.put("/workouts/update", response_model=WorkoutWriteRead)
async def update_workout(
    body: WorkoutUpdateRequest,
    client: Client,
    store: WorkoutTemplates,
) -> Any:
    """Replace a remote workout definition and refresh the local mirror."""
    definition = body.workout_def.to_definition()
    try:
        await client.update_workout(definition)
    except SyncError as exc:
        logger.error("Updating workout %s failed: %s", definition["id"], exc)
        raise _remote_error(exc) from exc

    workout_id = str(definition["id"])
    saved = await _save_local(store, workout_id, definition)
    return WorkoutWriteRead(workout_id=workout_id, local_id=saved.id if saved else None)


@router.put("/workouts/bulk-sync")
async def bulk_sync_workouts(
    body: WorkoutBulkSyncRequest,
    coordinator: WorkoutCoordinator,
) -> StreamingResponse:
    """Push local workout templates to the provider, streaming progress."""
    return event_stream(
        coordinator.bulk_sync_workouts(body.workout_ids, skip_existing=body.skip_existing)
    )


@router.post("/workouts/extract")
async def extract_workouts(
    body: WorkoutExtractRequest,
    coordinator: WorkoutCoordinator,
) -> StreamingResponse:
    """Copy the provider's workout templates into local storage, streaming progress."""
    return event_stream(coordinator.extract_and_save(view=body.view, count=body.count))
