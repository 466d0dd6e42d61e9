"""Pydantic models for the workout endpoints.

Request bodies keep the provider's camelCase names (``workoutDef``,
``trackingStats``, ``userID``) as aliases; snake_case is accepted too.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import Field

from src.models.base import SyncBase


class WorkoutDefIn(SyncBase):
    name: str = Field(min_length=1, max_length=200)
    exercises: list[dict[str, Any]] = Field(min_length=1)
    type: str = "workoutRegular"
    instructions: str = ""
    tags: list[dict[str, Any]] = Field(default_factory=list)
    tracking_stats: dict[str, Any] = Field(default_factory=dict, alias="trackingStats")

    def to_definition(self) -> dict[str, Any]:
        """The ``workoutDef`` object as the provider expects it."""
        return self.model_dump(by_alias=True)


class WorkoutDefUpdate(WorkoutDefIn):
    id: int


class WorkoutAddRequest(SyncBase):
    type: str = "mine"
    user_id: int | None = Field(default=None, alias="userID")
    training_plan_id: int | None = Field(default=None, alias="trainingPlanID")
    workout_def: WorkoutDefIn = Field(alias="workoutDef")


class WorkoutUpdateRequest(SyncBase):
    workout_def: WorkoutDefUpdate = Field(alias="workoutDef")


class WorkoutBulkSyncRequest(SyncBase):
    workout_ids: list[str] = Field(min_length=1)
    skip_existing: bool = False


class WorkoutExtractRequest(SyncBase):
    view: Literal["shared", "mine", "other", "trainingPlan", "all"] = "mine"
    count: int = Field(default=100, ge=1, le=500)


class WorkoutWriteRead(SyncBase):
    success: bool = True
    workout_id: str
    local_id: str | None = None
