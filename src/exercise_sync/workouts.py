"""Workout definitions: local templates and the provider's ``workoutDef`` shape.

Workouts are mirrored the same way exercises are.  A local
``workout_templates`` row holds the exercise list as stored JSON.  The
provider receives it as a ``workoutDef``::

    {
        "name": "Upper A",
        "type": "workoutRegular",
        "instructions": "",
        "exercises": [{"def": {"id": 4512, "name": "Push-ups", "sets": 3, ...}}],
        "tags": [{"id": 3}],
        "trackingStats": {"def": {"avgHeartRate": false, ...}}
    }

Writes go to ``/workoutDef/add`` (new, linked back by the returned id) and
``/workoutDef/set`` (already linked).  Templates are read back through
``/workoutTemplate/getList`` and ``/workoutTemplate/get``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from src.exercise_sync.field_mapper import RECORD_TYPES

WORKOUT_TYPES = (
    "cardio",
    "workoutRegular",
    "workoutCircuit",
    "workoutTimed",
    "workoutInterval",
    "workoutVideo",
)
WORKOUT_VIEWS = ("shared", "mine", "other", "trainingPlan")
SUPERSET_TYPES = ("superset", "circuit", "none")
EXERCISE_SOURCES = ("system", "custom")
# rest periods are workout entries, never standalone exercises
WORKOUT_RECORD_TYPES = (*RECORD_TYPES, "rest")

DEFAULT_WORKOUT_TYPE = "workoutRegular"
DEFAULT_SETS = 3
DEFAULT_REST_SECONDS = 60
DEFAULT_RECORD_TYPE = "strength"


@dataclass
class WorkoutTemplate:
    """A row of the local ``workout_templates`` table.

    Attributes:
        id:             Local primary key.
        name:           Workout name.
        external_id:    Linked provider workout id, None if never synced.
        workout_type:   One of ``WORKOUT_TYPES``.
        instructions:   Free text shown to the client.
        exercises:      Exercise entries, either local shorthand or ``{"def": {...}}``.
        tags:           Provider tag references, ``[{"id": 3}]``.
        tracking_stats: Provider ``trackingStats`` object.
        exercise_count: Number of exercises, derived on save.
        total_sets:     Sum of sets over all exercises, derived on save.
        synced_at:      Last successful sync timestamp.
        metadata:       The full provider definition last seen for this workout.
    """

    id: str
    name: str
    external_id: str | None = None
    workout_type: str | None = None
    instructions: str | None = None
    exercises: list[dict[str, Any]] = field(default_factory=list)
    tags: list[Any] = field(default_factory=list)
    tracking_stats: dict[str, Any] = field(default_factory=dict)
    exercise_count: int = 0
    total_sets: int = 0
    synced_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "WorkoutTemplate":
        known = set(cls.__dataclass_fields__)
        data = {k: v for k, v in row.items() if k in known}
        data["id"] = str(data["id"])
        if data.get("external_id") is not None:
            data["external_id"] = str(data["external_id"])
        for name in ("exercises", "tags"):
            data[name] = list(data.get(name) or [])
        for name in ("tracking_stats", "metadata"):
            data[name] = dict(data.get(name) or {})
        for name in ("exercise_count", "total_sets"):
            data[name] = int(data.get(name) or 0)
        return cls(**data)

    @property
    def is_linked(self) -> bool:
        return bool(self.external_id)


class WorkoutStore(ABC):
    """Local storage of workout templates, keyed by id and by provider id."""

    @abstractmethod
    async def fetch_by_ids(self, ids: list[str]) -> list[WorkoutTemplate]:
        """Templates with the given primary keys; unknown ids are left out."""

    @abstractmethod
    async def find_by_external_id(self, external_id: str) -> WorkoutTemplate | None: ...

    @abstractmethod
    async def upsert_by_external_id(self, data: dict[str, Any]) -> WorkoutTemplate:
        """Insert or update the template linked to ``data["external_id"]``."""

    @abstractmethod
    async def update(self, template_id: str, data: dict[str, Any]) -> WorkoutTemplate:
        """Update the template keyed by primary key.

        Raises:
            KeyError: If no template has this id.
            DuplicateExternalIdError: If another template owns ``external_id``.
        """


# ---------------------------------------------------------------------------
# Local template -> workoutDef
# ---------------------------------------------------------------------------


def default_target(exercise: dict[str, Any]) -> str:
    if exercise.get("reps"):
        return f"{exercise['reps']} reps"
    if exercise.get("duration"):
        return f"{exercise['duration']} seconds"
    if exercise.get("distance"):
        return f"{exercise['distance']}m"
    return "10 reps"


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def provider_id(value: str) -> int | str:
    """Provider ids are numeric on the wire; anything else passes through."""
    return int(value) if str(value).isdigit() else value


def exercise_def(entry: dict[str, Any]) -> dict[str, Any]:
    """Expand one stored exercise entry into a provider exercise ``def``.

    Entries saved from the provider already carry a ``def`` and pass through
    with defaults filled in.  Unset optional keys are left out.
    """
    ex = entry.get("def") if isinstance(entry.get("def"), dict) else entry
    definition = {
        "id": _as_int(ex.get("exerciseId") or ex.get("id") or ex.get("trainerize_id")),
        "name": ex.get("name") or ex.get("exerciseName"),
        "description": ex.get("description"),
        "sets": ex.get("sets") or DEFAULT_SETS,
        "target": ex.get("target") or default_target(ex),
        "targetDetail": ex.get("targetDetail"),
        "supersetID": ex.get("supersetID"),
        "supersetType": ex.get("supersetType") or "none",
        "intervalTime": ex.get("intervalTime"),
        "restTime": ex.get("restTime") or DEFAULT_REST_SECONDS,
        "recordType": ex.get("recordType") or DEFAULT_RECORD_TYPE,
        "type": ex.get("type") or "system",
        "vimeoVideo": ex.get("vimeoVideo"),
        "youTubeVideo": ex.get("youTubeVideo"),
        "numPhotos": ex.get("numPhotos"),
    }
    return {key: value for key, value in definition.items() if value is not None}


def workout_definition(template: WorkoutTemplate) -> dict[str, Any]:
    """Build the ``workoutDef`` for a local template."""
    return {
        "name": template.name,
        "exercises": [{"def": exercise_def(entry)} for entry in template.exercises],
        "type": template.workout_type or DEFAULT_WORKOUT_TYPE,
        "instructions": template.instructions or "",
        "tags": list(template.tags),
        "trackingStats": dict(template.tracking_stats),
    }


def validate_workout(definition: dict[str, Any], require_id: bool = False) -> list[str]:
    """Return validation errors for a ``workoutDef`` (empty if valid)."""
    errors: list[str] = []
    if require_id and not definition.get("id"):
        errors.append("Workout ID is required")
    if not str(definition.get("name") or "").strip():
        errors.append("Workout name is required")
    exercises = definition.get("exercises") or []
    if not exercises:
        errors.append("At least one exercise is required")
    workout_type = definition.get("type")
    if workout_type and workout_type not in WORKOUT_TYPES:
        errors.append(f"Invalid workout type {workout_type!r}")

    for position, entry in enumerate(exercises, start=1):
        ex = entry.get("def") if isinstance(entry, dict) else None
        if not isinstance(ex, dict):
            errors.append(f"Exercise {position} has no definition")
            continue
        if not ex.get("id") and not ex.get("name"):
            errors.append(f"Exercise {position} needs an id or a name")
        if ex.get("recordType") and ex["recordType"] not in WORKOUT_RECORD_TYPES:
            errors.append(f"Exercise {position}: invalid record type {ex['recordType']!r}")
        if ex.get("supersetType") and ex["supersetType"] not in SUPERSET_TYPES:
            errors.append(f"Exercise {position}: invalid superset type {ex['supersetType']!r}")
        if ex.get("type") and ex["type"] not in EXERCISE_SOURCES:
            errors.append(f"Exercise {position}: invalid exercise type {ex['type']!r}")
    return errors


# ---------------------------------------------------------------------------
# workoutDef -> local template
# ---------------------------------------------------------------------------


def template_row(external_id: str, definition: dict[str, Any]) -> dict[str, Any]:
    """Columns to upsert for a provider workout, with derived counts."""
    exercises = [e for e in definition.get("exercises") or [] if isinstance(e, dict)]
    total_sets = 0
    for entry in exercises:
        ex = entry.get("def") if isinstance(entry.get("def"), dict) else entry
        total_sets += _as_int(ex.get("sets")) or 0
    return {
        "external_id": str(external_id),
        "name": definition.get("name") or f"Workout {external_id}",
        "workout_type": definition.get("type"),
        "instructions": definition.get("instructions"),
        "exercises": exercises,
        "exercise_count": len(exercises),
        "total_sets": total_sets,
        "tags": list(definition.get("tags") or []),
        "tracking_stats": dict(definition.get("trackingStats") or {}),
        "metadata": dict(definition),
    }


def template_ids(listing: Any) -> list[str]:
    """Workout ids from a ``/workoutTemplate/getList`` answer, in listing order.

    The list lives under ``templates``, ``workouts`` or ``data`` depending on
    the account, or is the answer itself.  Only top-level items count: nested
    exercise ids are not workouts.
    """
    items: Any = listing
    if isinstance(listing, dict):
        for key in ("templates", "workouts", "data"):
            if isinstance(listing.get(key), list):
                items = listing[key]
                break
        else:
            items = []
    if not isinstance(items, list):
        return []

    ids: list[str] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        value = item.get("id") or item.get("workoutId") or item.get("templateId")
        if value in (None, ""):
            continue
        if str(value) not in ids:
            ids.append(str(value))
    return ids


def unwrap_template(response: Any) -> dict[str, Any] | None:
    """The definition inside a ``/workoutTemplate/get`` answer, or None."""
    if not isinstance(response, dict) or not response:
        return None
    for key in ("workoutDef", "template", "workout"):
        if isinstance(response.get(key), dict):
            return response[key]
    return response
