"""Endpoint-level client for the fitness-platform API.

The provider has no "list exercises" endpoint.  Exercises are discovered by
walking what references them:

    /trainingPlan/getList           plans for a user
    /trainingPlan/getWorkoutDefList workout definitions of a plan
    /calendar/getList               scheduled workouts, last N days

Exercises show up under ``exercises`` and ``workoutItems[].exercise`` with
inconsistent field names (``muscleGroups`` vs ``muscle_groups``, ``videoUrl``
vs ``video_url`` ...).  ``normalize_exercise`` folds the aliases into one
canonical shape before anything else sees the record.

Writes go to ``/exercise/add`` and ``/exercise/set`` after local validation,
workouts to ``/workoutDef/add`` and ``/workoutDef/set``.
All traffic goes through the injected ``RateLimitedGateway``.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any, Callable

from src.exercise_sync.base import RemoteRecord
from src.exercise_sync.errors import (
    NOT_FOUND,
    AuthError,
    RemoteError,
    RemoteValidationError,
    SyncError,
)
from src.exercise_sync.field_mapper import EXERCISE_TAGS, RECORD_TYPES, VIDEO_TYPES
from src.exercise_sync.gateway import RateLimitedGateway
from src.exercise_sync.workouts import (
    WORKOUT_VIEWS,
    provider_id,
    unwrap_template,
    validate_workout,
)

logger = logging.getLogger("exercise_sync.client")

MAX_NAME_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500
MAX_VIDEO_URL_LENGTH = 255

# canonical attribute -> provider aliases, first present wins
_ALIASES: dict[str, tuple[str, ...]] = {
    "description": ("description", "notes"),
    "muscle_groups": ("muscle_groups", "muscleGroups", "muscles"),
    "equipment": ("equipment", "equipmentNeeded"),
    "difficulty": ("difficulty", "difficultyLevel", "level"),
    "video_url": ("video_url", "videoUrl", "video"),
    "thumbnail_url": ("thumbnail_url", "thumbnailUrl", "thumbnail"),
    "instructions": ("instructions", "steps"),
    "category": ("category", "exerciseType", "type"),
    "created_at": ("created_at", "createdAt"),
    "updated_at": ("updated_at", "updatedAt"),
}
_NAME_ALIASES = ("name", "exerciseName", "title")
_CONSUMED = frozenset(
    {"id", "is_active", *_NAME_ALIASES, *(a for group in _ALIASES.values() for a in group)}
)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def _split_list(value: Any) -> list[str]:
    """Lists keep their string items; comma separated strings are split."""
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple)):
        return [v for v in value if v and isinstance(v, str)]
    return []


def _first(raw: dict[str, Any], aliases: tuple[str, ...]) -> Any:
    for alias in aliases:
        value = raw.get(alias)
        if value not in (None, ""):
            return value
    return None


def normalize_exercise(raw: dict[str, Any]) -> RemoteRecord | None:
    """Fold provider aliases into a RemoteRecord. None if id or name is missing."""
    external_id = raw.get("id")
    name = _first(raw, _NAME_ALIASES)
    if external_id in (None, "") or not name:
        return None

    attributes: dict[str, Any] = {
        key: value for key, value in raw.items() if key not in _CONSUMED
    }
    for canonical, aliases in _ALIASES.items():
        value = _first(raw, aliases)
        if canonical in ("muscle_groups", "equipment", "instructions"):
            attributes[canonical] = _split_list(value)
        elif value is not None:
            attributes[canonical] = value
    attributes.setdefault("description", "")
    attributes["is_active"] = raw.get("is_active") is not False

    return RemoteRecord(external_id=str(external_id), name=str(name), attributes=attributes)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _validate_common(payload: dict[str, Any], errors: list[str]) -> None:
    name = payload.get("name")
    if name and len(name) > MAX_NAME_LENGTH:
        errors.append(f"Exercise name must be at most {MAX_NAME_LENGTH} characters")

    description = payload.get("description")
    if description and len(description) > MAX_DESCRIPTION_LENGTH:
        errors.append(f"Description must be at most {MAX_DESCRIPTION_LENGTH} characters")

    if payload.get("recordType") and payload["recordType"] not in RECORD_TYPES:
        errors.append(f"Invalid record type {payload['recordType']!r}")

    if payload.get("tag") and payload["tag"] not in EXERCISE_TAGS:
        errors.append(f"Invalid exercise tag {payload['tag']!r}")

    if payload.get("videoType") and payload["videoType"] not in VIDEO_TYPES:
        errors.append(f"Invalid video type {payload['videoType']!r}")


def validate_exercise_create(payload: dict[str, Any]) -> list[str]:
    """Return validation errors for an ``/exercise/add`` payload (empty if valid)."""
    errors: list[str] = []
    if not str(payload.get("name") or "").strip():
        errors.append("Exercise name is required")
    _validate_common(payload, errors)
    video_url = payload.get("videoUrl")
    if video_url and len(video_url) > MAX_VIDEO_URL_LENGTH:
        errors.append(f"Video URL must be at most {MAX_VIDEO_URL_LENGTH} characters")
    return errors


def validate_exercise_update(payload: dict[str, Any]) -> list[str]:
    """Return validation errors for an ``/exercise/set`` payload (empty if valid)."""
    errors: list[str] = []
    if not payload.get("id"):
        errors.append("Exercise ID is required")
    _validate_common(payload, errors)
    return errors


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class TrainerizeClient:
    """Exercise and workout endpoints of the fitness platform.

    Args:
        gateway:        The rate-limited gateway all calls go through.
        group_id:       Provider group id, used by the profile check.
        calendar_days:  How far back discovery reads the calendar.
        today:          Returns the current date (injectable for tests).
    """

    def __init__(
        self,
        gateway: RateLimitedGateway,
        group_id: str = "",
        calendar_days: int = 90,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.gateway = gateway
        self.group_id = group_id
        self.calendar_days = calendar_days
        self._today = today

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def validate_connection(self) -> bool:
        """True if the credentials can read the group profile."""
        try:
            user_ids = [int(self.group_id)] if str(self.group_id).isdigit() else []
            response = await self.gateway.request(
                "/user/getProfile", {"usersid": user_ids, "unitBodystats": "inches"}
            )
        except SyncError as exc:
            logger.warning("Connection validation failed: %s", exc)
            return False
        return bool(response)

    async def get_training_plans(self, user_id: int) -> list[dict]:
        return self._data(await self.gateway.request("/trainingPlan/getList", {"userID": user_id}))

    async def get_workout_definitions(self, plan_id: int) -> list[dict]:
        return self._data(
            await self.gateway.request("/trainingPlan/getWorkoutDefList", {"planID": plan_id})
        )

    async def get_calendar(self, user_id: int, start: date, end: date) -> list[dict]:
        return self._data(
            await self.gateway.request(
                "/calendar/getList",
                {
                    "userID": user_id,
                    "startDate": start.isoformat(),
                    "endDate": end.isoformat(),
                    "unitDistance": "miles",
                    "unitWeight": "lbs",
                },
            )
        )

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def discover_user(self, user_id: int) -> dict[str, RemoteRecord]:
        """Exercises referenced by one user's plans and recent calendar."""
        found: dict[str, RemoteRecord] = {}

        for plan in await self.get_training_plans(user_id):
            plan_id = plan.get("id")
            if plan_id:
                workouts = await self.get_workout_definitions(plan_id)
                self._extract_from_workouts(workouts, found)

        end = self._today()
        start = end - timedelta(days=self.calendar_days)
        for item in await self.get_calendar(user_id, start, end):
            workout = item.get("workout")
            if isinstance(workout, dict) and workout.get("exercises"):
                self._extract_from_workouts([workout], found)
            self._collect(item.get("exercises"), found)

        logger.info("User %s: discovered %d exercises", user_id, len(found))
        return found

    async def discover_exercises(self, user_ids: list[int]) -> list[RemoteRecord]:
        """Discover exercises across users, keyed by external id.

        A failure for one user is logged and discovery moves on, except for
        AuthError which aborts.
        """
        found: dict[str, RemoteRecord] = {}
        for user_id in user_ids:
            try:
                found.update(await self.discover_user(user_id))
            except AuthError:
                raise
            except SyncError as exc:
                logger.error("Discovery failed for user %s: %s", user_id, exc)
        return list(found.values())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add_exercise(self, payload: dict[str, Any]) -> str:
        """Create an exercise remotely and return its new external id.

        Raises:
            RemoteValidationError: The payload failed local validation.
            RemoteError:           The provider did not return an id.
        """
        errors = validate_exercise_create(payload)
        if errors:
            raise RemoteValidationError(", ".join(errors), errors=errors)

        response = await self.gateway.request("/exercise/add", payload)
        new_id = None
        if isinstance(response, dict):
            new_id = response.get("id") or response.get("exerciseId")
        if not new_id:
            raise RemoteError(
                f"No id returned for exercise {payload.get('name')!r}",
                body=None if response is NOT_FOUND else response,
            )
        logger.info("Added exercise %r remotely (id %s)", payload.get("name"), new_id)
        return str(new_id)

    async def update_exercise(self, payload: dict[str, Any]) -> dict[str, Any]:
        errors = validate_exercise_update(payload)
        if errors:
            raise RemoteValidationError(", ".join(errors), errors=errors)
        response = await self.gateway.request("/exercise/set", payload)
        if response is NOT_FOUND:
            raise RemoteError(f"Exercise {payload['id']} not found remotely", status_code=404)
        return response

    # ------------------------------------------------------------------
    # Workouts
    # ------------------------------------------------------------------

    async def add_workout(
        self,
        definition: dict[str, Any],
        view: str = "mine",
        user_id: int | None = None,
        training_plan_id: int | None = None,
    ) -> str:
        """Create a workout definition remotely and return its new id.

        Raises:
            RemoteValidationError: The definition failed local validation.
            RemoteError:           The provider did not return an id.
        """
        errors = validate_workout(definition)
        if view not in WORKOUT_VIEWS:
            errors.append(f"Invalid workout view {view!r}")
        if errors:
            raise RemoteValidationError(", ".join(errors), errors=errors)

        payload: dict[str, Any] = {"type": view, "workoutDef": definition}
        if user_id is not None:
            payload["userID"] = user_id
        if training_plan_id is not None:
            payload["trainingPlanID"] = training_plan_id
        response = await self.gateway.request("/workoutDef/add", payload)
        new_id = None
        if isinstance(response, dict):
            new_id = response.get("id") or response.get("workoutId")
        if not new_id:
            raise RemoteError(
                f"No id returned for workout {definition.get('name')!r}",
                body=None if response is NOT_FOUND else response,
            )
        logger.info("Added workout %r remotely (id %s)", definition.get("name"), new_id)
        return str(new_id)

    async def update_workout(self, definition: dict[str, Any]) -> dict[str, Any]:
        """Replace an existing workout definition; ``definition['id']`` selects it."""
        errors = validate_workout(definition, require_id=True)
        if errors:
            raise RemoteValidationError(", ".join(errors), errors=errors)
        response = await self.gateway.request("/workoutDef/set", {"workoutDef": definition})
        if response is NOT_FOUND:
            raise RemoteError(f"Workout {definition['id']} not found remotely", status_code=404)
        logger.info("Updated workout %r (id %s)", definition.get("name"), definition["id"])
        return response if isinstance(response, dict) else {}

    async def list_workout_templates(
        self, view: str = "mine", count: int = 100, start: int = 0
    ) -> Any:
        response = await self.gateway.request(
            "/workoutTemplate/getList", {"view": view, "count": count, "start": start}
        )
        return None if response is NOT_FOUND else response

    async def get_workout_template(self, template_id: str) -> dict[str, Any] | None:
        """One template's definition, None when the provider has no such template."""
        response = await self.gateway.request(
            "/workoutTemplate/get", {"id": provider_id(template_id)}
        )
        return unwrap_template(response)

    # ------------------------------------------------------------------

    @staticmethod
    def _data(response: Any) -> list[dict]:
        if not response or not isinstance(response, dict):
            return []
        data = response.get("data")
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    def _extract_from_workouts(self, workouts: list[dict], found: dict[str, RemoteRecord]) -> None:
        for workout in workouts:
            self._collect(workout.get("exercises"), found)
            items = workout.get("workoutItems")
            if isinstance(items, list):
                self._collect(
                    [item.get("exercise") for item in items if isinstance(item, dict)],
                    found,
                )

    @staticmethod
    def _collect(raw_exercises: Any, found: dict[str, RemoteRecord]) -> None:
        if not isinstance(raw_exercises, list):
            return
        for raw in raw_exercises:
            if not isinstance(raw, dict):
                continue
            record = normalize_exercise(raw)
            if record is not None:
                found[record.external_id] = record
