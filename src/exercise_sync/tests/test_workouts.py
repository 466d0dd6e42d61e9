"""Tests for workout definitions, template storage, client endpoints and runs."""

from __future__ import annotations

from typing import Any

import httpx
import pytest

from src.exercise_sync.audit import InMemoryAuditLog
from src.exercise_sync.base import ProgressPhase, RunStatus
from src.exercise_sync.bulk import CONSUMER_CLOSED_MESSAGE, WorkoutSyncCoordinator
from src.exercise_sync.errors import (
    NOT_FOUND,
    AuthError,
    DuplicateExternalIdError,
    NetworkError,
    RemoteError,
    RemoteValidationError,
)
from src.exercise_sync.store import InMemoryWorkoutStore
from src.exercise_sync.tests.conftest import (
    FIXED_NOW,
    FakeClock,
    Sleeps,
    assert_protocol,
    collect,
    make_client,
    phases,
    read_until,
    request_body,
    routed_transport,
)
from src.exercise_sync.workouts import (
    WorkoutTemplate,
    exercise_def,
    template_ids,
    template_row,
    unwrap_template,
    validate_workout,
    workout_definition,
)

UPPER_A = {
    "name": "Upper A",
    "type": "workoutRegular",
    "instructions": "Rest 90s between supersets",
    "exercises": [
        {"def": {"id": 4512, "name": "Push-ups", "sets": 3, "target": "12 reps"}},
        {"def": {"id": 4513, "name": "Inverted Row", "sets": "4", "target": "8 reps"}},
    ],
    "tags": [{"id": 3}],
    "trackingStats": {"def": {"avgHeartRate": False}},
}


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeWorkoutClient:
    """Stands in for TrainerizeClient's workout endpoints."""

    def __init__(
        self,
        reject: tuple[str, ...] = (),
        auth_fail: bool = False,
        listing: Any = None,
        templates: dict[str, Any] | None = None,
    ) -> None:
        self.reject = reject
        self.auth_fail = auth_fail
        self.listing = listing
        self.templates = templates or {}
        self.added: list[dict[str, Any]] = []
        self.updated: list[dict[str, Any]] = []
        self.fetched: list[str] = []

    def _check(self, definition: dict[str, Any]) -> None:
        if self.auth_fail:
            raise AuthError("token revoked", status_code=403)
        if definition["name"] in self.reject:
            raise RemoteValidationError("Workout name is required", errors=["name"])

    async def add_workout(self, definition: dict[str, Any]) -> str:
        self._check(definition)
        self.added.append(definition)
        return f"wd-{len(self.added)}"

    async def update_workout(self, definition: dict[str, Any]) -> dict[str, Any]:
        self._check(definition)
        self.updated.append(definition)
        return {"code": 0}

    async def list_workout_templates(self, view: str = "mine", count: int = 100) -> Any:
        if isinstance(self.listing, Exception):
            raise self.listing
        return self.listing

    async def get_workout_template(self, template_id: str) -> dict[str, Any] | None:
        if self.auth_fail:
            raise AuthError("token revoked", status_code=403)
        self.fetched.append(template_id)
        return self.templates.get(template_id)


def make_coordinator(store, audit, client, sleeps=None, **kwargs) -> WorkoutSyncCoordinator:
    return WorkoutSyncCoordinator(
        store,
        audit,
        client=client,
        sleep=sleeps or Sleeps(),
        clock=lambda: FIXED_NOW,
        **kwargs,
    )


def template(template_id: str, name: str, external_id: str | None = None) -> dict[str, Any]:
    return {
        "id": template_id,
        "name": name,
        "external_id": external_id,
        "exercises": [{"exerciseId": 4512, "name": "Push-ups", "reps": 12}],
    }


# ---------------------------------------------------------------------------
# workoutDef building and validation
# ---------------------------------------------------------------------------


class TestWorkoutDefinition:
    def test_shorthand_entry_gets_defaults(self) -> None:
        assert exercise_def({"exerciseId": "4512", "name": "Push-ups", "reps": 12}) == {
            "id": 4512,
            "name": "Push-ups",
            "sets": 3,
            "target": "12 reps",
            "supersetType": "none",
            "restTime": 60,
            "recordType": "strength",
            "type": "system",
        }

    def test_target_falls_back_to_duration_then_distance(self) -> None:
        assert exercise_def({"name": "Plank", "duration": 45})["target"] == "45 seconds"
        assert exercise_def({"name": "Row", "distance": 500})["target"] == "500m"
        assert exercise_def({"name": "Mystery"})["target"] == "10 reps"

    def test_provider_def_passes_through(self) -> None:
        entry = {"def": {"id": 7, "name": "Dip", "sets": 5, "recordType": "general",
                         "supersetID": 2, "supersetType": "superset"}}

        definition = exercise_def(entry)

        assert definition["sets"] == 5
        assert definition["recordType"] == "general"
        assert definition["supersetID"] == 2

    def test_workout_definition_shape(self) -> None:
        local = WorkoutTemplate(
            id="w1",
            name="Upper A",
            exercises=[{"exerciseId": 4512, "name": "Push-ups"}],
            tags=[{"id": 3}],
        )

        definition = workout_definition(local)

        assert definition["type"] == "workoutRegular"
        assert definition["instructions"] == ""
        assert definition["tags"] == [{"id": 3}]
        assert definition["exercises"][0]["def"]["id"] == 4512
        assert validate_workout(definition) == []


class TestValidateWorkout:
    def test_valid(self) -> None:
        assert validate_workout(UPPER_A) == []

    def test_name_and_exercises_required(self) -> None:
        assert validate_workout({"name": " ", "exercises": []}) == [
            "Workout name is required",
            "At least one exercise is required",
        ]

    def test_update_requires_id(self) -> None:
        assert validate_workout(UPPER_A, require_id=True) == ["Workout ID is required"]
        assert validate_workout({**UPPER_A, "id": 3301}, require_id=True) == []

    def test_enumerations(self) -> None:
        errors = validate_workout({
            "name": "Broken",
            "type": "yoga",
            "exercises": [
                {"def": {"name": "Row", "recordType": "bogus"}},
                {"def": {"id": 1, "supersetType": "triple"}},
                {"def": {"id": 2, "type": "borrowed"}},
                {"def": {"sets": 3}},
                "Push-ups",
            ],
        })

        assert errors == [
            "Invalid workout type 'yoga'",
            "Exercise 1: invalid record type 'bogus'",
            "Exercise 2: invalid superset type 'triple'",
            "Exercise 3: invalid exercise type 'borrowed'",
            "Exercise 4 needs an id or a name",
            "Exercise 5 has no definition",
        ]

    def test_rest_is_a_workout_record_type(self) -> None:
        definition = {"name": "Circuit", "exercises": [{"def": {"name": "Rest", "recordType": "rest"}}]}
        assert validate_workout(definition) == []


# ---------------------------------------------------------------------------
# Provider answers -> local rows
# ---------------------------------------------------------------------------


class TestTemplateRows:
    def test_template_row_derives_counts(self) -> None:
        row = template_row("3301", UPPER_A)

        assert row["external_id"] == "3301"
        assert row["name"] == "Upper A"
        assert row["workout_type"] == "workoutRegular"
        assert row["exercise_count"] == 2
        assert row["total_sets"] == 7
        assert row["tracking_stats"] == {"def": {"avgHeartRate": False}}
        assert row["metadata"]["instructions"] == "Rest 90s between supersets"

    def test_unnamed_workout_gets_placeholder_name(self) -> None:
        assert template_row("9", {})["name"] == "Workout 9"

    def test_template_ids_from_top_level_items_only(self) -> None:
        listing = {
            "templates": [
                {"id": 10, "exercises": [{"id": 4512}]},
                {"workoutId": "11"},
                {"id": 10},
                {"name": "no id"},
                "junk",
            ]
        }
        assert template_ids(listing) == ["10", "11"]

    @pytest.mark.parametrize(
        "listing, expected",
        [
            ([{"templateId": 8}], ["8"]),
            ({"workouts": [{"id": 1}]}, ["1"]),
            ({"data": [{"id": 2}]}, ["2"]),
            ({"total": 0}, []),
            (None, []),
        ],
    )
    def test_template_ids_listing_shapes(self, listing, expected) -> None:
        assert template_ids(listing) == expected

    def test_unwrap_template(self) -> None:
        assert unwrap_template({"workoutDef": {"name": "A"}}) == {"name": "A"}
        assert unwrap_template({"template": {"name": "B"}}) == {"name": "B"}
        assert unwrap_template({"name": "C", "exercises": []}) == {"name": "C", "exercises": []}
        assert unwrap_template({}) is None
        assert unwrap_template(NOT_FOUND) is None


# ---------------------------------------------------------------------------
# InMemoryWorkoutStore
# ---------------------------------------------------------------------------


class TestInMemoryWorkoutStore:
    @pytest.mark.asyncio
    async def test_upsert_creates_then_updates_in_place(self) -> None:
        store = InMemoryWorkoutStore()
        created = await store.upsert_by_external_id(
            {**template_row("55", UPPER_A), "created_at": FIXED_NOW}
        )

        again = await store.upsert_by_external_id({
            **template_row("55", {**UPPER_A, "name": "Upper A v2"}),
            "created_at": FIXED_NOW.replace(year=2027),
        })

        assert again.id == created.id
        assert again.name == "Upper A v2"
        assert again.created_at == FIXED_NOW
        assert len(store) == 1
        assert (await store.find_by_external_id("55")).name == "Upper A v2"

    @pytest.mark.asyncio
    async def test_external_id_is_unique(self) -> None:
        store = InMemoryWorkoutStore([template("a", "Upper A", "1"), template("b", "Lower A")])

        with pytest.raises(DuplicateExternalIdError):
            await store.update("b", {"external_id": "1"})

    @pytest.mark.asyncio
    async def test_unknown_field_and_missing_row(self) -> None:
        store = InMemoryWorkoutStore([template("a", "Upper A")])

        with pytest.raises(ValueError):
            await store.upsert_by_external_id({"external_id": "1", "name": "X", "colour": "red"})
        with pytest.raises(KeyError):
            await store.update("ghost", {"name": "X"})

    @pytest.mark.asyncio
    async def test_fetch_by_ids_skips_unknown(self) -> None:
        store = InMemoryWorkoutStore([template("a", "Upper A"), template("b", "Lower A")])

        found = await store.fetch_by_ids(["b", "ghost"])

        assert [t.name for t in found] == ["Lower A"]
        assert found[0].exercises[0]["exerciseId"] == 4512


# ---------------------------------------------------------------------------
# Client workout endpoints
# ---------------------------------------------------------------------------


class TestWorkoutEndpoints:
    @pytest.mark.asyncio
    async def test_add_workout_posts_definition(self, clock: FakeClock) -> None:
        calls: list[httpx.Request] = []
        client = make_client(routed_transport({"/workoutDef/add": {"id": 3301}}, calls), clock)

        new_id = await client.add_workout(UPPER_A, view="trainingPlan", training_plan_id=12)

        assert new_id == "3301"
        assert request_body(calls[0]) == {
            "type": "trainingPlan",
            "workoutDef": UPPER_A,
            "trainingPlanID": 12,
        }

    @pytest.mark.asyncio
    async def test_missing_id_is_remote_error(self, clock: FakeClock) -> None:
        calls: list[httpx.Request] = []
        client = make_client(routed_transport({"/workoutDef/add": {"code": 0}}, calls), clock)

        with pytest.raises(RemoteError):
            await client.add_workout(UPPER_A)

    @pytest.mark.asyncio
    async def test_invalid_definition_never_sent(self, clock: FakeClock) -> None:
        calls: list[httpx.Request] = []
        client = make_client(routed_transport({}, calls), clock)

        with pytest.raises(RemoteValidationError) as exc_info:
            await client.add_workout({**UPPER_A, "exercises": []}, view="everyone")

        assert exc_info.value.errors == [
            "At least one exercise is required",
            "Invalid workout view 'everyone'",
        ]
        assert calls == []

    @pytest.mark.asyncio
    async def test_update_of_missing_workout(self, clock: FakeClock) -> None:
        calls: list[httpx.Request] = []
        client = make_client(routed_transport({}, calls), clock)

        with pytest.raises(RemoteError) as exc_info:
            await client.update_workout({**UPPER_A, "id": 3301})

        assert exc_info.value.status_code == 404
        assert request_body(calls[0]) == {"workoutDef": {**UPPER_A, "id": 3301}}

    @pytest.mark.asyncio
    async def test_get_template_unwraps_definition(self, clock: FakeClock) -> None:
        calls: list[httpx.Request] = []
        client = make_client(
            routed_transport({"/workoutTemplate/get": {"workoutDef": UPPER_A}}, calls), clock
        )

        assert await client.get_workout_template("3301") == UPPER_A
        assert request_body(calls[0]) == {"id": 3301}

    @pytest.mark.asyncio
    async def test_missing_template_and_listing(self, clock: FakeClock) -> None:
        calls: list[httpx.Request] = []
        client = make_client(routed_transport({}, calls), clock)

        assert await client.get_workout_template("3301") is None
        assert await client.list_workout_templates("shared", 20) is None
        assert request_body(calls[1]) == {"view": "shared", "count": 20, "start": 0}


# ---------------------------------------------------------------------------
# bulk_sync_workouts
# ---------------------------------------------------------------------------


class TestBulkSyncWorkouts:
    @pytest.mark.asyncio
    async def test_adds_unlinked_and_links_back(self, audit: InMemoryAuditLog) -> None:
        store = InMemoryWorkoutStore([template("w1", "Upper A")])
        client = FakeWorkoutClient()
        coordinator = make_coordinator(store, audit, client)

        events = await collect(coordinator.bulk_sync_workouts(["w1"]))

        assert_protocol(events)
        assert events[-1].payload["successful"] == 1
        [progress] = [e for e in events if e.phase is ProgressPhase.progress]
        assert progress.payload == {
            "id": "w1", "name": "Upper A", "external_id": "wd-1", "created": True
        }
        assert client.added[0]["exercises"][0]["def"]["id"] == 4512
        [linked] = await store.fetch_by_ids(["w1"])
        assert linked.external_id == "wd-1"
        assert linked.synced_at == FIXED_NOW
        run = await audit.get_run(events[-1].payload["run_id"])
        assert run.run_type == "workout_sync"
        assert run.counts.created == 1
        assert audit.operations[0]["workout_name"] == "Upper A"

    @pytest.mark.asyncio
    async def test_linked_template_updated_in_place(self, audit: InMemoryAuditLog) -> None:
        store = InMemoryWorkoutStore([template("w1", "Upper A", external_id="881")])
        client = FakeWorkoutClient()
        coordinator = make_coordinator(store, audit, client)

        events = await collect(coordinator.bulk_sync_workouts(["w1"]))

        assert client.added == []
        assert client.updated[0]["id"] == 881
        assert events[-1].payload["details"]["successful"][0]["created"] is False
        assert len(store) == 1
        run = await audit.get_run(events[-1].payload["run_id"])
        assert run.counts.updated == 1

    @pytest.mark.asyncio
    async def test_skip_existing_and_missing_ids(self, audit: InMemoryAuditLog) -> None:
        store = InMemoryWorkoutStore([template("w1", "Upper A", external_id="881")])
        client = FakeWorkoutClient()
        coordinator = make_coordinator(store, audit, client)

        events = await collect(
            coordinator.bulk_sync_workouts(["w1", "ghost"], skip_existing=True)
        )

        payload = events[-1].payload
        assert payload["skipped"] == 1
        assert payload["details"]["failed"] == [
            {"id": "ghost", "name": None, "error": "Local workout not found"}
        ]
        assert client.added == client.updated == []

    @pytest.mark.asyncio
    async def test_rejected_workout_fails_alone(self, audit: InMemoryAuditLog) -> None:
        store = InMemoryWorkoutStore([
            template("w1", "Upper A"), template("w2", "Bad"), template("w3", "Lower A")
        ])
        client = FakeWorkoutClient(reject=("Bad",))
        coordinator = make_coordinator(store, audit, client)

        events = await collect(coordinator.bulk_sync_workouts(["w1", "w2", "w3"]))

        payload = events[-1].payload
        assert payload["successful"] == 2
        assert payload["details"]["failed"][0]["id"] == "w2"
        [unlinked] = [t for t in await store.fetch_by_ids(["w1", "w2", "w3"]) if not t.is_linked]
        assert unlinked.id == "w2"

    @pytest.mark.asyncio
    async def test_auth_error_aborts(self, audit: InMemoryAuditLog) -> None:
        store = InMemoryWorkoutStore([template("w1", "Upper A"), template("w2", "Lower A")])
        coordinator = make_coordinator(store, audit, FakeWorkoutClient(auth_fail=True))

        events = await collect(coordinator.bulk_sync_workouts(["w1", "w2"]))

        assert phases(events) == [ProgressPhase.start, ProgressPhase.error]
        run = await audit.get_run(events[-1].payload["run_id"])
        assert run.status is RunStatus.failed
        assert run.error_message == "token revoked"

    @pytest.mark.asyncio
    async def test_pauses_after_every_fifth_remote_write(
        self, audit: InMemoryAuditLog, sleeps: Sleeps
    ) -> None:
        ids = [f"w{n}" for n in range(6)]
        store = InMemoryWorkoutStore([template(i, f"Workout {i}") for i in ids])
        coordinator = make_coordinator(store, audit, FakeWorkoutClient(), sleeps, pause_every=5)

        await collect(coordinator.bulk_sync_workouts(ids))

        assert sleeps.calls == [1.0]

    @pytest.mark.asyncio
    async def test_unconfigured_client_is_setup_error(self, audit: InMemoryAuditLog) -> None:
        coordinator = make_coordinator(InMemoryWorkoutStore(), audit, None)

        events = await collect(coordinator.bulk_sync_workouts(["w1"]))

        assert phases(events) == [ProgressPhase.start, ProgressPhase.error]
        assert audit.runs == {}


# ---------------------------------------------------------------------------
# extract_and_save
# ---------------------------------------------------------------------------


class TestExtractAndSave:
    @pytest.mark.asyncio
    async def test_saves_each_listed_template(self, audit: InMemoryAuditLog) -> None:
        client = FakeWorkoutClient(
            listing={"templates": [{"id": 10}, {"id": 11}]},
            templates={"10": UPPER_A, "11": {**UPPER_A, "name": "Lower A"}},
        )
        store = InMemoryWorkoutStore()
        coordinator = make_coordinator(store, audit, client)

        events = await collect(coordinator.extract_and_save(view="shared"))

        assert_protocol(events)
        assert events[0].total is None
        progress = [e for e in events if e.phase is ProgressPhase.progress]
        assert [(e.current, e.total) for e in progress] == [(1, 2), (2, 2)]
        assert [e.payload["name"] for e in progress] == ["Upper A", "Lower A"]
        assert all(e.payload["created"] for e in progress)
        saved = await store.find_by_external_id("10")
        assert saved.total_sets == 7
        assert saved.created_at == FIXED_NOW
        run = await audit.get_run(events[-1].payload["run_id"])
        assert run.run_type == "workout_extract"
        assert run.metadata == {"view": "shared", "count": 100}
        assert run.counts.created == 2

    @pytest.mark.asyncio
    async def test_reextract_updates_existing_rows(self, audit: InMemoryAuditLog) -> None:
        store = InMemoryWorkoutStore([template("w1", "Old name", external_id="10")])
        client = FakeWorkoutClient(listing=[{"id": 10}], templates={"10": UPPER_A})
        coordinator = make_coordinator(store, audit, client)

        events = await collect(coordinator.extract_and_save())

        [progress] = [e for e in events if e.phase is ProgressPhase.progress]
        assert progress.payload["created"] is False
        assert progress.payload["local_id"] == "w1"
        assert (await store.find_by_external_id("10")).name == "Upper A"
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_missing_template_fails_alone(self, audit: InMemoryAuditLog) -> None:
        client = FakeWorkoutClient(listing=[{"id": 10}, {"id": 11}], templates={"11": UPPER_A})
        coordinator = make_coordinator(InMemoryWorkoutStore(), audit, client)

        events = await collect(coordinator.extract_and_save())

        payload = events[-1].payload
        assert events[-1].phase is ProgressPhase.complete
        assert payload["successful"] == 1
        assert payload["details"]["failed"][0]["external_id"] == "10"
        assert "not found" in payload["details"]["failed"][0]["error"]

    @pytest.mark.asyncio
    async def test_count_limits_the_listing(self, audit: InMemoryAuditLog) -> None:
        client = FakeWorkoutClient(
            listing=[{"id": 10}, {"id": 11}], templates={"10": UPPER_A, "11": UPPER_A}
        )
        coordinator = make_coordinator(InMemoryWorkoutStore(), audit, client)

        events = await collect(coordinator.extract_and_save(count=1))

        assert client.fetched == ["10"]
        assert events[-1].total == 1

    @pytest.mark.asyncio
    async def test_listing_failure_aborts(self, audit: InMemoryAuditLog) -> None:
        client = FakeWorkoutClient(listing=NetworkError("connection reset"))
        coordinator = make_coordinator(InMemoryWorkoutStore(), audit, client)

        events = await collect(coordinator.extract_and_save())

        assert phases(events) == [ProgressPhase.start, ProgressPhase.error]
        run = await audit.get_run(events[-1].payload["run_id"])
        assert run.status is RunStatus.failed

    @pytest.mark.asyncio
    async def test_auth_error_aborts(self, audit: InMemoryAuditLog) -> None:
        client = FakeWorkoutClient(listing=[{"id": 10}], auth_fail=True)
        coordinator = make_coordinator(InMemoryWorkoutStore(), audit, client)

        events = await collect(coordinator.extract_and_save())

        assert events[-1].phase is ProgressPhase.error
        assert "token revoked" in events[-1].message

    @pytest.mark.asyncio
    async def test_closed_stream_fails_the_run(self, audit: InMemoryAuditLog) -> None:
        client = FakeWorkoutClient(
            listing=[{"id": 10}, {"id": 11}], templates={"10": UPPER_A, "11": UPPER_A}
        )
        coordinator = make_coordinator(InMemoryWorkoutStore(), audit, client)
        events = coordinator.extract_and_save()

        await read_until(events, ProgressPhase.progress)
        await events.aclose()

        [record] = audit.runs.values()
        assert record.status is RunStatus.failed
        assert record.error_message == CONSUMER_CLOSED_MESSAGE
        assert client.fetched == ["10"]
