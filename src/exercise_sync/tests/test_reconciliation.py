"""Tests for the reconciliation engine: classification, conflicts and plans."""

from __future__ import annotations

import pytest

from src.exercise_sync.base import OperationKind, SyncOperation, SyncStatus
from src.exercise_sync.bulk import BulkOperationCoordinator
from src.exercise_sync.errors import AuthError
from src.exercise_sync.reconciliation import (
    NAME_COLLISION_REASON,
    ReconciliationEngine,
    SyncPlan,
    conflict_field_names,
    detect_conflicts,
)
from src.exercise_sync.store import InMemoryExerciseStore
from src.exercise_sync.tests.conftest import FIXED_NOW, collect, local, remote


def push_ups_remote(**overrides):
    attrs = {
        "description": "Basic bodyweight exercise",
        "category": "strength",
        "muscle_groups": ["Chest"],
        "is_active": True,
    }
    attrs.update(overrides)
    name = attrs.pop("name", "Push-ups")
    return remote("101", name, **attrs)


def push_ups_local(**overrides):
    name = overrides.pop("name", "Push-ups")
    fields = {
        "external_id": "101",
        "description": "Basic bodyweight exercise",
        "category": "strength",
        "muscle_groups": ["Chest"],
        "sync_status": SyncStatus.synced,
    }
    fields.update(overrides)
    return local("local-1", name, **fields)


# ---------------------------------------------------------------------------
# detect_conflicts
# ---------------------------------------------------------------------------


class TestDetectConflicts:
    def test_reports_differing_significant_fields(self) -> None:
        conflicts = detect_conflicts(
            {"name": "Push Ups", "description": "Same", "category": "strength"},
            {"name": "Push-ups", "description": "Same", "category": "strength"},
        )
        assert conflicts == ['name: "Push-ups" → "Push Ups"']

    def test_missing_value_on_either_side_is_not_a_conflict(self) -> None:
        assert detect_conflicts({"name": "A", "description": None}, {"name": "A", "description": "x"}) == []
        assert detect_conflicts({"category": "cardio"}, {}) == []

    def test_symmetric_in_field_names(self) -> None:
        a = {"name": "Squat", "description": "Deep", "category": "strength"}
        b = {"name": "Back Squat", "description": "Deep", "category": "legs"}

        forward = conflict_field_names(detect_conflicts(a, b))
        backward = conflict_field_names(detect_conflicts(b, a))

        assert forward == backward == ["name", "category"]

    def test_surrounding_whitespace_ignored(self) -> None:
        assert detect_conflicts({"name": "Plank "}, {"name": "Plank"}) == []


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestClassify:
    def test_unknown_remote_becomes_create(self, engine: ReconciliationEngine) -> None:
        [op] = engine.classify([push_ups_remote()], [])

        assert op.kind is OperationKind.create
        assert op.id == "101"
        assert op.local_data is None
        assert op.mapped_data["external_id"] == "101"
        assert op.mapped_data["name"] == "Push-ups"

    def test_identical_synced_record_is_skipped(self, engine: ReconciliationEngine) -> None:
        [op] = engine.classify([push_ups_remote()], [push_ups_local()])

        assert op.kind is OperationKind.skip
        assert op.reason == "already in sync"

    def test_unsynced_local_is_updated(self, engine: ReconciliationEngine) -> None:
        [op] = engine.classify(
            [push_ups_remote()], [push_ups_local(sync_status=SyncStatus.pending)]
        )

        assert op.kind is OperationKind.update
        assert op.local_id == "local-1"

    def test_non_significant_difference_is_update(self, engine: ReconciliationEngine) -> None:
        [op] = engine.classify(
            [push_ups_remote(video_url="https://youtu.be/new")], [push_ups_local()]
        )

        assert op.kind is OperationKind.update
        assert op.conflict_fields == []

    def test_significant_difference_is_conflict(self, engine: ReconciliationEngine) -> None:
        [op] = engine.classify(
            [push_ups_remote(description="Knees on the floor")], [push_ups_local()]
        )

        assert op.kind is OperationKind.conflict
        assert op.conflict_fields == [
            'description: "Basic bodyweight exercise" → "Knees on the floor"'
        ]

    def test_name_collision_is_never_merged(self, engine: ReconciliationEngine) -> None:
        unlinked = local("local-9", "push-ups")

        [op] = engine.classify([push_ups_remote(name="Push-Ups")], [unlinked])

        assert op.kind is OperationKind.conflict
        assert op.reason == NAME_COLLISION_REASON
        assert op.local_id == "local-9"

    def test_duplicate_external_id_is_conflict(self, engine: ReconciliationEngine) -> None:
        first = push_ups_local()
        second = local("local-2", "Push-ups (copy)", external_id="101")

        [op] = engine.classify([push_ups_remote()], [first, second])

        assert op.kind is OperationKind.conflict
        assert "duplicate identity" in op.reason

    def test_soft_deleted_local_is_skipped(self, engine: ReconciliationEngine) -> None:
        [op] = engine.classify(
            [push_ups_remote(description="Changed")],
            [push_ups_local(sync_status=SyncStatus.deleted)],
        )

        assert op.kind is OperationKind.skip
        assert op.reason == "deleted locally"

    def test_classification_is_deterministic(self, engine: ReconciliationEngine) -> None:
        remotes = [
            push_ups_remote(),
            remote("102", "Plank", category="core"),
            remote("103", "squat"),
        ]
        locals_ = [push_ups_local(description="Old"), local("local-3", "Squat")]

        first = engine.classify(remotes, locals_)
        second = engine.classify(remotes, locals_)

        assert [(op.kind, op.conflict_fields, op.reason) for op in first] == [
            (op.kind, op.conflict_fields, op.reason) for op in second
        ]
        assert [op.kind for op in first] == [
            OperationKind.conflict,
            OperationKind.create,
            OperationKind.conflict,
        ]

    def test_mapped_data_is_timestamped(self, engine: ReconciliationEngine) -> None:
        [op] = engine.classify([push_ups_remote()], [])
        assert op.mapped_data["created_at"] == FIXED_NOW
        assert op.mapped_data["updated_at"] == FIXED_NOW


class TestSyncOperation:
    def test_conflict_requires_fields_or_reason(self) -> None:
        with pytest.raises(ValueError):
            SyncOperation(id="1", kind=OperationKind.conflict, remote_data={}, mapped_data={})


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class TestPlan:
    @pytest.mark.asyncio
    async def test_plan_summary_and_pending(self, engine: ReconciliationEngine) -> None:
        store = InMemoryExerciseStore([push_ups_local(), local("local-3", "Squat")])

        async def fetch_remote():
            return [push_ups_remote(), remote("102", "Plank"), remote("103", "Squat")]

        plan = await engine.plan(fetch_remote, store)

        assert plan.total_remote == 3
        assert plan.summary == {"to_create": 1, "to_update": 0, "to_skip": 1, "conflicts": 1}
        assert [op.id for op in plan.pending] == ["102", "103"]
        assert [op.id for op in plan.conflicts] == ["103"]
        assert plan.to_dict()["summary"] == plan.summary

    @pytest.mark.asyncio
    async def test_fetch_errors_propagate(self, engine: ReconciliationEngine) -> None:
        async def fetch_remote():
            raise AuthError("bad token", status_code=401)

        with pytest.raises(AuthError):
            await engine.plan(fetch_remote, InMemoryExerciseStore())

    def test_empty_plan(self) -> None:
        plan = SyncPlan(operations=[])
        assert plan.pending == []
        assert plan.summary == {"to_create": 0, "to_update": 0, "to_skip": 0, "conflicts": 0}

    @pytest.mark.asyncio
    async def test_applied_plan_settles_to_no_pending_work(
        self, engine: ReconciliationEngine, audit
    ) -> None:
        store = InMemoryExerciseStore()
        remotes = [
            push_ups_remote(),
            remote("102", "Plank", description="Hold", category="core", muscle_groups=["Core"]),
        ]

        async def fetch_remote():
            return remotes

        first = await engine.plan(fetch_remote, store)
        assert [op.kind for op in first.operations] == [OperationKind.create] * 2

        coordinator = BulkOperationCoordinator(store, audit, clock=lambda: FIXED_NOW)
        events = await collect(coordinator.apply_operations(first.operations))
        assert events[-1].payload["successful"] == 2
        assert len(store) == 2

        second = await engine.plan(fetch_remote, store)
        assert [op.kind for op in second.operations] == [OperationKind.skip] * 2
        assert second.pending == []

        stored = await store.fetch_all()
        assert {r.external_id for r in stored} == {"101", "102"}
        assert all(r.sync_status is SyncStatus.synced for r in stored)
