"""Pydantic models for the sync API: previews, run requests and audit runs."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field

from src.exercise_sync.base import AuditRecord, OperationKind, RunStatus, SyncOperation
from src.exercise_sync.reconciliation import SyncPlan
from src.models.base import SyncBase


# ---------- Preview ----------

class SyncOperationRead(SyncBase):
    id: str
    kind: OperationKind
    remote_data: dict[str, Any]
    local_data: dict[str, Any] | None = None
    mapped_data: dict[str, Any]
    conflict_fields: list[str] = Field(default_factory=list)
    reason: str | None = None

    @classmethod
    def from_operation(cls, op: SyncOperation) -> "SyncOperationRead":
        return cls(**op.to_dict())


class SyncSummary(SyncBase):
    to_create: int = 0
    to_update: int = 0
    to_skip: int = 0
    conflicts: int = 0


class SyncPreviewRead(SyncBase):
    total_remote_records: int
    generated_at: datetime
    operations: list[SyncOperationRead]
    conflicts: list[SyncOperationRead]
    summary: SyncSummary

    @classmethod
    def from_plan(cls, plan: SyncPlan) -> "SyncPreviewRead":
        return cls(
            total_remote_records=plan.total_remote,
            generated_at=plan.generated_at,
            operations=[SyncOperationRead.from_operation(op) for op in plan.operations],
            conflicts=[SyncOperationRead.from_operation(op) for op in plan.conflicts],
            summary=SyncSummary(**plan.summary),
        )


# ---------- Run requests ----------

class SyncExecuteRequest(SyncBase):
    """Re-plans and applies; ``operation_ids`` narrows the plan to those remote ids."""

    user_ids: list[int] = Field(min_length=1)
    operation_ids: list[str] | None = None


class BulkAddRequest(SyncBase):
    exercise_ids: list[str] = Field(min_length=1)
    skip_existing: bool | None = None
    check_for_duplicates: bool | None = None


class DiscoverRequest(SyncBase):
    user_ids: list[int] = Field(min_length=1)


# ---------- Audit runs ----------

class RunCountsRead(SyncBase):
    processed: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0


class SyncRunRead(SyncBase):
    id: str
    run_type: str
    status: RunStatus
    started_at: datetime
    completed_at: datetime | None = None
    counts: RunCountsRead
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_record(cls, record: AuditRecord) -> "SyncRunRead":
        return cls(
            id=record.id,
            run_type=record.run_type,
            status=record.status,
            started_at=record.started_at,
            completed_at=record.completed_at,
            counts=RunCountsRead(**record.counts.to_dict()),
            error_message=record.error_message,
            metadata=record.metadata,
        )
