"""Reconciliation engine: classify remote exercises against local rows.

Classification is a pure read-then-classify step.  Given the same remote and
local snapshots it produces the same operation kinds and conflict fields every
time, and it never writes.  Applying the resulting plan is the job of
``BulkOperationCoordinator``.

Decision table per remote record:

    local match                         result
    ----------------------------------  ------------------------------------
    >1 local rows share the external id conflict (duplicate identity)
    external id, row soft-deleted       skip ("deleted locally")
    external id, significant diff       conflict, one entry per differing field
    external id, other field differs    update
    external id, row not yet synced     update
    external id, identical and synced   skip ("already in sync")
    same lower-cased name only          conflict ("name collision, potential
                                        duplicate")
    nothing                             create

Name collisions are never merged automatically.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable

from src.exercise_sync.base import (
    LocalRecord,
    LocalStore,
    OperationKind,
    RemoteRecord,
    SyncOperation,
    SyncStatus,
    utc_now,
)
from src.exercise_sync.field_mapper import FieldMapper

logger = logging.getLogger("exercise_sync.reconciliation")

DEFAULT_SIGNIFICANT_FIELDS = ("name", "description", "category")

NAME_COLLISION_REASON = "name collision, potential duplicate"

# Bookkeeping columns that never count as a content difference
_SYNC_COLUMNS = frozenset(
    {"id", "external_id", "created_at", "updated_at", "synced_at", "sync_status"}
)


def detect_conflicts(
    incoming: dict[str, Any],
    existing: dict[str, Any],
    fields: Iterable[str] = DEFAULT_SIGNIFICANT_FIELDS,
) -> list[str]:
    """Compare significant fields that both sides carry a value for.

    Args:
        incoming: Newly mapped values (the "new" side).
        existing: Current local values (the "old" side).
        fields:   Field names to compare.

    Returns:
        ``'field: "old" → "new"'`` strings, in ``fields`` order.  Swapping the
        arguments reports the same fields with the values reversed.
    """
    conflicts: list[str] = []
    for name in fields:
        new_value = incoming.get(name)
        old_value = existing.get(name)
        if not new_value or not old_value:
            continue
        if _normalize(new_value) != _normalize(old_value):
            conflicts.append(f'{name}: "{old_value}" → "{new_value}"')
    return conflicts


def conflict_field_names(conflicts: list[str]) -> list[str]:
    """Field names out of ``detect_conflicts`` output."""
    return [entry.split(":", 1)[0] for entry in conflicts]


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, tuple):
        return list(value)
    return value


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


@dataclass
class SyncPlan:
    """Result of one reconciliation pass."""

    operations: list[SyncOperation]
    total_remote: int = 0
    generated_at: datetime = field(default_factory=utc_now)

    @property
    def conflicts(self) -> list[SyncOperation]:
        return [op for op in self.operations if op.kind is OperationKind.conflict]

    @property
    def pending(self) -> list[SyncOperation]:
        """Every operation that still needs action (everything but skips)."""
        return [op for op in self.operations if op.kind is not OperationKind.skip]

    @property
    def summary(self) -> dict[str, int]:
        counts = {kind: 0 for kind in OperationKind}
        for op in self.operations:
            counts[op.kind] += 1
        return {
            "to_create": counts[OperationKind.create],
            "to_update": counts[OperationKind.update],
            "to_skip": counts[OperationKind.skip],
            "conflicts": counts[OperationKind.conflict],
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_remote_records": self.total_remote,
            "generated_at": self.generated_at.isoformat(),
            "operations": [op.to_dict() for op in self.operations],
            "conflicts": [op.to_dict() for op in self.conflicts],
            "summary": self.summary,
        }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ReconciliationEngine:
    """Classifies remote records into sync operations.

    Args:
        mapper:             FieldMapper used to map remote → local.
        significant_fields: Fields whose disagreement makes a conflict.
        clock:              Returns the current UTC datetime.
    """

    def __init__(
        self,
        mapper: FieldMapper,
        significant_fields: Iterable[str] = DEFAULT_SIGNIFICANT_FIELDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.mapper = mapper
        self.significant_fields = tuple(significant_fields)
        self._clock = clock

    async def plan(
        self,
        fetch_remote: Callable[[], Awaitable[list[RemoteRecord]]],
        store: LocalStore,
    ) -> SyncPlan:
        """Fetch both sides and classify. Fetch errors propagate unchanged."""
        remote_records = await fetch_remote()
        local_records = await store.fetch_all()
        logger.info(
            "Reconciling %d remote against %d local records",
            len(remote_records),
            len(local_records),
        )
        operations = self.classify(remote_records, local_records)
        plan = SyncPlan(operations=operations, total_remote=len(remote_records))
        logger.info("Sync plan: %s", plan.summary)
        return plan

    def classify(
        self,
        remote_records: list[RemoteRecord],
        local_records: list[LocalRecord],
    ) -> list[SyncOperation]:
        by_external_id: dict[str, list[LocalRecord]] = defaultdict(list)
        by_name: dict[str, LocalRecord] = {}
        for local in local_records:
            if local.external_id:
                by_external_id[local.external_id].append(local)
            if local.name:
                by_name.setdefault(local.name.strip().lower(), local)

        return [
            self._classify_one(remote, by_external_id, by_name)
            for remote in remote_records
        ]

    def map_remote(self, remote: RemoteRecord) -> dict[str, Any]:
        """Map a remote record to local columns and stamp timestamps."""
        mapped = self.mapper.to_local(remote)
        now = self._clock()
        mapped["updated_at"] = now
        if not mapped.get("created_at"):
            mapped["created_at"] = now
        return mapped

    # ------------------------------------------------------------------

    def _classify_one(
        self,
        remote: RemoteRecord,
        by_external_id: dict[str, list[LocalRecord]],
        by_name: dict[str, LocalRecord],
    ) -> SyncOperation:
        mapped = self.map_remote(remote)
        remote_data = remote.as_dict()
        op_id = remote.external_id

        matches = by_external_id.get(remote.external_id, [])
        if len(matches) > 1:
            return SyncOperation(
                id=op_id,
                kind=OperationKind.conflict,
                remote_data=remote_data,
                mapped_data=mapped,
                local_data=matches[0].as_dict(),
                reason=(
                    f"duplicate identity: {len(matches)} local records share "
                    f"external id {remote.external_id}"
                ),
            )

        if matches:
            existing = matches[0]
            local_data = existing.as_dict()
            if existing.sync_status is SyncStatus.deleted:
                return SyncOperation(
                    id=op_id,
                    kind=OperationKind.skip,
                    remote_data=remote_data,
                    mapped_data=mapped,
                    local_data=local_data,
                    reason="deleted locally",
                )

            conflicts = detect_conflicts(mapped, local_data, self.significant_fields)
            if conflicts:
                return SyncOperation(
                    id=op_id,
                    kind=OperationKind.conflict,
                    remote_data=remote_data,
                    mapped_data=mapped,
                    local_data=local_data,
                    conflict_fields=conflicts,
                )

            if existing.sync_status is not SyncStatus.synced or self._differs(
                mapped, local_data
            ):
                return SyncOperation(
                    id=op_id,
                    kind=OperationKind.update,
                    remote_data=remote_data,
                    mapped_data=mapped,
                    local_data=local_data,
                )

            return SyncOperation(
                id=op_id,
                kind=OperationKind.skip,
                remote_data=remote_data,
                mapped_data=mapped,
                local_data=local_data,
                reason="already in sync",
            )

        name_match = by_name.get((remote.name or "").strip().lower())
        if name_match is not None:
            return SyncOperation(
                id=op_id,
                kind=OperationKind.conflict,
                remote_data=remote_data,
                mapped_data=mapped,
                local_data=name_match.as_dict(),
                reason=NAME_COLLISION_REASON,
            )

        return SyncOperation(
            id=op_id,
            kind=OperationKind.create,
            remote_data=remote_data,
            mapped_data=mapped,
        )

    @staticmethod
    def _differs(mapped: dict[str, Any], local_data: dict[str, Any]) -> bool:
        for name, value in mapped.items():
            if name in _SYNC_COLUMNS:
                continue
            if _normalize(value) != _normalize(local_data.get(name)):
                return True
        return False
