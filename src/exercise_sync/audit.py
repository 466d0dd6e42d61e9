"""Audit trail of sync runs and per-item outcomes.

Each run is one ``sync_logs`` row: inserted as ``started`` before the batch
and completed exactly once after it.  Per-item outcomes are written as
additional ``sync_logs`` rows with ``sync_type = 'operation'`` and a
``run_id`` in their metadata.

Readers apply the crash rule: a run still ``started`` that this process did
not open was abandoned by a process that died, and is reported as ``failed``.

Per-item logging is best-effort.  A failed write is logged and swallowed so
it can never fail the operation it describes.
"""

from __future__ import annotations

import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable

import asyncpg

from src.exercise_sync.base import AuditRecord, RunCounts, RunStatus, utc_now
from src.exercise_sync.errors import AuditError
from src.services.database import get_connection

logger = logging.getLogger("exercise_sync.audit")

OPERATION_RUN_TYPE = "operation"
ABANDONED_MESSAGE = "run never completed (process exited)"


class AuditLog(ABC):
    """Run/operation audit trail. Subclasses provide the storage primitives."""

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        # runs opened by this process and not yet completed
        self._open_runs: set[str] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start_run(self, run_type: str, metadata: dict[str, Any] | None = None) -> str:
        run_id = await self._insert_run(run_type, self._clock(), dict(metadata or {}))
        self._open_runs.add(run_id)
        logger.info("Audit run %s started (%s)", run_id, run_type)
        return run_id

    async def complete_run(
        self,
        run_id: str,
        status: RunStatus,
        counts: RunCounts,
        error: str | None = None,
    ) -> None:
        """Close a run. Raises AuditError if the run is unknown or already closed."""
        if status is RunStatus.started:
            raise AuditError("complete_run needs a terminal status")
        finished = await self._finish_run(run_id, status, counts, error, self._clock())
        if not finished:
            raise AuditError(f"Run {run_id} is unknown or already completed")
        self._open_runs.discard(run_id)
        logger.info(
            "Audit run %s %s: %s%s",
            run_id,
            status.value,
            counts.to_dict(),
            f" ({error})" if error else "",
        )

    async def log_operation(self, run_id: str, kind: str, payload: dict[str, Any]) -> None:
        try:
            await self._insert_operation(run_id, kind, payload, self._clock())
        except Exception as exc:
            logger.warning("Failed to log %s operation for run %s: %s", kind, run_id, exc)

    async def get_run(self, run_id: str) -> AuditRecord | None:
        record = await self._fetch_run(run_id)
        return self._apply_crash_rule(record) if record else None

    async def list_runs(self, limit: int = 50) -> list[AuditRecord]:
        return [self._apply_crash_rule(r) for r in await self._fetch_runs(limit)]

    def _apply_crash_rule(self, record: AuditRecord) -> AuditRecord:
        if record.status is RunStatus.started and record.id not in self._open_runs:
            return replace(
                record,
                status=RunStatus.failed,
                error_message=record.error_message or ABANDONED_MESSAGE,
            )
        return record

    # ------------------------------------------------------------------
    # Storage primitives
    # ------------------------------------------------------------------

    @abstractmethod
    async def _insert_run(
        self, run_type: str, started_at: datetime, metadata: dict[str, Any]
    ) -> str: ...

    @abstractmethod
    async def _finish_run(
        self,
        run_id: str,
        status: RunStatus,
        counts: RunCounts,
        error: str | None,
        completed_at: datetime,
    ) -> bool:
        """Close a ``started`` run. Returns False if no such open run exists."""

    @abstractmethod
    async def _insert_operation(
        self, run_id: str, kind: str, payload: dict[str, Any], at: datetime
    ) -> None: ...

    @abstractmethod
    async def _fetch_run(self, run_id: str) -> AuditRecord | None: ...

    @abstractmethod
    async def _fetch_runs(self, limit: int) -> list[AuditRecord]: ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryAuditLog(AuditLog):
    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        super().__init__(clock)
        self.runs: dict[str, AuditRecord] = {}
        self.operations: list[dict[str, Any]] = []

    async def _insert_run(
        self, run_type: str, started_at: datetime, metadata: dict[str, Any]
    ) -> str:
        run_id = str(uuid.uuid4())
        self.runs[run_id] = AuditRecord(
            id=run_id,
            run_type=run_type,
            status=RunStatus.started,
            started_at=started_at,
            metadata=metadata,
        )
        return run_id

    async def _finish_run(
        self,
        run_id: str,
        status: RunStatus,
        counts: RunCounts,
        error: str | None,
        completed_at: datetime,
    ) -> bool:
        record = self.runs.get(run_id)
        if record is None or record.status is not RunStatus.started:
            return False
        record.status = status
        record.counts = counts
        record.error_message = error
        record.completed_at = completed_at
        return True

    async def _insert_operation(
        self, run_id: str, kind: str, payload: dict[str, Any], at: datetime
    ) -> None:
        self.operations.append({"run_id": run_id, "kind": kind, "at": at, **payload})

    async def _fetch_run(self, run_id: str) -> AuditRecord | None:
        record = self.runs.get(run_id)
        return replace(record) if record else None

    async def _fetch_runs(self, limit: int) -> list[AuditRecord]:
        ordered = sorted(self.runs.values(), key=lambda r: r.started_at, reverse=True)
        return [replace(r) for r in ordered[:limit]]


# ---------------------------------------------------------------------------
# Postgres (sync_logs table)
# ---------------------------------------------------------------------------


class PostgresAuditLog(AuditLog):
    """``sync_logs`` table via asyncpg.

    Expected table::

        CREATE TABLE sync_logs (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            sync_type TEXT NOT NULL,
            status TEXT NOT NULL,
            started_at TIMESTAMPTZ NOT NULL,
            completed_at TIMESTAMPTZ,
            records_processed INTEGER DEFAULT 0,
            records_created INTEGER DEFAULT 0,
            records_updated INTEGER DEFAULT 0,
            records_deleted INTEGER DEFAULT 0,
            error_message TEXT,
            metadata JSONB DEFAULT '{}'
        );
    """

    def __init__(
        self,
        pool: asyncpg.Pool | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(clock)
        self._pool = pool

    async def _insert_run(
        self, run_type: str, started_at: datetime, metadata: dict[str, Any]
    ) -> str:
        async with get_connection(self._pool) as conn:
            run_id = await conn.fetchval(
                """
                INSERT INTO sync_logs (sync_type, status, started_at, metadata)
                VALUES ($1, 'started', $2, $3::jsonb)
                RETURNING id
                """,
                run_type,
                started_at,
                json.dumps(metadata, default=str),
            )
        return str(run_id)

    async def _finish_run(
        self,
        run_id: str,
        status: RunStatus,
        counts: RunCounts,
        error: str | None,
        completed_at: datetime,
    ) -> bool:
        async with get_connection(self._pool) as conn:
            row = await conn.fetchrow(
                """
                UPDATE sync_logs
                SET status = $2, completed_at = $3,
                    records_processed = $4, records_created = $5,
                    records_updated = $6, records_deleted = $7,
                    error_message = $8
                WHERE id::text = $1 AND status = 'started' AND sync_type <> $9
                RETURNING id
                """,
                run_id,
                status.value,
                completed_at,
                counts.processed,
                counts.created,
                counts.updated,
                counts.deleted,
                error,
                OPERATION_RUN_TYPE,
            )
        return row is not None

    async def _insert_operation(
        self, run_id: str, kind: str, payload: dict[str, Any], at: datetime
    ) -> None:
        async with get_connection(self._pool) as conn:
            await conn.execute(
                """
                INSERT INTO sync_logs (
                    sync_type, status, started_at, completed_at,
                    records_processed, records_created, records_updated, metadata
                )
                VALUES ($1, 'completed', $2, $2, 1, $3, $4, $5::jsonb)
                """,
                OPERATION_RUN_TYPE,
                at,
                1 if kind == "create" else 0,
                1 if kind == "update" else 0,
                json.dumps({"run_id": run_id, "operation": kind, **payload}, default=str),
            )

    async def _fetch_run(self, run_id: str) -> AuditRecord | None:
        async with get_connection(self._pool) as conn:
            row = await conn.fetchrow(
                "SELECT * FROM sync_logs WHERE id::text = $1 AND sync_type <> $2",
                run_id,
                OPERATION_RUN_TYPE,
            )
        return self._to_record(row) if row else None

    async def _fetch_runs(self, limit: int) -> list[AuditRecord]:
        async with get_connection(self._pool) as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM sync_logs
                WHERE sync_type <> $1
                ORDER BY started_at DESC
                LIMIT $2
                """,
                OPERATION_RUN_TYPE,
                limit,
            )
        return [self._to_record(row) for row in rows]

    @staticmethod
    def _to_record(row: asyncpg.Record) -> AuditRecord:
        metadata = row["metadata"]
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return AuditRecord(
            id=str(row["id"]),
            run_type=row["sync_type"],
            status=RunStatus(row["status"]),
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            counts=RunCounts(
                processed=row["records_processed"] or 0,
                created=row["records_created"] or 0,
                updated=row["records_updated"] or 0,
                deleted=row["records_deleted"] or 0,
            ),
            error_message=row["error_message"],
            metadata=metadata or {},
        )
