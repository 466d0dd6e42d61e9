"""Bulk application of sync work with streamed progress.

Five run types share one event protocol:

    apply_operations        apply a reconciliation plan to local storage
    bulk_add_to_remote      push local exercises to the provider
    discover_and_save       discover provider exercises and upsert them locally
    bulk_sync_workouts      push local workout templates to the provider
    extract_and_save        read provider workout templates into local storage

Each is an async generator of ``ProgressEvent``: exactly one ``start``, then
``progress`` / ``exercise_saved`` events in input order, then exactly one
terminal ``complete`` (or ``error`` when the run could not be set up or
authentication failed).  A failing item lands in the ``failed`` bucket and the
batch moves on, whatever the exception.  Writes that already happened are
never rolled back.

Cancellation is cooperative: once the token is raised no new item starts, the
in-flight item finishes, and ``complete`` reports partial counts with
``cancelled: true``.

A consumer that stops reading (an SSE client disconnecting) closes the
generator at a ``yield``.  The audit run is then completed as ``failed`` with
``CONSUMER_CLOSED_MESSAGE`` so it never stays ``started``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable

from src.exercise_sync.audit import AuditLog
from src.exercise_sync.base import (
    Filter,
    LocalRecord,
    LocalStore,
    OperationKind,
    ProgressEvent,
    ProgressPhase,
    RemoteRecord,
    RunCounts,
    RunStatus,
    SyncOperation,
    SyncStatus,
    utc_now,
)
from src.exercise_sync.client import TrainerizeClient
from src.exercise_sync.errors import AuthError, RemoteError, SyncError
from src.exercise_sync.field_mapper import FieldMapper
from src.exercise_sync.workouts import (
    WorkoutStore,
    WorkoutTemplate,
    provider_id,
    template_ids,
    template_row,
    workout_definition,
)

logger = logging.getLogger("exercise_sync.bulk")

CONSUMER_CLOSED_MESSAGE = "stream closed by consumer"


class CancellationToken:
    """Cooperative cancel flag shared between a run and whoever may stop it."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class BulkResult:
    """Outcome buckets of one bulk run. ``success`` means zero failures."""

    successful: list[dict[str, Any]] = field(default_factory=list)
    failed: list[dict[str, Any]] = field(default_factory=list)
    skipped: list[dict[str, Any]] = field(default_factory=list)
    duplicates: list[dict[str, Any]] = field(default_factory=list)
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def processed(self) -> int:
        return (
            len(self.successful) + len(self.failed)
            + len(self.skipped) + len(self.duplicates)
        )

    def counts(self) -> dict[str, int]:
        return {
            "successful": len(self.successful),
            "failed": len(self.failed),
            "skipped": len(self.skipped),
            "duplicates": len(self.duplicates),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.counts(),
            "success": self.success,
            "cancelled": self.cancelled,
            "details": {
                "successful": self.successful,
                "failed": self.failed,
                "skipped": self.skipped,
                "duplicates": self.duplicates,
            },
        }


@dataclass
class _Run:
    """An audit run between ``start_run`` and its single ``complete_run``."""

    id: str
    total: int
    result: BulkResult = field(default_factory=BulkResult)
    counts: RunCounts = field(default_factory=RunCounts)
    closed: bool = False


class RunCoordinator:
    """Audit and pacing bookkeeping shared by every bulk run.

    Args:
        audit:         Audit log wrapping every run.
        pause_every:   Remote writes between two extra pauses.
        pause_seconds: Length of the extra pause.
        sleep:         Awaitable sleep (injectable for tests).
        clock:         Returns the current UTC datetime.
    """

    def __init__(
        self,
        audit: AuditLog,
        pause_every: int = 5,
        pause_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.audit = audit
        self.pause_every = pause_every
        self.pause_seconds = pause_seconds
        self._sleep = sleep
        self._clock = clock

    async def _pace(self, remote_writes: int, index: int, total: int) -> None:
        """Extra pause after every ``pause_every`` remote writes, never after the last item."""
        if remote_writes and remote_writes % self.pause_every == 0 and index < total:
            await self._sleep(self.pause_seconds)

    async def _finish(self, run: _Run) -> ProgressEvent:
        run.closed = True
        run.counts.processed = run.result.processed
        try:
            await self.audit.complete_run(run.id, RunStatus.completed, run.counts)
        except Exception as exc:
            logger.error("Could not complete audit run %s: %s", run.id, exc)
        logger.info("Run %s finished: %s", run.id, run.result.counts())
        return ProgressEvent(
            ProgressPhase.complete,
            current=run.result.processed,
            total=run.total,
            payload={**run.result.to_dict(), "run_id": run.id},
        )

    async def _abort(self, run: _Run, exc: Exception) -> ProgressEvent:
        run.closed = True
        run.counts.processed = run.result.processed
        logger.error("Run %s aborted: %s", run.id, exc)
        try:
            await self.audit.complete_run(
                run.id, RunStatus.failed, run.counts, error=str(exc)
            )
        except Exception as audit_exc:
            logger.error("Could not record failure of run %s: %s", run.id, audit_exc)
        return ProgressEvent(
            ProgressPhase.error,
            payload={**run.result.to_dict(), "run_id": run.id},
            message=str(exc),
        )

    async def _release(self, run: _Run) -> None:
        """Complete a run whose generator was closed before its terminal event."""
        if run.closed:
            return
        run.closed = True
        run.counts.processed = run.result.processed
        logger.warning(
            "Run %s abandoned by its consumer after %d items", run.id, run.result.processed
        )
        try:
            await self.audit.complete_run(
                run.id, RunStatus.failed, run.counts, error=CONSUMER_CLOSED_MESSAGE
            )
        except Exception as exc:
            logger.error("Could not record abandonment of run %s: %s", run.id, exc)


class BulkOperationCoordinator(RunCoordinator):
    """Drives exercise runs against the local store and the remote client.

    Args:
        store:  Local exercise storage.
        audit:  Audit log wrapping every run.
        client: Remote client, needed for remote writes and discovery.
        mapper: FieldMapper for local ↔ remote payloads.

    Pacing, sleep and clock arguments are those of ``RunCoordinator``.
    """

    def __init__(
        self,
        store: LocalStore,
        audit: AuditLog,
        client: TrainerizeClient | None = None,
        mapper: FieldMapper | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(audit, **kwargs)
        self.store = store
        self.client = client
        self.mapper = mapper

    # ------------------------------------------------------------------
    # Reconciliation plan → local storage
    # ------------------------------------------------------------------

    async def apply_operations(
        self,
        operations: list[SyncOperation],
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[ProgressEvent]:
        """Apply create/update operations; skips and conflicts are never applied."""
        cancel = cancel or CancellationToken()
        result = BulkResult()
        actionable: list[SyncOperation] = []
        for op in operations:
            if op.kind in (OperationKind.create, OperationKind.update):
                actionable.append(op)
            else:
                result.skipped.append({
                    "id": op.id,
                    "kind": op.kind.value,
                    "reason": op.reason or "; ".join(op.conflict_fields),
                })

        total = len(actionable)
        yield ProgressEvent(ProgressPhase.start, current=0, total=total,
                            message=f"Applying {total} operations")

        try:
            run_id = await self.audit.start_run(
                "sync", {"total_operations": len(operations), "actionable": total}
            )
        except Exception as exc:
            logger.error("Could not start sync run: %s", exc)
            yield ProgressEvent(ProgressPhase.error, message=f"Run setup failed: {exc}")
            return

        run = _Run(run_id, total, result)
        try:
            for index, op in enumerate(actionable, start=1):
                if cancel.cancelled:
                    result.cancelled = True
                    break
                try:
                    await self._apply_one(op)
                except AuthError as exc:
                    yield await self._abort(run, exc)
                    return
                except Exception as exc:
                    logger.error("Operation %s (%s) failed: %s", op.id, op.kind.value, exc)
                    result.failed.append({"id": op.id, "kind": op.kind.value, "error": str(exc)})
                    status = "failed"
                else:
                    result.successful.append({"id": op.id, "kind": op.kind.value})
                    if op.kind is OperationKind.create:
                        run.counts.created += 1
                    else:
                        run.counts.updated += 1
                    await self.audit.log_operation(run.id, op.kind.value, {
                        "external_id": op.id,
                        "exercise_name": op.mapped_data.get("name"),
                    })
                    status = "ok"
                yield ProgressEvent(
                    ProgressPhase.progress,
                    current=index,
                    total=total,
                    payload={"id": op.id, "kind": op.kind.value, "status": status},
                )

            yield await self._finish(run)
        finally:
            await self._release(run)

    async def _apply_one(self, op: SyncOperation) -> None:
        now = self._clock()
        data = {**op.mapped_data, "sync_status": SyncStatus.synced.value, "synced_at": now}
        if op.kind is OperationKind.create:
            await self.store.insert(data)
            return
        local_id = op.local_id
        if local_id is None:
            raise ValueError(f"Update {op.id} has no local primary key")
        if op.local_data and op.local_data.get("created_at"):
            data.pop("created_at", None)
        await self.store.update(local_id, data)

    # ------------------------------------------------------------------
    # Local records → provider
    # ------------------------------------------------------------------

    async def bulk_add_to_remote(
        self,
        local_ids: list[str],
        skip_existing: bool = True,
        check_for_duplicates: bool = True,
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[ProgressEvent]:
        """Create local exercises remotely and link them by external id."""
        cancel = cancel or CancellationToken()
        total = len(local_ids)
        yield ProgressEvent(ProgressPhase.start, current=0, total=total,
                            message=f"Adding {total} exercises")

        try:
            if self.client is None or self.mapper is None:
                raise SyncError("Remote client is not configured")
            run_id = await self.audit.start_run("bulk_add", {
                "exercise_ids": list(local_ids),
                "skip_existing": skip_existing,
                "check_for_duplicates": check_for_duplicates,
            })
        except Exception as exc:
            logger.error("Could not start bulk add: %s", exc)
            yield ProgressEvent(ProgressPhase.error, message=f"Run setup failed: {exc}")
            return

        run = _Run(run_id, total)
        result = run.result
        try:
            try:
                records = await self.store.fetch_by_ids(list(local_ids))
            except Exception as exc:
                yield await self._abort(run, exc)
                return
            by_id = {record.id: record for record in records}

            remote_writes = 0
            for index, local_id in enumerate(local_ids, start=1):
                if cancel.cancelled:
                    result.cancelled = True
                    break

                record = by_id.get(str(local_id))
                entry: dict[str, Any] = {"id": str(local_id), "name": record.name if record else None}

                if record is None:
                    result.failed.append({**entry, "error": "Local record not found"})
                elif skip_existing and record.is_linked:
                    result.skipped.append({**entry, "reason": "Already synced to remote"})
                else:
                    duplicate = None
                    if check_for_duplicates:
                        try:
                            duplicate = await self.store.find_synced_by_name(record.name)
                        except Exception as exc:
                            yield await self._abort(run, exc)
                            return
                    if duplicate is not None and duplicate.id != record.id:
                        result.duplicates.append({
                            **entry,
                            "existing_name": duplicate.name,
                            "existing_external_id": duplicate.external_id,
                        })
                    else:
                        remote_writes += 1
                        try:
                            external_id = await self.client.add_exercise(
                                self.mapper.to_remote(record)
                            )
                        except AuthError as exc:
                            yield await self._abort(run, exc)
                            return
                        except Exception as exc:
                            logger.error("Adding %r failed: %s", record.name, exc)
                            result.failed.append({**entry, "error": str(exc)})
                        else:
                            run.counts.created += 1
                            result.successful.append({**entry, "external_id": external_id})
                            await self._write_back(record.id, external_id)
                            await self.audit.log_operation(run.id, "create", {
                                "external_id": external_id,
                                "exercise_name": record.name,
                                "local_id": record.id,
                            })
                        await self._pace(remote_writes, index, total)

                yield ProgressEvent(
                    ProgressPhase.progress,
                    current=index,
                    total=total,
                    payload=entry,
                )

            yield await self._finish(run)
        finally:
            await self._release(run)

    async def _write_back(self, local_id: str, external_id: str) -> None:
        try:
            await self.store.update(local_id, {
                "external_id": external_id,
                "synced_at": self._clock(),
                "sync_status": SyncStatus.synced.value,
            })
        except Exception as exc:
            logger.error(
                "Exercise %s was created remotely as %s but the local link failed: %s",
                local_id,
                external_id,
                exc,
            )

    # ------------------------------------------------------------------
    # Provider → local storage
    # ------------------------------------------------------------------

    async def discover_and_save(
        self,
        user_ids: list[int],
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[ProgressEvent]:
        """Discover exercises per user and upsert each one by external id."""
        cancel = cancel or CancellationToken()
        total = len(user_ids)
        yield ProgressEvent(ProgressPhase.start, current=0, total=total,
                            message=f"Discovering exercises for {total} users")

        try:
            if self.client is None or self.mapper is None:
                raise SyncError("Remote client is not configured")
            run_id = await self.audit.start_run("discovery", {"user_ids": list(user_ids)})
        except Exception as exc:
            logger.error("Could not start discovery: %s", exc)
            yield ProgressEvent(ProgressPhase.error, message=f"Run setup failed: {exc}")
            return

        run = _Run(run_id, total)
        result = run.result
        seen: set[str] = set()
        try:
            for index, user_id in enumerate(user_ids, start=1):
                if cancel.cancelled:
                    result.cancelled = True
                    break
                try:
                    found = await self.client.discover_user(user_id)
                except AuthError as exc:
                    yield await self._abort(run, exc)
                    return
                except Exception as exc:
                    logger.error("Discovery failed for user %s: %s", user_id, exc)
                    result.failed.append({"user_id": user_id, "error": str(exc)})
                    found = {}

                for external_id, remote in found.items():
                    if external_id in seen:
                        continue
                    seen.add(external_id)
                    entry = {"external_id": external_id, "name": remote.name}
                    try:
                        saved, created = await self._save_discovered(remote)
                    except Exception as exc:
                        logger.error("Saving discovered exercise %s failed: %s", external_id, exc)
                        result.failed.append({**entry, "error": str(exc)})
                        continue
                    if saved is None:
                        result.skipped.append({**entry, "reason": "deleted locally"})
                        continue
                    if created:
                        run.counts.created += 1
                    else:
                        run.counts.updated += 1
                    result.successful.append({**entry, "local_id": saved.id})
                    yield ProgressEvent(
                        ProgressPhase.exercise_saved,
                        current=index,
                        total=total,
                        payload={**entry, "local_id": saved.id, "created": created},
                    )

                yield ProgressEvent(
                    ProgressPhase.progress,
                    current=index,
                    total=total,
                    payload={"user_id": user_id, "found": len(seen)},
                )

            yield await self._finish(run)
        finally:
            await self._release(run)

    async def _save_discovered(
        self, remote: RemoteRecord
    ) -> tuple[LocalRecord | None, bool]:
        """Upsert one discovered record. Returns (record or None if deleted, created)."""
        existing = await self.store.fetch(
            [Filter("external_id", "eq", remote.external_id)], limit=1
        )
        if existing and existing[0].sync_status is SyncStatus.deleted:
            return None, False
        now = self._clock()
        data = {
            **self.mapper.to_local(remote),
            "extra": self.mapper.unmapped(remote),
            "sync_status": SyncStatus.synced.value,
            "synced_at": now,
            "updated_at": now,
        }
        if not existing:
            data["created_at"] = now
        saved = await self.store.upsert_by_external_id(data)
        return saved, not existing


class WorkoutSyncCoordinator(RunCoordinator):
    """Drives workout template runs in both directions.

    Args:
        store:  Local workout template storage.
        audit:  Audit log wrapping every run.
        client: Remote client; every workout run needs it.

    Pacing, sleep and clock arguments are those of ``RunCoordinator``.
    """

    def __init__(
        self,
        store: WorkoutStore,
        audit: AuditLog,
        client: TrainerizeClient | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(audit, **kwargs)
        self.store = store
        self.client = client

    # ------------------------------------------------------------------
    # Local templates → provider
    # ------------------------------------------------------------------

    async def bulk_sync_workouts(
        self,
        workout_ids: list[str],
        skip_existing: bool = False,
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[ProgressEvent]:
        """Add unlinked templates remotely, update linked ones in place."""
        cancel = cancel or CancellationToken()
        total = len(workout_ids)
        yield ProgressEvent(ProgressPhase.start, current=0, total=total,
                            message=f"Syncing {total} workouts")

        try:
            if self.client is None:
                raise SyncError("Remote client is not configured")
            run_id = await self.audit.start_run("workout_sync", {
                "workout_ids": list(workout_ids),
                "skip_existing": skip_existing,
            })
        except Exception as exc:
            logger.error("Could not start workout sync: %s", exc)
            yield ProgressEvent(ProgressPhase.error, message=f"Run setup failed: {exc}")
            return

        run = _Run(run_id, total)
        result = run.result
        try:
            try:
                templates = await self.store.fetch_by_ids(list(workout_ids))
            except Exception as exc:
                yield await self._abort(run, exc)
                return
            by_id = {template.id: template for template in templates}

            remote_writes = 0
            for index, template_id in enumerate(workout_ids, start=1):
                if cancel.cancelled:
                    result.cancelled = True
                    break

                template = by_id.get(str(template_id))
                entry: dict[str, Any] = {
                    "id": str(template_id),
                    "name": template.name if template else None,
                }

                if template is None:
                    result.failed.append({**entry, "error": "Local workout not found"})
                elif skip_existing and template.is_linked:
                    result.skipped.append({**entry, "reason": "Already synced to remote"})
                else:
                    remote_writes += 1
                    try:
                        external_id, created = await self._push(template)
                    except AuthError as exc:
                        yield await self._abort(run, exc)
                        return
                    except Exception as exc:
                        logger.error("Syncing workout %r failed: %s", template.name, exc)
                        result.failed.append({**entry, "error": str(exc)})
                    else:
                        if created:
                            run.counts.created += 1
                        else:
                            run.counts.updated += 1
                        entry.update(external_id=external_id, created=created)
                        result.successful.append(dict(entry))
                        await self.audit.log_operation(
                            run.id,
                            "create" if created else "update",
                            {
                                "external_id": external_id,
                                "workout_name": template.name,
                                "local_id": template.id,
                            },
                        )
                    await self._pace(remote_writes, index, total)

                yield ProgressEvent(
                    ProgressPhase.progress,
                    current=index,
                    total=total,
                    payload=entry,
                )

            yield await self._finish(run)
        finally:
            await self._release(run)

    async def _push(self, template: WorkoutTemplate) -> tuple[str, bool]:
        """Write one template remotely. Returns (external id, created)."""
        definition = workout_definition(template)
        if template.is_linked:
            await self.client.update_workout(
                {**definition, "id": provider_id(template.external_id)}
            )
            external_id, created = template.external_id, False
        else:
            external_id = await self.client.add_workout(definition)
            created = True
        await self._link(template.id, external_id)
        return external_id, created

    async def _link(self, template_id: str, external_id: str) -> None:
        try:
            await self.store.update(template_id, {
                "external_id": external_id,
                "synced_at": self._clock(),
            })
        except Exception as exc:
            logger.error(
                "Workout %s was written remotely as %s but the local link failed: %s",
                template_id,
                external_id,
                exc,
            )

    # ------------------------------------------------------------------
    # Provider templates → local storage
    # ------------------------------------------------------------------

    async def extract_and_save(
        self,
        view: str = "mine",
        count: int = 100,
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[ProgressEvent]:
        """List the provider's templates for ``view`` and upsert each definition.

        The start event carries no total: it is known once the listing is read,
        and every later event reports it.
        """
        cancel = cancel or CancellationToken()
        yield ProgressEvent(ProgressPhase.start, current=0,
                            message=f"Extracting {view} workout templates")

        try:
            if self.client is None:
                raise SyncError("Remote client is not configured")
            run_id = await self.audit.start_run(
                "workout_extract", {"view": view, "count": count}
            )
        except Exception as exc:
            logger.error("Could not start workout extraction: %s", exc)
            yield ProgressEvent(ProgressPhase.error, message=f"Run setup failed: {exc}")
            return

        run = _Run(run_id, 0)
        result = run.result
        try:
            try:
                listing = await self.client.list_workout_templates(view, count)
            except Exception as exc:
                yield await self._abort(run, exc)
                return
            ids = template_ids(listing)[:count]
            run.total = len(ids)
            logger.info("Workout extraction %s: %d templates listed", run.id, run.total)

            for index, external_id in enumerate(ids, start=1):
                if cancel.cancelled:
                    result.cancelled = True
                    break
                entry: dict[str, Any] = {"external_id": external_id}
                try:
                    definition = await self.client.get_workout_template(external_id)
                    if definition is None:
                        raise RemoteError(
                            f"Workout template {external_id} not found", status_code=404
                        )
                    saved, created = await self._save_template(external_id, definition)
                except AuthError as exc:
                    yield await self._abort(run, exc)
                    return
                except Exception as exc:
                    logger.error("Extracting workout %s failed: %s", external_id, exc)
                    result.failed.append({**entry, "error": str(exc)})
                else:
                    if created:
                        run.counts.created += 1
                    else:
                        run.counts.updated += 1
                    entry.update(name=saved.name, local_id=saved.id, created=created)
                    result.successful.append(dict(entry))

                yield ProgressEvent(
                    ProgressPhase.progress,
                    current=index,
                    total=run.total,
                    payload=entry,
                )

            yield await self._finish(run)
        finally:
            await self._release(run)

    async def _save_template(
        self, external_id: str, definition: dict[str, Any]
    ) -> tuple[WorkoutTemplate, bool]:
        existing = await self.store.find_by_external_id(external_id)
        now = self._clock()
        data = {**template_row(external_id, definition), "synced_at": now, "updated_at": now}
        if existing is None:
            data["created_at"] = now
        saved = await self.store.upsert_by_external_id(data)
        return saved, existing is None
