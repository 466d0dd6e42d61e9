"""Canonical data models for the exercise sync engine.

Every component (gateway client, mapper, reconciliation engine, bulk
coordinator, audit log) exchanges these types.  Remote records are what the
fitness platform returns, local records are rows of the ``exercises`` table,
and sync operations / progress events are transient values produced during a
reconciliation pass.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class SyncStatus(str, Enum):
    pending = "pending"
    synced = "synced"
    error = "error"
    deleted = "deleted"


class OperationKind(str, Enum):
    create = "create"
    update = "update"
    skip = "skip"
    conflict = "conflict"


class ProgressPhase(str, Enum):
    start = "start"
    progress = "progress"
    exercise_saved = "exercise_saved"
    complete = "complete"
    error = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (ProgressPhase.complete, ProgressPhase.error)


class RunStatus(str, Enum):
    started = "started"
    completed = "completed"
    failed = "failed"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class RemoteRecord:
    """An exercise as represented by the fitness-platform API.

    Attributes:
        external_id: Provider-side identifier (always a string).
        name:        Exercise name.
        attributes:  Open bag of provider attributes (category, muscle_groups,
                     equipment, video_url, ...).
    """

    external_id: str
    name: str
    attributes: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        """Flatten into a single dict keyed the way the provider names fields."""
        return {**self.attributes, "id": self.external_id, "name": self.name}


@dataclass
class LocalRecord:
    """A row of the local ``exercises`` table.

    Attributes:
        id:               Local primary key.
        name:             Exercise name.
        external_id:      Linked provider id, None if never synced.
        description:      Free text description.
        category:         Exercise category ('strength', 'cardio', ...).
        muscle_groups:    Targeted muscle groups.
        equipment:        Required equipment.
        instructions:     Newline separated instructions.
        video_url:        Demonstration video link.
        thumbnail_url:    Thumbnail image link.
        difficulty_level: 'beginner' | 'intermediate' | 'advanced'.
        alternate_name:   Secondary display name.
        is_active:        Soft visibility flag.
        sync_status:      Sync state of the row.
        synced_at:        Last successful sync timestamp.
        created_at:       Row creation timestamp.
        updated_at:       Last modification timestamp.
        extra:            Provider fields the mapper does not recognise.
    """

    id: str
    name: str
    external_id: str | None = None
    description: str | None = None
    category: str | None = None
    muscle_groups: list[str] = field(default_factory=list)
    equipment: list[str] = field(default_factory=list)
    instructions: str | None = None
    video_url: str | None = None
    thumbnail_url: str | None = None
    difficulty_level: str | None = None
    alternate_name: str | None = None
    is_active: bool = True
    sync_status: SyncStatus = SyncStatus.pending
    synced_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "LocalRecord":
        """Build a LocalRecord from a storage row; unknown columns go to ``extra``."""
        known = {f for f in cls.__dataclass_fields__ if f != "extra"}
        data = {k: v for k, v in row.items() if k in known}
        # the ``metadata`` column holds the side-map of unrecognised provider fields
        extra = dict(row.get("metadata") or {})
        extra.update(
            {k: v for k, v in row.items() if k not in known and k != "metadata"}
        )
        data["id"] = str(data["id"])
        if data.get("external_id") is not None:
            data["external_id"] = str(data["external_id"])
        data["muscle_groups"] = list(data.get("muscle_groups") or [])
        data["equipment"] = list(data.get("equipment") or [])
        if "sync_status" in data and data["sync_status"] is not None:
            data["sync_status"] = SyncStatus(data["sync_status"])
        else:
            data.pop("sync_status", None)
        return cls(**data, extra=extra)

    def as_dict(self) -> dict[str, Any]:
        """Column view of the record (without ``extra``)."""
        return {
            name: getattr(self, name)
            for name in self.__dataclass_fields__
            if name != "extra"
        }

    @property
    def is_linked(self) -> bool:
        return bool(self.external_id)


@dataclass(frozen=True)
class Tag:
    """Flat provider tag, e.g. ``Tag("muscle", "Chest")``."""

    type: str
    name: str

    def as_dict(self) -> dict[str, str]:
        return {"type": self.type, "name": self.name}


# ---------------------------------------------------------------------------
# Operations and progress
# ---------------------------------------------------------------------------


@dataclass
class SyncOperation:
    """One classified reconciliation step.

    A ``conflict`` must always carry at least one conflict field or a reason;
    construction fails otherwise.
    """

    id: str
    kind: OperationKind
    remote_data: dict[str, Any]
    mapped_data: dict[str, Any]
    local_data: dict[str, Any] | None = None
    conflict_fields: list[str] = field(default_factory=list)
    reason: str | None = None

    def __post_init__(self) -> None:
        if self.kind is OperationKind.conflict and not (self.conflict_fields or self.reason):
            raise ValueError(
                f"Conflict operation {self.id!r} needs conflict_fields or a reason"
            )

    @property
    def local_id(self) -> str | None:
        if not self.local_data:
            return None
        value = self.local_data.get("id")
        return str(value) if value is not None else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "remote_data": self.remote_data,
            "local_data": self.local_data,
            "mapped_data": self.mapped_data,
            "conflict_fields": list(self.conflict_fields),
            "reason": self.reason,
        }


@dataclass
class ProgressEvent:
    """A single event on a bulk/discovery progress stream."""

    phase: ProgressPhase
    current: int | None = None
    total: int | None = None
    payload: dict[str, Any] | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.phase.value}
        if self.current is not None:
            data["current"] = self.current
        if self.total is not None:
            data["total"] = self.total
            if self.current is not None and self.total:
                data["percentage"] = round(self.current / self.total * 100)
        if self.payload is not None:
            data["payload"] = self.payload
        if self.message is not None:
            data["message"] = self.message
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProgressEvent":
        return cls(
            phase=ProgressPhase(data["type"]),
            current=data.get("current"),
            total=data.get("total"),
            payload=data.get("payload"),
            message=data.get("message"),
        )


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


@dataclass
class RunCounts:
    processed: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
        }


@dataclass
class AuditRecord:
    """One reconciliation / bulk / discovery run as stored in ``sync_logs``."""

    id: str
    run_type: str
    status: RunStatus
    started_at: datetime
    completed_at: datetime | None = None
    counts: RunCounts = field(default_factory=RunCounts)
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Local storage collaborator
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Filter:
    """A storage filter: ``op`` is one of eq, contains, ilike, is_null, not_null, in."""

    field: str
    op: str
    value: Any = None


class LocalStore(ABC):
    """Capability the engine needs from local storage.

    The engine treats storage as opaque: any backend that supports filtered,
    paginated reads, upsert by external id, update by primary key and plain
    insert can be plugged in.
    """

    #: Page size used by ``fetch_all``.
    PAGE_SIZE: int = 500

    @abstractmethod
    async def fetch(
        self,
        filters: list[Filter] | None = None,
        limit: int = 500,
        offset: int = 0,
    ) -> list[LocalRecord]:
        """Return records matching all filters, ordered by primary key."""

    @abstractmethod
    async def upsert_by_external_id(self, data: dict[str, Any]) -> LocalRecord:
        """Insert or update the record whose ``external_id`` matches ``data``."""

    @abstractmethod
    async def update(self, record_id: str, data: dict[str, Any]) -> LocalRecord:
        """Update the record keyed by primary key.

        Raises:
            KeyError: If no record has this id.
        """

    @abstractmethod
    async def insert(self, data: dict[str, Any]) -> LocalRecord:
        """Insert a new record.

        Raises:
            DuplicateExternalIdError: If ``external_id`` is already linked.
        """

    async def fetch_all(self, filters: list[Filter] | None = None) -> list[LocalRecord]:
        """Page through every matching record."""
        records: list[LocalRecord] = []
        offset = 0
        while True:
            page = await self.fetch(filters, limit=self.PAGE_SIZE, offset=offset)
            records.extend(page)
            if len(page) < self.PAGE_SIZE:
                return records
            offset += self.PAGE_SIZE

    async def fetch_by_ids(self, ids: list[str]) -> list[LocalRecord]:
        if not ids:
            return []
        return await self.fetch_all([Filter("id", "in", list(ids))])

    async def find_synced_by_name(self, name: str) -> LocalRecord | None:
        """Case-insensitive exact name lookup among records already linked remotely."""
        pattern = name.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        matches = await self.fetch(
            [Filter("name", "ilike", pattern), Filter("external_id", "not_null")],
            limit=1,
        )
        return matches[0] if matches else None
