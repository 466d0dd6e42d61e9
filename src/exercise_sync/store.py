"""Local exercise storage backends.

``PostgresExerciseStore`` talks to the ``exercises`` table through asyncpg;
``InMemoryExerciseStore`` keeps rows in a dict and is used by tests and by
dry runs.  Workout templates get the same pair at the bottom of the module.
The exercise stores implement ``LocalStore`` and share the filter vocabulary:

    eq        column = value
    contains  array column contains every given value
    ilike     case-insensitive match, ``%`` and ``_`` wildcards
    is_null   column IS NULL
    not_null  column IS NOT NULL
    in        column is one of the given values

Expected table (the provider id lives in ``trainerize_id`` and unrecognised
provider fields in ``metadata``)::

    CREATE TABLE exercises (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        trainerize_id TEXT UNIQUE,
        name TEXT NOT NULL,
        alternate_name TEXT,
        description TEXT,
        category TEXT,
        muscle_groups TEXT[] DEFAULT '{}',
        equipment TEXT[] DEFAULT '{}',
        instructions TEXT,
        video_url TEXT,
        thumbnail_url TEXT,
        difficulty_level TEXT,
        is_active BOOLEAN DEFAULT TRUE,
        sync_status TEXT DEFAULT 'pending',
        synced_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW(),
        metadata JSONB DEFAULT '{}'
    );
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from enum import Enum
from typing import Any

import asyncpg

from src.exercise_sync.base import Filter, LocalRecord, LocalStore
from src.exercise_sync.errors import DuplicateExternalIdError
from src.exercise_sync.workouts import WorkoutStore, WorkoutTemplate
from src.services.database import get_connection

logger = logging.getLogger("exercise_sync.store")

FILTER_OPS = frozenset({"eq", "contains", "ilike", "is_null", "not_null", "in"})

# LocalRecord field -> table column
_COLUMNS: dict[str, str] = {
    "id": "id",
    "external_id": "trainerize_id",
    "name": "name",
    "alternate_name": "alternate_name",
    "description": "description",
    "category": "category",
    "muscle_groups": "muscle_groups",
    "equipment": "equipment",
    "instructions": "instructions",
    "video_url": "video_url",
    "thumbnail_url": "thumbnail_url",
    "difficulty_level": "difficulty_level",
    "is_active": "is_active",
    "sync_status": "sync_status",
    "synced_at": "synced_at",
    "created_at": "created_at",
    "updated_at": "updated_at",
}
_FIELDS = {column: name for name, column in _COLUMNS.items()}


def _check_filter(flt: Filter) -> None:
    if flt.op not in FILTER_OPS:
        raise ValueError(f"Unsupported filter op {flt.op!r}")
    if flt.field not in _COLUMNS:
        raise ValueError(f"Unknown field {flt.field!r}")


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _split_extra(data: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Separate known fields from everything that belongs in ``extra``."""
    known: dict[str, Any] = {}
    extra: dict[str, Any] = dict(data.get("extra") or {})
    for key, value in data.items():
        if key == "extra":
            continue
        if key == "metadata" and isinstance(value, dict):
            extra.update(value)
        elif key in _COLUMNS:
            known[key] = _plain(value)
        else:
            extra[key] = value
    return known, extra


# ---------------------------------------------------------------------------
# Postgres
# ---------------------------------------------------------------------------


class PostgresExerciseStore(LocalStore):
    """``exercises`` table via asyncpg.

    Args:
        pool: Connection pool. Defaults to the app-wide pool.
    """

    TABLE = "exercises"

    def __init__(self, pool: asyncpg.Pool | None = None) -> None:
        self._pool = pool

    async def fetch(
        self,
        filters: list[Filter] | None = None,
        limit: int = 500,
        offset: int = 0,
    ) -> list[LocalRecord]:
        clauses: list[str] = []
        args: list[Any] = []
        for flt in filters or []:
            _check_filter(flt)
            clauses.append(self._where(flt, args))

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        args.extend([limit, offset])
        query = (
            f"SELECT * FROM {self.TABLE} {where} "
            f"ORDER BY id LIMIT ${len(args) - 1} OFFSET ${len(args)}"
        )
        async with get_connection(self._pool) as conn:
            rows = await conn.fetch(query, *args)
        return [self._to_record(row) for row in rows]

    async def upsert_by_external_id(self, data: dict[str, Any]) -> LocalRecord:
        if not data.get("external_id"):
            raise ValueError("upsert_by_external_id requires external_id")
        columns, values = self._to_columns(data, include_id=False)
        placeholders = ", ".join(f"${i}" for i in range(1, len(values) + 1))
        updates = ", ".join(
            f"metadata = {self.TABLE}.metadata || EXCLUDED.metadata"
            if col == "metadata"
            else f"{col} = EXCLUDED.{col}"
            for col in columns
            if col not in ("trainerize_id", "created_at")
        ) or "trainerize_id = EXCLUDED.trainerize_id"
        query = (
            f"INSERT INTO {self.TABLE} ({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT (trainerize_id) DO UPDATE SET {updates} RETURNING *"
        )
        async with get_connection(self._pool) as conn:
            row = await conn.fetchrow(query, *values)
        return self._to_record(row)

    async def update(self, record_id: str, data: dict[str, Any]) -> LocalRecord:
        columns, values = self._to_columns(data, include_id=False)
        if not columns:
            raise ValueError("update requires at least one field")
        assignments = ", ".join(
            f"metadata = COALESCE(metadata, '{{}}'::jsonb) || ${i}::jsonb"
            if col == "metadata"
            else f"{col} = ${i}"
            for i, col in enumerate(columns, start=2)
        )
        query = (
            f"UPDATE {self.TABLE} SET {assignments} "
            f"WHERE id = $1::uuid RETURNING *"
        )
        try:
            async with get_connection(self._pool) as conn:
                row = await conn.fetchrow(query, str(record_id), *values)
        except asyncpg.UniqueViolationError as exc:
            logger.warning("%s: external id %s already linked", self.TABLE, data.get("external_id"))
            raise DuplicateExternalIdError(str(data.get("external_id"))) from exc
        if row is None:
            raise KeyError(record_id)
        return self._to_record(row)

    async def insert(self, data: dict[str, Any]) -> LocalRecord:
        columns, values = self._to_columns(data, include_id=True)
        placeholders = ", ".join(f"${i}" for i in range(1, len(values) + 1))
        query = (
            f"INSERT INTO {self.TABLE} ({', '.join(columns)}) "
            f"VALUES ({placeholders}) RETURNING *"
        )
        try:
            async with get_connection(self._pool) as conn:
                row = await conn.fetchrow(query, *values)
        except asyncpg.UniqueViolationError as exc:
            logger.warning("%s: external id %s already linked", self.TABLE, data.get("external_id"))
            raise DuplicateExternalIdError(str(data.get("external_id"))) from exc
        return self._to_record(row)

    # ------------------------------------------------------------------

    @staticmethod
    def _where(flt: Filter, args: list[Any]) -> str:
        column = _COLUMNS[flt.field]
        if flt.op == "is_null":
            return f"{column} IS NULL"
        if flt.op == "not_null":
            return f"{column} IS NOT NULL"
        if flt.op == "in":
            args.append([str(v) for v in flt.value])
            return f"{column}::text = ANY(${len(args)}::text[])"
        if flt.op == "contains":
            value = flt.value if isinstance(flt.value, (list, tuple)) else [flt.value]
            args.append(list(value))
            return f"{column} @> ${len(args)}"
        if flt.op == "ilike":
            args.append(flt.value)
            return f"{column} ILIKE ${len(args)}"
        args.append(_plain(flt.value))
        return f"{column} = ${len(args)}"

    @staticmethod
    def _to_columns(
        data: dict[str, Any], include_id: bool
    ) -> tuple[list[str], list[Any]]:
        known, extra = _split_extra(data)
        if not include_id or known.get("id") is None:
            known.pop("id", None)
        columns = [_COLUMNS[name] for name in known]
        values: list[Any] = list(known.values())
        if "id" in known:
            values[columns.index("id")] = uuid.UUID(str(known["id"]))
        if extra:
            columns.append("metadata")
            values.append(json.dumps(extra, default=str))
        return columns, values

    @staticmethod
    def _to_record(row: asyncpg.Record) -> LocalRecord:
        data = {_FIELDS.get(key, key): value for key, value in dict(row).items()}
        if isinstance(data.get("metadata"), str):
            data["metadata"] = json.loads(data["metadata"])
        return LocalRecord.from_row(data)


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


def _ilike(pattern: str, value: Any) -> bool:
    if value is None:
        return False
    parts: list[str] = []
    escaped = False
    for ch in str(pattern):
        if escaped:
            parts.append(re.escape(ch))
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == "%":
            parts.append(".*")
        elif ch == "_":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.fullmatch("".join(parts), str(value), flags=re.IGNORECASE | re.DOTALL) is not None


def _matches(row: dict[str, Any], flt: Filter) -> bool:
    value = _plain(row.get(flt.field))
    if flt.op == "eq":
        return value == _plain(flt.value)
    if flt.op == "is_null":
        return value is None
    if flt.op == "not_null":
        return value is not None
    if flt.op == "in":
        return value is not None and str(value) in {str(v) for v in flt.value}
    if flt.op == "ilike":
        return _ilike(flt.value, value)
    # contains
    wanted = flt.value if isinstance(flt.value, (list, tuple)) else [flt.value]
    if isinstance(value, str):
        return all(str(w) in value for w in wanted)
    return all(w in (value or []) for w in wanted)


class InMemoryExerciseStore(LocalStore):
    """Dict-backed store with the same semantics as the Postgres one."""

    def __init__(self, records: list[LocalRecord | dict[str, Any]] | None = None) -> None:
        self._rows: dict[str, dict[str, Any]] = {}
        for record in records or []:
            if isinstance(record, LocalRecord):
                data = {**record.as_dict(), "extra": record.extra}
            else:
                data = dict(record)
            self._store_row(data, new=True)

    async def fetch(
        self,
        filters: list[Filter] | None = None,
        limit: int = 500,
        offset: int = 0,
    ) -> list[LocalRecord]:
        for flt in filters or []:
            _check_filter(flt)
        rows = [
            row for row in self._rows.values()
            if all(_matches(row, flt) for flt in filters or [])
        ]
        return [self._to_record(row) for row in rows[offset:offset + limit]]

    async def upsert_by_external_id(self, data: dict[str, Any]) -> LocalRecord:
        external_id = data.get("external_id")
        if not external_id:
            raise ValueError("upsert_by_external_id requires external_id")
        existing = self._find_external(str(external_id))
        if existing is None:
            return self._to_record(self._store_row(dict(data), new=True))
        patch = {k: v for k, v in data.items() if k not in ("id", "created_at")}
        return await self.update(existing["id"], patch)

    async def update(self, record_id: str, data: dict[str, Any]) -> LocalRecord:
        record_id = str(record_id)
        if record_id not in self._rows:
            raise KeyError(record_id)
        current = self._rows[record_id]
        merged = {**current, **{k: v for k, v in data.items() if k != "id"}}
        merged["id"] = record_id
        # extra is merged key by key, like the jsonb || on the metadata column
        merged["extra"] = {**current.get("extra", {}), **(data.get("extra") or {})}
        return self._to_record(self._store_row(merged, new=False))

    async def insert(self, data: dict[str, Any]) -> LocalRecord:
        return self._to_record(self._store_row(dict(data), new=True))

    def __len__(self) -> int:
        return len(self._rows)

    # ------------------------------------------------------------------

    def _find_external(self, external_id: str) -> dict[str, Any] | None:
        for row in self._rows.values():
            if row.get("external_id") == external_id:
                return row
        return None

    def _store_row(self, data: dict[str, Any], new: bool) -> dict[str, Any]:
        known, extra = _split_extra(data)
        if new:
            known["id"] = str(known.get("id") or uuid.uuid4())
            if known["id"] in self._rows:
                raise ValueError(f"Duplicate primary key {known['id']}")
        if not known.get("name"):
            raise ValueError("name is required")

        external_id = known.get("external_id")
        if external_id is not None:
            known["external_id"] = str(external_id)
            owner = self._find_external(known["external_id"])
            if owner is not None and owner["id"] != known["id"]:
                raise DuplicateExternalIdError(known["external_id"])

        known["extra"] = extra
        self._rows[known["id"]] = known
        return known

    @staticmethod
    def _to_record(row: dict[str, Any]) -> LocalRecord:
        data = {k: v for k, v in row.items() if k != "extra"}
        data["metadata"] = row.get("extra") or {}
        return LocalRecord.from_row(data)


# ---------------------------------------------------------------------------
# Workout templates
# ---------------------------------------------------------------------------

# WorkoutTemplate field -> ``workout_templates`` column
_WORKOUT_COLUMNS: dict[str, str] = {
    "id": "id",
    "external_id": "trainerize_id",
    "name": "name",
    "workout_type": "workout_type",
    "instructions": "instructions",
    "exercises": "exercises",
    "exercise_count": "exercise_count",
    "total_sets": "total_sets",
    "tags": "tags",
    "tracking_stats": "tracking_stats",
    "synced_at": "synced_at",
    "created_at": "created_at",
    "updated_at": "updated_at",
    "metadata": "metadata",
}
_WORKOUT_FIELDS = {column: name for name, column in _WORKOUT_COLUMNS.items()}
_WORKOUT_JSON = frozenset({"exercises", "tags", "tracking_stats", "metadata"})


def _check_workout_fields(data: dict[str, Any]) -> None:
    unknown = sorted(set(data) - set(_WORKOUT_COLUMNS))
    if unknown:
        raise ValueError(f"Unknown workout template fields: {', '.join(unknown)}")


class PostgresWorkoutStore(WorkoutStore):
    """``workout_templates`` table via asyncpg.

    Expected table::

        CREATE TABLE workout_templates (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            trainerize_id TEXT UNIQUE,
            name TEXT NOT NULL,
            workout_type TEXT,
            instructions TEXT,
            exercises JSONB DEFAULT '[]',
            exercise_count INTEGER DEFAULT 0,
            total_sets INTEGER DEFAULT 0,
            tags JSONB DEFAULT '[]',
            tracking_stats JSONB DEFAULT '{}',
            metadata JSONB DEFAULT '{}',
            synced_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        );
    """

    TABLE = "workout_templates"

    def __init__(self, pool: asyncpg.Pool | None = None) -> None:
        self._pool = pool

    async def fetch_by_ids(self, ids: list[str]) -> list[WorkoutTemplate]:
        if not ids:
            return []
        query = f"SELECT * FROM {self.TABLE} WHERE id::text = ANY($1::text[]) ORDER BY id"
        async with get_connection(self._pool) as conn:
            rows = await conn.fetch(query, [str(i) for i in ids])
        return [self._to_template(row) for row in rows]

    async def find_by_external_id(self, external_id: str) -> WorkoutTemplate | None:
        query = f"SELECT * FROM {self.TABLE} WHERE trainerize_id = $1"
        async with get_connection(self._pool) as conn:
            row = await conn.fetchrow(query, str(external_id))
        return self._to_template(row) if row is not None else None

    async def upsert_by_external_id(self, data: dict[str, Any]) -> WorkoutTemplate:
        if not data.get("external_id"):
            raise ValueError("upsert_by_external_id requires external_id")
        columns, values = self._to_columns(data)
        placeholders = ", ".join(
            self._placeholder(col, i) for i, col in enumerate(columns, start=1)
        )
        updates = ", ".join(
            f"{col} = EXCLUDED.{col}"
            for col in columns
            if col not in ("trainerize_id", "created_at")
        ) or "trainerize_id = EXCLUDED.trainerize_id"
        query = (
            f"INSERT INTO {self.TABLE} ({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT (trainerize_id) DO UPDATE SET {updates} RETURNING *"
        )
        async with get_connection(self._pool) as conn:
            row = await conn.fetchrow(query, *values)
        return self._to_template(row)

    async def update(self, template_id: str, data: dict[str, Any]) -> WorkoutTemplate:
        columns, values = self._to_columns(data)
        if not columns:
            raise ValueError("update requires at least one field")
        assignments = ", ".join(
            f"{col} = {self._placeholder(col, i)}" for i, col in enumerate(columns, start=2)
        )
        query = f"UPDATE {self.TABLE} SET {assignments} WHERE id = $1::uuid RETURNING *"
        try:
            async with get_connection(self._pool) as conn:
                row = await conn.fetchrow(query, str(template_id), *values)
        except asyncpg.UniqueViolationError as exc:
            logger.warning("%s: external id %s already linked", self.TABLE, data.get("external_id"))
            raise DuplicateExternalIdError(str(data.get("external_id"))) from exc
        if row is None:
            raise KeyError(template_id)
        return self._to_template(row)

    # ------------------------------------------------------------------

    @staticmethod
    def _placeholder(column: str, index: int) -> str:
        return f"${index}::jsonb" if column in _WORKOUT_JSON else f"${index}"

    @staticmethod
    def _to_columns(data: dict[str, Any]) -> tuple[list[str], list[Any]]:
        """Column names and bound values; the primary key is never written."""
        _check_workout_fields(data)
        columns: list[str] = []
        values: list[Any] = []
        for name, value in data.items():
            if name == "id":
                continue
            column = _WORKOUT_COLUMNS[name]
            if column in _WORKOUT_JSON:
                value = json.dumps(value, default=str)
            elif name == "external_id" and value is not None:
                value = str(value)
            columns.append(column)
            values.append(value)
        return columns, values

    @staticmethod
    def _to_template(row: asyncpg.Record) -> WorkoutTemplate:
        data = {_WORKOUT_FIELDS.get(key, key): value for key, value in dict(row).items()}
        for name in _WORKOUT_JSON:
            if isinstance(data.get(name), str):
                data[name] = json.loads(data[name])
        return WorkoutTemplate.from_row(data)


class InMemoryWorkoutStore(WorkoutStore):
    """Dict-backed workout templates with the same linking rules as Postgres."""

    def __init__(self, templates: list[WorkoutTemplate | dict[str, Any]] | None = None) -> None:
        self._rows: dict[str, dict[str, Any]] = {}
        for template in templates or []:
            if isinstance(template, WorkoutTemplate):
                data = {name: getattr(template, name) for name in _WORKOUT_COLUMNS}
            else:
                data = dict(template)
            self._put(data, new=True)

    async def fetch_by_ids(self, ids: list[str]) -> list[WorkoutTemplate]:
        wanted = {str(i) for i in ids}
        return [WorkoutTemplate.from_row(row) for row in self._rows.values() if row["id"] in wanted]

    async def find_by_external_id(self, external_id: str) -> WorkoutTemplate | None:
        row = self._find_external(str(external_id))
        return WorkoutTemplate.from_row(row) if row is not None else None

    async def upsert_by_external_id(self, data: dict[str, Any]) -> WorkoutTemplate:
        external_id = data.get("external_id")
        if not external_id:
            raise ValueError("upsert_by_external_id requires external_id")
        existing = self._find_external(str(external_id))
        if existing is None:
            return WorkoutTemplate.from_row(self._put(dict(data), new=True))
        patch = {k: v for k, v in data.items() if k not in ("id", "created_at")}
        return await self.update(existing["id"], patch)

    async def update(self, template_id: str, data: dict[str, Any]) -> WorkoutTemplate:
        template_id = str(template_id)
        if template_id not in self._rows:
            raise KeyError(template_id)
        merged = {**self._rows[template_id], **{k: v for k, v in data.items() if k != "id"}}
        merged["id"] = template_id
        return WorkoutTemplate.from_row(self._put(merged, new=False))

    def __len__(self) -> int:
        return len(self._rows)

    # ------------------------------------------------------------------

    def _find_external(self, external_id: str) -> dict[str, Any] | None:
        for row in self._rows.values():
            if row.get("external_id") == external_id:
                return row
        return None

    def _put(self, data: dict[str, Any], new: bool) -> dict[str, Any]:
        _check_workout_fields(data)
        if new:
            data["id"] = str(data.get("id") or uuid.uuid4())
            if data["id"] in self._rows:
                raise ValueError(f"Duplicate primary key {data['id']}")
        if not data.get("name"):
            raise ValueError("name is required")

        if data.get("external_id") is not None:
            data["external_id"] = str(data["external_id"])
            owner = self._find_external(data["external_id"])
            if owner is not None and owner["id"] != data["id"]:
                raise DuplicateExternalIdError(data["external_id"])

        self._rows[data["id"]] = data
        return data
