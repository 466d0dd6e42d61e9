"""Exercise sync engine.

Mirrors exercise records between the local ``exercises`` table and the
fitness-platform API, which is rate limited and has no bulk endpoints.

Core modules:
    gateway         — Rate-limited, retrying single point of egress
    client          — Endpoint-level calls, discovery and payload validation
    field_mapper    — Local ↔ remote field translation and tag building
    reconciliation  — Classify remote records into create/update/skip/conflict
    bulk            — Apply operations / bulk add / discovery with progress events
    audit           — Run and per-item audit trail (sync_logs)
    store           — Postgres and in-memory exercise storage
    stream          — ``data:`` framed progress stream encode/decode
    config_loader   — Load/validate/hot-reload sync_config.yaml
"""

from src.exercise_sync.base import (
    LocalRecord,
    LocalStore,
    OperationKind,
    ProgressEvent,
    ProgressPhase,
    RemoteRecord,
    SyncOperation,
    SyncStatus,
)
from src.exercise_sync.config_loader import SyncConfig, get_sync_config
from src.exercise_sync.errors import NOT_FOUND, SyncError

__all__ = [
    "LocalRecord",
    "LocalStore",
    "RemoteRecord",
    "SyncOperation",
    "OperationKind",
    "ProgressEvent",
    "ProgressPhase",
    "SyncStatus",
    "SyncConfig",
    "get_sync_config",
    "SyncError",
    "NOT_FOUND",
]
