"""Shared FastAPI dependencies injected into route handlers.

Long-lived collaborators (the gateway, the audit log, the discovery state) are
created on first use and cached on ``app.state`` so every request shares
them.  The gateway in particular must be a single instance: its lock is what
keeps one request in flight per credential set.  Their providers are
``async def`` so they run on the event loop, where the check-then-store on
``app.state`` cannot interleave.  A plain ``def`` would run in the threadpool.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.exercise_sync.audit import AuditLog, PostgresAuditLog
from src.exercise_sync.base import LocalStore
from src.exercise_sync.bulk import (
    BulkOperationCoordinator,
    CancellationToken,
    WorkoutSyncCoordinator,
)
from src.exercise_sync.client import TrainerizeClient
from src.exercise_sync.config_loader import SyncConfig, get_sync_config
from src.exercise_sync.errors import ConfigError
from src.exercise_sync.field_mapper import FieldMapper
from src.exercise_sync.gateway import RateLimitedGateway
from src.exercise_sync.reconciliation import ReconciliationEngine
from src.exercise_sync.store import PostgresExerciseStore, PostgresWorkoutStore
from src.exercise_sync.workouts import WorkoutStore


class DiscoveryState:
    """Tracks the single discovery run allowed at a time."""

    def __init__(self) -> None:
        self.token: CancellationToken | None = None

    @property
    def running(self) -> bool:
        return self.token is not None

    def begin(self) -> CancellationToken:
        self.token = CancellationToken()
        return self.token

    def end(self, token: CancellationToken | None = None) -> None:
        """Release the slot; with ``token``, only if that run still holds it."""
        if token is None or self.token is token:
            self.token = None


AppSettings = Annotated[Settings, Depends(get_settings)]


def get_config() -> SyncConfig:
    return get_sync_config()


def get_store() -> LocalStore:
    return PostgresExerciseStore()


def get_workout_store() -> WorkoutStore:
    return PostgresWorkoutStore()


async def get_audit_log(request: Request) -> AuditLog:
    audit = getattr(request.app.state, "audit_log", None)
    if audit is None:
        audit = PostgresAuditLog()
        request.app.state.audit_log = audit
    return audit


async def get_gateway(request: Request, settings: AppSettings) -> RateLimitedGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        try:
            gateway = RateLimitedGateway(
                group_id=settings.trainerize_group_id,
                api_token=settings.trainerize_api_token,
                base_url=settings.trainerize_api_url,
                requests_per_second=settings.requests_per_second,
                max_retries=settings.max_retries,
                retry_delay_ms=settings.retry_delay_ms,
            )
        except ConfigError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        request.app.state.gateway = gateway
    return gateway


def get_client(
    gateway: Annotated[RateLimitedGateway, Depends(get_gateway)],
    settings: AppSettings,
    config: Annotated[SyncConfig, Depends(get_config)],
) -> TrainerizeClient:
    return TrainerizeClient(
        gateway,
        group_id=settings.trainerize_group_id,
        calendar_days=config.discovery.calendar_days,
    )


def get_mapper(config: Annotated[SyncConfig, Depends(get_config)]) -> FieldMapper:
    return FieldMapper.from_config(config)


def get_engine(
    mapper: Annotated[FieldMapper, Depends(get_mapper)],
    config: Annotated[SyncConfig, Depends(get_config)],
) -> ReconciliationEngine:
    return ReconciliationEngine(mapper, significant_fields=config.significant_fields)


def get_coordinator(
    store: Annotated[LocalStore, Depends(get_store)],
    audit: Annotated[AuditLog, Depends(get_audit_log)],
    client: Annotated[TrainerizeClient, Depends(get_client)],
    mapper: Annotated[FieldMapper, Depends(get_mapper)],
    config: Annotated[SyncConfig, Depends(get_config)],
) -> BulkOperationCoordinator:
    return BulkOperationCoordinator(
        store,
        audit,
        client=client,
        mapper=mapper,
        pause_every=config.bulk.pause_every,
        pause_seconds=config.bulk.pause_seconds,
    )


def get_workout_coordinator(
    store: Annotated[WorkoutStore, Depends(get_workout_store)],
    audit: Annotated[AuditLog, Depends(get_audit_log)],
    client: Annotated[TrainerizeClient, Depends(get_client)],
    config: Annotated[SyncConfig, Depends(get_config)],
) -> WorkoutSyncCoordinator:
    return WorkoutSyncCoordinator(
        store,
        audit,
        client=client,
        pause_every=config.bulk.pause_every,
        pause_seconds=config.bulk.pause_seconds,
    )


async def get_discovery_state(request: Request) -> DiscoveryState:
    state = getattr(request.app.state, "discovery", None)
    if state is None:
        state = DiscoveryState()
        request.app.state.discovery = state
    return state


# Annotated shortcuts for route signatures
Store = Annotated[LocalStore, Depends(get_store)]
WorkoutTemplates = Annotated[WorkoutStore, Depends(get_workout_store)]
Audit = Annotated[AuditLog, Depends(get_audit_log)]
Client = Annotated[TrainerizeClient, Depends(get_client)]
Engine = Annotated[ReconciliationEngine, Depends(get_engine)]
Coordinator = Annotated[BulkOperationCoordinator, Depends(get_coordinator)]
WorkoutCoordinator = Annotated[WorkoutSyncCoordinator, Depends(get_workout_coordinator)]
Discovery = Annotated[DiscoveryState, Depends(get_discovery_state)]
