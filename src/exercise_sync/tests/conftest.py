"""Shared fixtures and fake collaborators for exercise sync tests."""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from typing import Any, Callable

import httpx
import pytest

from src.exercise_sync.audit import InMemoryAuditLog
from src.exercise_sync.base import (
    LocalRecord,
    ProgressEvent,
    ProgressPhase,
    RemoteRecord,
    SyncStatus,
)
from src.exercise_sync.client import TrainerizeClient
from src.exercise_sync.config_loader import SyncConfig, load_sync_config
from src.exercise_sync.field_mapper import FieldMapper
from src.exercise_sync.gateway import RateLimitedGateway
from src.exercise_sync.reconciliation import ReconciliationEngine
from src.exercise_sync.store import InMemoryExerciseStore

FIXED_NOW = datetime(2026, 2, 23, 12, 0, 0, tzinfo=timezone.utc)
BASE_URL = "https://api.test.local/v03"


# ---------------------------------------------------------------------------
# Fake time
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Gateway over httpx.MockTransport
# ---------------------------------------------------------------------------


def json_response(status: int, body: Any = None) -> httpx.Response:
    return httpx.Response(status, json=body if body is not None else {})


def scripted_transport(
    responses: list[httpx.Response | Exception],
    calls: list[httpx.Request],
    on_request: Callable[[httpx.Request], None] | None = None,
) -> httpx.MockTransport:
    """Replays ``responses`` in order; an Exception item is raised instead."""
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if on_request is not None:
            on_request(request)
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    return httpx.MockTransport(handler)


def make_gateway(
    transport: httpx.MockTransport,
    clock: FakeClock,
    **kwargs: Any,
) -> RateLimitedGateway:
    options = {
        "group_id": "1234",
        "api_token": "secret-token",
        "base_url": BASE_URL,
        "requests_per_second": 2,
        "max_retries": 3,
        "retry_delay_ms": 1000,
    }
    options.update(kwargs)
    return RateLimitedGateway(
        http_client=httpx.AsyncClient(transport=transport),
        clock=clock,
        sleep=clock.sleep,
        **options,
    )


def request_body(request: httpx.Request) -> dict:
    return json.loads(request.content)


def routed_transport(routes: dict, calls: list[httpx.Request]) -> httpx.MockTransport:
    """Answer by URL path suffix; a route value may be a callable of the body."""

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        for suffix, answer in routes.items():
            if request.url.path.endswith(suffix):
                if callable(answer):
                    answer = answer(request_body(request))
                if isinstance(answer, httpx.Response):
                    return answer
                return json_response(200, answer)
        return json_response(404)

    return httpx.MockTransport(handler)


def make_client(transport: httpx.MockTransport, clock: FakeClock) -> TrainerizeClient:
    return TrainerizeClient(
        make_gateway(transport, clock),
        group_id="1234",
        calendar_days=30,
        today=lambda: date(2026, 2, 23),
    )


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the bundled sync config."""
    return load_sync_config()


@pytest.fixture
def mapper(sync_config: SyncConfig) -> FieldMapper:
    return FieldMapper.from_config(sync_config)


@pytest.fixture
def engine(mapper: FieldMapper, sync_config: SyncConfig) -> ReconciliationEngine:
    return ReconciliationEngine(
        mapper,
        significant_fields=sync_config.significant_fields,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def store() -> InMemoryExerciseStore:
    return InMemoryExerciseStore()


@pytest.fixture
def audit() -> InMemoryAuditLog:
    return InMemoryAuditLog(clock=lambda: FIXED_NOW)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


def remote(external_id: str, name: str, **attributes: Any) -> RemoteRecord:
    return RemoteRecord(external_id=external_id, name=name, attributes=attributes)


def local(
    local_id: str,
    name: str,
    external_id: str | None = None,
    sync_status: SyncStatus = SyncStatus.pending,
    **fields: Any,
) -> LocalRecord:
    return LocalRecord(
        id=local_id,
        name=name,
        external_id=external_id,
        sync_status=sync_status,
        **fields,
    )


@pytest.fixture
def push_up_row() -> dict:
    """A realistic local exercise row as stored in the exercises table."""
    return {
        "id": "0b6f1c2e-0000-4000-8000-000000000001",
        "name": "Push-ups",
        "description": "Basic bodyweight exercise",
        "category": "Strength",
        "muscle_groups": ["Chest", "Triceps"],
        "equipment": ["Bodyweight"],
        "difficulty_level": "beginner",
        "video_url": "https://www.youtube.com/watch?v=IODxDxX7oi4",
        "is_active": True,
        "sync_status": "pending",
    }


async def collect(events) -> list[ProgressEvent]:
    return [event async for event in events]


# ---------------------------------------------------------------------------
# Progress streams
# ---------------------------------------------------------------------------


class Sleeps:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def sleeps() -> Sleeps:
    return Sleeps()


def phases(events) -> list[ProgressPhase]:
    return [event.phase for event in events]


def assert_protocol(events) -> None:
    """Exactly one start first, exactly one terminal event last."""
    kinds = phases(events)
    assert kinds[0] is ProgressPhase.start
    assert kinds.count(ProgressPhase.start) == 1
    assert kinds[-1].is_terminal
    assert sum(1 for k in kinds if k.is_terminal) == 1


async def read_until(events, phase: ProgressPhase) -> None:
    async for event in events:
        if event.phase is phase:
            return
