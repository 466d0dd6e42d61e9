"""Rate-limited gateway to the fitness-platform API.

Every outbound call goes through one ``RateLimitedGateway`` instance.  The
provider rate-limits per credential, so the gateway keeps exactly one request
in flight: callers queue on an ``asyncio.Lock`` (FIFO) and each attempt waits
until ``1000 / requests_per_second`` ms have passed since the previous attempt
completed.

Protocol:
    POST {base_url}{endpoint} with a JSON body
    Authorization: Basic base64(group_id:api_token)
    Failure = non-2xx status, or a 2xx JSON body whose ``code`` is non-zero.

Retry behaviour is owned by ``RetryPolicy``:

    status        kind        action
    ------------  ----------  -----------------------------------------------
    2xx           success     return decoded body
    404           not_found   return NOT_FOUND (several endpoints use 404 for
                              optional resources)
    401 / 403     auth        raise AuthError immediately
    429           throttled   retry, delay = base * 2 ** (attempt - 1)
    5xx / network transient   retry, delay = base * attempt
    other 4xx     rejected    raise RemoteValidationError immediately

There is no per-call deadline: a call is bounded only by its retry budget,
and the HTTP client is created with ``timeout=None``.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx

from src.exercise_sync.errors import (
    NOT_FOUND,
    AuthError,
    ConfigError,
    NetworkError,
    RateLimited,
    RemoteError,
    RemoteValidationError,
)

logger = logging.getLogger("exercise_sync.gateway")

DEFAULT_BASE_URL = "https://api.trainerize.com/v03"


class RetryKind(str, Enum):
    success = "success"
    not_found = "not_found"
    auth = "auth"
    throttled = "throttled"
    transient = "transient"
    rejected = "rejected"


class RetryPolicy:
    """Classifies responses and computes backoff delays.

    ``max_retries`` is the total number of attempts for one request, so with
    the default of 3 a request is sent at most three times.
    """

    def __init__(self, max_retries: int = 3, base_delay_ms: int = 1000) -> None:
        if max_retries < 1:
            raise ConfigError(f"max_retries must be >= 1, got {max_retries}")
        if base_delay_ms < 0:
            raise ConfigError(f"retry delay must be >= 0, got {base_delay_ms}")
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms

    @staticmethod
    def classify(status_code: int) -> RetryKind:
        if 200 <= status_code < 300:
            return RetryKind.success
        if status_code == 404:
            return RetryKind.not_found
        if status_code in (401, 403):
            return RetryKind.auth
        if status_code == 429:
            return RetryKind.throttled
        if status_code >= 500:
            return RetryKind.transient
        return RetryKind.rejected

    def delay(self, kind: RetryKind, attempt: int) -> float:
        """Seconds to wait after failed ``attempt`` (1-based) before the next one."""
        if kind is RetryKind.throttled:
            return self.base_delay_ms * 2 ** (attempt - 1) / 1000.0
        if kind is RetryKind.transient:
            return self.base_delay_ms * attempt / 1000.0
        return 0.0

    def should_retry(self, kind: RetryKind, attempt: int) -> bool:
        return (
            kind in (RetryKind.throttled, RetryKind.transient)
            and attempt < self.max_retries
        )


class RateLimitedGateway:
    """Single point of egress to the remote API.

    Construct one per credential set and pass it to whatever needs it; there
    is no module-level instance.
    """

    def __init__(
        self,
        group_id: str,
        api_token: str,
        base_url: str = DEFAULT_BASE_URL,
        requests_per_second: float = 2,
        max_retries: int = 3,
        retry_delay_ms: int = 1000,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the gateway.

        Args:
            group_id:            Provider group id (Basic auth username).
            api_token:           Provider API token (Basic auth password).
            base_url:            API root, endpoints are appended to it.
            requests_per_second: Steady-state request rate.
            max_retries:         Total attempts per request.
            retry_delay_ms:      Base delay for both backoff curves.
            http_client:         Optional pre-configured httpx client (for testing).
            clock:               Monotonic clock in seconds.
            sleep:               Awaitable sleep, replaced by a fake in tests.

        Raises:
            ConfigError: If credentials are missing or the rate is not positive.
        """
        if not group_id or not api_token:
            raise ConfigError(
                "Remote API credentials are not configured "
                "(TRAINERIZE_GROUP_ID / TRAINERIZE_API_TOKEN)"
            )
        if requests_per_second <= 0:
            raise ConfigError(
                f"requests_per_second must be positive, got {requests_per_second}"
            )

        self.base_url = base_url.rstrip("/")
        self.min_interval = 1.0 / requests_per_second
        self.policy = RetryPolicy(max_retries=max_retries, base_delay_ms=retry_delay_ms)

        credentials = base64.b64encode(f"{group_id}:{api_token}".encode()).decode()
        self._headers = {
            "Authorization": f"Basic {credentials}",
            "Content-Type": "application/json",
        }

        self._http_client = http_client
        self._owns_client = http_client is None
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_request_time: float | None = None
        self._waiting = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def request(self, endpoint: str, payload: dict | None = None) -> Any:
        """POST ``payload`` to ``endpoint`` under the rate limit and retry policy.

        Args:
            endpoint: Path relative to the base URL, e.g. ``/exercise/add``.
            payload:  JSON body (an empty object when omitted).

        Returns:
            The decoded JSON body, or ``NOT_FOUND`` for a 404.

        Raises:
            AuthError:             401/403.
            RateLimited:           Every attempt was answered with 429.
            RemoteValidationError: Any other 4xx.
            RemoteError:           5xx or non-zero body code after all attempts.
            NetworkError:          Transport failure after all attempts.
        """
        self._waiting += 1
        try:
            await self._lock.acquire()
        finally:
            self._waiting -= 1
        try:
            return await self._request_locked(endpoint, payload or {})
        finally:
            self._lock.release()

    def stats(self) -> dict[str, Any]:
        return {
            "rate_limit_delay_ms": round(self.min_interval * 1000),
            "last_request_time": self._last_request_time,
            "queue_length": self._waiting,
            "in_flight": self._lock.locked(),
        }

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    # ------------------------------------------------------------------
    # Internals (only called while holding the lock)
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=None)
        return self._http_client

    async def _wait_for_slot(self) -> None:
        if self._last_request_time is None:
            return
        elapsed = self._clock() - self._last_request_time
        if elapsed < self.min_interval:
            await self._sleep(self.min_interval - elapsed)

    async def _request_locked(self, endpoint: str, payload: dict) -> Any:
        url = f"{self.base_url}{endpoint}"
        attempt = 0
        kind = RetryKind.success
        result: Any = None
        failure: Exception | None = None

        while True:
            attempt += 1
            await self._wait_for_slot()
            kind, result, failure = await self._attempt(url, endpoint, payload)

            if not self.policy.should_retry(kind, attempt):
                break

            delay = self.policy.delay(kind, attempt)
            logger.warning(
                "%s %s (attempt %d/%d), retrying in %.2fs",
                endpoint,
                "rate limited" if kind is RetryKind.throttled else f"failed: {failure}",
                attempt,
                self.policy.max_retries,
                delay,
            )
            await self._sleep(delay)

        if kind is RetryKind.success:
            return result
        if kind is RetryKind.not_found:
            logger.debug("%s returned 404", endpoint)
            return NOT_FOUND
        if kind is RetryKind.throttled:
            raise RateLimited(
                f"{endpoint} still rate limited after {attempt} attempts",
                attempts=attempt,
            )
        assert failure is not None
        logger.error("%s failed after %d attempt(s): %s", endpoint, attempt, failure)
        raise failure

    async def _attempt(
        self, url: str, endpoint: str, payload: dict
    ) -> tuple[RetryKind, Any, Exception | None]:
        """Send one attempt and classify it. Only AuthError escapes."""
        try:
            response = await self._client().post(url, json=payload, headers=self._headers)
        except httpx.RequestError as exc:
            return (
                RetryKind.transient,
                None,
                NetworkError(f"{endpoint}: {type(exc).__name__}: {exc}"),
            )
        finally:
            self._last_request_time = self._clock()

        kind = self.policy.classify(response.status_code)

        if kind is RetryKind.success:
            try:
                body = response.json()
            except ValueError:
                return (
                    RetryKind.transient,
                    None,
                    RemoteError(
                        f"{endpoint}: response is not valid JSON",
                        status_code=response.status_code,
                        body=response.text,
                    ),
                )
            code = body.get("code") if isinstance(body, dict) else None
            if code not in (None, 0):
                return (
                    RetryKind.transient,
                    None,
                    RemoteError(
                        f"{endpoint}: {body.get('message') or 'remote error'}",
                        status_code=response.status_code,
                        code=code,
                        body=body,
                    ),
                )
            return kind, body, None

        if kind is RetryKind.not_found or kind is RetryKind.throttled:
            return kind, None, None

        message = f"{endpoint}: HTTP {response.status_code}: {response.text}"
        if kind is RetryKind.auth:
            raise AuthError(message, status_code=response.status_code)
        if kind is RetryKind.rejected:
            return (
                kind,
                None,
                RemoteValidationError(
                    message, errors=[response.text], status_code=response.status_code
                ),
            )
        return (
            kind,
            None,
            RemoteError(message, status_code=response.status_code, body=response.text),
        )
