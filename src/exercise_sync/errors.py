"""Error taxonomy for the exercise sync engine.

Callers branch on these types rather than on HTTP status codes:

    ConfigError            — missing credentials / bad config, fatal at construction
    AuthError              — 401/403 from the provider, fatal, never retried
    RateLimited            — 429 that outlived the retry budget
    RemoteError            — non-2xx body or non-zero provider ``code``
    RemoteValidationError  — payload rejected (locally or by a 4xx), per item
    NetworkError           — transport failure that outlived the retry budget
    DuplicateExternalIdError — a second local row tried to claim an external id

``NOT_FOUND`` is not an error: several provider endpoints answer 404 for
optional resources, so the gateway returns this falsy sentinel instead.
"""

from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base class for all sync engine errors."""


class ConfigError(SyncError):
    """Raised when credentials or configuration are missing or invalid."""


class AuthError(SyncError):
    """Raised on 401/403. Retrying with the same credentials cannot succeed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteError(SyncError):
    """Wraps a failed provider response.

    Attributes:
        status_code: HTTP status, or 200 when the body carried a non-zero code.
        code:        Provider's own error code, if any.
        body:        Raw response text or decoded message.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: Any = None,
        body: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.body = body


class RateLimited(RemoteError):
    """Raised only after every retry attempt was answered with 429."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message, status_code=429)
        self.attempts = attempts


class RemoteValidationError(RemoteError):
    """The payload was rejected, either by local validation or by a 4xx."""

    def __init__(
        self,
        message: str,
        errors: list[str] | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.errors = errors or []


class NetworkError(SyncError):
    """Transport-level failure (DNS, connection reset, TLS, ...)."""


class DuplicateExternalIdError(SyncError):
    """An insert tried to link an external id that another row already owns."""

    def __init__(self, external_id: str) -> None:
        super().__init__(f"External id {external_id!r} is already linked to a local record")
        self.external_id = external_id


class AuditError(SyncError):
    """Raised when a run is completed twice or an unknown run id is used."""


class StreamIncompleteError(SyncError):
    """The progress stream closed before a terminal event arrived."""


class _NotFound:
    """Singleton sentinel for provider 404 answers."""

    _instance: "_NotFound | None" = None

    def __new__(cls) -> "_NotFound":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_FOUND"


NOT_FOUND = _NotFound()
