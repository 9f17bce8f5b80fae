"""Error taxonomy shared by the server and the device library.

Service code raises these; the FastAPI layer turns them into HTTP statuses
and the device library folds them into an :class:`Outcome` so that sync
callers branch on a kind instead of catching generically.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class SyncError(Exception):
    """Base class for every error raised by racesync."""


class ConflictError(SyncError):
    """Compare-and-swap retries exhausted; the caller must re-request."""

    def __init__(self, label: str, attempts: int) -> None:
        super().__init__(f"{label}: concurrent modification conflict, please retry")
        self.label = label
        self.attempts = attempts


class AuthError(SyncError):
    def __init__(self, message: str, *, status_code: int = 401, expired: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.expired = expired


class NotFoundError(SyncError):
    pass


class ValidationError(SyncError):
    pass


class StorageError(SyncError):
    """Local persistence failed (e.g. disk full, database locked)."""


class NetworkError(SyncError):
    """The request never produced a response."""


class RequestTimeoutError(SyncError):
    """The request was aborted after the hard timeout."""

    def __init__(self, url: str, timeout: float) -> None:
        super().__init__(f"Request to {url} timed out after {timeout}s")
        self.url = url
        self.timeout = timeout


class HttpStatusError(SyncError):
    """The server answered with a non-2xx status."""

    def __init__(self, status_code: int, message: str = "", *, expired: bool = False) -> None:
        super().__init__(message or f"HTTP {status_code}")
        self.status_code = status_code
        self.expired = expired


class OutcomeKind(str, Enum):
    OK = "ok"
    CONFLICT = "conflict"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    TRANSPORT = "transport"
    VALIDATION = "validation"
    STORAGE = "storage"


def _kind_for_status(status_code: int) -> OutcomeKind:
    if status_code in (401, 403):
        return OutcomeKind.AUTH
    if status_code == 404:
        return OutcomeKind.NOT_FOUND
    if status_code == 409:
        return OutcomeKind.CONFLICT
    if status_code == 400:
        return OutcomeKind.VALIDATION
    return OutcomeKind.TRANSPORT


@dataclass
class Outcome:
    kind: OutcomeKind
    value: Any = None
    error: Optional[SyncError] = None

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.OK

    @classmethod
    def success(cls, value: Any = None) -> "Outcome":
        return cls(OutcomeKind.OK, value=value)

    @classmethod
    def from_error(cls, error: SyncError) -> "Outcome":
        if isinstance(error, ConflictError):
            kind = OutcomeKind.CONFLICT
        elif isinstance(error, AuthError):
            kind = OutcomeKind.AUTH
        elif isinstance(error, NotFoundError):
            kind = OutcomeKind.NOT_FOUND
        elif isinstance(error, ValidationError):
            kind = OutcomeKind.VALIDATION
        elif isinstance(error, StorageError):
            kind = OutcomeKind.STORAGE
        elif isinstance(error, HttpStatusError):
            kind = _kind_for_status(error.status_code)
        else:
            kind = OutcomeKind.TRANSPORT
        return cls(kind, error=error)
