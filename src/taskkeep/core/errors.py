# src/taskkeep/core/errors.py

"""
Error taxonomy shared by the storage and sync layers.

Every error raised on purpose by the core is a TaskKeepError carrying:
- kind: which family it belongs to (validation / not_found / storage / network)
- recoverable: whether the caller can reasonably retry

Callers are expected to switch on `kind` (see describe_error) instead of
checking the concrete class.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum

RetryAction = Callable[[], Awaitable[None]]


class ErrorKind(StrEnum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    STORAGE = "storage"
    NETWORK = "network"
    UNKNOWN = "unknown"


class TaskKeepError(Exception):
    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, *, recoverable: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.recoverable = recoverable


class ValidationError(TaskKeepError):
    """Bad input shape/length. Never retried internally."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message, recoverable=False)
        self.field = field


class NotFoundError(TaskKeepError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Todo with id {record_id} not found", recoverable=False)
        self.record_id = record_id


class StorageError(TaskKeepError):
    """
    Underlying store failure.

    recoverable=True is reserved for quota exhaustion that survived cleanup;
    retry_action (when set) re-persists the current state.
    """

    kind = ErrorKind.STORAGE

    def __init__(
        self,
        message: str,
        *,
        recoverable: bool = False,
        retry_action: RetryAction | None = None,
    ) -> None:
        super().__init__(message, recoverable=recoverable)
        self.retry_action = retry_action


class QuotaExceededError(StorageError):
    """Raised by a storage backend when a write does not fit."""

    def __init__(self, message: str = "Storage quota exceeded") -> None:
        super().__init__(message, recoverable=True)


class NetworkError(TaskKeepError):
    kind = ErrorKind.NETWORK

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, recoverable=retryable)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.recoverable


@dataclass(frozen=True, slots=True)
class ErrorState:
    """What a UI-layer collaborator needs to render an error."""

    kind: ErrorKind
    title: str
    message: str
    action: str
    recoverable: bool
    retry_action: RetryAction | None = None


ERROR_MESSAGES: dict[ErrorKind, tuple[str, str, str]] = {
    ErrorKind.STORAGE: (
        "Storage Issue",
        "Your storage is full. We've cleaned up old completed tasks.",
        "Continue",
    ),
    ErrorKind.NETWORK: (
        "Connection Issue",
        "Changes saved locally. We'll sync when you're back online.",
        "Retry Now",
    ),
    ErrorKind.VALIDATION: (
        "Invalid Data",
        "Please check the task text and try again.",
        "OK",
    ),
    ErrorKind.NOT_FOUND: (
        "Task Missing",
        "That task no longer exists.",
        "OK",
    ),
    ErrorKind.UNKNOWN: (
        "Something went wrong",
        "An unexpected error occurred. Please try again.",
        "Retry",
    ),
}


def describe_error(exc: BaseException) -> ErrorState:
    """Map any exception to an ErrorState by its kind tag."""
    kind = getattr(exc, "kind", ErrorKind.UNKNOWN)
    if not isinstance(kind, ErrorKind):
        kind = ErrorKind.UNKNOWN

    text = str(exc).strip()
    if kind == ErrorKind.UNKNOWN and "quota" in text.lower():
        kind = ErrorKind.STORAGE

    title, default_message, action = ERROR_MESSAGES[kind]
    recoverable = bool(getattr(exc, "recoverable", kind != ErrorKind.VALIDATION))
    retry_action = getattr(exc, "retry_action", None)

    if kind == ErrorKind.VALIDATION or kind == ErrorKind.NOT_FOUND:
        return ErrorState(kind, title, text or default_message, action, False)
    if kind == ErrorKind.STORAGE:
        return ErrorState(
            kind,
            title,
            text or default_message,
            action,
            recoverable,
            retry_action if recoverable else None,
        )
    if kind == ErrorKind.NETWORK:
        message = default_message if recoverable else (text or default_message)
        return ErrorState(kind, title, message, action, recoverable)
    return ErrorState(kind, title, text or default_message, action, True)
