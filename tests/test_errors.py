# tests/test_errors.py

from __future__ import annotations

from taskkeep.core.errors import (
    ErrorKind,
    NetworkError,
    NotFoundError,
    QuotaExceededError,
    StorageError,
    ValidationError,
    describe_error,
)


def test_validation_and_not_found_are_not_recoverable() -> None:
    v = describe_error(ValidationError("Todo text cannot be empty"))
    assert v.kind == ErrorKind.VALIDATION
    assert v.message == "Todo text cannot be empty"
    assert v.recoverable is False

    n = describe_error(NotFoundError("abc"))
    assert n.kind == ErrorKind.NOT_FOUND
    assert "abc" in n.message
    assert n.recoverable is False


def test_storage_error_carries_retry_action_only_when_recoverable() -> None:
    async def retry() -> None:
        return None

    s = describe_error(StorageError("full", recoverable=True, retry_action=retry))
    assert s.kind == ErrorKind.STORAGE
    assert s.recoverable is True
    assert s.retry_action is retry

    hard = describe_error(StorageError("disk gone", recoverable=False, retry_action=retry))
    assert hard.recoverable is False
    assert hard.retry_action is None


def test_quota_exceeded_is_a_recoverable_storage_error() -> None:
    e = QuotaExceededError()
    assert isinstance(e, StorageError)
    assert e.kind == ErrorKind.STORAGE
    assert e.recoverable is True


def test_network_messages_depend_on_retryability() -> None:
    retryable = describe_error(NetworkError("Offline", retryable=True))
    assert retryable.recoverable is True
    assert "saved locally" in retryable.message

    rejected = describe_error(NetworkError("Sync failed: 400 Bad Request", retryable=False, status_code=400))
    assert rejected.recoverable is False
    assert rejected.message == "Sync failed: 400 Bad Request"


def test_foreign_exceptions_map_to_unknown_or_storage() -> None:
    assert describe_error(RuntimeError("boom")).kind == ErrorKind.UNKNOWN
    assert describe_error(OSError("QuotaExceeded while writing")).kind == ErrorKind.STORAGE
