"""Error taxonomy for memory operations."""

from __future__ import annotations


class MemkeepError(Exception):
    """Base class for memkeep errors."""


class MemoryValidationError(MemkeepError):
    """A write was rejected at the boundary.

    ``reason`` is a stable code: ``out_of_range``, ``empty_content``,
    ``all_redacted``, ``invalid_tier`` or ``too_long``.
    """

    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or reason)


class MemoryNotFoundError(MemkeepError):
    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        super().__init__(f"memory record not found: {record_id}")


class MemoryOwnershipError(MemkeepError):
    def __init__(self, record_id: str, user_id: str) -> None:
        self.record_id = record_id
        self.user_id = user_id
        super().__init__(f"memory record {record_id} is not owned by {user_id}")


class MemoryStateError(MemkeepError):
    """Operation is not allowed in the record's current state (e.g. deleted)."""


class TransientStorageError(MemkeepError):
    """Retryable storage failure (locked database, I/O error)."""


class CaptureFailedError(MemkeepError):
    """An explicit save could not be completed after retries."""

    def __init__(self, message: str, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(message)
