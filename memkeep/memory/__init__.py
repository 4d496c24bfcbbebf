"""Long-term memory package."""

from memkeep.memory.errors import (
    CaptureFailedError,
    MemkeepError,
    MemoryNotFoundError,
    MemoryOwnershipError,
    MemoryStateError,
    MemoryValidationError,
    TransientStorageError,
)
from memkeep.memory.models import (
    CaptureEvent,
    CaptureOutcome,
    CaptureState,
    MemoryRecord,
    MemoryTier,
    RecallResult,
    RetentionReport,
)
from memkeep.memory.service import MemoryService

__all__ = [
    "CaptureEvent",
    "CaptureFailedError",
    "CaptureOutcome",
    "CaptureState",
    "MemkeepError",
    "MemoryNotFoundError",
    "MemoryOwnershipError",
    "MemoryRecord",
    "MemoryService",
    "MemoryStateError",
    "MemoryTier",
    "MemoryValidationError",
    "RecallResult",
    "RetentionReport",
    "TransientStorageError",
]
