"""Error hierarchy raised by the sync pipeline."""

from __future__ import annotations

__all__ = [
    "SyncError",
    "SyncValidationError",
    "SyncUpstreamError",
    "SyncAlreadyRunningError",
    "InitialSyncRequiredError",
    "TalkerNotFoundError",
    "CheckpointStoreError",
    "EmbeddingCountMismatchError",
    "ProgressStateError",
]


class SyncError(RuntimeError):
    """Base error for synchronization failures."""


class SyncValidationError(SyncError, ValueError):
    """Raised for invalid arguments before any I/O is issued."""


class SyncUpstreamError(SyncError):
    """Raised when the chat-log source is unavailable before any page fetch."""

    def __init__(self, message: str, *, talker: str) -> None:
        super().__init__(message)
        self.talker = talker


class SyncAlreadyRunningError(SyncError):
    """Raised when a run is requested for a talker that already has one."""

    def __init__(self, talker: str) -> None:
        super().__init__(f"A sync run is already active for talker {talker!r}")
        self.talker = talker


class InitialSyncRequiredError(SyncError):
    """Raised when an incremental sync is requested before a first sync."""

    def __init__(self, talker: str) -> None:
        super().__init__(
            f"Talker {talker!r} has no completed initial sync; run a full sync first"
        )
        self.talker = talker


class TalkerNotFoundError(SyncError):
    """Raised when the upstream room lookup does not know the talker."""

    def __init__(self, talker: str) -> None:
        super().__init__(f"Talker {talker!r} was not found upstream")
        self.talker = talker


class CheckpointStoreError(SyncError):
    """Raised when durable sync state cannot be read or written."""


class EmbeddingCountMismatchError(SyncError):
    """Raised when the embedding service returns the wrong number of vectors."""

    def __init__(self, *, expected: int, actual: int) -> None:
        super().__init__(
            f"Embedding count mismatch: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class ProgressStateError(SyncError):
    """Raised for invalid progress store transitions."""
