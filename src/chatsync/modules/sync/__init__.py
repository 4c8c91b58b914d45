"""Incremental chat-log synchronization and vectorization."""

from __future__ import annotations

from .autosync import AutoSyncEntry, AutoSyncRegistry, AutoSyncScheduler
from .batcher import EmbeddingBatcher, partition
from .checkpoints import CheckpointStore, UNKNOWN_TALKER_NAME, state_connection
from .errors import (
    CheckpointStoreError,
    EmbeddingCountMismatchError,
    InitialSyncRequiredError,
    ProgressStateError,
    SyncAlreadyRunningError,
    SyncError,
    SyncUpstreamError,
    SyncValidationError,
    TalkerNotFoundError,
)
from .incremental import IncrementalSyncService, incremental_window
from .models import (
    EmbeddingUnit,
    ProgressSnapshot,
    ProgressStage,
    SyncCheckpoint,
    SyncOutcome,
)
from .orchestrator import SyncOrchestrator
from .progress import (
    NullReporter,
    ProgressReporter,
    ProgressStore,
    SafeReporter,
    StoreReporter,
)
from .retry import RetryPolicy, call_with_retry
from .service import ChatlogVectorService, DeleteSummary
from .transform import is_eligible, to_embedding_unit, transform_records

__all__ = [
    "AutoSyncEntry",
    "AutoSyncRegistry",
    "AutoSyncScheduler",
    "ChatlogVectorService",
    "CheckpointStore",
    "CheckpointStoreError",
    "DeleteSummary",
    "EmbeddingBatcher",
    "EmbeddingCountMismatchError",
    "EmbeddingUnit",
    "IncrementalSyncService",
    "InitialSyncRequiredError",
    "NullReporter",
    "ProgressReporter",
    "ProgressSnapshot",
    "ProgressStage",
    "ProgressStateError",
    "ProgressStore",
    "RetryPolicy",
    "SafeReporter",
    "StoreReporter",
    "SyncAlreadyRunningError",
    "SyncCheckpoint",
    "SyncError",
    "SyncOrchestrator",
    "SyncOutcome",
    "SyncUpstreamError",
    "SyncValidationError",
    "TalkerNotFoundError",
    "UNKNOWN_TALKER_NAME",
    "call_with_retry",
    "incremental_window",
    "is_eligible",
    "partition",
    "state_connection",
    "to_embedding_unit",
    "transform_records",
]
