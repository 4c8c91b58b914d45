"""Typed values flowing through the sync pipeline."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Any, Mapping

__all__ = [
    "SYNC_TIME_FORMAT",
    "EmbeddingUnit",
    "ProgressSnapshot",
    "ProgressStage",
    "SyncCheckpoint",
    "SyncOutcome",
    "format_sync_time",
]

SYNC_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_sync_time(moment: datetime) -> str:
    """Render ``moment`` in the ``yyyy-MM-dd HH:mm:ss`` checkpoint format."""

    return moment.strftime(SYNC_TIME_FORMAT)


@dataclass(frozen=True, slots=True)
class EmbeddingUnit:
    """Text plus metadata derived from one eligible chat record."""

    text: str
    metadata: Mapping[str, Any]

    def __post_init__(self) -> None:
        if "seq" not in self.metadata:
            raise ValueError("embedding unit metadata requires 'seq'")
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @property
    def seq(self) -> int:
        return int(self.metadata["seq"])

    @property
    def talker(self) -> str:
        return str(self.metadata.get("talker", ""))


@dataclass(frozen=True, slots=True)
class SyncCheckpoint:
    """Durable per-talker sync marker."""

    talker: str
    talker_name: str
    last_seq: int = 0
    last_sync_time: str = ""

    @property
    def initialized(self) -> bool:
        """Return ``True`` once a first sync has committed a batch."""

        return self.last_seq > 0

    def advanced(self, seq: int, *, at: datetime) -> "SyncCheckpoint":
        """Return a copy moved to ``seq`` and stamped with ``at``."""

        return replace(self, last_seq=seq, last_sync_time=format_sync_time(at))

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SyncCheckpoint":
        return cls(
            talker=row["talker"],
            talker_name=row["talker_name"] or "",
            last_seq=int(row["last_seq"] or 0),
            last_sync_time=row["last_sync_time"] or "",
        )

    def to_mapping(self) -> dict[str, Any]:
        return {
            "talker": self.talker,
            "talkerName": self.talker_name,
            "lastSeq": self.last_seq,
            "lastSyncTime": self.last_sync_time,
        }


class ProgressStage(StrEnum):
    """Run stages reported to progress observers."""

    FETCHING = "fetching"
    PROCESSING = "processing"
    STORING = "storing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (ProgressStage.COMPLETED, ProgressStage.FAILED)

    @property
    def description(self) -> str:
        return _STAGE_DESCRIPTIONS[self]


_STAGE_DESCRIPTIONS: Mapping[ProgressStage, str] = {
    ProgressStage.FETCHING: "Fetching chat records",
    ProgressStage.PROCESSING: "Processing records",
    ProgressStage.STORING: "Storing vectors",
    ProgressStage.COMPLETED: "Completed",
    ProgressStage.FAILED: "Failed",
}


def _clamp_percentage(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    """Point-in-time view of a run's progress."""

    task_id: str
    stage: ProgressStage
    percentage: float = 0.0
    total_count: int = 0
    processed_count: int = 0
    error_message: str | None = None
    talker: str | None = None
    time_range: str | None = None
    started_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "percentage", _clamp_percentage(self.percentage))

    @property
    def completed(self) -> bool:
        return self.stage is ProgressStage.COMPLETED

    @property
    def failed(self) -> bool:
        return self.stage is ProgressStage.FAILED

    def to_mapping(self) -> dict[str, Any]:
        """Return the observer-facing event payload."""

        payload: dict[str, Any] = {
            "taskId": self.task_id,
            "stage": self.stage.value,
            "description": self.stage.description,
            "percentage": round(self.percentage, 2),
            "totalCount": self.total_count,
            "processedCount": self.processed_count,
            "talker": self.talker,
            "timeRange": self.time_range,
        }
        if self.error_message is not None:
            payload["errorMessage"] = self.error_message
        if self.started_at is not None:
            payload["startedAt"] = self.started_at.isoformat()
        if self.updated_at is not None:
            payload["updatedAt"] = self.updated_at.isoformat()
        return payload


@dataclass(slots=True)
class SyncOutcome:
    """Result of one orchestrator run."""

    talker: str
    time_range: str
    stage: ProgressStage = ProgressStage.COMPLETED
    total_count: int = 0
    processed_count: int = 0
    committed_batches: int = 0
    skipped_batches: int = 0
    skipped_pages: int = 0
    last_seq: int | None = None
    error_message: str | None = None
    skipped_seqs: list[int] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        """Return ``True`` when some pages or batches were skipped."""

        return bool(self.skipped_batches or self.skipped_pages)

    def to_mapping(self) -> dict[str, Any]:
        return {
            "talker": self.talker,
            "timeRange": self.time_range,
            "stage": self.stage.value,
            "totalCount": self.total_count,
            "processedCount": self.processed_count,
            "committedBatches": self.committed_batches,
            "skippedBatches": self.skipped_batches,
            "skippedPages": self.skipped_pages,
            "lastSeq": self.last_seq,
            "errorMessage": self.error_message,
        }
