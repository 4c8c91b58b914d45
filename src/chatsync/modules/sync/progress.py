"""Progress reporting sinks and the in-process progress store."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Protocol, runtime_checkable

from chatsync.core.logging import Logger, get_logger
from chatsync.modules.sync.errors import ProgressStateError
from chatsync.modules.sync.models import ProgressSnapshot, ProgressStage

__all__ = [
    "ProgressReporter",
    "ProgressStore",
    "SafeReporter",
    "NullReporter",
    "StoreReporter",
]


@runtime_checkable
class ProgressReporter(Protocol):
    """Sink receiving progress events from a run."""

    def report(
        self,
        stage: ProgressStage,
        percentage: float,
        total: int,
        processed: int,
        error_message: str | None = None,
    ) -> None:
        """Receive one progress event."""


class NullReporter:
    """Reporter that discards every event."""

    def report(
        self,
        stage: ProgressStage,
        percentage: float,
        total: int,
        processed: int,
        error_message: str | None = None,
    ) -> None:
        return None


@dataclass(slots=True)
class SafeReporter:
    """Wrap a reporter so its failures are logged and never propagate."""

    inner: ProgressReporter
    logger: Logger

    def report(
        self,
        stage: ProgressStage,
        percentage: float,
        total: int,
        processed: int,
        error_message: str | None = None,
    ) -> None:
        try:
            self.inner.report(
                stage,
                percentage,
                total,
                processed,
                error_message=error_message,
            )
        except Exception as exc:
            self.logger.warning(
                "progress-report-failed",
                stage=stage.value,
                percentage=percentage,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )


def _default_now() -> datetime:
    return datetime.now()


@dataclass(slots=True)
class ProgressStore:
    """Registry of progress snapshots keyed by task id.

    Lifecycle is ``create -> update* -> complete|fail -> delete``. Terminal
    snapshots (including error messages) stay readable until deleted.
    """

    logger: Logger | None = None
    now: Callable[[], datetime] = _default_now
    _snapshots: dict[str, ProgressSnapshot] = field(default_factory=dict, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = get_logger(__name__, component="progress-store")

    def create(
        self,
        task_id: str,
        *,
        talker: str | None = None,
        time_range: str | None = None,
    ) -> ProgressSnapshot:
        """Register ``task_id`` in the Fetching stage at 0%.

        Raises:
            ProgressStateError: If the task id is already registered.
        """

        moment = self.now()
        snapshot = ProgressSnapshot(
            task_id=task_id,
            stage=ProgressStage.FETCHING,
            talker=talker,
            time_range=time_range,
            started_at=moment,
            updated_at=moment,
        )
        with self._lock:
            if task_id in self._snapshots:
                raise ProgressStateError(f"Task {task_id!r} already exists")
            self._snapshots[task_id] = snapshot
        return snapshot

    def update(
        self,
        task_id: str,
        stage: ProgressStage,
        *,
        percentage: float | None = None,
        total: int | None = None,
        processed: int | None = None,
        error_message: str | None = None,
    ) -> ProgressSnapshot | None:
        """Apply an update; unknown tasks are logged and ignored."""

        with self._lock:
            current = self._snapshots.get(task_id)
            if current is None:
                self.logger.warning("progress-unknown-task", task_id=task_id)
                return None
            if current.stage.terminal:
                self.logger.warning(
                    "progress-update-after-terminal",
                    task_id=task_id,
                    stage=current.stage.value,
                )
                return current
            updated = replace(
                current,
                stage=stage,
                percentage=current.percentage if percentage is None else percentage,
                total_count=current.total_count if total is None else total,
                processed_count=(
                    current.processed_count if processed is None else processed
                ),
                error_message=(
                    current.error_message if error_message is None else error_message
                ),
                updated_at=self.now(),
            )
            self._snapshots[task_id] = updated
            return updated

    def complete(self, task_id: str) -> ProgressSnapshot | None:
        return self.update(task_id, ProgressStage.COMPLETED, percentage=100.0)

    def fail(self, task_id: str, message: str) -> ProgressSnapshot | None:
        return self.update(task_id, ProgressStage.FAILED, error_message=message)

    def get(self, task_id: str) -> ProgressSnapshot | None:
        with self._lock:
            return self._snapshots.get(task_id)

    def delete(self, task_id: str) -> bool:
        """Drop a terminal task; return ``False`` if it was unknown.

        Raises:
            ProgressStateError: If the task is still running.
        """

        with self._lock:
            current = self._snapshots.get(task_id)
            if current is None:
                return False
            if not current.stage.terminal:
                raise ProgressStateError(
                    f"Task {task_id!r} is still {current.stage.value}; "
                    "only completed or failed tasks can be removed"
                )
            del self._snapshots[task_id]
            return True

    def active_count(self) -> int:
        with self._lock:
            return sum(
                1 for snapshot in self._snapshots.values() if not snapshot.stage.terminal
            )

    def reporter(self, task_id: str) -> "StoreReporter":
        """Return a reporter writing into this store under ``task_id``."""

        return StoreReporter(store=self, task_id=task_id)


@dataclass(slots=True)
class StoreReporter:
    """Reporter adapter feeding :class:`ProgressStore` updates."""

    store: ProgressStore
    task_id: str

    def report(
        self,
        stage: ProgressStage,
        percentage: float,
        total: int,
        processed: int,
        error_message: str | None = None,
    ) -> None:
        self.store.update(
            self.task_id,
            stage,
            percentage=percentage,
            total=total,
            processed=processed,
            error_message=error_message,
        )
