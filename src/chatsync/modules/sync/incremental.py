"""Route sync requests to a first sync or an incremental run."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable

from chatsync.core.logging import Logger, get_logger
from chatsync.modules.chatlog import TimeRange
from chatsync.modules.sync.checkpoints import CheckpointStore
from chatsync.modules.sync.errors import InitialSyncRequiredError, SyncValidationError
from chatsync.modules.sync.models import SYNC_TIME_FORMAT, SyncCheckpoint, SyncOutcome
from chatsync.modules.sync.orchestrator import SyncOrchestrator
from chatsync.modules.sync.progress import ProgressReporter, ProgressStore

__all__ = ["IncrementalSyncService", "incremental_window"]


def incremental_window(last_sync_time: str, today: date) -> TimeRange:
    """Return the window from the checkpoint's date through ``today``.

    An unparseable ``last_sync_time`` falls back to yesterday.

    Example:
        >>> incremental_window("2025-03-01 08:15:00", date(2025, 3, 4)).render()
        '2025-03-01~2025-03-04'
    """

    try:
        start = datetime.strptime(last_sync_time, SYNC_TIME_FORMAT).date()
    except (TypeError, ValueError):
        start = today - timedelta(days=1)
    if start > today:
        start = today
    return TimeRange.between(start, today)


@dataclass(slots=True)
class IncrementalSyncService:
    """Choose between a first sync and an incremental run per talker."""

    orchestrator: SyncOrchestrator
    checkpoints: CheckpointStore
    progress: ProgressStore | None = None
    logger: Logger | None = None
    today: Callable[[], date] = date.today

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = get_logger(__name__, component="incremental-sync")

    async def sync_with_progress(
        self,
        talker: str,
        time_range: str | TimeRange | None = None,
        *,
        task_id: str | None = None,
        reporter: ProgressReporter | None = None,
    ) -> SyncOutcome:
        """Run a first sync over ``time_range`` or resume from the checkpoint.

        When ``task_id`` is given and a progress store is configured the run
        is tracked there; the task ends Completed or Failed.
        """

        talker = (talker or "").strip()
        if not talker:
            raise SyncValidationError("talker cannot be empty")

        if task_id is not None and self.progress is not None:
            self.progress.create(
                task_id,
                talker=talker,
                time_range=str(time_range) if time_range is not None else None,
            )
            if reporter is None:
                reporter = self.progress.reporter(task_id)

        try:
            checkpoint = await self.checkpoints.get_checkpoint(talker)
            outcome = await self._dispatch(checkpoint, time_range, reporter)
        except Exception as exc:
            self._fail_task(task_id, str(exc))
            raise
        self._complete_task(task_id)
        return outcome

    async def sync_incremental(
        self,
        talker: str,
        *,
        reporter: ProgressReporter | None = None,
    ) -> SyncOutcome:
        """Resume ``talker`` from its checkpoint.

        Raises:
            InitialSyncRequiredError: If no first sync has committed yet.
        """

        talker = (talker or "").strip()
        if not talker:
            raise SyncValidationError("talker cannot be empty")
        checkpoint = await self.checkpoints.find_checkpoint(talker)
        if checkpoint is None or not checkpoint.initialized:
            raise InitialSyncRequiredError(talker)
        return await self._run_incremental(checkpoint, reporter)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _dispatch(
        self,
        checkpoint: SyncCheckpoint,
        time_range: str | TimeRange | None,
        reporter: ProgressReporter | None,
    ) -> SyncOutcome:
        if checkpoint.initialized:
            return await self._run_incremental(checkpoint, reporter)
        if time_range is None:
            raise SyncValidationError(
                f"A time range is required for the first sync of {checkpoint.talker!r}"
            )
        self.logger.info(
            "sync-first-run",
            talker=checkpoint.talker,
            time_range=str(time_range),
        )
        return await self.orchestrator.run(
            checkpoint.talker,
            time_range,
            reporter=reporter,
        )

    async def _run_incremental(
        self,
        checkpoint: SyncCheckpoint,
        reporter: ProgressReporter | None,
    ) -> SyncOutcome:
        window = incremental_window(checkpoint.last_sync_time, self.today())
        self.logger.info(
            "sync-incremental-run",
            talker=checkpoint.talker,
            time_range=window.render(),
            resume_from_seq=checkpoint.last_seq,
        )
        return await self.orchestrator.run(
            checkpoint.talker,
            window,
            resume_from_seq=checkpoint.last_seq,
            reporter=reporter,
        )

    def _complete_task(self, task_id: str | None) -> None:
        if task_id is None or self.progress is None:
            return
        snapshot = self.progress.get(task_id)
        if snapshot is not None and not snapshot.stage.terminal:
            self.progress.complete(task_id)

    def _fail_task(self, task_id: str | None, message: str) -> None:
        if task_id is None or self.progress is None:
            return
        snapshot = self.progress.get(task_id)
        if snapshot is not None and not snapshot.stage.terminal:
            self.progress.fail(task_id, message)
