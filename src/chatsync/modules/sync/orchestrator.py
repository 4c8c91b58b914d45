"""End-to-end synchronization run for one talker and time window."""

from __future__ import annotations

import asyncio
import math
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Sequence

from chatsync.core.config import CheckpointPolicy, SyncSettings
from chatsync.core.logging import Logger, get_logger
from chatsync.modules.chatlog import LogSource, TimeRange
from chatsync.modules.chatlog.errors import ChatlogClientError, ChatlogRetryableError
from chatsync.modules.chatlog.models import ChatRecord
from chatsync.modules.embeddings.errors import (
    EmbeddingProviderConfigurationError,
    EmbeddingProviderDimMismatchError,
    EmbeddingProviderError,
    EmbeddingProviderRequestError,
)
from chatsync.modules.sync.batcher import EmbeddingBatcher, partition
from chatsync.modules.sync.checkpoints import CheckpointStore
from chatsync.modules.sync.errors import (
    CheckpointStoreError,
    EmbeddingCountMismatchError,
    SyncAlreadyRunningError,
    SyncError,
    SyncUpstreamError,
    SyncValidationError,
)
from chatsync.modules.sync.models import (
    EmbeddingUnit,
    ProgressStage,
    SyncCheckpoint,
    SyncOutcome,
)
from chatsync.modules.sync.progress import NullReporter, ProgressReporter, SafeReporter
from chatsync.modules.sync.retry import RetryPolicy, Sleep, call_with_retry
from chatsync.modules.sync.transform import transform_records
from chatsync.modules.vectorstore import (
    VectorStore,
    VectorStoreDimMismatchError,
    VectorStoreError,
)

__all__ = ["SyncOrchestrator"]

_DISPATCH_PERCENT = 5.0
_FETCHED_PERCENT = 60.0
_STORING_SPAN = 40.0

# Failures that skip one batch instead of failing the run.
_BATCH_FAILURES: tuple[type[Exception], ...] = (
    EmbeddingProviderError,
    EmbeddingCountMismatchError,
    VectorStoreError,
    TimeoutError,
    OSError,
)
# Retrying these cannot succeed.
_PERMANENT_BATCH_FAILURES: tuple[type[Exception], ...] = (
    EmbeddingCountMismatchError,
    EmbeddingProviderConfigurationError,
    EmbeddingProviderDimMismatchError,
    EmbeddingProviderRequestError,
    VectorStoreDimMismatchError,
)


def _default_now() -> datetime:
    return datetime.now()


def _is_transient_source_error(exc: BaseException) -> bool:
    return isinstance(exc, ChatlogRetryableError)


def _is_transient_batch_error(exc: BaseException) -> bool:
    return isinstance(exc, _BATCH_FAILURES) and not isinstance(
        exc, _PERMANENT_BATCH_FAILURES
    )


@dataclass(slots=True)
class _RunState:
    """Mutable counters shared by the batch tasks of one run."""

    total: int
    batch_seqs: list[list[int]]
    # Fetched seqs that need no embedding (processed, ineligible or resumed).
    settled_seqs: list[int] = field(default_factory=list)
    # Lowest seq fetched after a failed page; nothing at or above it is known
    # to be complete.
    gap_seq: int | None = None
    processed: int = 0
    committed: set[int] = field(default_factory=set)
    skipped: set[int] = field(default_factory=set)
    skipped_seqs: list[int] = field(default_factory=list)
    last_seq: int | None = None

    def batch_max(self, index: int) -> int:
        return max(self.batch_seqs[index])

    def contiguous_max(self) -> int | None:
        """Highest seq below the first seq that still needs embedding.

        Settled seqs and seqs of committed batches count as done, so a run
        that fills an earlier gap also covers records committed past it.
        """

        frontier = self.gap_seq
        for index, seqs in enumerate(self.batch_seqs):
            if index in self.committed:
                continue
            lowest = min(seqs)
            frontier = lowest if frontier is None else min(frontier, lowest)

        done = list(self.settled_seqs)
        for index in self.committed:
            done.extend(self.batch_seqs[index])
        return max(
            (seq for seq in done if frontier is None or seq < frontier),
            default=None,
        )


@dataclass(slots=True)
class SyncOrchestrator:
    """Fetch, filter, embed, store and checkpoint one talker's records.

    Page fetches and batch processing share one semaphore so a run never
    has more than ``settings.concurrency`` upstream calls in flight. At most
    one run per talker is active at a time: within a process through
    ``_active`` and across processes through a run lease in the checkpoint
    store's database.
    """

    source: LogSource
    batcher: EmbeddingBatcher
    store: VectorStore
    checkpoints: CheckpointStore
    settings: SyncSettings = field(default_factory=SyncSettings)
    logger: Logger | None = None
    sleep: Sleep = asyncio.sleep
    now: Callable[[], datetime] = _default_now
    _active: set[str] = field(default_factory=set, init=False)

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = get_logger(__name__, component="sync-orchestrator")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def is_running(self, talker: str) -> bool:
        return talker in self._active

    async def run(
        self,
        talker: str,
        time_range: str | TimeRange,
        *,
        resume_from_seq: int | None = None,
        reporter: ProgressReporter | None = None,
    ) -> SyncOutcome:
        """Synchronize ``talker`` over ``time_range``.

        When ``resume_from_seq`` is given only records with a greater seq are
        embedded.

        Raises:
            SyncValidationError: For an empty talker or malformed window.
            SyncAlreadyRunningError: If ``talker`` already has an active run.
            SyncUpstreamError: If the record count cannot be obtained.
            CheckpointStoreError: If durable sync state cannot be written.
        """

        progress = SafeReporter(reporter or NullReporter(), self.logger)
        talker, window = self._validate(talker, time_range, resume_from_seq, progress)

        if talker in self._active:
            raise SyncAlreadyRunningError(talker)
        self._active.add(talker)
        owner = f"{os.getpid()}-{uuid.uuid4().hex[:12]}"
        try:
            return await self._run(talker, window, resume_from_seq, progress, owner)
        finally:
            self._active.discard(talker)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def _validate(
        self,
        talker: str,
        time_range: str | TimeRange,
        resume_from_seq: int | None,
        progress: SafeReporter,
    ) -> tuple[str, TimeRange]:
        try:
            normalized = (talker or "").strip()
            if not normalized:
                raise SyncValidationError("talker cannot be empty")
            if resume_from_seq is not None and resume_from_seq < 0:
                raise SyncValidationError("resume_from_seq must be >= 0")
            window = TimeRange.parse(time_range)
        except ValueError as exc:
            progress.report(ProgressStage.FAILED, 0.0, 0, 0, error_message=str(exc))
            if isinstance(exc, SyncValidationError):
                raise
            raise SyncValidationError(str(exc)) from exc
        return normalized, window

    async def _run(
        self,
        talker: str,
        window: TimeRange,
        resume_from_seq: int | None,
        progress: SafeReporter,
        owner: str,
    ) -> SyncOutcome:
        log = self.logger.bind(talker=talker, time_range=window.render())
        try:
            claimed = await self.checkpoints.acquire_run_lease(talker, owner)
        except CheckpointStoreError as exc:
            progress.report(ProgressStage.FAILED, 0.0, 0, 0, error_message=str(exc))
            log.error("sync-run-failed", error=str(exc), error_type=exc.__class__.__name__)
            raise
        if not claimed:
            log.warning("sync-run-rejected", reason="lease-held")
            raise SyncAlreadyRunningError(talker)

        try:
            return await self._run_leased(
                talker, window, resume_from_seq, progress, owner, log
            )
        finally:
            try:
                await self.checkpoints.release_run_lease(talker, owner)
            except CheckpointStoreError as exc:
                log.warning("sync-lease-release-failed", error=str(exc))

    async def _run_leased(
        self,
        talker: str,
        window: TimeRange,
        resume_from_seq: int | None,
        progress: SafeReporter,
        owner: str,
        log: Logger,
    ) -> SyncOutcome:
        outcome = SyncOutcome(talker=talker, time_range=window.render())
        progress.report(ProgressStage.FETCHING, _DISPATCH_PERCENT, 0, 0)
        log.info("sync-run-start", resume_from_seq=resume_from_seq)

        try:
            count = await self._count(talker, window, log)
            if count <= 0:
                log.info("sync-run-empty")
                progress.report(ProgressStage.COMPLETED, 100.0, 0, 0)
                return outcome

            semaphore = asyncio.Semaphore(self.settings.concurrency)
            records, skipped_pages, gap_seq = await self._fetch_all(
                talker, window, count, semaphore, progress, log
            )
            outcome.skipped_pages = skipped_pages

            fresh = await self._filter_fresh(talker, records, resume_from_seq)
            units = transform_records(fresh)
            log.info(
                "sync-records-filtered",
                upstream_count=count,
                fetched=len(records),
                fresh=len(fresh),
                eligible=len(units),
            )
            if not units:
                progress.report(ProgressStage.COMPLETED, 100.0, 0, 0)
                return outcome

            checkpoint = await self.checkpoints.get_checkpoint(talker)
            progress.report(ProgressStage.PROCESSING, _FETCHED_PERCENT, len(units), 0)
            unit_seqs = {unit.seq for unit in units}
            state = _RunState(
                total=len(units),
                batch_seqs=[
                    [unit.seq for unit in batch]
                    for batch in partition(units, self.settings.batch_size)
                ],
                settled_seqs=[
                    record.seq for record in records if record.seq not in unit_seqs
                ],
                gap_seq=gap_seq,
                last_seq=checkpoint.last_seq,
            )
            await self._process_batches(
                talker, owner, units, checkpoint, state, semaphore, progress, log
            )
        except SyncError as exc:
            progress.report(ProgressStage.FAILED, 0.0, 0, 0, error_message=str(exc))
            log.error("sync-run-failed", error=str(exc), error_type=exc.__class__.__name__)
            raise

        outcome.total_count = state.total
        outcome.processed_count = state.processed
        outcome.committed_batches = len(state.committed)
        outcome.skipped_batches = len(state.skipped)
        outcome.skipped_seqs = sorted(state.skipped_seqs)
        outcome.last_seq = state.last_seq
        progress.report(ProgressStage.COMPLETED, 100.0, state.total, state.processed)
        log.info(
            "sync-run-complete",
            total=state.total,
            processed=state.processed,
            skipped_batches=outcome.skipped_batches,
            skipped_pages=outcome.skipped_pages,
            last_seq=outcome.last_seq,
        )
        return outcome

    async def _count(self, talker: str, window: TimeRange, log: Logger) -> int:
        try:
            return await call_with_retry(
                lambda: self.source.count(talker, window),
                policy=self._page_policy(),
                logger=log,
                event="sync-count-retry",
                retryable=_is_transient_source_error,
                sleep=self.sleep,
            )
        except (ChatlogClientError, TimeoutError) as exc:
            raise SyncUpstreamError(
                f"Chatlog source unavailable for {talker!r}: {exc}",
                talker=talker,
            ) from exc

    async def _fetch_all(
        self,
        talker: str,
        window: TimeRange,
        count: int,
        semaphore: asyncio.Semaphore,
        progress: SafeReporter,
        log: Logger,
    ) -> tuple[list[ChatRecord], int, int | None]:
        """Fetch every page; return records, failed page count and gap seq.

        The gap seq is the lowest seq fetched after the first failed page.
        """

        page_size = self.settings.page_size
        pages = math.ceil(count / page_size)
        fetched = 0
        failed_pages: list[int] = []

        async def _fetch(page: int) -> Sequence[ChatRecord]:
            nonlocal fetched
            async with semaphore:
                try:
                    records = await call_with_retry(
                        lambda: self.source.fetch_page(
                            talker,
                            window,
                            limit=page_size,
                            offset=page * page_size,
                        ),
                        policy=self._page_policy(),
                        logger=log,
                        event="sync-page-retry",
                        retryable=_is_transient_source_error,
                        sleep=self.sleep,
                        page=page,
                    )
                except (ChatlogClientError, TimeoutError) as exc:
                    log.warning("sync-page-skipped", page=page, error=str(exc))
                    failed_pages.append(page)
                    records = []
            fetched += 1
            span = _FETCHED_PERCENT - _DISPATCH_PERCENT
            progress.report(
                ProgressStage.FETCHING,
                _DISPATCH_PERCENT + span * fetched / pages,
                count,
                0,
            )
            return records

        results = await asyncio.gather(*(_fetch(page) for page in range(pages)))
        merged = [record for page_records in results for record in page_records]
        log.debug("sync-pages-fetched", pages=pages, records=len(merged))
        gap_seq: int | None = None
        if failed_pages:
            after_gap = results[min(failed_pages) + 1 :]
            gap_seq = min(
                (record.seq for page_records in after_gap for record in page_records),
                default=None,
            )
        return merged, len(failed_pages), gap_seq

    async def _filter_fresh(
        self,
        talker: str,
        records: Sequence[ChatRecord],
        resume_from_seq: int | None,
    ) -> list[ChatRecord]:
        """Drop processed, already-checkpointed and duplicate records."""

        processed = await self.checkpoints.processed_among(
            talker, (record.seq for record in records)
        )
        seen: set[int] = set()
        fresh: list[ChatRecord] = []
        for record in records:
            if record.seq in processed or record.seq in seen:
                continue
            if resume_from_seq is not None and record.seq <= resume_from_seq:
                continue
            seen.add(record.seq)
            fresh.append(record)
        return fresh

    async def _process_batches(
        self,
        talker: str,
        owner: str,
        units: Sequence[EmbeddingUnit],
        checkpoint: SyncCheckpoint,
        state: _RunState,
        semaphore: asyncio.Semaphore,
        progress: SafeReporter,
        log: Logger,
    ) -> None:
        batches = list(partition(units, self.settings.batch_size))
        stop = asyncio.Event()

        async def _process(index: int, batch: list[EmbeddingUnit]) -> None:
            async with semaphore:
                if stop.is_set():
                    return
                if not await self._embed_and_store(index, batch, log):
                    state.skipped.add(index)
                    state.skipped_seqs.extend(unit.seq for unit in batch)
                    return
                try:
                    await self.checkpoints.mark_processed(
                        talker, [unit.seq for unit in batch]
                    )
                    state.committed.add(index)
                    await self._advance_checkpoint(talker, checkpoint, state, index)
                    if not await self.checkpoints.renew_run_lease(talker, owner):
                        log.warning("sync-lease-lost", batch=index)
                except CheckpointStoreError:
                    stop.set()
                    raise
                state.processed += len(batch)
                progress.report(
                    ProgressStage.STORING,
                    _FETCHED_PERCENT + _STORING_SPAN * state.processed / state.total,
                    state.total,
                    state.processed,
                )

        results = await asyncio.gather(
            *(_process(index, batch) for index, batch in enumerate(batches)),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _embed_and_store(
        self,
        index: int,
        batch: list[EmbeddingUnit],
        log: Logger,
    ) -> bool:
        policy = self._batch_policy()
        context = {"batch": index, "size": len(batch)}
        try:
            vectors = await call_with_retry(
                lambda: self.batcher.embed_batch(batch),
                policy=policy,
                logger=log,
                event="sync-embed-retry",
                retryable=_is_transient_batch_error,
                sleep=self.sleep,
                **context,
            )
            await call_with_retry(
                lambda: self.store.add_all(vectors, batch),
                policy=policy,
                logger=log,
                event="sync-store-retry",
                retryable=_is_transient_batch_error,
                sleep=self.sleep,
                **context,
            )
        except _BATCH_FAILURES as exc:
            log.warning(
                "sync-batch-skipped",
                first_seq=batch[0].seq,
                last_seq=batch[-1].seq,
                error=str(exc),
                error_type=exc.__class__.__name__,
                **context,
            )
            return False
        return True

    async def _advance_checkpoint(
        self,
        talker: str,
        initial: SyncCheckpoint,
        state: _RunState,
        index: int,
    ) -> None:
        if self.settings.checkpoint_policy is CheckpointPolicy.CONTIGUOUS:
            target = state.contiguous_max()
        else:
            target = state.batch_max(index)
        if target is None:
            return

        async with self.checkpoints.talker_lock(talker):
            current = await self.checkpoints.find_checkpoint(talker) or initial
            if target <= current.last_seq:
                return
            updated = current.advanced(target, at=self.now())
            await self.checkpoints.update_checkpoint(talker, updated)
            state.last_seq = updated.last_seq

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------
    def _page_policy(self) -> RetryPolicy:
        return RetryPolicy(
            retries=self.settings.page_retries,
            backoff=self.settings.page_backoff,
            timeout=self.settings.call_timeout,
        )

    def _batch_policy(self) -> RetryPolicy:
        return RetryPolicy(
            retries=self.settings.batch_retries,
            backoff=self.settings.batch_backoff,
            timeout=self.settings.call_timeout,
        )
