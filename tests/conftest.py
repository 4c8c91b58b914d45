"""Shared fakes and fixtures for sync pipeline tests."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest
from structlog import get_logger

from chatsync.core.config import SyncSettings
from chatsync.modules.chatlog import ChatRecord, ChatRoom, TimeRange
from chatsync.modules.chatlog.errors import ChatlogRetryableError
from chatsync.modules.embeddings.errors import EmbeddingProviderRetryableError
from chatsync.modules.embeddings.providers import (
    EmbeddingMatrix,
    EmbeddingProviderCaps,
    EmbedRequestOptions,
)
from chatsync.modules.sync import (
    CheckpointStore,
    EmbeddingBatcher,
    EmbeddingUnit,
    SyncOrchestrator,
)
from chatsync.modules.vectorstore import VectorStoreError

TALKER = "team@chatroom"
FIXED_NOW = datetime(2025, 3, 4, 12, 0, 0)


class StubLogger:
    """Collect structured log events for assertions."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    def _record(self, level: str, event: str, **kwargs: Any) -> None:
        self.events.append((level, event, kwargs))

    def debug(self, event: str, **kwargs: Any) -> None:
        self._record("debug", event, **kwargs)

    def info(self, event: str, **kwargs: Any) -> None:
        self._record("info", event, **kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self._record("warning", event, **kwargs)

    def error(self, event: str, **kwargs: Any) -> None:
        self._record("error", event, **kwargs)

    def bind(self, **kwargs: Any) -> "StubLogger":
        return self

    def named(self, event: str) -> list[dict[str, Any]]:
        return [kwargs for _, name, kwargs in self.events if name == event]


def make_record(
    seq: int,
    *,
    talker: str = TALKER,
    type: int = 1,
    sub_type: int = 0,
    content: str | None = None,
    time: str = "2025-03-01T09:30:00+08:00",
) -> ChatRecord:
    return ChatRecord(
        seq=seq,
        time=time,
        talker=talker,
        talker_name="Team",
        sender=f"user{seq % 3}",
        sender_name=f"User {seq % 3}",
        type=type,
        sub_type=sub_type,
        content=f"message {seq}" if content is None else content,
        is_chat_room=True,
    )


class FakeLogSource:
    """In-memory chat-log source with scriptable failures."""

    def __init__(self, records: Iterable[ChatRecord] = ()) -> None:
        self.records: list[ChatRecord] = list(records)
        self.rooms: dict[str, ChatRoom] = {
            TALKER: ChatRoom(name=TALKER, nick_name="Team"),
        }
        self.count_failures: list[Exception] = []
        self.page_failures: dict[int, list[Exception]] = {}
        self.count_override: int | None = None
        self.count_calls: list[tuple[str, str]] = []
        self.page_calls: list[tuple[str, str, int, int]] = []

    async def count(self, talker: str, time_range: TimeRange) -> int:
        self.count_calls.append((talker, time_range.render()))
        if self.count_failures:
            raise self.count_failures.pop(0)
        if self.count_override is not None:
            return self.count_override
        return len(self._matching(talker))

    async def fetch_page(
        self,
        talker: str,
        time_range: TimeRange,
        *,
        limit: int,
        offset: int,
    ) -> list[ChatRecord]:
        self.page_calls.append((talker, time_range.render(), limit, offset))
        failures = self.page_failures.get(offset)
        if failures:
            raise failures.pop(0)
        return self._matching(talker)[offset : offset + limit]

    async def lookup_room(self, keyword: str) -> ChatRoom | None:
        return self.rooms.get(keyword)

    def _matching(self, talker: str) -> list[ChatRecord]:
        return [record for record in self.records if record.talker == talker]


class StubProvider:
    """Deterministic embeddings provider; vectors encode the text length."""

    name = "stub"

    def __init__(self, *, max_batch_size: int = 64, dim: int = 4) -> None:
        self.max_batch_size = max_batch_size
        self.dim = dim
        self.calls: list[tuple[str, ...]] = []
        self.failing_texts: set[str] = set()
        self.transient_failures = 0
        self.drop_last = False

    def capabilities(self, *, model: str) -> EmbeddingProviderCaps:
        return EmbeddingProviderCaps(
            max_batch_size=self.max_batch_size,
            max_parallel_requests=4,
            dim=self.dim,
        )

    async def embed_texts(
        self,
        texts: Sequence[str],
        *,
        model: str,
        options: EmbedRequestOptions,
    ) -> EmbeddingMatrix:
        self.calls.append(tuple(texts))
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise EmbeddingProviderRetryableError(
                "temporarily unavailable",
                provider=self.name,
                model=model,
            )
        if self.failing_texts.intersection(texts):
            raise EmbeddingProviderRetryableError(
                "rejected batch",
                provider=self.name,
                model=model,
            )
        vectors = tuple(
            tuple(float(len(text) + offset) for offset in range(self.dim))
            for text in texts
        )
        return vectors[:-1] if self.drop_last else vectors


class MemoryVectorStore:
    """Vector store keeping rows in a list."""

    def __init__(self) -> None:
        self.rows: list[tuple[str, tuple[float, ...], EmbeddingUnit]] = []
        self.failing_seqs: set[int] = set()
        self.add_calls = 0

    async def add_all(
        self,
        vectors: Sequence[Sequence[float]],
        units: Sequence[EmbeddingUnit],
    ) -> list[str]:
        self.add_calls += 1
        if len(vectors) != len(units):
            raise VectorStoreError("vectors and units differ in length")
        if self.failing_seqs.intersection(unit.seq for unit in units):
            raise VectorStoreError("store unavailable")
        ids: list[str] = []
        stored = {(row[2].talker, row[2].seq): row[0] for row in self.rows}
        for vector, unit in zip(vectors, units):
            if (unit.talker, unit.seq) in stored:
                ids.append(stored[(unit.talker, unit.seq)])
                continue
            row_id = str(len(self.rows) + 1)
            self.rows.append((row_id, tuple(vector), unit))
            ids.append(row_id)
        return ids

    async def delete_by_talker(self, talker: str) -> int:
        kept = [row for row in self.rows if row[2].talker != talker]
        removed = len(self.rows) - len(kept)
        self.rows = kept
        return removed

    def seqs(self, talker: str = TALKER) -> list[int]:
        return [unit.seq for _, _, unit in self.rows if unit.talker == talker]


async def _no_sleep(_: float) -> None:
    return None


class RecordingReporter:
    def __init__(self) -> None:
        self.events: list[tuple[str, float, int, int, str | None]] = []

    def report(
        self,
        stage,
        percentage: float,
        total: int,
        processed: int,
        error_message: str | None = None,
    ) -> None:
        self.events.append((stage.value, percentage, total, processed, error_message))

    @property
    def stages(self) -> list[str]:
        return [event[0] for event in self.events]


@pytest.fixture
def stub_logger() -> StubLogger:
    return StubLogger()


@pytest.fixture
def fake_source() -> FakeLogSource:
    return FakeLogSource()


@pytest.fixture
def stub_provider() -> StubProvider:
    return StubProvider()


@pytest.fixture
def memory_store() -> MemoryVectorStore:
    return MemoryVectorStore()


@pytest.fixture
def checkpoint_store(tmp_path: Path, fake_source: FakeLogSource) -> CheckpointStore:
    return CheckpointStore(
        db_path=tmp_path / "state.sqlite3",
        source=fake_source,
        logger=get_logger("test.checkpoints"),
        now=lambda: FIXED_NOW,
    )


@pytest.fixture
def orchestrator_factory(
    fake_source: FakeLogSource,
    stub_provider: StubProvider,
    memory_store: MemoryVectorStore,
    checkpoint_store: CheckpointStore,
    stub_logger: StubLogger,
) -> Callable[..., SyncOrchestrator]:
    def _build(
        *,
        checkpoints: CheckpointStore | None = None,
        store: Any = None,
        **overrides: Any,
    ) -> SyncOrchestrator:
        settings = SyncSettings(**overrides)
        return SyncOrchestrator(
            source=fake_source,
            batcher=EmbeddingBatcher(
                provider=stub_provider,
                model="stub-model",
                max_batch_size=64,
                logger=get_logger("test.batcher"),
            ),
            store=memory_store if store is None else store,
            checkpoints=checkpoints or checkpoint_store,
            settings=settings,
            logger=stub_logger,
            sleep=_no_sleep,
            now=lambda: FIXED_NOW,
        )

    return _build


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def no_sleep() -> Callable[[float], Any]:
    return _no_sleep


@pytest.fixture
def record_factory() -> Callable[..., ChatRecord]:
    return make_record


@pytest.fixture
def seed_records(fake_source: FakeLogSource) -> Callable[..., None]:
    """Append plain text records with the given seqs to ``fake_source``."""

    def _seed(seqs: Iterable[int], **kwargs: Any) -> None:
        fake_source.records.extend(make_record(seq, **kwargs) for seq in seqs)

    return _seed


@pytest.fixture
def retryable_chatlog_error() -> Callable[[], ChatlogRetryableError]:
    return lambda: ChatlogRetryableError("upstream 503", endpoint="/api/v1/chatlog")
