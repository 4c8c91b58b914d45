"""Tests for the FAISS-backed vector store."""

from __future__ import annotations

import asyncio
import json
import os
import sqlite3
import subprocess
import sys
import time
from pathlib import Path

import pytest
from structlog import get_logger

faiss = pytest.importorskip("faiss")
pytest.importorskip("numpy")

from chatsync.core.config import VectorStoreSettings  # noqa: E402
from chatsync.modules.sync import EmbeddingUnit  # noqa: E402
from chatsync.modules.vectorstore import (  # noqa: E402
    VectorStore,
    VectorStoreDimMismatchError,
    VectorStoreError,
    create_vector_store,
)
from chatsync.modules.vectorstore.faiss_store import (  # noqa: E402
    FaissIndexMetric,
    FaissVectorStore,
)
from chatsync.modules.vectorstore.locks import (  # noqa: E402
    FileLock,
    VectorStoreLockTimeoutError,
    build_lock_path,
)

TALKER = "team@chatroom"
WINDOW = "2025-03-01~2025-03-04"


def _unit(seq: int, talker: str = "team") -> EmbeddingUnit:
    return EmbeddingUnit(
        text=f"message {seq}",
        metadata={"seq": seq, "talker": talker, "sender_name": "Alice"},
    )


def _store(directory: Path, **kwargs) -> FaissVectorStore:
    return FaissVectorStore(
        directory=directory,
        logger=get_logger("test.faiss"),
        **kwargs,
    )


def _indexed(store: FaissVectorStore) -> int:
    return faiss.read_index(str(store.index_path)).ntotal


def test_factory_builds_faiss_store(tmp_path: Path) -> None:
    store = create_vector_store(
        VectorStoreSettings(),
        directory=tmp_path,
        logger=get_logger("test.faiss"),
    )

    assert isinstance(store, FaissVectorStore)
    assert isinstance(store, VectorStore)


def test_factory_rejects_unknown_provider(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="Unsupported"):
        create_vector_store(
            VectorStoreSettings(provider="milvus"),
            directory=tmp_path,
            logger=get_logger("test.faiss"),
        )


def test_metric_names() -> None:
    assert FaissIndexMetric.from_name("Cosine").normalizes
    assert FaissIndexMetric.from_name("euclidean").name == "l2"
    with pytest.raises(ValueError):
        FaissIndexMetric.from_name("hamming")


def test_add_persists_vectors_and_metadata(tmp_path: Path) -> None:
    store = _store(tmp_path)

    ids = asyncio.run(
        store.add_all(
            [(1.0, 0.0, 0.0), (0.0, 2.0, 0.0)],
            [_unit(1), _unit(2)],
        )
    )

    assert ids == ["1", "2"]
    assert store.index_path.exists()
    assert asyncio.run(store.count()) == 2
    with sqlite3.connect(store.metadata_path) as connection:
        rows = connection.execute(
            "SELECT seq, text, metadata FROM vectors ORDER BY id"
        ).fetchall()
    assert rows[0][0] == 1
    assert rows[1][1] == "message 2"
    assert json.loads(rows[0][2])["sender_name"] == "Alice"


def test_index_survives_reopen(tmp_path: Path) -> None:
    asyncio.run(_store(tmp_path).add_all([(1.0, 0.0)], [_unit(1)]))

    reopened = _store(tmp_path)
    asyncio.run(reopened.add_all([(0.0, 1.0)], [_unit(2)]))

    assert _indexed(reopened) == 2


def test_dimension_mismatch_is_rejected(tmp_path: Path) -> None:
    store = _store(tmp_path)
    asyncio.run(store.add_all([(1.0, 0.0, 0.0)], [_unit(1)]))

    with pytest.raises(VectorStoreDimMismatchError) as exc_info:
        asyncio.run(store.add_all([(1.0, 0.0)], [_unit(2)]))

    assert exc_info.value.expected == 3
    assert exc_info.value.actual == 2
    assert asyncio.run(store.count()) == 1


def test_length_mismatch_is_rejected(tmp_path: Path) -> None:
    store = _store(tmp_path)

    with pytest.raises(VectorStoreError):
        asyncio.run(store.add_all([(1.0, 0.0)], [_unit(1), _unit(2)]))
    assert asyncio.run(store.add_all([], [])) == []


def test_delete_by_talker_removes_only_that_talker(tmp_path: Path) -> None:
    store = _store(tmp_path, metric="l2")
    asyncio.run(
        store.add_all(
            [(1.0, 0.0), (0.0, 1.0), (1.0, 1.0)],
            [_unit(1), _unit(2), _unit(1, talker="other")],
        )
    )

    removed = asyncio.run(store.delete_by_talker("team"))

    assert removed == 2
    assert asyncio.run(store.count("team")) == 0
    assert asyncio.run(store.count("other")) == 1
    assert _indexed(store) == 1
    assert asyncio.run(store.delete_by_talker("team")) == 0


def test_count_without_metadata_file(tmp_path: Path) -> None:
    assert asyncio.run(_store(tmp_path / "empty").count()) == 0


def test_add_is_idempotent_per_talker_and_seq(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first = asyncio.run(store.add_all([(1.0, 0.0), (0.0, 1.0)], [_unit(1), _unit(2)]))

    again = asyncio.run(
        store.add_all(
            [(0.5, 0.5), (1.0, 1.0), (0.0, 1.0)],
            [_unit(2), _unit(3), _unit(2, talker="other")],
        )
    )

    assert again[0] == first[1]
    assert again[1] not in first
    assert asyncio.run(store.count()) == 4
    assert _indexed(store) == 4


def test_stores_sharing_a_directory_keep_each_others_writes(tmp_path: Path) -> None:
    writer_a = _store(tmp_path)
    writer_b = _store(tmp_path)

    asyncio.run(writer_a.add_all([(1.0, 0.0)], [_unit(1, talker="x")]))
    asyncio.run(writer_b.add_all([(0.0, 1.0)], [_unit(1, talker="y")]))
    asyncio.run(writer_a.add_all([(1.0, 1.0)], [_unit(2, talker="x")]))

    fresh = _store(tmp_path)
    assert asyncio.run(fresh.count()) == 3
    assert _indexed(fresh) == 3

    asyncio.run(writer_b.delete_by_talker("x"))
    asyncio.run(writer_a.add_all([(0.5, 0.5)], [_unit(2, talker="y")]))

    assert asyncio.run(fresh.count("x")) == 0
    assert asyncio.run(fresh.count()) == 2
    assert _indexed(fresh) == 2
    assert not build_lock_path(fresh.index_path).exists()


def test_timed_out_store_write_is_not_duplicated(
    tmp_path: Path,
    seed_records,
    orchestrator_factory,
    checkpoint_store,
) -> None:
    class SlowPersistStore(FaissVectorStore):
        slow = True

        def _persist_index(self, index) -> None:
            if self.slow:
                time.sleep(0.4)
            super()._persist_index(index)

    store = SlowPersistStore(
        directory=tmp_path / "vectors",
        logger=get_logger("test.faiss"),
    )
    seed_records(range(1, 11))

    outcome = asyncio.run(
        orchestrator_factory(store=store, call_timeout=0.1, batch_retries=2).run(
            TALKER, WINDOW
        )
    )

    assert outcome.skipped_batches == 1
    assert asyncio.run(store.count()) == 10
    assert _indexed(store) == 10

    store.slow = False
    rerun = asyncio.run(
        orchestrator_factory(store=store).run(TALKER, WINDOW)
    )

    assert rerun.processed_count == 10
    assert rerun.last_seq == 10
    assert asyncio.run(store.count()) == 10
    assert _indexed(store) == 10
    processed = asyncio.run(checkpoint_store.processed_among(TALKER, range(1, 11)))
    assert processed == set(range(1, 11))


def test_file_lock_times_out_while_holder_is_alive(tmp_path: Path) -> None:
    lock_path = tmp_path / "index.faiss.lock"
    lock_path.write_text(str(os.getpid()), encoding="ascii")

    with pytest.raises(VectorStoreLockTimeoutError):
        FileLock(path=lock_path, timeout=0.05, poll_interval=0.01).acquire()

    assert lock_path.exists()


def test_file_lock_breaks_lock_of_dead_process(tmp_path: Path) -> None:
    lock_path = tmp_path / "index.faiss.lock"
    child = subprocess.Popen([sys.executable, "-c", "pass"])
    child.wait()
    lock_path.write_text(str(child.pid), encoding="ascii")

    with FileLock(path=lock_path, timeout=0.5, poll_interval=0.01):
        assert lock_path.read_text(encoding="ascii") == str(os.getpid())

    assert not lock_path.exists()


def test_missing_index_is_created_only_for_writes(tmp_path: Path) -> None:
    store = _store(tmp_path)

    assert store._read_index(None) is None
    assert store._read_index(3).d == 3
    assert not store.index_path.exists()
