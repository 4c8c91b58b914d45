"""Local FAISS vector store with an SQLite metadata table."""

from __future__ import annotations

import asyncio
import json
import os
import sqlite3
import tempfile
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import faiss
import numpy as np

from chatsync.core.logging import Logger
from chatsync.modules.vectorstore.base import (
    VectorStore,
    VectorStoreDimMismatchError,
    VectorStoreError,
    VectorStorePersistenceError,
)
from chatsync.modules.vectorstore.locks import FileLock, build_lock_path

if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from chatsync.modules.sync.models import EmbeddingUnit

__all__ = [
    "FaissIndexMetric",
    "FaissVectorStore",
]

INDEX_FILENAME = "index.faiss"
METADATA_FILENAME = "metadata.sqlite3"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS vectors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    talker TEXT NOT NULL,
    seq INTEGER,
    text TEXT NOT NULL,
    metadata TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_vectors_talker ON vectors (talker);
CREATE UNIQUE INDEX IF NOT EXISTS idx_vectors_talker_seq ON vectors (talker, seq);
"""


@dataclass(frozen=True)
class FaissIndexMetric:
    """Metric descriptor bridging human-readable names to FAISS IDs."""

    name: str
    faiss_metric: int

    @property
    def normalizes(self) -> bool:
        return self.name == "cosine"

    @classmethod
    def from_name(cls, name: str) -> "FaissIndexMetric":
        normalized = name.strip().lower()
        if normalized in {"l2", "euclidean"}:
            return cls(name="l2", faiss_metric=faiss.METRIC_L2)
        if normalized in {"ip", "inner_product"}:
            return cls(name="ip", faiss_metric=faiss.METRIC_INNER_PRODUCT)
        if normalized == "cosine":
            return cls(name="cosine", faiss_metric=faiss.METRIC_INNER_PRODUCT)
        raise ValueError(f"Unsupported FAISS metric: {name!r}")


def _atomic_write_bytes(path: Path, data: bytes) -> None:
    temp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="wb",
            dir=path.parent,
            prefix=".faiss-",
            suffix=".tmp",
            delete=False,
        ) as handle:
            handle.write(data)
            temp_path = Path(handle.name)
        os.replace(temp_path, path)
    except OSError:
        if temp_path is not None:
            temp_path.unlink(missing_ok=True)
        raise


def _ids_to_array(ids: Iterable[int]) -> np.ndarray:
    return np.fromiter((int(value) for value in ids), dtype="int64")


class FaissVectorStore(VectorStore):
    """``faiss.IndexIDMap`` persisted under ``directory``.

    Row ids of the ``vectors`` table double as FAISS ids, so metadata and
    vectors stay joined without a separate mapping. Writes happen in worker
    threads and hold both an internal lock and an ``index.faiss.lock`` file,
    so several processes may share one directory. Each mutation re-reads the
    index from disk and replaces the file atomically.

    ``add_all`` is idempotent per ``(talker, seq)``: a unit already stored
    keeps its id and its vector is not added again.
    """

    def __init__(
        self,
        *,
        directory: Path,
        logger: Logger,
        metric: str = "cosine",
        index_type: str = "Flat",
        lock_timeout: float = 30.0,
    ) -> None:
        self.directory = directory
        self.logger = logger
        self.metric = FaissIndexMetric.from_name(metric)
        self.index_type = index_type.strip() or "Flat"
        self.lock_timeout = lock_timeout
        self._lock = threading.Lock()

    @property
    def index_path(self) -> Path:
        return self.directory / INDEX_FILENAME

    @property
    def metadata_path(self) -> Path:
        return self.directory / METADATA_FILENAME

    # ------------------------------------------------------------------#
    # VectorStore interface
    # ------------------------------------------------------------------#
    async def add_all(
        self,
        vectors: Sequence[Sequence[float]],
        units: Sequence["EmbeddingUnit"],
    ) -> list[str]:
        if len(vectors) != len(units):
            raise VectorStoreError(
                f"{len(vectors)} vectors supplied for {len(units)} units"
            )
        if not units:
            return []
        return await asyncio.to_thread(self._add_all_sync, vectors, units)

    async def delete_by_talker(self, talker: str) -> int:
        return await asyncio.to_thread(self._delete_by_talker_sync, talker)

    async def count(self, talker: str | None = None) -> int:
        """Return the number of stored vectors, optionally per talker."""

        return await asyncio.to_thread(self._count_sync, talker)

    # ------------------------------------------------------------------#
    # Synchronous internals (run in worker threads)
    # ------------------------------------------------------------------#
    def _connect(self) -> sqlite3.Connection:
        self.directory.mkdir(parents=True, exist_ok=True)
        connection = sqlite3.connect(self.metadata_path, timeout=10.0)
        connection.executescript(_SCHEMA)
        return connection

    def _file_lock(self) -> FileLock:
        return FileLock(
            path=build_lock_path(self.index_path),
            timeout=self.lock_timeout,
        )

    def _read_index(self, dim: int | None) -> faiss.IndexIDMap | None:
        """Load the index from disk, or build an empty one for ``dim``.

        Always reads the file so writes from other processes are kept.
        """

        if self.index_path.exists():
            buffer = np.frombuffer(self.index_path.read_bytes(), dtype="uint8")
            index = faiss.deserialize_index(buffer)
            if not isinstance(index, faiss.IndexIDMap):
                raise VectorStoreError(
                    f"{self.index_path} does not wrap an IDMap index"
                )
            return index
        if dim is None:
            return None
        base = faiss.index_factory(dim, self.index_type, self.metric.faiss_metric)
        return faiss.IndexIDMap(base)

    def _persist_index(self, index: faiss.IndexIDMap) -> None:
        data = faiss.serialize_index(index)
        _atomic_write_bytes(self.index_path, bytes(data))

    def _prepare_vectors(self, vectors: Sequence[Sequence[float]]) -> np.ndarray:
        array = np.asarray(vectors, dtype="float32")
        if array.ndim != 2:
            raise VectorStoreError("vectors must be a 2-D array of shape (n, dim)")
        if self.metric.normalizes:
            array = np.ascontiguousarray(array)
            faiss.normalize_L2(array)
        return array

    def _add_all_sync(
        self,
        vectors: Sequence[Sequence[float]],
        units: Sequence["EmbeddingUnit"],
    ) -> list[str]:
        array = self._prepare_vectors(vectors)
        with self._lock, self._file_lock():
            index = self._read_index(array.shape[1])
            if index is None:
                raise VectorStoreError(f"No FAISS index available at {self.index_path}")
            if array.shape[1] != index.d:
                raise VectorStoreDimMismatchError(
                    expected=index.d,
                    actual=array.shape[1],
                )

            connection = self._connect()
            try:
                ids: list[int] = []
                new_ids: list[int] = []
                new_rows: list[int] = []
                for position, unit in enumerate(units):
                    talker = str(unit.metadata.get("talker", ""))
                    existing = connection.execute(
                        "SELECT id FROM vectors WHERE talker = ? AND seq = ?",
                        (talker, unit.seq),
                    ).fetchone()
                    if existing is not None:
                        ids.append(int(existing[0]))
                        continue
                    cursor = connection.execute(
                        "INSERT INTO vectors (talker, seq, text, metadata) "
                        "VALUES (?, ?, ?, ?)",
                        (
                            talker,
                            unit.seq,
                            unit.text,
                            json.dumps(dict(unit.metadata), ensure_ascii=False),
                        ),
                    )
                    ids.append(int(cursor.lastrowid))
                    new_ids.append(int(cursor.lastrowid))
                    new_rows.append(position)
                if new_ids:
                    id_array = _ids_to_array(new_ids)
                    index.add_with_ids(array[new_rows], id_array)
                    try:
                        self._persist_index(index)
                    except OSError as exc:
                        raise VectorStorePersistenceError(
                            f"Failed to persist FAISS index at {self.index_path}: {exc}"
                        ) from exc
                connection.commit()
            except sqlite3.Error as exc:
                connection.rollback()
                raise VectorStorePersistenceError(
                    f"Failed to write vector metadata: {exc}"
                ) from exc
            except Exception:
                connection.rollback()
                raise
            finally:
                connection.close()

        self.logger.debug(
            "vectorstore-add",
            added=len(new_ids),
            existing=len(ids) - len(new_ids),
            total=index.ntotal,
        )
        return [str(identifier) for identifier in ids]

    def _delete_by_talker_sync(self, talker: str) -> int:
        with self._lock, self._file_lock():
            connection = self._connect()
            try:
                rows = connection.execute(
                    "SELECT id FROM vectors WHERE talker = ?",
                    (talker,),
                ).fetchall()
                ids = [int(row[0]) for row in rows]
                if not ids:
                    return 0
                index = self._read_index(None)
                if index is not None:
                    index.remove_ids(faiss.IDSelectorBatch(_ids_to_array(ids)))
                    self._persist_index(index)
                connection.execute("DELETE FROM vectors WHERE talker = ?", (talker,))
                connection.commit()
            except (sqlite3.Error, OSError) as exc:
                connection.rollback()
                raise VectorStorePersistenceError(
                    f"Failed to delete vectors for {talker!r}: {exc}"
                ) from exc
            finally:
                connection.close()

        self.logger.info("vectorstore-delete", talker=talker, removed=len(ids))
        return len(ids)

    def _count_sync(self, talker: str | None) -> int:
        if not self.metadata_path.exists():
            return 0
        connection = self._connect()
        try:
            if talker is None:
                row = connection.execute("SELECT COUNT(*) FROM vectors").fetchone()
            else:
                row = connection.execute(
                    "SELECT COUNT(*) FROM vectors WHERE talker = ?",
                    (talker,),
                ).fetchone()
        finally:
            connection.close()
        return int(row[0])
