"""SQLite-backed checkpoint and dedup state per talker."""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, TypeVar

from chatsync.core.logging import Logger, get_logger
from chatsync.modules.chatlog import LogSource
from chatsync.modules.chatlog.errors import ChatlogClientError
from chatsync.modules.sync.errors import CheckpointStoreError, TalkerNotFoundError
from chatsync.modules.sync.models import SyncCheckpoint, format_sync_time

__all__ = [
    "CheckpointStore",
    "DEFAULT_PROCESSED_TTL",
    "DEFAULT_RUN_LEASE_TTL",
    "UNKNOWN_TALKER_NAME",
    "state_connection",
]

DEFAULT_PROCESSED_TTL = timedelta(days=1)
DEFAULT_RUN_LEASE_TTL = timedelta(minutes=30)
UNKNOWN_TALKER_NAME = "not found"

# Stay well below SQLite's bound-parameter limit.
_SEQ_CHUNK = 500

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_checkpoints (
    talker TEXT PRIMARY KEY,
    talker_name TEXT NOT NULL DEFAULT '',
    last_seq INTEGER NOT NULL DEFAULT 0,
    last_sync_time TEXT NOT NULL DEFAULT ''
);
CREATE TABLE IF NOT EXISTS processed_seqs (
    talker TEXT NOT NULL,
    seq INTEGER NOT NULL,
    processed_at REAL NOT NULL,
    PRIMARY KEY (talker, seq)
);
CREATE INDEX IF NOT EXISTS idx_processed_seqs_age
    ON processed_seqs (talker, processed_at);
CREATE TABLE IF NOT EXISTS auto_sync_talkers (
    talker TEXT PRIMARY KEY,
    enabled INTEGER NOT NULL DEFAULT 1,
    added_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS run_leases (
    talker TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    acquired_at REAL NOT NULL,
    renewed_at REAL NOT NULL
);
"""

T = TypeVar("T")


@contextmanager
def state_connection(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Open the state database, commit on success and always close."""

    db_path.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(db_path, timeout=10.0)
    try:
        connection.row_factory = sqlite3.Row
        connection.executescript(_SCHEMA)
        with connection:
            yield connection
    finally:
        connection.close()


def _default_now() -> datetime:
    return datetime.now()


def _chunks(values: list[int]) -> Iterator[list[int]]:
    for start in range(0, len(values), _SEQ_CHUNK):
        yield values[start : start + _SEQ_CHUNK]


@dataclass(slots=True)
class CheckpointStore:
    """Durable sync state: one checkpoint row plus a dedup set per talker.

    All SQLite work runs in worker threads. Updates to one talker's
    checkpoint must be made while holding :meth:`talker_lock`; different
    talkers never contend.
    """

    db_path: Path
    source: LogSource
    logger: Logger | None = None
    processed_ttl: timedelta = DEFAULT_PROCESSED_TTL
    run_lease_ttl: timedelta = DEFAULT_RUN_LEASE_TTL
    now: Callable[[], datetime] = _default_now
    _locks: dict[str, tuple[asyncio.AbstractEventLoop, asyncio.Lock]] = field(
        default_factory=dict, init=False
    )

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = get_logger(__name__, component="checkpoint-store")

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------
    def talker_lock(self, talker: str) -> asyncio.Lock:
        """Return the lock serializing checkpoint writes for ``talker``.

        Locks are scoped to the running event loop.
        """

        loop = asyncio.get_running_loop()
        entry = self._locks.get(talker)
        if entry is None or entry[0] is not loop:
            entry = (loop, asyncio.Lock())
            self._locks[talker] = entry
        return entry[1]

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------
    async def find_checkpoint(self, talker: str) -> SyncCheckpoint | None:
        """Return the stored checkpoint without creating one."""

        def _select(connection: sqlite3.Connection) -> SyncCheckpoint | None:
            row = connection.execute(
                "SELECT * FROM sync_checkpoints WHERE talker = ?",
                (talker,),
            ).fetchone()
            return SyncCheckpoint.from_row(row) if row is not None else None

        return await self._run("find-checkpoint", _select)

    async def get_checkpoint(self, talker: str) -> SyncCheckpoint:
        """Return the checkpoint, creating it on first access.

        The initial checkpoint has ``last_seq=0``; its display name comes
        from the upstream room lookup.

        Raises:
            TalkerNotFoundError: If the talker is unknown upstream.
            CheckpointStoreError: If the state database fails.
        """

        existing = await self.find_checkpoint(talker)
        if existing is not None:
            return existing

        try:
            room = await self.source.lookup_room(talker)
        except ChatlogClientError as exc:
            raise CheckpointStoreError(
                f"Room lookup for {talker!r} failed: {exc}"
            ) from exc
        if room is None:
            raise TalkerNotFoundError(talker)

        checkpoint = SyncCheckpoint(
            talker=talker,
            talker_name=room.display_name or UNKNOWN_TALKER_NAME,
            last_seq=0,
            last_sync_time=format_sync_time(self.now()),
        )

        def _insert(connection: sqlite3.Connection) -> SyncCheckpoint:
            connection.execute(
                "INSERT OR IGNORE INTO sync_checkpoints "
                "(talker, talker_name, last_seq, last_sync_time) "
                "VALUES (?, ?, ?, ?)",
                (
                    checkpoint.talker,
                    checkpoint.talker_name,
                    checkpoint.last_seq,
                    checkpoint.last_sync_time,
                ),
            )
            row = connection.execute(
                "SELECT * FROM sync_checkpoints WHERE talker = ?",
                (talker,),
            ).fetchone()
            return SyncCheckpoint.from_row(row)

        stored = await self._run("create-checkpoint", _insert)
        self.logger.info(
            "checkpoint-created",
            talker=talker,
            talker_name=stored.talker_name,
        )
        return stored

    async def update_checkpoint(
        self,
        talker: str,
        checkpoint: SyncCheckpoint,
    ) -> None:
        """Upsert ``checkpoint``; monotonicity is the caller's concern."""

        if checkpoint.talker != talker:
            raise ValueError(
                f"checkpoint talker {checkpoint.talker!r} does not match {talker!r}"
            )

        def _upsert(connection: sqlite3.Connection) -> None:
            connection.execute(
                "INSERT INTO sync_checkpoints "
                "(talker, talker_name, last_seq, last_sync_time) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(talker) DO UPDATE SET "
                "talker_name = excluded.talker_name, "
                "last_seq = excluded.last_seq, "
                "last_sync_time = excluded.last_sync_time",
                (
                    checkpoint.talker,
                    checkpoint.talker_name,
                    checkpoint.last_seq,
                    checkpoint.last_sync_time,
                ),
            )

        await self._run("update-checkpoint", _upsert)
        self.logger.debug(
            "checkpoint-updated",
            talker=talker,
            last_seq=checkpoint.last_seq,
        )

    async def list_all(self) -> list[SyncCheckpoint]:
        """Return every stored checkpoint ordered by talker."""

        def _select(connection: sqlite3.Connection) -> list[SyncCheckpoint]:
            rows = connection.execute(
                "SELECT * FROM sync_checkpoints ORDER BY talker"
            ).fetchall()
            return [SyncCheckpoint.from_row(row) for row in rows]

        return await self._run("list-checkpoints", _select)

    async def delete_talker(self, talker: str) -> bool:
        """Remove the checkpoint and dedup set; return whether any existed."""

        def _delete(connection: sqlite3.Connection) -> bool:
            removed = connection.execute(
                "DELETE FROM sync_checkpoints WHERE talker = ?",
                (talker,),
            ).rowcount
            removed += connection.execute(
                "DELETE FROM processed_seqs WHERE talker = ?",
                (talker,),
            ).rowcount
            return removed > 0

        existed = await self._run("delete-talker", _delete)
        self._locks.pop(talker, None)
        return existed

    # ------------------------------------------------------------------
    # Dedup set
    # ------------------------------------------------------------------
    async def is_processed(self, talker: str, seq: int) -> bool:
        return seq in await self.processed_among(talker, (seq,))

    async def processed_among(
        self,
        talker: str,
        seqs: Iterable[int],
    ) -> set[int]:
        """Return the members of ``seqs`` with an unexpired dedup entry."""

        candidates = sorted({int(seq) for seq in seqs})
        if not candidates:
            return set()
        cutoff = self._cutoff()

        def _select(connection: sqlite3.Connection) -> set[int]:
            found: set[int] = set()
            for chunk in _chunks(candidates):
                placeholders = ", ".join("?" for _ in chunk)
                rows = connection.execute(
                    "SELECT seq FROM processed_seqs "  # noqa: S608 - placeholders only
                    f"WHERE talker = ? AND processed_at >= ? AND seq IN ({placeholders})",
                    (talker, cutoff, *chunk),
                ).fetchall()
                found.update(int(row["seq"]) for row in rows)
            return found

        return await self._run("processed-among", _select)

    async def mark_processed(self, talker: str, seqs: Iterable[int]) -> None:
        """Record ``seqs`` as processed in one transaction.

        Expired entries for ``talker`` are purged in the same transaction.
        """

        values = sorted({int(seq) for seq in seqs})
        if not values:
            return
        stamp = self.now().timestamp()
        cutoff = self._cutoff()

        def _insert(connection: sqlite3.Connection) -> None:
            connection.execute(
                "DELETE FROM processed_seqs WHERE talker = ? AND processed_at < ?",
                (talker, cutoff),
            )
            connection.executemany(
                "INSERT OR REPLACE INTO processed_seqs (talker, seq, processed_at) "
                "VALUES (?, ?, ?)",
                [(talker, seq, stamp) for seq in values],
            )

        await self._run("mark-processed", _insert)

    # ------------------------------------------------------------------
    # Run leases
    # ------------------------------------------------------------------
    async def acquire_run_lease(self, talker: str, owner: str) -> bool:
        """Claim the single active-run slot for ``talker``.

        Returns ``False`` when another owner holds a lease renewed within
        ``run_lease_ttl``. Older leases are treated as abandoned and taken
        over.
        """

        stamp = self.now().timestamp()
        stale_before = stamp - self.run_lease_ttl.total_seconds()

        def _claim(connection: sqlite3.Connection) -> bool:
            connection.execute(
                "DELETE FROM run_leases WHERE talker = ? AND renewed_at < ?",
                (talker, stale_before),
            )
            cursor = connection.execute(
                "INSERT OR IGNORE INTO run_leases "
                "(talker, owner, acquired_at, renewed_at) VALUES (?, ?, ?, ?)",
                (talker, owner, stamp, stamp),
            )
            return cursor.rowcount == 1

        return await self._run("acquire-run-lease", _claim)

    async def renew_run_lease(self, talker: str, owner: str) -> bool:
        """Refresh ``owner``'s lease; ``False`` if it was lost."""

        stamp = self.now().timestamp()

        def _touch(connection: sqlite3.Connection) -> bool:
            cursor = connection.execute(
                "UPDATE run_leases SET renewed_at = ? WHERE talker = ? AND owner = ?",
                (stamp, talker, owner),
            )
            return cursor.rowcount == 1

        return await self._run("renew-run-lease", _touch)

    async def release_run_lease(self, talker: str, owner: str) -> None:
        def _delete(connection: sqlite3.Connection) -> None:
            connection.execute(
                "DELETE FROM run_leases WHERE talker = ? AND owner = ?",
                (talker, owner),
            )

        await self._run("release-run-lease", _delete)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _cutoff(self) -> float:
        return (self.now() - self.processed_ttl).timestamp()

    async def _run(
        self,
        action: str,
        work: Callable[[sqlite3.Connection], T],
    ) -> T:
        def _execute() -> T:
            with state_connection(self.db_path) as connection:
                return work(connection)

        try:
            return await asyncio.to_thread(_execute)
        except sqlite3.Error as exc:
            self.logger.error(
                "checkpoint-store-failed",
                action=action,
                db_path=str(self.db_path),
                error=str(exc),
            )
            raise CheckpointStoreError(
                f"Checkpoint store {action} failed: {exc}"
            ) from exc
