"""Auto-sync enrolment and the periodic incremental scheduler."""

from __future__ import annotations

import asyncio
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, TypeVar

from chatsync.core.logging import Logger, get_logger
from chatsync.modules.sync.checkpoints import state_connection
from chatsync.modules.sync.errors import CheckpointStoreError, SyncValidationError
from chatsync.modules.sync.incremental import IncrementalSyncService
from chatsync.modules.sync.models import SyncOutcome, format_sync_time
from chatsync.modules.sync.retry import Sleep

__all__ = [
    "AutoSyncEntry",
    "AutoSyncRegistry",
    "AutoSyncScheduler",
    "DEFAULT_AUTOSYNC_INTERVAL",
]

DEFAULT_AUTOSYNC_INTERVAL = 600.0

T = TypeVar("T")


def _default_now() -> datetime:
    return datetime.now()


@dataclass(frozen=True, slots=True)
class AutoSyncEntry:
    talker: str
    enabled: bool
    added_at: str


@dataclass(slots=True)
class AutoSyncRegistry:
    """Talkers enrolled for periodic incremental sync."""

    db_path: Path
    now: Callable[[], datetime] = _default_now

    def list(self, *, enabled_only: bool = False) -> list[AutoSyncEntry]:
        query = "SELECT talker, enabled, added_at FROM auto_sync_talkers"
        if enabled_only:
            query += " WHERE enabled = 1"
        query += " ORDER BY talker"
        rows = self._execute(lambda connection: connection.execute(query).fetchall())
        return [
            AutoSyncEntry(
                talker=row["talker"],
                enabled=bool(row["enabled"]),
                added_at=row["added_at"],
            )
            for row in rows
        ]

    def add(self, talker: str) -> bool:
        """Enrol ``talker``; return ``False`` if it was already enrolled."""

        talker = _require_talker(talker)
        stamp = format_sync_time(self.now())
        return self._execute(
            lambda connection: connection.execute(
                "INSERT OR IGNORE INTO auto_sync_talkers (talker, enabled, added_at) "
                "VALUES (?, 1, ?)",
                (talker, stamp),
            ).rowcount
            > 0
        )

    def remove(self, talker: str) -> bool:
        talker = _require_talker(talker)
        return self._execute(
            lambda connection: connection.execute(
                "DELETE FROM auto_sync_talkers WHERE talker = ?",
                (talker,),
            ).rowcount
            > 0
        )

    def set_enabled(self, talker: str, enabled: bool) -> bool:
        talker = _require_talker(talker)
        return self._execute(
            lambda connection: connection.execute(
                "UPDATE auto_sync_talkers SET enabled = ? WHERE talker = ?",
                (1 if enabled else 0, talker),
            ).rowcount
            > 0
        )

    def _execute(self, work: Callable[[sqlite3.Connection], T]) -> T:
        try:
            with state_connection(self.db_path) as connection:
                return work(connection)
        except sqlite3.Error as exc:
            raise CheckpointStoreError(f"Auto-sync registry failed: {exc}") from exc


def _require_talker(talker: str) -> str:
    normalized = (talker or "").strip()
    if not normalized:
        raise SyncValidationError("talker cannot be empty")
    return normalized


@dataclass(slots=True)
class AutoSyncScheduler:
    """Run incremental syncs for every enrolled talker on an interval.

    One talker failing never stops the others; the failure is logged and
    reported in the per-talker result map.
    """

    service: IncrementalSyncService
    registry: AutoSyncRegistry
    interval: float = DEFAULT_AUTOSYNC_INTERVAL
    logger: Logger | None = None
    sleep: Sleep = asyncio.sleep

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = get_logger(__name__, component="autosync")
        if self.interval <= 0:
            raise ValueError("interval must be positive")

    async def run_once(self) -> dict[str, SyncOutcome | Exception]:
        entries = await asyncio.to_thread(self.registry.list, enabled_only=True)
        results: dict[str, SyncOutcome | Exception] = {}
        for entry in entries:
            try:
                outcome = await self.service.sync_incremental(entry.talker)
            except Exception as exc:
                self.logger.warning(
                    "autosync-talker-failed",
                    talker=entry.talker,
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
                results[entry.talker] = exc
                continue
            results[entry.talker] = outcome
        self.logger.info(
            "autosync-pass-complete",
            talkers=len(entries),
            failed=sum(1 for value in results.values() if isinstance(value, Exception)),
        )
        return results

    async def run_forever(self, *, max_passes: int | None = None) -> None:
        """Repeat :meth:`run_once` every ``interval`` seconds until cancelled."""

        passes = 0
        while max_passes is None or passes < max_passes:
            await self.run_once()
            passes += 1
            if max_passes is not None and passes >= max_passes:
                break
            await self.sleep(self.interval)
