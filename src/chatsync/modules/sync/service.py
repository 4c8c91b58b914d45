"""Listing and deletion of synchronized talkers."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from chatsync.core.logging import Logger, get_logger
from chatsync.modules.sync.autosync import AutoSyncRegistry
from chatsync.modules.sync.checkpoints import CheckpointStore
from chatsync.modules.sync.errors import SyncValidationError
from chatsync.modules.sync.models import SyncCheckpoint
from chatsync.modules.vectorstore import VectorStore

__all__ = ["ChatlogVectorService", "DeleteSummary"]


@dataclass(frozen=True, slots=True)
class DeleteSummary:
    talker: str
    vectors_removed: int
    checkpoint_removed: bool
    autosync_removed: bool


@dataclass(slots=True)
class ChatlogVectorService:
    """Administrative operations over synced talkers."""

    checkpoints: CheckpointStore
    store: VectorStore
    registry: AutoSyncRegistry | None = None
    logger: Logger | None = None

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = get_logger(__name__, component="vector-service")

    async def list_synced(self, talker: str | None = None) -> list[SyncCheckpoint]:
        """Return every checkpoint, or only ``talker``'s when given."""

        if talker is None or not talker.strip():
            return await self.checkpoints.list_all()
        checkpoint = await self.checkpoints.find_checkpoint(talker.strip())
        return [checkpoint] if checkpoint is not None else []

    async def delete_talker(self, talker: str) -> DeleteSummary:
        """Drop vectors, checkpoint, dedup set and auto-sync enrolment.

        Raises:
            SyncValidationError: If ``talker`` is empty.
        """

        talker = (talker or "").strip()
        if not talker:
            raise SyncValidationError("talker cannot be empty")

        async with self.checkpoints.talker_lock(talker):
            vectors_removed = await self.store.delete_by_talker(talker)
            checkpoint_removed = await self.checkpoints.delete_talker(talker)
        autosync_removed = False
        if self.registry is not None:
            autosync_removed = await asyncio.to_thread(self.registry.remove, talker)

        summary = DeleteSummary(
            talker=talker,
            vectors_removed=vectors_removed,
            checkpoint_removed=checkpoint_removed,
            autosync_removed=autosync_removed,
        )
        self.logger.info(
            "talker-deleted",
            talker=talker,
            vectors_removed=vectors_removed,
            checkpoint_removed=checkpoint_removed,
            autosync_removed=autosync_removed,
        )
        return summary
