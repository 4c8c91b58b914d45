"""Tests for :mod:`chatsync.modules.sync.checkpoints`."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from structlog import get_logger

from chatsync.modules.chatlog import ChatRoom
from chatsync.modules.chatlog.errors import ChatlogRetryableError
from chatsync.modules.sync import (
    CheckpointStore,
    CheckpointStoreError,
    SyncCheckpoint,
    TalkerNotFoundError,
    UNKNOWN_TALKER_NAME,
)

TALKER = "team@chatroom"


def test_get_checkpoint_creates_initial_row(checkpoint_store) -> None:
    checkpoint = asyncio.run(checkpoint_store.get_checkpoint(TALKER))

    assert checkpoint == SyncCheckpoint(
        talker=TALKER,
        talker_name="Team",
        last_seq=0,
        last_sync_time="2025-03-04 12:00:00",
    )
    assert not checkpoint.initialized
    assert asyncio.run(checkpoint_store.find_checkpoint(TALKER)) == checkpoint


def test_get_checkpoint_uses_placeholder_for_nameless_room(
    checkpoint_store,
    fake_source,
) -> None:
    fake_source.rooms["anon"] = ChatRoom(name="", nick_name="")

    checkpoint = asyncio.run(checkpoint_store.get_checkpoint("anon"))

    assert checkpoint.talker_name == UNKNOWN_TALKER_NAME


def test_get_checkpoint_unknown_talker_raises(checkpoint_store) -> None:
    with pytest.raises(TalkerNotFoundError):
        asyncio.run(checkpoint_store.get_checkpoint("ghost"))

    assert asyncio.run(checkpoint_store.find_checkpoint("ghost")) is None


def test_get_checkpoint_wraps_lookup_failures(checkpoint_store, fake_source) -> None:
    async def failing_lookup(keyword: str):
        raise ChatlogRetryableError("down", endpoint="/api/v1/chatroom")

    fake_source.lookup_room = failing_lookup

    with pytest.raises(CheckpointStoreError):
        asyncio.run(checkpoint_store.get_checkpoint(TALKER))


def test_update_and_list_checkpoints(checkpoint_store) -> None:
    async def scenario() -> list[SyncCheckpoint]:
        first = await checkpoint_store.get_checkpoint(TALKER)
        await checkpoint_store.update_checkpoint(
            TALKER,
            first.advanced(42, at=datetime(2025, 3, 5, 8, 0, 0)),
        )
        await checkpoint_store.update_checkpoint(
            "alice",
            SyncCheckpoint(talker="alice", talker_name="Alice", last_seq=7),
        )
        return await checkpoint_store.list_all()

    checkpoints = asyncio.run(scenario())

    assert [checkpoint.talker for checkpoint in checkpoints] == ["alice", TALKER]
    assert checkpoints[1].last_seq == 42
    assert checkpoints[1].last_sync_time == "2025-03-05 08:00:00"
    assert checkpoints[1].initialized


def test_update_checkpoint_rejects_mismatched_talker(checkpoint_store) -> None:
    with pytest.raises(ValueError):
        asyncio.run(
            checkpoint_store.update_checkpoint(
                TALKER,
                SyncCheckpoint(talker="other", talker_name=""),
            )
        )


def test_processed_set_round_trip_and_delete(checkpoint_store) -> None:
    async def scenario():
        await checkpoint_store.get_checkpoint(TALKER)
        await checkpoint_store.mark_processed(TALKER, [3, 1, 2, 2])
        before = await checkpoint_store.processed_among(TALKER, range(0, 6))
        single = await checkpoint_store.is_processed(TALKER, 2)
        other = await checkpoint_store.processed_among("alice", [1, 2, 3])
        existed = await checkpoint_store.delete_talker(TALKER)
        after = await checkpoint_store.processed_among(TALKER, [1, 2, 3])
        checkpoint = await checkpoint_store.find_checkpoint(TALKER)
        return before, single, other, existed, after, checkpoint

    before, single, other, existed, after, checkpoint = asyncio.run(scenario())

    assert before == {1, 2, 3}
    assert single is True
    assert other == set()
    assert existed is True
    assert after == set()
    assert checkpoint is None


def test_processed_entries_expire(tmp_path: Path, fake_source) -> None:
    clock = {"now": datetime(2025, 3, 1, 9, 0, 0)}
    store = CheckpointStore(
        db_path=tmp_path / "state.sqlite3",
        source=fake_source,
        logger=get_logger("test.checkpoints"),
        processed_ttl=timedelta(hours=1),
        now=lambda: clock["now"],
    )

    asyncio.run(store.mark_processed(TALKER, [1, 2]))
    clock["now"] += timedelta(minutes=30)
    assert asyncio.run(store.processed_among(TALKER, [1, 2])) == {1, 2}

    clock["now"] += timedelta(hours=1)
    assert asyncio.run(store.processed_among(TALKER, [1, 2])) == set()


def test_processed_among_handles_large_candidate_sets(checkpoint_store) -> None:
    seqs = list(range(1, 1_301))
    asyncio.run(checkpoint_store.mark_processed(TALKER, seqs[::2]))

    found = asyncio.run(checkpoint_store.processed_among(TALKER, seqs))

    assert found == set(seqs[::2])


def test_delete_unknown_talker_returns_false(checkpoint_store) -> None:
    assert asyncio.run(checkpoint_store.delete_talker("nobody")) is False


def test_talker_lock_is_shared_per_talker_within_a_loop(checkpoint_store) -> None:
    async def grab():
        return (
            checkpoint_store.talker_lock("a"),
            checkpoint_store.talker_lock("a"),
            checkpoint_store.talker_lock("b"),
        )

    first, again, other = asyncio.run(grab())
    assert first is again
    assert first is not other

    next_loop, _, _ = asyncio.run(grab())
    assert next_loop is not first


def test_unusable_database_raises_store_error(tmp_path: Path, fake_source) -> None:
    store = CheckpointStore(
        db_path=tmp_path,
        source=fake_source,
        logger=get_logger("test.checkpoints"),
    )

    with pytest.raises(CheckpointStoreError):
        asyncio.run(store.find_checkpoint(TALKER))


def test_run_lease_admits_one_owner_per_talker(tmp_path: Path, fake_source) -> None:
    db_path = tmp_path / "state.sqlite3"
    first = CheckpointStore(db_path=db_path, source=fake_source)
    second = CheckpointStore(db_path=db_path, source=fake_source)

    assert asyncio.run(first.acquire_run_lease(TALKER, "proc-a")) is True
    assert asyncio.run(second.acquire_run_lease(TALKER, "proc-b")) is False
    assert asyncio.run(second.acquire_run_lease("other", "proc-b")) is True
    assert asyncio.run(first.renew_run_lease(TALKER, "proc-a")) is True
    assert asyncio.run(second.renew_run_lease(TALKER, "proc-b")) is False

    asyncio.run(second.release_run_lease(TALKER, "proc-b"))
    assert asyncio.run(second.acquire_run_lease(TALKER, "proc-b")) is False

    asyncio.run(first.release_run_lease(TALKER, "proc-a"))
    assert asyncio.run(second.acquire_run_lease(TALKER, "proc-b")) is True


def test_abandoned_run_lease_is_taken_over(tmp_path: Path, fake_source) -> None:
    clock = {"now": datetime(2025, 3, 1, 9, 0, 0)}
    store = CheckpointStore(
        db_path=tmp_path / "state.sqlite3",
        source=fake_source,
        logger=get_logger("test.checkpoints"),
        run_lease_ttl=timedelta(minutes=10),
        now=lambda: clock["now"],
    )

    assert asyncio.run(store.acquire_run_lease(TALKER, "crashed")) is True
    clock["now"] += timedelta(minutes=5)
    assert asyncio.run(store.acquire_run_lease(TALKER, "fresh")) is False

    clock["now"] += timedelta(minutes=11)
    assert asyncio.run(store.acquire_run_lease(TALKER, "fresh")) is True
    assert asyncio.run(store.renew_run_lease(TALKER, "crashed")) is False
