"""Tests for :mod:`chatsync.modules.sync.autosync`."""

from __future__ import annotations

import asyncio
from datetime import date, datetime
from pathlib import Path

import pytest

from chatsync.modules.sync import (
    AutoSyncRegistry,
    AutoSyncScheduler,
    IncrementalSyncService,
    InitialSyncRequiredError,
    SyncOutcome,
    SyncValidationError,
)

TALKER = "team@chatroom"


@pytest.fixture
def registry(tmp_path: Path) -> AutoSyncRegistry:
    return AutoSyncRegistry(
        db_path=tmp_path / "state.sqlite3",
        now=lambda: datetime(2025, 3, 4, 9, 0, 0),
    )


def test_registry_add_is_idempotent(registry) -> None:
    assert registry.add(TALKER) is True
    assert registry.add(f"  {TALKER} ") is False

    entries = registry.list()
    assert len(entries) == 1
    assert entries[0].talker == TALKER
    assert entries[0].enabled is True
    assert entries[0].added_at == "2025-03-04 09:00:00"


def test_registry_remove_and_disable(registry) -> None:
    registry.add("a")
    registry.add("b")

    assert registry.set_enabled("b", False) is True
    assert [entry.talker for entry in registry.list(enabled_only=True)] == ["a"]
    assert registry.remove("a") is True
    assert registry.remove("a") is False
    assert registry.set_enabled("missing", True) is False
    assert [entry.talker for entry in registry.list()] == ["b"]


def test_registry_rejects_empty_talker(registry) -> None:
    with pytest.raises(SyncValidationError):
        registry.add("   ")


def test_scheduler_isolates_failing_talkers(
    orchestrator_factory,
    checkpoint_store,
    registry,
    seed_records,
    stub_logger,
) -> None:
    service = IncrementalSyncService(
        orchestrator=orchestrator_factory(),
        checkpoints=checkpoint_store,
        logger=stub_logger,
        today=lambda: date(2025, 3, 4),
    )
    seed_records(range(1, 6))
    asyncio.run(service.sync_with_progress(TALKER, "2025-03-01"))
    seed_records(range(6, 9))
    registry.add("aaa-never-synced")
    registry.add(TALKER)
    scheduler = AutoSyncScheduler(
        service=service,
        registry=registry,
        interval=600,
        logger=stub_logger,
    )

    results = asyncio.run(scheduler.run_once())

    assert isinstance(results["aaa-never-synced"], InitialSyncRequiredError)
    assert isinstance(results[TALKER], SyncOutcome)
    assert results[TALKER].processed_count == 3
    assert stub_logger.named("autosync-talker-failed")[0]["talker"] == (
        "aaa-never-synced"
    )
    assert stub_logger.named("autosync-pass-complete")[-1]["failed"] == 1


def test_run_forever_sleeps_between_passes(registry, stub_logger) -> None:
    class CountingService:
        def __init__(self) -> None:
            self.calls = 0

        async def sync_incremental(self, talker: str):
            self.calls += 1
            return SyncOutcome(talker=talker, time_range="2025-03-04")

    sleeps: list[float] = []

    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    registry.add(TALKER)
    service = CountingService()
    scheduler = AutoSyncScheduler(
        service=service,  # type: ignore[arg-type]
        registry=registry,
        interval=600,
        logger=stub_logger,
        sleep=record_sleep,
    )

    asyncio.run(scheduler.run_forever(max_passes=3))

    assert service.calls == 3
    assert sleeps == [600, 600]


def test_scheduler_rejects_non_positive_interval(registry, stub_logger) -> None:
    with pytest.raises(ValueError):
        AutoSyncScheduler(
            service=None,  # type: ignore[arg-type]
            registry=registry,
            interval=0,
            logger=stub_logger,
        )
