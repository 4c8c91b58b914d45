"""Tests for :mod:`chatsync.modules.sync.batcher`."""

from __future__ import annotations

import asyncio

import pytest

from chatsync.modules.sync import (
    EmbeddingBatcher,
    EmbeddingCountMismatchError,
    EmbeddingUnit,
    partition,
)


def _units(count: int) -> list[EmbeddingUnit]:
    return [
        EmbeddingUnit(text=f"text {index}", metadata={"seq": index})
        for index in range(count)
    ]


def test_partition_sizes() -> None:
    assert [len(chunk) for chunk in partition(_units(450), 200)] == [200, 200, 50]
    assert list(partition([], 10)) == []
    with pytest.raises(ValueError):
        list(partition(_units(1), 0))


def test_embed_batch_respects_provider_cap(stub_provider, stub_logger) -> None:
    stub_provider.max_batch_size = 4
    batcher = EmbeddingBatcher(
        provider=stub_provider,
        model="stub-model",
        max_batch_size=32,
        logger=stub_logger,
    )
    units = _units(10)

    vectors = asyncio.run(batcher.embed_batch(units))

    assert batcher.request_limit == 4
    assert [len(call) for call in stub_provider.calls] == [4, 4, 2]
    assert len(vectors) == 10
    assert vectors[0][0] == float(len("text 0"))


def test_embed_batch_respects_configured_limit(stub_provider) -> None:
    batcher = EmbeddingBatcher(provider=stub_provider, model="m", max_batch_size=3)

    asyncio.run(batcher.embed_batch(_units(7)))

    assert [len(call) for call in stub_provider.calls] == [3, 3, 1]


def test_embed_batch_rejects_count_mismatch(stub_provider) -> None:
    stub_provider.drop_last = True
    batcher = EmbeddingBatcher(provider=stub_provider, model="m")

    with pytest.raises(EmbeddingCountMismatchError) as excinfo:
        asyncio.run(batcher.embed_batch(_units(3)))

    assert excinfo.value.expected == 3
    assert excinfo.value.actual == 2


def test_empty_batch_skips_provider(stub_provider) -> None:
    batcher = EmbeddingBatcher(provider=stub_provider, model="m")

    assert asyncio.run(batcher.embed_batch([])) == ()
    assert stub_provider.calls == []


def test_invalid_batch_size_rejected(stub_provider) -> None:
    with pytest.raises(ValueError):
        EmbeddingBatcher(provider=stub_provider, model="m", max_batch_size=0)
