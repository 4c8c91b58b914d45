"""Embedding batcher enforcing one vector per unit."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass

from chatsync.core.logging import Logger, get_logger
from chatsync.modules.embeddings.providers import (
    EmbedRequestOptions,
    EmbeddingMatrix,
    EmbeddingsProvider,
)
from chatsync.modules.sync.errors import EmbeddingCountMismatchError
from chatsync.modules.sync.models import EmbeddingUnit

__all__ = [
    "EmbeddingBatcher",
    "partition",
]


def partition(
    units: Sequence[EmbeddingUnit],
    size: int,
) -> Iterator[list[EmbeddingUnit]]:
    """Yield consecutive slices of ``units`` holding at most ``size`` items.

    Example:
        >>> [len(chunk) for chunk in partition(list(range(450)), 200)]
        [200, 200, 50]
    """

    if size < 1:
        raise ValueError("partition size must be >= 1")
    for start in range(0, len(units), size):
        yield list(units[start : start + size])


@dataclass(slots=True)
class EmbeddingBatcher:
    """Embed units through a provider, sub-batching to its request cap."""

    provider: EmbeddingsProvider
    model: str
    max_batch_size: int = 32
    timeout: float | None = None
    logger: Logger | None = None

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = get_logger(__name__, component="embedding-batcher")
        if self.max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")

    @property
    def request_limit(self) -> int:
        """Effective texts per request after applying provider caps."""

        caps = self.provider.capabilities(model=self.model)
        return max(1, min(self.max_batch_size, caps.max_batch_size))

    async def embed_batch(
        self,
        units: Sequence[EmbeddingUnit],
    ) -> EmbeddingMatrix:
        """Return vectors positionally aligned with ``units``.

        Raises:
            EmbeddingCountMismatchError: If any request returns a different
                number of vectors than texts sent.
        """

        if not units:
            return ()

        limit = self.request_limit
        options = EmbedRequestOptions(max_batch_size=limit, timeout=self.timeout)
        vectors: list[tuple[float, ...]] = []
        for chunk in partition(units, limit):
            texts = [unit.text for unit in chunk]
            embedded = await self.provider.embed_texts(
                texts,
                model=self.model,
                options=options,
            )
            if len(embedded) != len(texts):
                raise EmbeddingCountMismatchError(
                    expected=len(texts),
                    actual=len(embedded),
                )
            vectors.extend(tuple(vector) for vector in embedded)

        self.logger.debug(
            "embed-batch",
            units=len(units),
            requests=-(-len(units) // limit),
            model=self.model,
        )
        return tuple(vectors)
