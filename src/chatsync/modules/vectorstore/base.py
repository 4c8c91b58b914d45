"""Vector store contract consumed by the sync pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from chatsync.modules.sync.models import EmbeddingUnit

__all__ = [
    "VectorStore",
    "VectorStoreError",
    "VectorStorePersistenceError",
    "VectorStoreDimMismatchError",
]


class VectorStoreError(RuntimeError):
    """Base error raised by vector store backends."""


class VectorStorePersistenceError(VectorStoreError):
    """Raised when vectors or their metadata cannot be written."""


class VectorStoreDimMismatchError(VectorStoreError):
    """Raised when vectors do not match the index dimension."""

    def __init__(self, *, expected: int, actual: int) -> None:
        super().__init__(
            f"Vector dimensionality mismatch: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


@runtime_checkable
class VectorStore(Protocol):
    """Backend storing embeddings keyed by unit metadata."""

    async def add_all(
        self,
        vectors: Sequence[Sequence[float]],
        units: Sequence["EmbeddingUnit"],
    ) -> list[str]:
        """Persist ``vectors`` aligned with ``units`` and return their ids.

        Units whose ``(talker, seq)`` is already stored keep their id.
        """

    async def delete_by_talker(self, talker: str) -> int:
        """Remove every vector whose ``talker`` metadata matches."""
