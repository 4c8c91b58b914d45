"""Vector store contract and backends."""

from __future__ import annotations

from pathlib import Path

from chatsync.core.config import VectorStoreSettings
from chatsync.core.logging import Logger

from .base import (
    VectorStore,
    VectorStoreDimMismatchError,
    VectorStoreError,
    VectorStorePersistenceError,
)
from .locks import VectorStoreLockError, VectorStoreLockTimeoutError

__all__ = [
    "VectorStore",
    "VectorStoreDimMismatchError",
    "VectorStoreError",
    "VectorStoreLockError",
    "VectorStoreLockTimeoutError",
    "VectorStorePersistenceError",
    "create_vector_store",
]


def create_vector_store(
    settings: VectorStoreSettings,
    *,
    directory: Path,
    logger: Logger,
) -> VectorStore:
    """Instantiate the backend named by ``settings.provider``.

    Raises:
        ValueError: If the provider is not supported.
    """

    provider = settings.provider.strip().lower()
    if provider == "faiss":
        from .faiss_store import FaissVectorStore

        return FaissVectorStore(
            directory=directory,
            logger=logger,
            metric=settings.metric,
            index_type=settings.index_type,
        )
    raise ValueError(f"Unsupported vector store provider: {settings.provider!r}")
