"""Embedding providers and their error types."""

from __future__ import annotations

from .errors import (
    EmbeddingProviderConfigurationError,
    EmbeddingProviderDimMismatchError,
    EmbeddingProviderError,
    EmbeddingProviderRateLimitError,
    EmbeddingProviderRequestError,
    EmbeddingProviderRetryExceededError,
    EmbeddingProviderRetryableError,
)
from .providers import (
    EmbedRequestOptions,
    EmbeddingMatrix,
    EmbeddingProviderCaps,
    EmbeddingsProvider,
    ProviderRegistry,
    create_default_provider_registry,
)

__all__ = [
    "EmbedRequestOptions",
    "EmbeddingMatrix",
    "EmbeddingProviderCaps",
    "EmbeddingProviderConfigurationError",
    "EmbeddingProviderDimMismatchError",
    "EmbeddingProviderError",
    "EmbeddingProviderRateLimitError",
    "EmbeddingProviderRequestError",
    "EmbeddingProviderRetryExceededError",
    "EmbeddingProviderRetryableError",
    "EmbeddingsProvider",
    "ProviderRegistry",
    "create_default_provider_registry",
]
