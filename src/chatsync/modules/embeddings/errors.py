"""Typed error hierarchy for embedding providers."""

from __future__ import annotations

from dataclasses import dataclass

__all__ = [
    "EmbeddingProviderError",
    "EmbeddingProviderConfigurationError",
    "EmbeddingProviderRequestError",
    "EmbeddingProviderRetryableError",
    "EmbeddingProviderRateLimitError",
    "EmbeddingProviderRetryExceededError",
    "EmbeddingProviderDimMismatchError",
]


@dataclass(slots=True)
class EmbeddingProviderError(RuntimeError):
    """Base error raised by embedding providers."""

    message: str
    provider: str
    model: str
    request_id: str | None = None
    status_code: int | None = None

    def __post_init__(self) -> None:
        RuntimeError.__init__(self, self.message)


@dataclass(slots=True)
class EmbeddingProviderConfigurationError(EmbeddingProviderError):
    """Raised when the provider configuration is invalid."""


@dataclass(slots=True)
class EmbeddingProviderRequestError(EmbeddingProviderError):
    """Raised for non-retryable request errors."""


@dataclass(slots=True)
class EmbeddingProviderRetryableError(EmbeddingProviderError):
    """Raised for retryable transport or server-side errors."""


@dataclass(slots=True)
class EmbeddingProviderRateLimitError(EmbeddingProviderRetryableError):
    """Raised when the provider keeps returning rate limiting responses."""


@dataclass(slots=True)
class EmbeddingProviderRetryExceededError(EmbeddingProviderError):
    """Raised when retry attempts are exhausted."""

    attempts: int = 0


@dataclass(slots=True)
class EmbeddingProviderDimMismatchError(EmbeddingProviderError):
    """Raised when a response mixes vectors of different dimensions."""

    expected: int | None = None
    actual: int | None = None
