"""Typed error hierarchy for the chatlog HTTP client."""

from __future__ import annotations

from dataclasses import dataclass

__all__ = [
    "ChatlogClientError",
    "ChatlogDecodeError",
    "ChatlogRequestError",
    "ChatlogRetryableError",
]


@dataclass(slots=True)
class ChatlogClientError(RuntimeError):
    """Base error raised by the chatlog client."""

    message: str
    endpoint: str
    status_code: int | None = None

    def __post_init__(self) -> None:
        RuntimeError.__init__(self, self.message)


@dataclass(slots=True)
class ChatlogRequestError(ChatlogClientError):
    """Raised for non-retryable request errors (4xx other than 429)."""


@dataclass(slots=True)
class ChatlogRetryableError(ChatlogClientError):
    """Raised for timeouts, transport failures, 429 and 5xx responses."""


@dataclass(slots=True)
class ChatlogDecodeError(ChatlogClientError):
    """Raised when a response body does not match the expected shape."""
