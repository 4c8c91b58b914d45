"""Chatlog source: HTTP client, record models and errors."""

from __future__ import annotations

from .client import ChatlogClient, LogSource
from .errors import (
    ChatlogClientError,
    ChatlogDecodeError,
    ChatlogRequestError,
    ChatlogRetryableError,
)
from .models import (
    ChatRecord,
    ChatRoom,
    ChatRoomMember,
    QuotedReference,
    TimeRange,
)

__all__ = [
    "ChatRecord",
    "ChatRoom",
    "ChatRoomMember",
    "ChatlogClient",
    "ChatlogClientError",
    "ChatlogDecodeError",
    "ChatlogRequestError",
    "ChatlogRetryableError",
    "LogSource",
    "QuotedReference",
    "TimeRange",
]
