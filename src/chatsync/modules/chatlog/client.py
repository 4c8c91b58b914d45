"""Async HTTP client for the upstream chatlog API."""

from __future__ import annotations

from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

import httpx

from chatsync.core.logging import Logger
from chatsync.modules.chatlog.errors import (
    ChatlogDecodeError,
    ChatlogRequestError,
    ChatlogRetryableError,
)
from chatsync.modules.chatlog.models import ChatRecord, ChatRoom, TimeRange

__all__ = [
    "ChatlogClient",
    "LogSource",
    "COUNT_PATH",
    "CHATLOG_PATH",
    "CHATROOM_PATH",
]

COUNT_PATH = "/api/v1/chatlog/count"
CHATLOG_PATH = "/api/v1/chatlog"
CHATROOM_PATH = "/api/v1/chatroom"

_DEFAULT_TIMEOUT = 30.0


@runtime_checkable
class LogSource(Protocol):
    """Operations the sync pipeline needs from the chat-log source."""

    async def count(self, talker: str, time_range: TimeRange) -> int:
        """Return the number of records for ``talker`` within the window."""

    async def fetch_page(
        self,
        talker: str,
        time_range: TimeRange,
        *,
        limit: int,
        offset: int,
    ) -> Sequence[ChatRecord]:
        """Return one page of records in source order."""

    async def lookup_room(self, keyword: str) -> ChatRoom | None:
        """Resolve a talker or keyword to a room, or ``None`` if unknown."""


class ChatlogClient(LogSource):
    """``httpx.AsyncClient`` wrapper speaking the chatlog JSON API."""

    def __init__(
        self,
        *,
        base_url: str,
        logger: Logger,
        timeout: float = _DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.logger = logger
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
        )

    async def __aenter__(self) -> "ChatlogClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------#
    # Endpoints
    # ------------------------------------------------------------------#
    async def count(self, talker: str, time_range: TimeRange) -> int:
        payload = await self._get_json(
            COUNT_PATH,
            params={"talker": talker, "time": time_range.render()},
        )
        if not isinstance(payload, Mapping) or "count" not in payload:
            raise ChatlogDecodeError(
                "Count response is missing the 'count' field.",
                endpoint=COUNT_PATH,
            )
        try:
            return int(payload["count"] or 0)
        except (TypeError, ValueError) as exc:
            raise ChatlogDecodeError(
                f"Count response is not an integer: {payload['count']!r}",
                endpoint=COUNT_PATH,
            ) from exc

    async def fetch_page(
        self,
        talker: str,
        time_range: TimeRange,
        *,
        limit: int,
        offset: int,
    ) -> list[ChatRecord]:
        payload = await self._get_json(
            CHATLOG_PATH,
            params={
                "talker": talker,
                "time": time_range.render(),
                "limit": limit,
                "offset": offset,
                "format": "json",
            },
        )
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise ChatlogDecodeError(
                "Chatlog response must be a JSON array.",
                endpoint=CHATLOG_PATH,
            )
        try:
            return [
                ChatRecord.from_mapping(item)
                for item in payload
                if isinstance(item, Mapping)
            ]
        except (TypeError, ValueError) as exc:
            raise ChatlogDecodeError(
                f"Malformed chatlog record: {exc}",
                endpoint=CHATLOG_PATH,
            ) from exc

    async def lookup_room(self, keyword: str) -> ChatRoom | None:
        payload = await self._get_json(
            CHATROOM_PATH,
            params={"keyword": keyword, "format": "json"},
        )
        items: Any = None
        if isinstance(payload, Mapping):
            items = payload.get("items")
        if not items:
            return None
        first = items[0]
        if not isinstance(first, Mapping):
            raise ChatlogDecodeError(
                "Chatroom items must be JSON objects.",
                endpoint=CHATROOM_PATH,
            )
        return ChatRoom.from_mapping(first)

    # ------------------------------------------------------------------#
    # Internal helpers
    # ------------------------------------------------------------------#
    async def _get_json(
        self,
        path: str,
        *,
        params: Mapping[str, Any],
    ) -> Any:
        try:
            response = await self._client.get(path, params=dict(params))
        except httpx.TimeoutException as exc:
            raise ChatlogRetryableError(
                f"Timed out calling {path}",
                endpoint=path,
            ) from exc
        except httpx.TransportError as exc:
            raise ChatlogRetryableError(
                f"Transport failure calling {path}: {exc}",
                endpoint=path,
            ) from exc

        status = response.status_code
        if status == 429 or status >= 500:
            raise ChatlogRetryableError(
                f"{path} returned HTTP {status}",
                endpoint=path,
                status_code=status,
            )
        if status >= 400:
            raise ChatlogRequestError(
                f"{path} returned HTTP {status}: {response.text[:200]}",
                endpoint=path,
                status_code=status,
            )

        self.logger.debug(
            "chatlog-request",
            endpoint=path,
            status_code=status,
            params=dict(params),
        )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ChatlogDecodeError(
                f"{path} returned invalid JSON",
                endpoint=path,
                status_code=status,
            ) from exc
