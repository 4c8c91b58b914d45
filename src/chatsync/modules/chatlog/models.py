"""Typed records returned by the chatlog HTTP API."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Mapping

__all__ = [
    "ChatRecord",
    "ChatRoom",
    "ChatRoomMember",
    "QuotedReference",
    "TimeRange",
]

_TIME_RANGE_PATTERN = re.compile(
    r"^(?P<start>\d{4}-\d{2}-\d{2})(?:~(?P<end>\d{4}-\d{2}-\d{2}))?$"
)


def _parse_int(value: Any, *, field: str, default: int | None = None) -> int:
    if value is None:
        if default is not None:
            return default
        raise ValueError(f"{field} is required")
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            if default is not None:
                return default
            raise ValueError(f"{field} cannot be empty")
        try:
            return int(stripped)
        except ValueError as exc:
            message = f"{field} must be an integer (got {value!r})"
            raise ValueError(message) from exc
    raise TypeError(f"{field} must be integer-compatible (got {type(value)!r})")


def _optional_string(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


@dataclass(frozen=True, slots=True)
class QuotedReference:
    """Message quoted by a reply."""

    sender: str
    sender_name: str
    type: int
    sub_type: int
    content: str

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "QuotedReference":
        return cls(
            sender=_optional_string(payload.get("sender")),
            sender_name=_optional_string(payload.get("senderName")),
            type=_parse_int(payload.get("type"), field="refer.type", default=0),
            sub_type=_parse_int(
                payload.get("subType"),
                field="refer.subType",
                default=0,
            ),
            content=_optional_string(payload.get("content")),
        )


@dataclass(frozen=True, slots=True)
class ChatRecord:
    """One upstream chat message.

    ``seq`` is unique per talker only; it is the ordering and dedup key.
    ``time`` keeps the upstream representation untouched.
    """

    seq: int
    time: str
    talker: str
    talker_name: str
    sender: str
    sender_name: str
    type: int
    sub_type: int
    content: str
    is_chat_room: bool = False
    is_self: bool = False
    quoted: QuotedReference | None = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "ChatRecord":
        """Build a record from a chatlog JSON object.

        Raises:
            ValueError: If ``seq`` is missing or not an integer.
        """

        quoted: QuotedReference | None = None
        contents = payload.get("contents")
        if isinstance(contents, Mapping):
            refer = contents.get("refer")
            if isinstance(refer, Mapping):
                quoted = QuotedReference.from_mapping(refer)

        return cls(
            seq=_parse_int(payload.get("seq"), field="seq"),
            time=_optional_string(payload.get("time")),
            talker=_optional_string(payload.get("talker")),
            talker_name=_optional_string(payload.get("talkerName")),
            sender=_optional_string(payload.get("sender")),
            sender_name=_optional_string(payload.get("senderName")),
            type=_parse_int(payload.get("type"), field="type", default=0),
            sub_type=_parse_int(
                payload.get("subType"),
                field="subType",
                default=0,
            ),
            content=_optional_string(payload.get("content")),
            is_chat_room=bool(payload.get("isChatRoom") or False),
            is_self=bool(payload.get("isSelf") or False),
            quoted=quoted,
        )


@dataclass(frozen=True, slots=True)
class ChatRoomMember:
    user_name: str
    display_name: str


@dataclass(frozen=True, slots=True)
class ChatRoom:
    """Room or contact resolved through the lookup endpoint."""

    name: str
    nick_name: str
    owner: str = ""
    remark: str = ""
    members: tuple[ChatRoomMember, ...] = ()

    @property
    def display_name(self) -> str:
        """Return the best human-readable name for the room."""

        return self.nick_name or self.remark or self.name

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "ChatRoom":
        users = payload.get("users") or ()
        members = tuple(
            ChatRoomMember(
                user_name=_optional_string(user.get("userName")),
                display_name=_optional_string(user.get("displayName")),
            )
            for user in users
            if isinstance(user, Mapping)
        )
        return cls(
            name=_optional_string(payload.get("name")),
            nick_name=_optional_string(payload.get("nickName")),
            owner=_optional_string(payload.get("owner")),
            remark=_optional_string(payload.get("remark")),
            members=members,
        )


@dataclass(frozen=True, slots=True)
class TimeRange:
    """Inclusive date window in the chatlog ``time`` query format.

    Example:
        >>> TimeRange.parse("2025-01-01~2025-01-31").render()
        '2025-01-01~2025-01-31'
        >>> TimeRange.parse("2025-01-01").render()
        '2025-01-01'
    """

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(
                f"time range end {self.end} precedes start {self.start}"
            )

    @classmethod
    def parse(cls, value: "str | TimeRange") -> "TimeRange":
        """Parse ``YYYY-MM-DD`` or ``YYYY-MM-DD~YYYY-MM-DD``.

        Raises:
            ValueError: If ``value`` is malformed or not a real date.
        """

        if isinstance(value, TimeRange):
            return value
        text = (value or "").strip()
        match = _TIME_RANGE_PATTERN.match(text)
        if match is None:
            raise ValueError(
                "time range must be YYYY-MM-DD or YYYY-MM-DD~YYYY-MM-DD "
                f"(got {value!r})"
            )
        try:
            start = date.fromisoformat(match.group("start"))
            end_text = match.group("end")
            end = date.fromisoformat(end_text) if end_text else start
        except ValueError as exc:
            raise ValueError(f"invalid date in time range {value!r}") from exc
        return cls(start=start, end=end)

    @classmethod
    def between(cls, start: date, end: date) -> "TimeRange":
        return cls(start=start, end=end)

    def render(self) -> str:
        if self.start == self.end:
            return self.start.isoformat()
        return f"{self.start.isoformat()}~{self.end.isoformat()}"

    def __str__(self) -> str:
        return self.render()
