"""Eligibility rules and record-to-unit mapping."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from chatsync.modules.chatlog.models import ChatRecord, QuotedReference
from chatsync.modules.sync.models import SYNC_TIME_FORMAT, EmbeddingUnit

__all__ = [
    "TEXT_TYPE",
    "APP_MESSAGE_TYPE",
    "QUOTED_REPLY_SUB_TYPE",
    "format_record_time",
    "format_reference",
    "is_eligible",
    "to_embedding_unit",
    "transform_records",
]

TEXT_TYPE = 1
APP_MESSAGE_TYPE = 49
QUOTED_REPLY_SUB_TYPE = 57

# Quotes of these kinds carry readable text.
_QUOTABLE_TYPES = frozenset({TEXT_TYPE, APP_MESSAGE_TYPE})


def is_eligible(record: ChatRecord) -> bool:
    """Return ``True`` for non-empty plain text or quoted-text replies.

    Example:
        >>> from chatsync.modules.chatlog.models import ChatRecord
        >>> base = dict(seq=1, time="", talker="t", talker_name="", sender="",
        ...             sender_name="", content="hi")
        >>> is_eligible(ChatRecord(type=1, sub_type=0, **base))
        True
        >>> is_eligible(ChatRecord(type=49, sub_type=58, **base))
        False
    """

    if not record.content:
        return False
    if record.type == TEXT_TYPE:
        return True
    return (
        record.type == APP_MESSAGE_TYPE
        and record.sub_type == QUOTED_REPLY_SUB_TYPE
    )


def format_record_time(value: str) -> str:
    """Normalize an ISO-8601 timestamp to ``yyyy-MM-dd HH:mm:ss``.

    The wall-clock time in the record's own offset is kept. Unparseable
    values are returned unchanged.

    Example:
        >>> format_record_time("2025-01-01T10:30:00+08:00")
        '2025-01-01 10:30:00'
        >>> format_record_time("yesterday")
        'yesterday'
    """

    text = value.strip()
    if not text:
        return value
    candidate = f"{text[:-1]}+00:00" if text.endswith("Z") else text
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return value
    return parsed.strftime(SYNC_TIME_FORMAT)


def format_reference(reference: QuotedReference) -> str | None:
    """Render a quoted message for metadata, or ``None`` if not textual."""

    if reference.type not in _QUOTABLE_TYPES:
        return None
    content = "".join(reference.content.split())
    return (
        f"sender:{reference.sender}, "
        f"senderName: {reference.sender_name}, "
        f"content: {content}"
    )


def to_embedding_unit(record: ChatRecord) -> EmbeddingUnit:
    """Map an eligible record to an :class:`EmbeddingUnit`."""

    metadata: dict[str, Any] = {
        "seq": record.seq,
        "time": format_record_time(record.time),
        "talker": record.talker,
        "talkerName": record.talker_name,
        "sender": record.sender,
        "senderName": record.sender_name,
        "isChatRoom": 1 if record.is_chat_room else 0,
        "isSelf": 1 if record.is_self else 0,
        "type": record.type,
        "subType": record.sub_type,
    }
    if record.quoted is not None:
        reference = format_reference(record.quoted)
        if reference is not None:
            metadata["refer"] = reference
    return EmbeddingUnit(text=record.content.strip(), metadata=metadata)


def transform_records(records: Iterable[ChatRecord]) -> list[EmbeddingUnit]:
    """Filter ineligible records and map the rest, preserving order.

    Records whose content is only whitespace are dropped as empty.
    """

    units: list[EmbeddingUnit] = []
    for record in records:
        if not is_eligible(record):
            continue
        unit = to_embedding_unit(record)
        if unit.text:
            units.append(unit)
    return units
