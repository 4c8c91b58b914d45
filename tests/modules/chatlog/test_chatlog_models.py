"""Tests for :mod:`chatsync.modules.chatlog.models`."""

from __future__ import annotations

from datetime import date

import pytest

from chatsync.modules.chatlog import ChatRecord, ChatRoom, TimeRange


def test_time_range_parses_single_day_and_span() -> None:
    single = TimeRange.parse(" 2025-03-01 ")
    span = TimeRange.parse("2025-03-01~2025-03-31")

    assert single.start == single.end == date(2025, 3, 1)
    assert span.end == date(2025, 3, 31)
    assert str(span) == "2025-03-01~2025-03-31"
    assert TimeRange.parse(span) is span


@pytest.mark.parametrize(
    "value",
    ["", "2025/03/01", "2025-03-01~", "2025-02-30", "2025-03-02~2025-03-01"],
)
def test_time_range_rejects_bad_values(value: str) -> None:
    with pytest.raises(ValueError):
        TimeRange.parse(value)


def test_record_from_mapping_coerces_fields() -> None:
    record = ChatRecord.from_mapping(
        {
            "seq": "1700000000123",
            "time": "2025-03-01T09:30:00+08:00",
            "talker": "team@chatroom",
            "sender": "u1",
            "type": "49",
            "subType": 57,
            "content": None,
            "contents": {
                "refer": {
                    "senderName": "Bob",
                    "type": 1,
                    "content": "original",
                }
            },
        }
    )

    assert record.seq == 1700000000123
    assert record.type == 49
    assert record.sub_type == 57
    assert record.content == ""
    assert record.talker_name == ""
    assert record.is_self is False
    assert record.quoted is not None
    assert record.quoted.sender_name == "Bob"
    assert record.quoted.content == "original"


def test_record_requires_integer_seq() -> None:
    with pytest.raises(ValueError, match="seq"):
        ChatRecord.from_mapping({"seq": None})
    with pytest.raises(ValueError, match="seq"):
        ChatRecord.from_mapping({"seq": "abc"})


def test_room_display_name_fallbacks() -> None:
    assert ChatRoom(name="id", nick_name="Nick").display_name == "Nick"
    assert ChatRoom(name="id", nick_name="", remark="R").display_name == "R"
    assert ChatRoom(name="id", nick_name="").display_name == "id"
