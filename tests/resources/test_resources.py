"""Tests for :mod:`chatsync.resources`."""

from __future__ import annotations

import pytest

from chatsync.resources import get_resource


def test_get_resource_missing_file_raises() -> None:
    with pytest.raises(FileNotFoundError):
        get_resource("does-not-exist.toml")


def test_defaults_resource_is_packaged() -> None:
    text = get_resource("chatsync.defaults.toml").read_text(encoding="utf-8")

    assert "[sync]" in text
    assert 'checkpoint_policy = "max"' in text
