"""Tests for :mod:`chatsync.core.paths`."""

from __future__ import annotations

from pathlib import Path

import pytest

from chatsync.core.paths import WorkspacePaths, resolve_workspace


def test_resolve_workspace_defaults_to_home_dot_chatsync(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Resolver defaults to ``$HOME/.chatsync`` when overrides are absent."""

    fake_home = Path("/tmp/chatsync-home")
    monkeypatch.setenv("HOME", fake_home.as_posix())
    monkeypatch.setenv("USERPROFILE", fake_home.as_posix())

    paths = resolve_workspace()

    expected = (fake_home / ".chatsync").expanduser().resolve(strict=False)
    assert paths.workspace == expected
    assert paths.config_file == expected / "chatsync.toml"
    assert paths.logs_dir == expected / "logs"
    assert paths.state_db == expected / "state.sqlite3"
    assert paths.vectors_dir == expected / "vectors"


def test_resolve_workspace_prefers_cli_override(tmp_path: Path) -> None:
    """CLI override should take precedence over env and defaults."""

    cli_override = tmp_path / "from-cli"

    paths = resolve_workspace(
        workspace_override=cli_override,
        env_override=tmp_path / "ignored",
    )

    assert paths.workspace == cli_override.resolve(strict=False)


def test_resolve_workspace_uses_env_override_when_cli_missing(
    tmp_path: Path,
) -> None:
    env_override = tmp_path / "from-env"

    paths = resolve_workspace(env_override=env_override)

    assert paths.workspace == env_override.resolve(strict=False)


def test_resolve_workspace_supports_relative_paths(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Relative overrides should resolve from the current working directory."""

    monkeypatch.chdir(tmp_path)
    paths = resolve_workspace(workspace_override=Path("workspaces/relative"))

    expected = (tmp_path / "workspaces/relative").resolve(strict=False)
    assert paths.workspace == expected


def test_resolve_workspace_rejects_file_path(tmp_path: Path) -> None:
    file_path = tmp_path / "workspace-as-file"
    file_path.write_text("not a directory")

    with pytest.raises(ValueError):
        resolve_workspace(workspace_override=file_path)


def test_ensure_directories_creates_layout(tmp_path: Path) -> None:
    paths = WorkspacePaths.under(tmp_path / "workspace")

    paths.ensure_directories()
    paths.ensure_directories()

    assert {path.name for path in paths.iter_dirs()} == {
        "workspace",
        "logs",
        "vectors",
    }
    assert all(path.is_dir() for path in paths.iter_dirs())
    assert not paths.state_db.exists()
