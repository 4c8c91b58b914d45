"""Workspace path helpers for :mod:`chatsync`."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

__all__ = [
    "WorkspacePaths",
    "resolve_workspace",
]

CONFIG_FILENAME = "chatsync.toml"
STATE_DB_FILENAME = "state.sqlite3"


@dataclass(frozen=True, slots=True)
class WorkspacePaths:
    """Resolved locations for a workspace instance.

    Example:
        >>> from pathlib import Path
        >>> paths = WorkspacePaths.under(Path("/tmp/chatsync"))
        >>> paths.state_db.name
        'state.sqlite3'
    """

    workspace: Path
    config_file: Path
    logs_dir: Path
    state_db: Path
    vectors_dir: Path

    @classmethod
    def under(cls, workspace: Path) -> "WorkspacePaths":
        """Return the standard layout rooted at ``workspace``."""

        return cls(
            workspace=workspace,
            config_file=workspace / CONFIG_FILENAME,
            logs_dir=workspace / "logs",
            state_db=workspace / STATE_DB_FILENAME,
            vectors_dir=workspace / "vectors",
        )

    def iter_dirs(self) -> Iterable[Path]:
        """Yield every directory managed within the workspace."""

        yield from (self.workspace, self.logs_dir, self.vectors_dir)

    def ensure_directories(self) -> None:
        """Create the workspace directories if they are missing."""

        for directory in self.iter_dirs():
            directory.mkdir(parents=True, exist_ok=True)


def resolve_workspace(
    *,
    workspace_override: Path | None = None,
    env_override: Path | None = None,
) -> WorkspacePaths:
    """Resolve canonical workspace locations.

    Args:
        workspace_override: Optional override provided by CLI flags.
        env_override: Optional override from ``CHATSYNC_WORKSPACE``.

    Returns:
        Resolved workspace paths after precedence rules are applied.

    Raises:
        ValueError: If the resolved workspace points to a regular file.
    """

    base = workspace_override or env_override or Path.home() / ".chatsync"
    raw = Path(base).expanduser()
    if not raw.is_absolute():
        raw = Path.cwd() / raw
    workspace = raw.resolve(strict=False)

    if workspace.exists() and workspace.is_file():
        raise ValueError(f"Workspace file path not allowed: {workspace}")

    return WorkspacePaths.under(workspace)
