"""Helpers for the ``chatsync init`` command."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

from chatsync.core.config import (
    AppConfig,
    load_config,
    load_packaged_defaults,
    render_user_config,
)
from chatsync.core.paths import resolve_workspace


def init_workspace(
    *,
    workspace: Path,
    force: bool = False,
    log_level: str | None = None,
    env_overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Create the workspace layout and seed ``chatsync.toml``.

    An existing ``chatsync.toml`` is left untouched unless ``force`` is set.

    Example:
        >>> from pathlib import Path
        >>> config = init_workspace(workspace=Path("/tmp/chatsync-example"))
        >>> str(config.workspace).endswith("chatsync-example")
        True
    """

    paths = resolve_workspace(workspace_override=workspace)
    paths.ensure_directories()

    cli_overrides: dict[str, object] = {"workspace": {"root": str(paths.workspace)}}
    if log_level:
        cli_overrides["log_level"] = log_level

    config = load_config(
        defaults=load_packaged_defaults(),
        env_config=env_overrides,
        cli_overrides=cli_overrides,
    )

    if force or not paths.config_file.exists():
        paths.config_file.write_text(render_user_config(config), encoding="utf-8")

    return config


__all__ = ["init_workspace"]
