"""Command-line interface for :mod:`chatsync`.

Example:
    >>> import typer
    >>> from chatsync.cli import create_app
    >>> isinstance(create_app(), typer.Typer)
    True
"""

from __future__ import annotations

import os
from pathlib import Path

import typer

from chatsync.cli.init import init_workspace
from chatsync.cli.sync import SyncCLIOptions, register_sync_commands
from chatsync.core.config import env_overrides
from chatsync.core.logging import configure_logging, get_logger
from chatsync.core.paths import resolve_workspace

_app_help = (
    "Incrementally sync chat logs into a vector store."
    "\n\n"
    "Use `chatsync init` to create a workspace and `chatsync sync TALKER TIME` "
    "for a talker's first sync."
)


def create_app() -> "typer.Typer":
    """Return the Typer application powering the ``chatsync`` CLI."""

    app = typer.Typer(
        help=_app_help,
        no_args_is_help=True,
        rich_markup_mode="rich",
        invoke_without_command=False,
    )

    @app.callback()
    def main_callback(
        ctx: typer.Context,
        workspace: Path | None = typer.Option(
            None,
            "--workspace",
            "-w",
            help="Override the workspace (defaults to CHATSYNC_WORKSPACE or ~/.chatsync).",
        ),
        log_level: str | None = typer.Option(
            None,
            "--log-level",
            "-l",
            help="Override the logging level (DEBUG/INFO/WARNING/ERROR).",
        ),
        chatlog_url: str | None = typer.Option(
            None,
            "--chatlog-url",
            help="Override the chatlog HTTP API base URL.",
        ),
    ) -> None:
        ctx.obj = SyncCLIOptions(
            workspace=workspace,
            log_level=log_level,
            chatlog_url=chatlog_url,
        )

    @app.command(
        "init",
        help="Create a workspace and seed chatsync.toml.",
    )
    def init_command(
        ctx: typer.Context,
        force: bool = typer.Option(
            False,
            "--force",
            help="Overwrite an existing chatsync.toml.",
        ),
    ) -> None:
        options = ctx.obj if isinstance(ctx.obj, SyncCLIOptions) else SyncCLIOptions()
        env_workspace = os.environ.get("CHATSYNC_WORKSPACE")
        try:
            paths = resolve_workspace(
                workspace_override=options.workspace,
                env_override=Path(env_workspace).expanduser() if env_workspace else None,
            )
            config = init_workspace(
                workspace=paths.workspace,
                force=force,
                log_level=options.log_level,
                env_overrides=env_overrides(os.environ),
            )
        except ValueError as exc:
            typer.secho(f"Failed to initialize workspace: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1) from exc

        configure_logging(level=config.log_level, log_dir=paths.logs_dir)
        get_logger(__name__, command="init").info(
            "init-complete",
            workspace=str(config.workspace),
            force=force,
        )

        typer.secho("Workspace initialized", fg=typer.colors.GREEN, bold=True)
        typer.echo(f"  workspace: {config.workspace}")
        typer.echo(f"  config: {paths.config_file}")
        typer.echo(f"  state: {paths.state_db}")
        typer.echo(f"  log level: {config.log_level}")

    register_sync_commands(app)
    return app


__all__ = ["create_app"]
