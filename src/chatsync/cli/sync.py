"""Typer commands for chat-log synchronization."""

from __future__ import annotations

import asyncio
import json
import os
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import TypeVar

import typer

from chatsync.core.config import (
    AppConfig,
    env_overrides,
    load_config,
    load_packaged_defaults,
    read_user_config,
)
from chatsync.core.logging import Logger, configure_logging, get_logger
from chatsync.core.paths import WorkspacePaths, resolve_workspace
from chatsync.modules.chatlog import ChatlogClient
from chatsync.modules.embeddings import EmbeddingProviderError
from chatsync.modules.embeddings.providers import (
    ProviderRegistryError,
    create_default_provider_registry,
)
from chatsync.modules.sync import (
    AutoSyncRegistry,
    AutoSyncScheduler,
    ChatlogVectorService,
    CheckpointStore,
    DeleteSummary,
    EmbeddingBatcher,
    IncrementalSyncService,
    ProgressReporter,
    ProgressStage,
    ProgressStore,
    SyncCheckpoint,
    SyncError,
    SyncOrchestrator,
    SyncOutcome,
)
from chatsync.modules.vectorstore import VectorStoreError, create_vector_store

T = TypeVar("T")

# Failures surfaced to the user as a red message and exit code 1.
_SERVICE_ERRORS: tuple[type[Exception], ...] = (
    SyncError,
    EmbeddingProviderError,
    ProviderRegistryError,
    VectorStoreError,
    ValueError,
)


@dataclass(slots=True)
class SyncCLIContext:
    """Shared context carried across sync commands."""

    paths: WorkspacePaths
    config: AppConfig
    logger: Logger


@dataclass(slots=True)
class SyncRuntime:
    """Services wired for one command invocation."""

    checkpoints: CheckpointStore
    service: ChatlogVectorService
    registry: AutoSyncRegistry
    progress: ProgressStore
    incremental: IncrementalSyncService | None = None
    scheduler: AutoSyncScheduler | None = None


class ConsoleReporter:
    """Echo stage transitions and forward every event to ``inner``."""

    def __init__(self, inner: ProgressReporter | None = None) -> None:
        self.inner = inner
        self._stage: ProgressStage | None = None

    def report(
        self,
        stage: ProgressStage,
        percentage: float,
        total: int,
        processed: int,
        error_message: str | None = None,
    ) -> None:
        if stage is not self._stage:
            self._stage = stage
            line = f"  [{percentage:5.1f}%] {stage.description}"
            if total:
                line += f" ({processed}/{total})"
            color = typer.colors.RED if stage is ProgressStage.FAILED else None
            typer.secho(line, fg=color)
        if self.inner is not None:
            self.inner.report(
                stage,
                percentage,
                total,
                processed,
                error_message=error_message,
            )


# ----------------------------------------------------------------------
# Context helpers
# ----------------------------------------------------------------------
def _resolve_workspace_override(workspace: Path | None) -> WorkspacePaths:
    env_workspace = os.environ.get("CHATSYNC_WORKSPACE")
    env_override = Path(env_workspace).expanduser() if env_workspace else None
    return resolve_workspace(
        workspace_override=workspace,
        env_override=env_override,
    )


def build_context(
    *,
    workspace: Path | None,
    log_level: str | None,
    chatlog_url: str | None = None,
) -> SyncCLIContext:
    """Resolve workspace paths, load layered config and configure logging."""

    paths = _resolve_workspace_override(workspace)
    cli_overrides: dict[str, object] = {"workspace": {"root": str(paths.workspace)}}
    if log_level:
        cli_overrides["log_level"] = log_level
    if chatlog_url:
        cli_overrides["chatlog"] = {"base_url": chatlog_url}

    config = load_config(
        defaults=load_packaged_defaults(),
        user_config=read_user_config(paths.config_file),
        env_config=env_overrides(os.environ),
        cli_overrides=cli_overrides,
    )
    paths.ensure_directories()
    configure_logging(level=config.log_level, log_dir=paths.logs_dir)
    return SyncCLIContext(
        paths=paths,
        config=config,
        logger=get_logger(__name__, command="sync"),
    )


@dataclass(slots=True)
class SyncCLIOptions:
    """Global options captured by the app callback; resolved on first use."""

    workspace: Path | None = None
    log_level: str | None = None
    chatlog_url: str | None = None
    resolved: SyncCLIContext | None = None


def _require_context(ctx: typer.Context) -> SyncCLIContext:
    obj = getattr(ctx, "obj", None)
    if isinstance(obj, SyncCLIContext):
        return obj
    if not isinstance(obj, SyncCLIOptions):
        typer.secho(
            "Internal error: sync context not initialized.",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)
    if obj.resolved is None:
        try:
            obj.resolved = build_context(
                workspace=obj.workspace,
                log_level=obj.log_level,
                chatlog_url=obj.chatlog_url,
            )
        except ValueError as exc:
            typer.secho(f"Configuration error: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1) from exc
    return obj.resolved


def _handle_service_failure(
    action: str,
    error: Exception,
    *,
    logger: Logger,
) -> None:
    typer.secho(f"{action.capitalize()} failed: {error}", fg=typer.colors.RED)
    logger.error(
        "sync-action-failed",
        action=action,
        error=str(error),
        error_type=error.__class__.__name__,
    )
    raise typer.Exit(code=1) from error


def _invoke(
    context: SyncCLIContext,
    action: str,
    work: Callable[[], Awaitable[T]],
) -> T:
    try:
        return asyncio.run(work())
    except _SERVICE_ERRORS as exc:
        _handle_service_failure(action, exc, logger=context.logger)
        raise  # pragma: no cover - _handle_service_failure always exits


@asynccontextmanager
async def open_runtime(
    context: SyncCLIContext,
    *,
    with_sync: bool = True,
) -> AsyncIterator[SyncRuntime]:
    """Wire chat-log client, provider, vector store and sync services.

    The embedding provider is only built when ``with_sync`` is set so
    read-only commands work without provider credentials.
    """

    config = context.config
    paths = context.paths
    logger = context.logger

    async with ChatlogClient(
        base_url=config.chatlog.base_url,
        timeout=config.chatlog.timeout,
        logger=logger.bind(component="chatlog-client"),
    ) as source:
        checkpoints = CheckpointStore(
            db_path=paths.state_db,
            source=source,
            logger=logger.bind(component="checkpoint-store"),
            processed_ttl=timedelta(seconds=config.sync.processed_ttl_seconds),
            run_lease_ttl=timedelta(seconds=config.sync.run_lease_seconds),
        )
        store = create_vector_store(
            config.vectorstore,
            directory=paths.vectors_dir,
            logger=logger.bind(component="vector-store"),
        )
        registry = AutoSyncRegistry(db_path=paths.state_db)
        progress = ProgressStore(logger=logger.bind(component="progress-store"))
        runtime = SyncRuntime(
            checkpoints=checkpoints,
            service=ChatlogVectorService(
                checkpoints=checkpoints,
                store=store,
                registry=registry,
                logger=logger.bind(component="vector-service"),
            ),
            registry=registry,
            progress=progress,
        )

        if with_sync:
            embedding = config.embedding
            provider = create_default_provider_registry().create(
                embedding.provider,
                logger=logger.bind(component="embedding-provider"),
                config={
                    "timeout": embedding.timeout,
                    "base_url": embedding.base_url,
                    "api_key_env": embedding.api_key_env,
                },
            )
            orchestrator = SyncOrchestrator(
                source=source,
                batcher=EmbeddingBatcher(
                    provider=provider,
                    model=embedding.model,
                    max_batch_size=embedding.max_batch_size,
                    timeout=embedding.timeout,
                    logger=logger.bind(component="embedding-batcher"),
                ),
                store=store,
                checkpoints=checkpoints,
                settings=config.sync,
                logger=logger.bind(component="sync-orchestrator"),
            )
            runtime.incremental = IncrementalSyncService(
                orchestrator=orchestrator,
                checkpoints=checkpoints,
                progress=progress,
                logger=logger.bind(component="incremental-sync"),
            )
            runtime.scheduler = AutoSyncScheduler(
                service=runtime.incremental,
                registry=registry,
                interval=config.autosync.interval_seconds,
                logger=logger.bind(component="autosync"),
            )

        yield runtime


def _emit_outcome(outcome: SyncOutcome) -> None:
    color = typer.colors.YELLOW if outcome.partial else typer.colors.GREEN
    headline = "Sync finished with skipped work" if outcome.partial else "Sync complete"
    typer.secho(headline, fg=color, bold=True)
    typer.echo(f"  talker: {outcome.talker}")
    typer.echo(f"  window: {outcome.time_range}")
    typer.echo(f"  embedded: {outcome.processed_count}/{outcome.total_count}")
    if outcome.last_seq is not None:
        typer.echo(f"  last seq: {outcome.last_seq}")
    if outcome.skipped_pages:
        typer.echo(f"  skipped pages: {outcome.skipped_pages}")
    if outcome.skipped_batches:
        typer.echo(
            f"  skipped batches: {outcome.skipped_batches} "
            f"({len(outcome.skipped_seqs)} records)"
        )


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------
def sync_command(
    ctx: typer.Context,
    talker: str = typer.Argument(..., help="Talker (conversation) identifier."),
    time_range: str | None = typer.Argument(
        None,
        metavar="[TIME]",
        help=(
            "YYYY-MM-DD or YYYY-MM-DD~YYYY-MM-DD. Required for the first sync; "
            "later runs resume from the checkpoint."
        ),
    ),
) -> None:
    """Sync a talker: first sync over TIME, incremental afterwards."""

    context = _require_context(ctx)
    task_id = uuid.uuid4().hex

    async def _work() -> SyncOutcome:
        async with open_runtime(context) as runtime:
            reporter = ConsoleReporter(runtime.progress.reporter(task_id))
            return await runtime.incremental.sync_with_progress(
                talker,
                time_range,
                task_id=task_id,
                reporter=reporter,
            )

    outcome = _invoke(context, "sync", _work)
    _emit_outcome(outcome)
    context.logger.info("sync-command-complete", talker=outcome.talker, task_id=task_id)


def incremental_command(
    ctx: typer.Context,
    talker: str = typer.Argument(..., help="Talker with a completed first sync."),
) -> None:
    """Resume a talker from its checkpoint."""

    context = _require_context(ctx)

    async def _work() -> SyncOutcome:
        async with open_runtime(context) as runtime:
            return await runtime.incremental.sync_incremental(
                talker,
                reporter=ConsoleReporter(),
            )

    _emit_outcome(_invoke(context, "incremental sync", _work))


def list_command(
    ctx: typer.Context,
    talker: str | None = typer.Argument(
        None,
        metavar="[TALKER]",
        help="Optional talker to show (defaults to all).",
    ),
    json_output: bool = typer.Option(False, "--json", help="Emit JSON."),
) -> None:
    """List synced talkers and their checkpoints."""

    context = _require_context(ctx)

    async def _work() -> list[SyncCheckpoint]:
        async with open_runtime(context, with_sync=False) as runtime:
            return await runtime.service.list_synced(talker)

    checkpoints = _invoke(context, "list", _work)
    if json_output:
        typer.echo(
            json.dumps(
                [checkpoint.to_mapping() for checkpoint in checkpoints],
                indent=2,
                ensure_ascii=False,
            )
        )
        return
    if not checkpoints:
        typer.echo("No synced talkers.")
        return
    for checkpoint in checkpoints:
        typer.echo(
            f"{checkpoint.talker} ({checkpoint.talker_name}): "
            f"last seq {checkpoint.last_seq}, "
            f"last sync {checkpoint.last_sync_time or 'never'}"
        )


def delete_command(
    ctx: typer.Context,
    talker: str = typer.Argument(..., help="Talker whose data is removed."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation."),
) -> None:
    """Delete a talker's vectors, checkpoint, dedup set and enrolment."""

    context = _require_context(ctx)
    if not yes:
        typer.confirm(f"Delete all synced data for {talker!r}?", abort=True)

    async def _work() -> DeleteSummary:
        async with open_runtime(context, with_sync=False) as runtime:
            return await runtime.service.delete_talker(talker)

    summary = _invoke(context, "delete", _work)
    typer.secho(f"Deleted {summary.talker}", fg=typer.colors.GREEN)
    typer.echo(f"  vectors removed: {summary.vectors_removed}")
    typer.echo(f"  checkpoint removed: {'yes' if summary.checkpoint_removed else 'no'}")
    typer.echo(f"  auto-sync removed: {'yes' if summary.autosync_removed else 'no'}")


# ----------------------------------------------------------------------
# Auto-sync sub-commands
# ----------------------------------------------------------------------
_autosync_app = typer.Typer(
    name="autosync",
    help="Manage talkers enrolled for periodic incremental sync.",
    no_args_is_help=True,
)


@_autosync_app.command("add", help="Enrol a talker for auto-sync.")
def autosync_add(
    ctx: typer.Context,
    talker: str = typer.Argument(...),
) -> None:
    context = _require_context(ctx)
    registry = AutoSyncRegistry(db_path=context.paths.state_db)
    try:
        added = registry.add(talker)
    except _SERVICE_ERRORS as exc:
        _handle_service_failure("autosync add", exc, logger=context.logger)
        return
    message = "Enrolled" if added else "Already enrolled"
    typer.secho(f"{message}: {talker.strip()}", fg=typer.colors.GREEN)


@_autosync_app.command("remove", help="Remove a talker from auto-sync.")
def autosync_remove(
    ctx: typer.Context,
    talker: str = typer.Argument(...),
) -> None:
    context = _require_context(ctx)
    registry = AutoSyncRegistry(db_path=context.paths.state_db)
    try:
        removed = registry.remove(talker)
    except _SERVICE_ERRORS as exc:
        _handle_service_failure("autosync remove", exc, logger=context.logger)
        return
    if removed:
        typer.secho(f"Removed: {talker.strip()}", fg=typer.colors.GREEN)
    else:
        typer.secho(f"Not enrolled: {talker.strip()}", fg=typer.colors.YELLOW)


@_autosync_app.command("list", help="List enrolled talkers.")
def autosync_list(ctx: typer.Context) -> None:
    context = _require_context(ctx)
    registry = AutoSyncRegistry(db_path=context.paths.state_db)
    try:
        entries = registry.list()
    except _SERVICE_ERRORS as exc:
        _handle_service_failure("autosync list", exc, logger=context.logger)
        return
    state = "enabled" if context.config.autosync.enabled else "disabled"
    typer.echo(
        f"Auto-sync scheduling is {state} in config; "
        f"interval {context.config.autosync.interval_seconds:g}s"
    )
    if not entries:
        typer.echo("No talkers enrolled.")
        return
    for entry in entries:
        flag = "" if entry.enabled else " (paused)"
        typer.echo(f"  - {entry.talker}{flag} since {entry.added_at}")


@_autosync_app.command("run", help="Run incremental sync for enrolled talkers.")
def autosync_run(
    ctx: typer.Context,
    once: bool = typer.Option(
        False,
        "--once",
        help="Run a single pass instead of looping every interval.",
    ),
) -> None:
    context = _require_context(ctx)

    async def _work() -> dict[str, SyncOutcome | Exception]:
        async with open_runtime(context) as runtime:
            if once:
                return await runtime.scheduler.run_once()
            await runtime.scheduler.run_forever()
            return {}

    try:
        results = _invoke(context, "autosync run", _work)
    except KeyboardInterrupt:
        typer.echo("Auto-sync stopped.")
        return
    for talker, result in sorted(results.items()):
        if isinstance(result, Exception):
            typer.secho(f"  - {talker}: failed ({result})", fg=typer.colors.RED)
        else:
            typer.echo(
                f"  - {talker}: embedded {result.processed_count}/{result.total_count}"
            )


def register_sync_commands(app: typer.Typer) -> None:
    """Attach the sync commands and the ``autosync`` group to ``app``."""

    app.command("sync", help="Sync a talker (first or incremental).")(sync_command)
    app.command("incremental", help="Resume a talker from its checkpoint.")(
        incremental_command
    )
    app.command("list", help="List synced talkers.")(list_command)
    app.command("delete", help="Delete a talker's synced data.")(delete_command)
    app.add_typer(_autosync_app, name="autosync")


__all__ = [
    "ConsoleReporter",
    "SyncCLIContext",
    "SyncCLIOptions",
    "SyncRuntime",
    "build_context",
    "open_runtime",
    "register_sync_commands",
]
