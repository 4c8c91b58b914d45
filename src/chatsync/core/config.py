"""Configuration models and loaders for :mod:`chatsync`."""

from __future__ import annotations

from collections.abc import Mapping as MappingABC
from enum import StrEnum
from pathlib import Path
from typing import Any, Mapping

import tomllib
import tomlkit
from pydantic import BaseModel, Field, field_validator, model_validator

from chatsync.resources import get_resource

ENV_PREFIX = "CHATSYNC_"

# Environment variable -> dotted config key.
_ENV_KEYS: Mapping[str, str] = {
    "CHATSYNC_WORKSPACE": "workspace.root",
    "CHATSYNC_LOG_LEVEL": "log_level",
    "CHATSYNC_CHATLOG_URL": "chatlog.base_url",
    "CHATSYNC_EMBEDDING_PROVIDER": "embedding.provider",
    "CHATSYNC_EMBEDDING_MODEL": "embedding.model",
    "CHATSYNC_CHECKPOINT_POLICY": "sync.checkpoint_policy",
}


class CheckpointPolicy(StrEnum):
    """How far a run may advance ``last_seq`` past skipped batches."""

    MAX = "max"
    CONTIGUOUS = "contiguous"


class WorkspaceSettings(BaseModel):
    """Workspace root location."""

    root: Path = Field(
        default_factory=lambda: Path("~/.chatsync"),
        description="Workspace directory holding config, state and vectors.",
    )

    @field_validator("root", mode="after")
    @classmethod
    def _expand(cls, value: Path) -> Path:
        return value.expanduser()


class ChatlogSettings(BaseModel):
    """Upstream chatlog HTTP API connection settings."""

    base_url: str = Field(
        default="http://127.0.0.1:5030",
        description="Base URL of the chatlog HTTP API.",
    )
    timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Per-request timeout in seconds.",
    )

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        stripped = value.strip().rstrip("/")
        if not stripped:
            raise ValueError("chatlog.base_url cannot be empty")
        return stripped


class EmbeddingSettings(BaseModel):
    """Embedding provider selection and request limits."""

    provider: str = Field(
        default="siliconflow",
        description="Registered embedding provider key.",
    )
    model: str = Field(
        default="BAAI/bge-m3",
        description="Embedding model name passed to the provider.",
    )
    max_batch_size: int = Field(
        default=32,
        ge=1,
        description="Maximum texts per embedding request.",
    )
    timeout: float = Field(
        default=60.0,
        gt=0.0,
        description="Per-request timeout in seconds.",
    )
    base_url: str | None = Field(
        default=None,
        description="Override the provider's API base URL.",
    )
    api_key_env: str | None = Field(
        default=None,
        description="Environment variable holding the provider API key.",
    )

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("embedding.provider cannot be empty")
        return normalized


class VectorStoreSettings(BaseModel):
    """Vector store backend settings."""

    provider: str = Field(default="faiss")
    metric: str = Field(default="cosine")
    index_type: str = Field(default="Flat")


class SyncSettings(BaseModel):
    """Tuning knobs for synchronization runs."""

    page_size: int = Field(default=200, ge=1)
    batch_size: int = Field(default=200, ge=1)
    concurrency: int = Field(
        default=4,
        ge=1,
        description="In-flight page fetches and batches per run.",
    )
    page_retries: int = Field(default=3, ge=0)
    page_backoff: float = Field(default=1.0, ge=0.0)
    batch_retries: int = Field(default=2, ge=0)
    batch_backoff: float = Field(default=2.0, ge=0.0)
    processed_ttl_seconds: int = Field(
        default=86_400,
        ge=1,
        description="Retention of dedup entries in seconds.",
    )
    run_lease_seconds: int = Field(
        default=1800,
        ge=1,
        description="Age in seconds after which an unrenewed run lease is abandoned.",
    )
    call_timeout: float = Field(
        default=120.0,
        gt=0.0,
        description="Upper bound in seconds for each external call attempt.",
    )
    checkpoint_policy: CheckpointPolicy = Field(default=CheckpointPolicy.MAX)


class AutoSyncSettings(BaseModel):
    """Periodic incremental sync scheduling."""

    enabled: bool = Field(default=False)
    interval_seconds: float = Field(default=600.0, gt=0.0)


class AppConfig(BaseModel):
    """Root configuration for the :mod:`chatsync` application."""

    workspace_settings: WorkspaceSettings = Field(
        default_factory=WorkspaceSettings,
        alias="workspace",
    )
    log_level: str = Field(
        default="INFO",
        description="Default logging level for the application runtime.",
    )
    chatlog: ChatlogSettings = Field(default_factory=ChatlogSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    vectorstore: VectorStoreSettings = Field(
        default_factory=VectorStoreSettings
    )
    sync: SyncSettings = Field(default_factory=SyncSettings)
    autosync: AutoSyncSettings = Field(default_factory=AutoSyncSettings)

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
        "populate_by_name": True,
    }

    @model_validator(mode="after")
    def _post_process(self) -> "AppConfig":
        object.__setattr__(self, "log_level", self.log_level.upper())
        return self

    @property
    def workspace(self) -> Path:
        """Return the configured workspace root path."""

        return self.workspace_settings.root


DEFAULTS_RESOURCE_NAME = "chatsync.defaults.toml"


def read_packaged_defaults_text() -> str:
    """Return the raw packaged defaults TOML content."""

    return get_resource(DEFAULTS_RESOURCE_NAME).read_text(encoding="utf-8")


def load_packaged_defaults() -> dict[str, Any]:
    """Load the packaged defaults as a plain dictionary.

    Example:
        >>> load_packaged_defaults()["sync"]["page_size"]
        200
    """

    return tomllib.loads(read_packaged_defaults_text())


def read_user_config(path: Path) -> dict[str, Any]:
    """Return the parsed user config at ``path`` (empty when missing).

    Raises:
        ValueError: If the file is not valid TOML.
    """

    if not path.exists():
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"Invalid TOML in {path}: {exc}") from exc


def env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Translate ``CHATSYNC_*`` environment variables into a config layer.

    Example:
        >>> env_overrides({"CHATSYNC_LOG_LEVEL": "debug"})
        {'log_level': 'debug'}
    """

    layer: dict[str, Any] = {}
    for name, dotted in _ENV_KEYS.items():
        value = environ.get(name)
        if value is None or not value.strip():
            continue
        target = layer
        *parents, leaf = dotted.split(".")
        for parent in parents:
            target = target.setdefault(parent, {})
        target[leaf] = value.strip()
    return layer


def _deep_merge(
    base: Mapping[str, Any],
    overlay: Mapping[str, Any],
) -> dict[str, Any]:
    """Recursively merge ``overlay`` into ``base`` returning a new dict."""

    merged: dict[str, Any] = dict(base)
    for key, value in overlay.items():
        if (
            key in merged
            and isinstance(merged[key], MappingABC)
            and isinstance(value, MappingABC)
        ):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(
    *,
    defaults: Mapping[str, Any],
    user_config: Mapping[str, Any] | None = None,
    env_config: Mapping[str, Any] | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
) -> AppConfig:
    """Load configuration according to the precedence stack.

    Precedence is ``cli_overrides > env_config > user_config > defaults``;
    nested tables merge key by key.

    Raises:
        pydantic.ValidationError: If the merged payload is invalid.
    """

    stack = dict(defaults)
    for layer in (user_config, env_config, cli_overrides):
        if layer:
            stack = _deep_merge(stack, layer)
    return AppConfig.model_validate(stack)


def render_user_config(config: AppConfig) -> str:
    """Render a commented ``chatsync.toml`` for users to customize."""

    document = tomlkit.document()
    document.add(tomlkit.comment("Generated by chatsync init"))
    document.add(
        tomlkit.comment(
            "Precedence: CLI flags > env vars > chatsync.toml > defaults"
        )
    )
    document.add(tomlkit.comment("Environment overrides:"))
    for name in _ENV_KEYS:
        document.add(tomlkit.comment(f"  {name}"))
    document.add(tomlkit.nl())

    document["log_level"] = config.log_level

    workspace_table = tomlkit.table()
    workspace_table["root"] = str(config.workspace)
    document["workspace"] = workspace_table

    sections: Mapping[str, BaseModel] = {
        "chatlog": config.chatlog,
        "embedding": config.embedding,
        "vectorstore": config.vectorstore,
        "sync": config.sync,
        "autosync": config.autosync,
    }
    for name, settings in sections.items():
        table = tomlkit.table()
        for key, value in settings.model_dump(mode="json").items():
            if value is None:
                continue
            table[key] = value
        document[name] = table

    return tomlkit.dumps(document)


__all__ = [
    "AppConfig",
    "AutoSyncSettings",
    "ChatlogSettings",
    "CheckpointPolicy",
    "DEFAULTS_RESOURCE_NAME",
    "ENV_PREFIX",
    "EmbeddingSettings",
    "SyncSettings",
    "VectorStoreSettings",
    "WorkspaceSettings",
    "env_overrides",
    "load_config",
    "load_packaged_defaults",
    "read_packaged_defaults_text",
    "read_user_config",
    "render_user_config",
]
