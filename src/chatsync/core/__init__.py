"""Core utilities shared across :mod:`chatsync` modules.

The core namespace provides configuration loading, logging setup, and
workspace path resolution so feature modules stay free of bootstrap code.
"""

from __future__ import annotations

from .config import AppConfig, load_config
from .logging import Logger, configure_logging, get_logger
from .paths import WorkspacePaths, resolve_workspace

__all__ = [
    "AppConfig",
    "Logger",
    "configure_logging",
    "get_logger",
    "load_config",
    "WorkspacePaths",
    "resolve_workspace",
]
