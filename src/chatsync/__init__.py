"""Top-level package for :mod:`chatsync`.

The package exposes version metadata so the CLI can report the installed
build.

Example:
    >>> from chatsync import __version__
    >>> __version__.split(".")[0]
    '0'
"""

from importlib import metadata

try:
    __version__ = metadata.version("chatsync")
except metadata.PackageNotFoundError:  # pragma: no cover - fallback for source checkouts
    __version__ = "0.0.0"

__all__ = ["__version__"]
