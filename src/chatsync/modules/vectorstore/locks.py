"""Inter-process lock files guarding vector store mutations."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from pathlib import Path

from chatsync.modules.vectorstore.base import VectorStoreError

__all__ = [
    "VectorStoreLockError",
    "VectorStoreLockTimeoutError",
    "FileLock",
    "build_lock_path",
]


class VectorStoreLockError(VectorStoreError):
    """Base error type for vector store locking failures."""


class VectorStoreLockTimeoutError(VectorStoreLockError):
    """Raised when acquiring a vector store lock times out."""


def _pid_is_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


@dataclass(slots=True)
class FileLock:
    """Lock file holding the owner's pid, with timeout semantics.

    A lock file whose recorded pid no longer exists is treated as stale and
    removed, so a crashed writer cannot block the store forever.
    """

    path: Path
    timeout: float = 30.0
    poll_interval: float = 0.05
    _handle: int | None = field(init=False, default=None, repr=False)

    def acquire(self) -> None:
        """Acquire the lock, waiting up to ``timeout`` seconds."""

        if self._handle is not None:
            return

        deadline = time.monotonic() + max(self.timeout, 0.0)
        self.path.parent.mkdir(parents=True, exist_ok=True)

        while True:
            try:
                handle = os.open(
                    self.path,
                    os.O_CREAT | os.O_EXCL | os.O_WRONLY,
                )
                os.write(handle, str(os.getpid()).encode("ascii"))
                self._handle = handle
                return
            except FileExistsError:
                if self._break_if_stale():
                    continue
                if time.monotonic() >= deadline:
                    raise VectorStoreLockTimeoutError(
                        f"Timed out acquiring vector store lock at {self.path}"
                    ) from None
                time.sleep(self.poll_interval)
            except OSError as exc:  # pragma: no cover - surfaced at runtime
                raise VectorStoreLockError(
                    f"Failed acquiring vector store lock at {self.path}: {exc}"
                ) from exc

    def release(self) -> None:
        """Release the lock if held."""

        handle = self._handle
        if handle is None:
            return

        try:
            os.close(handle)
        finally:
            self._handle = None
            try:
                self.path.unlink()
            except FileNotFoundError:  # pragma: no cover - best effort cleanup
                pass
            except OSError as exc:  # pragma: no cover - surfaced at runtime
                raise VectorStoreLockError(
                    f"Failed removing vector store lock at {self.path}: {exc}"
                ) from exc

    def _break_if_stale(self) -> bool:
        try:
            raw = self.path.read_text(encoding="ascii").strip()
        except FileNotFoundError:
            return True
        except (OSError, UnicodeDecodeError):
            return False
        # An empty file belongs to a writer between open and write.
        if not raw.isdigit() or _pid_is_alive(int(raw)):
            return False
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        return True

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def build_lock_path(target: Path, *, suffix: str = ".lock") -> Path:
    """Return the lock file path for ``target``."""

    return target.with_name(f"{target.name}{suffix}")
