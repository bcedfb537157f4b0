"""PID-stamped lock file shared by every long-running command.

The lock file holds the decimal PID of its holder. A lock whose holder is no
longer alive is stale and may be reclaimed by anyone.
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from types import TracebackType

from .exceptions import LockError

logger = logging.getLogger(__name__)

# An empty or garbled lock younger than this may belong to a writer
# that has not finished stamping its PID.
UNREADABLE_GRACE_SECONDS = 10.0


def pid_alive(pid: int) -> bool:
    """Signal-0 liveness probe."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else.
        return True
    return True


class ProcessLock:
    """Exclusive lock held for the lifetime of a ``with`` block."""

    def __init__(self, path: Path, pid: int) -> None:
        self.path = path
        self.pid = pid
        self._held = True

    @classmethod
    def acquire(cls, path: Path) -> ProcessLock:
        """Take the lock or fail loudly.

        Raises:
            LockError: If another live process holds the lock
        """
        lock = cls.try_acquire(path)
        if lock is None:
            holder = read_holder(path)
            msg = f"Another retro process (pid {holder}) is running. Lock file: {path}"
            raise LockError(msg, details={"path": str(path), "pid": holder})
        return lock

    @classmethod
    def try_acquire(cls, path: Path) -> ProcessLock | None:
        """Take the lock if free or stale, otherwise return None.

        The PID is written to a private file first and hard-linked into
        place, so the lock file never exists without its holder's PID.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        pid = os.getpid()
        staging = path.with_name(f".{path.name}.{pid}")
        staging.write_text(f"{pid}\n", encoding="utf-8")

        try:
            for _ in range(2):
                try:
                    os.link(staging, path)
                except FileExistsError:
                    if _is_held(path):
                        return None
                    logger.debug("Reclaiming stale lock %s (pid %s)", path, read_holder(path))
                    try:
                        path.unlink()
                    except FileNotFoundError:
                        pass
                    continue
                return cls(path, pid)
        finally:
            staging.unlink(missing_ok=True)

        # Lost a reclaim race to another process.
        return None

    def release(self) -> None:
        """Remove the lock file if this process still owns it."""
        if not self._held:
            return
        self._held = False
        if read_holder(self.path) == self.pid:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass

    @property
    def held(self) -> bool:
        return self._held

    def __enter__(self) -> ProcessLock:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

    def __del__(self) -> None:
        self.release()


def _is_held(path: Path) -> bool:
    """A live holder, or an unreadable lock still inside its grace period."""
    holder = read_holder(path)
    if holder is not None:
        return pid_alive(holder)
    try:
        age = time.time() - path.stat().st_mtime
    except FileNotFoundError:
        return False
    return age < UNREADABLE_GRACE_SECONDS


def read_holder(path: Path) -> int | None:
    """PID recorded in the lock file, or None when missing or unreadable."""
    try:
        text = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    try:
        return int(text)
    except ValueError:
        return None
