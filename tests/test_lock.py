"""Tests for the PID-stamped process lock."""

from __future__ import annotations

import os
import subprocess
import sys
import time
from pathlib import Path

import pytest

from retro.exceptions import LockError
from retro.lock import UNREADABLE_GRACE_SECONDS, ProcessLock, pid_alive, read_holder


def dead_pid() -> int:
    """PID of a process that has already exited and been reaped."""
    proc = subprocess.Popen([sys.executable, "-c", ""])
    proc.wait()
    return proc.pid


class TestPidAlive:
    """Tests for the liveness probe."""

    def test_current_process_is_alive(self) -> None:
        """Own PID is alive."""
        assert pid_alive(os.getpid())

    def test_exited_process_is_dead(self) -> None:
        """A reaped child is not alive."""
        assert not pid_alive(dead_pid())

    def test_non_positive_pid(self) -> None:
        """Zero and negative PIDs are never alive."""
        assert not pid_alive(0)
        assert not pid_alive(-1)


class TestProcessLock:
    """Tests for acquisition, contention and release."""

    def test_acquire_writes_pid(self, tmp_path: Path) -> None:
        """A free lock is taken and stamped with our PID."""
        path = tmp_path / "retro.lock"
        lock = ProcessLock.try_acquire(path)
        assert lock is not None
        assert read_holder(path) == os.getpid()
        lock.release()
        assert not path.exists()

    def test_live_holder_blocks_try_acquire(self, tmp_path: Path) -> None:
        """A lock held by a live process is not taken."""
        path = tmp_path / "retro.lock"
        path.write_text(f"{os.getpid()}\n")
        assert ProcessLock.try_acquire(path) is None
        assert read_holder(path) == os.getpid()

    def test_live_holder_fails_acquire_loudly(self, tmp_path: Path) -> None:
        """Interactive acquisition raises with the holder PID."""
        path = tmp_path / "retro.lock"
        path.write_text(f"{os.getpid()}\n")
        with pytest.raises(LockError) as exc_info:
            ProcessLock.acquire(path)
        assert exc_info.value.details["pid"] == os.getpid()

    def test_second_acquisition_in_same_process_fails(self, tmp_path: Path) -> None:
        """Holding the lock excludes even the same process."""
        path = tmp_path / "retro.lock"
        with ProcessLock.acquire(path):
            assert ProcessLock.try_acquire(path) is None
        assert not path.exists()

    def test_dead_holder_is_reclaimed(self, tmp_path: Path) -> None:
        """A lock left by an exited process is taken over without cleanup."""
        path = tmp_path / "retro.lock"
        path.write_text(f"{dead_pid()}\n")
        lock = ProcessLock.try_acquire(path)
        assert lock is not None
        assert read_holder(path) == os.getpid()
        lock.release()

    def test_old_garbage_lock_is_reclaimed(self, tmp_path: Path) -> None:
        """Unreadable lock contents past the grace period count as stale."""
        path = tmp_path / "retro.lock"
        path.write_text("not a pid")
        old = time.time() - UNREADABLE_GRACE_SECONDS - 60
        os.utime(path, (old, old))
        lock = ProcessLock.try_acquire(path)
        assert lock is not None
        assert read_holder(path) == os.getpid()
        lock.release()

    def test_fresh_empty_lock_is_held(self, tmp_path: Path) -> None:
        """A just-created lock whose PID is not yet written blocks others."""
        path = tmp_path / "retro.lock"
        os.close(os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644))
        assert ProcessLock.try_acquire(path) is None
        assert path.exists()
        with pytest.raises(LockError):
            ProcessLock.acquire(path)

    def test_no_staging_files_left(self, tmp_path: Path) -> None:
        """Only the lock file itself remains while held."""
        path = tmp_path / "retro.lock"
        with ProcessLock.acquire(path):
            assert [p.name for p in tmp_path.iterdir()] == ["retro.lock"]
        assert list(tmp_path.iterdir()) == []

    def test_release_leaves_foreign_lock(self, tmp_path: Path) -> None:
        """Only the owning PID removes the file."""
        path = tmp_path / "retro.lock"
        lock = ProcessLock.acquire(path)
        other = dead_pid()
        path.write_text(f"{other}\n")
        lock.release()
        assert read_holder(path) == other

    def test_context_manager_releases_on_error(self, tmp_path: Path) -> None:
        """The lock is released when the block raises."""
        path = tmp_path / "retro.lock"
        with pytest.raises(RuntimeError), ProcessLock.acquire(path):
            raise RuntimeError("boom")
        assert not path.exists()

    def test_release_is_idempotent(self, tmp_path: Path) -> None:
        """Releasing twice is harmless."""
        lock = ProcessLock.acquire(tmp_path / "retro.lock")
        lock.release()
        lock.release()
        assert not lock.held
