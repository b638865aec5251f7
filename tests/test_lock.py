# Copyright (c) Syntropy Systems
"""Tests for the resume lock."""

import os
import socket
import sqlite3

import pytest

from casewise.errors import ContentionError
from casewise.lock import (
    LockStatus,
    acquire_lock,
    acquire_or_raise,
    get_lock,
    is_process_alive,
    release_lock,
    resume_lock,
)


class TestIsProcessAlive:
    def test_self(self) -> None:
        assert is_process_alive(os.getpid())

    def test_other_live_process(self, live_pid: int) -> None:
        assert is_process_alive(live_pid)

    def test_exited(self, dead_pid: int) -> None:
        assert not is_process_alive(dead_pid)

    def test_invalid(self) -> None:
        assert not is_process_alive(0)
        assert not is_process_alive(-1)


class TestAcquireLock:
    """Tests for acquiring and releasing the lock."""

    def test_acquire_and_release(self, db_connection: sqlite3.Connection) -> None:
        assert acquire_lock(db_connection, "exp-1") is LockStatus.ACQUIRED

        lock = get_lock(db_connection, "exp-1")
        assert lock is not None
        assert lock.holder_pid == os.getpid()
        assert lock.hostname == socket.gethostname()

        assert release_lock(db_connection, "exp-1")
        assert get_lock(db_connection, "exp-1") is None

    def test_exclusive_within_process(self, db_connection: sqlite3.Connection) -> None:
        """Test the holding process cannot take its own lock a second time."""
        assert acquire_lock(db_connection, "exp-1") is LockStatus.ACQUIRED
        assert acquire_lock(db_connection, "exp-1") is LockStatus.ALREADY_HELD

        assert release_lock(db_connection, "exp-1")
        assert get_lock(db_connection, "exp-1") is None
        assert not release_lock(db_connection, "exp-1")

    def test_held_by_live_process(self, db_connection: sqlite3.Connection, live_pid: int) -> None:
        """Test a live holder keeps the lock."""
        assert acquire_lock(db_connection, "exp-1", pid=live_pid) is LockStatus.ACQUIRED

        assert acquire_lock(db_connection, "exp-1") is LockStatus.ALREADY_HELD
        assert get_lock(db_connection, "exp-1").holder_pid == live_pid

    def test_stale_lock_reclaimed(self, db_connection: sqlite3.Connection, dead_pid: int) -> None:
        """Test a lock left by an exited process on this host is taken over."""
        assert acquire_lock(db_connection, "exp-1", pid=dead_pid) is LockStatus.ACQUIRED

        assert acquire_lock(db_connection, "exp-1") is LockStatus.ACQUIRED
        assert get_lock(db_connection, "exp-1").holder_pid == os.getpid()

    def test_other_host_never_reclaimed(self, db_connection: sqlite3.Connection, dead_pid: int) -> None:
        """Test liveness is not guessed for processes on other hosts."""
        acquire_lock(db_connection, "exp-1", pid=dead_pid, hostname="elsewhere")

        assert acquire_lock(db_connection, "exp-1") is LockStatus.ALREADY_HELD

    def test_release_only_own_lock(self, db_connection: sqlite3.Connection, live_pid: int) -> None:
        acquire_lock(db_connection, "exp-1", pid=live_pid)

        assert not release_lock(db_connection, "exp-1")
        assert get_lock(db_connection, "exp-1") is not None

    def test_release_ignores_same_pid_on_other_host(self, db_connection: sqlite3.Connection) -> None:
        """Test a matching pid on a different host does not release the lock."""
        acquire_lock(db_connection, "exp-1", hostname="elsewhere")

        assert not release_lock(db_connection, "exp-1")
        assert get_lock(db_connection, "exp-1").hostname == "elsewhere"

        assert release_lock(db_connection, "exp-1", hostname="elsewhere")
        assert get_lock(db_connection, "exp-1") is None

    def test_locks_are_per_experiment(self, db_connection: sqlite3.Connection, live_pid: int) -> None:
        acquire_lock(db_connection, "exp-1", pid=live_pid)

        assert acquire_lock(db_connection, "exp-2") is LockStatus.ACQUIRED


class TestAcquireOrRaise:
    """Tests for the raising helpers."""

    def test_contention(self, db_connection: sqlite3.Connection, live_pid: int) -> None:
        acquire_lock(db_connection, "exp-1", pid=live_pid)

        with pytest.raises(ContentionError) as exc_info:
            acquire_or_raise(db_connection, "exp-1")

        assert exc_info.value.stage == "lock"
        assert exc_info.value.experiment_id == "exp-1"
        assert str(live_pid) in exc_info.value.message

    def test_waits_then_acquires(self, db_connection: sqlite3.Connection, live_pid: int) -> None:
        acquire_lock(db_connection, "exp-1", pid=live_pid)

        with pytest.raises(ContentionError):
            acquire_or_raise(db_connection, "exp-1", wait_seconds=0.2, poll_interval=0.05)

        release_lock(db_connection, "exp-1", pid=live_pid)
        acquire_or_raise(db_connection, "exp-1", wait_seconds=0.2, poll_interval=0.05)
        assert get_lock(db_connection, "exp-1").holder_pid == os.getpid()

    def test_context_manager_releases(self, db_connection: sqlite3.Connection) -> None:
        with pytest.raises(RuntimeError), resume_lock(db_connection, "exp-1"):
            assert get_lock(db_connection, "exp-1") is not None
            raise RuntimeError("boom")

        assert get_lock(db_connection, "exp-1") is None
