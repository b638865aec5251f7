# Copyright (c) Syntropy Systems
"""Resume lock: at most one live process works on an experiment at a time."""

from __future__ import annotations

import logging
import os
import socket
import time
from contextlib import contextmanager
from enum import Enum
from typing import TYPE_CHECKING, Optional

from casewise.db import begin_immediate, utcnow
from casewise.errors import ContentionError
from casewise.models.db import LockRecord

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Generator

logger = logging.getLogger(__name__)


class LockStatus(str, Enum):
    """Outcome of a lock acquisition attempt."""

    ACQUIRED = "acquired"
    ALREADY_HELD = "already_held"


def is_process_alive(pid: int) -> bool:
    """Check whether a process with this pid exists on this host."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    except OSError:
        return False
    return True


def get_lock(conn: sqlite3.Connection, experiment_id: str) -> Optional[LockRecord]:
    """Get the current lock for an experiment, if any."""
    row = conn.execute(
        "SELECT * FROM resume_locks WHERE experiment_id = ?",
        (experiment_id,),
    ).fetchone()

    if row is None:
        return None

    return LockRecord.model_validate(dict(row))


def _is_stale(lock: LockRecord, hostname: str) -> bool:
    # Liveness can only be checked for processes on this host
    if lock.hostname != hostname:
        return False
    return not is_process_alive(lock.holder_pid)


def acquire_lock(
    conn: sqlite3.Connection,
    experiment_id: str,
    pid: Optional[int] = None,
    hostname: Optional[str] = None,
) -> LockStatus:
    """
    Atomically take the resume lock for an experiment.

    A lock left behind by a process that is no longer running on this host
    is reclaimed. Any live holder, including the calling process, means
    ALREADY_HELD.
    """
    pid = os.getpid() if pid is None else pid
    hostname = socket.gethostname() if hostname is None else hostname

    try:
        begin_immediate(conn)
        existing = get_lock(conn, experiment_id)

        if existing is not None:
            if not _is_stale(existing, hostname):
                conn.execute("COMMIT")
                return LockStatus.ALREADY_HELD

            logger.warning(
                "Reclaiming stale resume lock for %s (pid %d no longer running)",
                experiment_id,
                existing.holder_pid,
            )
            conn.execute(
                "DELETE FROM resume_locks WHERE experiment_id = ?",
                (experiment_id,),
            )

        conn.execute(
            """
            INSERT INTO resume_locks (experiment_id, holder_pid, hostname, acquired_at)
            VALUES (?, ?, ?, ?)
            """,
            (experiment_id, pid, hostname, utcnow()),
        )
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise

    logger.debug("Resume lock acquired for %s (pid %d)", experiment_id, pid)
    return LockStatus.ACQUIRED


def release_lock(
    conn: sqlite3.Connection,
    experiment_id: str,
    pid: Optional[int] = None,
    hostname: Optional[str] = None,
) -> bool:
    """
    Release the lock if held by `pid` on `hostname` (default: this process).

    Returns True if a lock was released.
    """
    pid = os.getpid() if pid is None else pid
    hostname = socket.gethostname() if hostname is None else hostname
    cursor = conn.execute(
        "DELETE FROM resume_locks WHERE experiment_id = ? AND holder_pid = ? AND hostname = ?",
        (experiment_id, pid, hostname),
    )
    released = cursor.rowcount == 1
    if released:
        logger.debug("Resume lock released for %s", experiment_id)
    return released


def acquire_or_raise(
    conn: sqlite3.Connection,
    experiment_id: str,
    wait_seconds: float = 0.0,
    poll_interval: float = 0.5,
) -> None:
    """Acquire the lock, waiting up to `wait_seconds`, else raise ContentionError."""
    deadline = time.monotonic() + wait_seconds
    while True:
        if acquire_lock(conn, experiment_id) is LockStatus.ACQUIRED:
            return
        if time.monotonic() >= deadline:
            break
        time.sleep(poll_interval)

    holder = get_lock(conn, experiment_id)
    detail = f" by pid {holder.holder_pid} on {holder.hostname}" if holder else ""
    msg = f"Resume lock is held{detail}; another process is running this experiment"
    raise ContentionError(msg, experiment_id=experiment_id, stage="lock")


@contextmanager
def resume_lock(
    conn: sqlite3.Connection,
    experiment_id: str,
    wait_seconds: float = 0.0,
) -> Generator[None, None, None]:
    """Hold the resume lock for the duration of the block."""
    acquire_or_raise(conn, experiment_id, wait_seconds=wait_seconds)
    try:
        yield
    finally:
        release_lock(conn, experiment_id)
