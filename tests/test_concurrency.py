# Copyright (c) Syntropy Systems
"""Concurrency tests for the ledger and the resume lock."""

from __future__ import annotations

import threading
from pathlib import Path

from casewise.db import get_connection
from casewise.experiments import create_experiment
from casewise.ledger import WriteStatus, count_completed, get_results, record_result
from casewise.lock import LockStatus, acquire_lock, get_lock
from casewise.models.outcome import ClassifierOutcome


def _run_threads(target, count: int) -> None:
    threads = [threading.Thread(target=target, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10.0)


class TestConcurrentLedgerWrites:
    """Test writers racing on the same keys."""

    def test_one_write_per_key(self, db_path: Path, make_config) -> None:
        """Verify every key is inserted exactly once however many writers race."""
        conn = get_connection(db_path)
        create_experiment(conn, make_config(), dataset_checksum="abc", total_items=10)
        conn.close()

        keys = [(f"c{n}", "le") for n in range(10)]
        statuses: list[tuple[int, WriteStatus]] = []
        errors: list[str] = []
        lock = threading.Lock()

        def writer(worker: int) -> None:
            conn = get_connection(db_path)
            try:
                for case_id, category in keys:
                    outcome = ClassifierOutcome(detected=True, confidence=worker / 10)
                    status = record_result(conn, "exp-1", case_id, category, outcome)
                    with lock:
                        statuses.append((worker, status))
            except Exception as e:  # noqa: BLE001
                with lock:
                    errors.append(str(e))
            finally:
                conn.close()

        _run_threads(writer, 4)

        assert errors == [], f"Errors occurred: {errors}"
        inserted = [s for s in statuses if s[1] is WriteStatus.INSERTED]
        assert len(inserted) == len(keys)
        assert len(statuses) == 4 * len(keys)

        conn = get_connection(db_path)
        try:
            assert count_completed(conn, "exp-1") == len(keys)
            assert len(get_results(conn, "exp-1")) == len(keys)
        finally:
            conn.close()


class TestConcurrentLockAcquisition:
    """Test processes racing for the resume lock."""

    def test_single_winner(self, db_path: Path) -> None:
        """Verify exactly one contender gets the lock."""
        results: dict[int, LockStatus] = {}
        errors: list[str] = []
        lock = threading.Lock()

        def contender(worker: int) -> None:
            conn = get_connection(db_path)
            try:
                status = acquire_lock(conn, "exp-1", pid=1000 + worker, hostname=f"host-{worker}")
                with lock:
                    results[worker] = status
            except Exception as e:  # noqa: BLE001
                with lock:
                    errors.append(str(e))
            finally:
                conn.close()

        _run_threads(contender, 8)

        assert errors == [], f"Errors occurred: {errors}"
        winners = [w for w, s in results.items() if s is LockStatus.ACQUIRED]
        assert len(winners) == 1

        conn = get_connection(db_path)
        try:
            holder = get_lock(conn, "exp-1")
            assert holder is not None
            assert holder.holder_pid == 1000 + winners[0]
        finally:
            conn.close()
