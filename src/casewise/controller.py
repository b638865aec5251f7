# Copyright (c) Syntropy Systems
"""Execution controller: resumable, exactly-once classification runs."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

from casewise.checksum import ChecksumStatus, compute_checksum, verify_checksum
from casewise.classifier import coerce_outcome
from casewise.errors import (
    CasewiseError,
    ConfigError,
    ExperimentStateError,
    IntegrityError,
    SourceFormatError,
    SystemicClassifierError,
    TransientClassifierError,
)
from casewise.experiments import (
    complete_experiment,
    create_experiment,
    fail_experiment,
    get_experiment,
    start_experiment,
    update_progress,
)
from casewise.ledger import WriteStatus, get_completed_pairs, get_results, record_result
from casewise.lock import LockStatus, acquire_lock, acquire_or_raise, release_lock
from casewise.models.outcome import ClassifierOutcome, RunOutcome
from casewise.reconcile import reconcile_results, summarize_decisions
from casewise.retry import RetryPolicy
from casewise.source import get_source_file, load_source, query_sources

if TYPE_CHECKING:
    import sqlite3

    from casewise.classifier import Classifier
    from casewise.models.base import JSONValue
    from casewise.models.config import ExperimentConfig
    from casewise.models.db import ExperimentRecord, SourceRecord

logger = logging.getLogger(__name__)

ProgressCallback = Callable[["ExperimentRecord"], None]


def required_pairs(
    records: list[SourceRecord],
    categories: Optional[list[str]] = None,
    max_items: Optional[int] = None,
) -> list[SourceRecord]:
    """
    The work an experiment must do, in a stable order.

    Every record with non-blank text in the selected categories, ordered by
    (case_id, category) and capped at max_items.
    """
    wanted = set(categories) if categories else None
    work = sorted(
        (r for r in records if r.has_text and (wanted is None or r.category in wanted)),
        key=lambda r: r.key,
    )
    if max_items is not None:
        work = work[:max_items]
    return work


class ExperimentController:
    """Run (or resume) one experiment against a classifier.

    All state lives in the database behind `conn`; nothing is carried over
    from a previous invocation except what the ledger and experiment record
    hold.
    """

    conn: sqlite3.Connection
    classifier: Classifier
    retry_policy: RetryPolicy
    progress_every: Optional[int]
    lock_wait_seconds: float
    on_progress: Optional[ProgressCallback]

    def __init__(
        self,
        conn: sqlite3.Connection,
        classifier: Classifier,
        retry_policy: Optional[RetryPolicy] = None,
        progress_every: Optional[int] = None,
        lock_wait_seconds: float = 0.0,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.conn = conn
        self.classifier = classifier
        self.retry_policy = retry_policy or RetryPolicy()
        self.progress_every = progress_every
        self.lock_wait_seconds = lock_wait_seconds
        self.on_progress = on_progress

    # --- Preparation ---

    def _load_dataset(self, config: ExperimentConfig, experiment_id: Optional[str]) -> list[SourceRecord]:
        path = Path(config.data_source)
        if path.exists():
            try:
                load_source(self.conn, path, data_source=config.data_source)
            except IntegrityError as e:
                raise IntegrityError(e.message, experiment_id=experiment_id, stage="checksum") from e
        elif get_source_file(self.conn, config.data_source) is None:
            msg = f"Data source {config.data_source} is neither loaded nor on disk"
            raise SourceFormatError(msg, experiment_id=experiment_id, stage="load")
        else:
            logger.info("Data file %s not found; using the loaded copy", config.data_source)

        return query_sources(self.conn, data_source=config.data_source)

    def _resolve(self, config: ExperimentConfig) -> Optional[ExperimentRecord]:
        if config.experiment_id is None:
            return None

        existing = get_experiment(self.conn, config.experiment_id)
        if existing is None:
            return None

        if not config.resume:
            msg = "Experiment already exists; set resume: true to continue it"
            raise ExperimentStateError(msg, experiment_id=existing.id, stage="resolve")

        if existing.config_fingerprint != config.fingerprint():
            msg = "Configuration differs from the one the experiment was started with"
            raise ConfigError(msg, experiment_id=existing.id, stage="resolve")

        return existing

    def _fail_on_mismatch(self, experiment_id: str, error: IntegrityError) -> None:
        """Record an integrity failure, but only if no live process owns the experiment."""
        if acquire_lock(self.conn, experiment_id) is not LockStatus.ACQUIRED:
            return
        try:
            experiment = get_experiment(self.conn, experiment_id)
            if experiment is not None and experiment.status != "completed":
                fail_experiment(self.conn, experiment_id, stage="checksum", reason=error.message)
        finally:
            release_lock(self.conn, experiment_id)

    def _verify(self, experiment: ExperimentRecord, records: list[SourceRecord]) -> None:
        status = verify_checksum(experiment.dataset_checksum, records)
        if status is ChecksumStatus.MISMATCH:
            error = IntegrityError(
                "Source data changed since the experiment started; refusing to resume",
                experiment_id=experiment.id,
                stage="checksum",
            )
            self._fail_on_mismatch(experiment.id, error)
            raise error
        if status is ChecksumStatus.ABSENT:
            logger.warning("Experiment %s has no stored dataset checksum", experiment.id)

    # --- Classification ---

    def _attempt(self, text: str, category: str) -> ClassifierOutcome:
        outcome = coerce_outcome(self.classifier.classify(text, category))
        if outcome.error is not None:
            raise TransientClassifierError(outcome.error, stage="classify")
        return outcome

    def _classify(self, record: SourceRecord) -> tuple[ClassifierOutcome, int, float]:
        """Classify one record; returns (outcome, attempts, seconds). Never raises for per-item errors."""
        started = time.monotonic()
        try:
            result = self.retry_policy.call(self._attempt, record.text or "", record.category)
        except SystemicClassifierError:
            raise
        except Exception as e:  # noqa: BLE001
            logger.exception("Classifier failed on case %s/%s", record.case_id, record.category)
            outcome = ClassifierOutcome.failure(f"{type(e).__name__}: {e}")
            return outcome, 1, time.monotonic() - started

        elapsed = time.monotonic() - started
        if result.ok and result.value is not None:
            return result.value, result.attempts, elapsed

        logger.warning(
            "Giving up on case %s/%s after %d attempt(s): %s",
            record.case_id,
            record.category,
            result.attempts,
            result.error,
        )
        return ClassifierOutcome.failure(str(result.error)), result.attempts, elapsed

    def _report(self, experiment_id: str) -> None:
        experiment = update_progress(self.conn, experiment_id)
        logger.info(
            "Progress %s: %d/%d",
            experiment_id,
            experiment.completed_items,
            experiment.total_items,
        )
        if self.on_progress is not None:
            self.on_progress(experiment)

    def _decisions(self, config: ExperimentConfig, experiment_id: str) -> dict[str, int]:
        results = get_results(self.conn, experiment_id)
        try:
            decisions = reconcile_results(results, config.weights, config.threshold)
        except ValueError as e:
            logger.warning("Skipping reconciliation for %s: %s", experiment_id, e)
            return {}
        return summarize_decisions(decisions)

    # --- Entry point ---

    def run(self, config: ExperimentConfig) -> RunOutcome:  # noqa: PLR0912, PLR0915
        """
        Run or resume the experiment described by `config`.

        Raises IntegrityError (dataset drift), ContentionError (lock held by
        a live process) and SystemicClassifierError (run aborted, experiment
        failed). Per-item classifier errors are recorded, not raised.
        """
        clock_start = time.monotonic()
        progress_every = self.progress_every or config.progress_every

        existing = self._resolve(config)
        experiment_id = existing.id if existing else config.experiment_id
        try:
            records = self._load_dataset(config, experiment_id)
        except IntegrityError as e:
            if existing is not None and existing.status != "completed":
                self._fail_on_mismatch(existing.id, e)
            raise
        work = required_pairs(records, config.categories, config.max_items)

        if existing is not None:
            if existing.status == "completed":
                logger.info("Experiment %s already completed; nothing to do", existing.id)
                return RunOutcome(
                    experiment_id=existing.id,
                    status=existing.status,
                    resumed=True,
                    total_items=existing.total_items,
                    completed_items=existing.completed_items,
                    skipped=existing.completed_items,
                    elapsed_seconds=time.monotonic() - clock_start,
                    decisions=self._decisions(config, existing.id),
                )
            self._verify(existing, records)
            experiment = existing
        else:
            experiment = create_experiment(
                self.conn,
                config,
                dataset_checksum=compute_checksum(records),
                total_items=len(work),
                experiment_id=config.experiment_id,
            )
            logger.info("Created experiment %s (%d items)", experiment.id, len(work))

        experiment_id = experiment.id
        acquire_or_raise(self.conn, experiment_id, wait_seconds=self.lock_wait_seconds)

        processed = inserted = duplicates = errors = successes = 0
        consecutive_failures = 0
        try:
            done = get_completed_pairs(self.conn, experiment_id)
            remaining = [r for r in work if r.key not in done]
            skipped = len(work) - len(remaining)

            start_experiment(
                self.conn,
                experiment_id,
                total_items=len(work),
                reverified=experiment.status == "failed",
            )
            logger.info(
                "%s experiment %s: %d remaining, %d already done",
                "Resuming" if existing else "Starting",
                experiment_id,
                len(remaining),
                skipped,
            )

            for record in remaining:
                outcome, attempts, seconds = self._classify(record)
                status = record_result(
                    self.conn,
                    experiment_id,
                    record.case_id,
                    record.category,
                    outcome,
                    attempts=attempts,
                    response_seconds=seconds,
                )

                processed += 1
                if status is WriteStatus.INSERTED:
                    inserted += 1
                    update_progress(self.conn, experiment_id, delta=1)
                else:
                    duplicates += 1

                if outcome.error is None:
                    successes += 1
                    consecutive_failures = 0
                else:
                    errors += 1
                    consecutive_failures += 1
                    limit = config.max_consecutive_failures
                    if limit is not None and consecutive_failures >= limit:
                        msg = f"{consecutive_failures} consecutive classifier failures; last: {outcome.error}"
                        raise SystemicClassifierError(msg, experiment_id=experiment_id, stage="classify")

                if processed % progress_every == 0:
                    self._report(experiment_id)

            self._report(experiment_id)

            decisions = self._decisions(config, experiment_id)
            summary: dict[str, JSONValue] = {
                "decisions": dict(decisions),
                "errors": errors,
                "processed": processed,
            }
            finished = complete_experiment(self.conn, experiment_id, summary=summary)

        except SystemicClassifierError as e:
            logger.error("Aborting experiment %s: %s", experiment_id, e.message)
            fail_experiment(self.conn, experiment_id, stage="classify", reason=e.message)
            raise SystemicClassifierError(e.message, experiment_id=experiment_id, stage="classify") from e
        except CasewiseError:
            raise
        except Exception as e:
            logger.exception("Experiment %s failed", experiment_id)
            fail_experiment(self.conn, experiment_id, stage="run", reason=f"{type(e).__name__}: {e}")
            raise
        finally:
            release_lock(self.conn, experiment_id)

        elapsed = time.monotonic() - clock_start
        logger.info(
            "Experiment %s completed: %d processed, %d errors in %.1fs",
            experiment_id,
            processed,
            errors,
            elapsed,
        )
        return RunOutcome(
            experiment_id=experiment_id,
            status=finished.status,
            resumed=existing is not None,
            total_items=finished.total_items,
            completed_items=finished.completed_items,
            skipped=skipped,
            processed=processed,
            inserted=inserted,
            duplicates=duplicates,
            errors=errors,
            successes=successes,
            elapsed_seconds=elapsed,
            decisions=decisions,
        )


def run_experiment(
    conn: sqlite3.Connection,
    config: ExperimentConfig,
    classifier: Classifier,
    **kwargs: object,
) -> RunOutcome:
    """Convenience wrapper: build a controller and run `config`."""
    retry_policy = kwargs.pop("retry_policy", None) or RetryPolicy.from_settings(config.retry)
    controller = ExperimentController(conn, classifier, retry_policy=retry_policy, **kwargs)  # type: ignore[arg-type]
    return controller.run(config)
