# Copyright (c) Syntropy Systems
"""Reconciliation: combine per-category results into one decision per case."""

from __future__ import annotations

from itertools import groupby
from typing import TYPE_CHECKING, Optional

from casewise.ledger import get_results
from casewise.models.config import DEFAULT_THRESHOLD, weight_warnings
from casewise.models.outcome import ReconciledDecision

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Iterable, Mapping, Sequence

    from casewise.models.db import ResultRecord


def check_weights(weights: Mapping[str, float]) -> list[str]:
    """Configuration warnings for `weights`; an empty list when they sum to 1.0."""
    return weight_warnings(weights)


def reconcile_case(
    case_id: str,
    results: Sequence[ResultRecord],
    weights: Mapping[str, float],
    threshold: float = DEFAULT_THRESHOLD,
    experiment_id: Optional[str] = None,
) -> ReconciledDecision:
    """
    Combine the results of one case.

    - no determinate category: unknown, no confidence
    - one determinate category: returned unchanged
    - two or more: weighted sum of confidences compared with the threshold;
      unknown when any of them lacks a confidence

    Pure: the same results, weights and threshold always give the same
    decision.
    """
    if experiment_id is None and results:
        experiment_id = results[0].experiment_id

    categories = [r.category for r in results]
    if len(set(categories)) != len(categories):
        msg = f"Case {case_id} has more than one result per category"
        raise ValueError(msg)

    determinate = sorted((r for r in results if r.is_determinate), key=lambda r: r.category)

    if not determinate:
        return ReconciledDecision(experiment_id=experiment_id, case_id=case_id)

    if len(determinate) == 1:
        only = determinate[0]
        return ReconciledDecision(
            experiment_id=experiment_id,
            case_id=case_id,
            combined_detected=only.detected,
            combined_confidence=only.confidence,
            contributing_categories=(only.category,),
        )

    missing = [r.category for r in determinate if r.category not in weights]
    if missing:
        msg = f"No weight configured for categories: {', '.join(missing)}"
        raise ValueError(msg)

    contributing = tuple(r.category for r in determinate)
    if any(r.confidence is None for r in determinate):
        return ReconciledDecision(
            experiment_id=experiment_id,
            case_id=case_id,
            contributing_categories=contributing,
        )

    combined = 0.0
    for result in determinate:
        combined += weights[result.category] * result.confidence

    return ReconciledDecision(
        experiment_id=experiment_id,
        case_id=case_id,
        combined_detected=combined >= threshold,
        combined_confidence=combined,
        contributing_categories=contributing,
    )


def reconcile_results(
    results: Iterable[ResultRecord],
    weights: Mapping[str, float],
    threshold: float = DEFAULT_THRESHOLD,
) -> list[ReconciledDecision]:
    """Reconcile every case in `results`, ordered by case_id."""
    ordered = sorted(results, key=lambda r: (r.case_id, r.category))
    return [
        reconcile_case(case_id, list(group), weights, threshold)
        for case_id, group in groupby(ordered, key=lambda r: r.case_id)
    ]


def reconcile_experiment(
    conn: sqlite3.Connection,
    experiment_id: str,
    weights: Mapping[str, float],
    threshold: float = DEFAULT_THRESHOLD,
) -> list[ReconciledDecision]:
    """Recompute the decisions of an experiment from its ledger."""
    return reconcile_results(get_results(conn, experiment_id), weights, threshold)


def summarize_decisions(decisions: Iterable[ReconciledDecision]) -> dict[str, int]:
    """Count decisions by outcome."""
    summary = {"cases": 0, "detected": 0, "not_detected": 0, "unknown": 0, "blended": 0}
    for decision in decisions:
        summary["cases"] += 1
        if decision.combined_detected is None:
            summary["unknown"] += 1
        elif decision.combined_detected:
            summary["detected"] += 1
        else:
            summary["not_detected"] += 1
        if len(decision.contributing_categories) > 1:
            summary["blended"] += 1
    return summary
