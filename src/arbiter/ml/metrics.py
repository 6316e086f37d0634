# Copyright (c) Syntropy Systems
"""Candidate evaluation metrics.

All rate-based metrics flag the top ``max(1, round(rate * n))`` rows by
score. Every metric lives on a [0, 1] scale, higher is better.
"""
from __future__ import annotations

import numpy as np

from arbiter.models.bakeoff import Algorithm, CandidateMetrics
from arbiter.models.scoring import LabelMetrics

STABILITY_FOLDS = 3

_EXPLAINABILITY = {
    Algorithm.LOG_REG: 1.0,
    Algorithm.DECISION_TREE: 1.0,
    Algorithm.GRADIENT_BOOSTED: 0.9,
    Algorithm.RANDOM_FOREST: 0.8,
    Algorithm.EXTRA_TREES: 0.8,
}


def _top_k_order(scores: np.ndarray) -> np.ndarray:
    # Stable so equal scores keep row order
    return np.argsort(-scores, kind="stable")


def _flag_count(n: int, review_rate: float) -> int:
    return min(n, max(1, int(round(review_rate * n))))


def pr_auc(y_true: np.ndarray, scores: np.ndarray) -> float:
    """Area under the precision-recall curve by the trapezoidal rule."""
    y_true = np.asarray(y_true)
    total_positives = int(y_true.sum())
    if y_true.size == 0 or total_positives == 0:
        return 0.0

    labels = y_true[_top_k_order(np.asarray(scores, dtype=float))]
    tp = np.cumsum(labels == 1)
    fp = np.cumsum(labels != 1)
    precision = np.concatenate([[1.0], tp / (tp + fp)])
    recall = np.concatenate([[0.0], tp / total_positives])

    delta = np.diff(recall)
    area = float(np.sum(((precision[1:] + precision[:-1]) / 2) * delta))
    return max(0.0, min(1.0, area))


def recall_at_review_rate(
    y_true: np.ndarray, scores: np.ndarray, review_rate: float
) -> float:
    """Share of all positives found in the flagged top rows."""
    y_true = np.asarray(y_true)
    total_positives = int(y_true.sum())
    if y_true.size == 0 or total_positives == 0:
        return 0.0
    k = _flag_count(y_true.size, review_rate)
    flagged = y_true[_top_k_order(np.asarray(scores, dtype=float))[:k]]
    return float(flagged.sum()) / total_positives


def precision_at_review_rate(
    y_true: np.ndarray, scores: np.ndarray, review_rate: float
) -> float:
    """Share of flagged top rows that are positive."""
    y_true = np.asarray(y_true)
    if y_true.size == 0:
        return 0.0
    k = _flag_count(y_true.size, review_rate)
    flagged = y_true[_top_k_order(np.asarray(scores, dtype=float))[:k]]
    return float(flagged.sum()) / k


def f1(precision: float, recall: float) -> float:
    """Harmonic mean of precision and recall."""
    if precision + recall == 0:
        return 0.0
    return 2 * precision * recall / (precision + recall)


def stability(recall_values: list[float]) -> float:
    """One minus the population standard deviation of fold recalls."""
    if len(recall_values) < 2:
        return 1.0
    return max(0.0, min(1.0, 1.0 - float(np.std(recall_values))))


def explainability_score(algorithm: Algorithm | str) -> float:
    """Heuristic explainability of an algorithm family."""
    try:
        return _EXPLAINABILITY[Algorithm(algorithm)]
    except ValueError:
        return 0.5


def compute_all_metrics(
    y_true: np.ndarray,
    scores: np.ndarray,
    review_rate: float,
    algorithm: Algorithm | str,
) -> CandidateMetrics:
    """Compute every rubric metric for one candidate's predictions.

    Stability is the spread of recall@RR over contiguous folds that contain
    at least one positive.
    """
    y_true = np.asarray(y_true)
    scores = np.asarray(scores, dtype=float)
    n = y_true.size

    recall = recall_at_review_rate(y_true, scores, review_rate)
    precision = precision_at_review_rate(y_true, scores, review_rate)

    fold_recalls: list[float] = []
    fold_size = n // STABILITY_FOLDS
    if fold_size > 0:
        for fold in range(STABILITY_FOLDS):
            start = fold * fold_size
            end = n if fold == STABILITY_FOLDS - 1 else start + fold_size
            fold_y = y_true[start:end]
            if fold_y.sum() > 0:
                fold_recalls.append(
                    recall_at_review_rate(fold_y, scores[start:end], review_rate)
                )

    return CandidateMetrics(
        pr_auc=pr_auc(y_true, scores),
        recall_at_review_rate=recall,
        precision_at_review_rate=precision,
        f1=f1(precision, recall),
        stability=stability(fold_recalls),
        explainability=explainability_score(algorithm),
    )


def classification_metrics(y_true: np.ndarray, y_pred: np.ndarray) -> LabelMetrics:
    """Precision, recall and F1 of hard predictions, rounded to 4 places."""
    y_true = np.asarray(y_true).astype(bool)
    y_pred = np.asarray(y_pred).astype(bool)
    tp = int(np.sum(y_pred & y_true))
    fp = int(np.sum(y_pred & ~y_true))
    fn = int(np.sum(~y_pred & y_true))

    precision = tp / (tp + fp) if tp + fp > 0 else 0.0
    recall = tp / (tp + fn) if tp + fn > 0 else 0.0
    return LabelMetrics(
        precision=round(precision, 4),
        recall=round(recall, 4),
        f1=round(f1(precision, recall), 4),
    )
