# Copyright (c) Syntropy Systems
"""Global and per-row explanations of candidate scores."""
from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass

import numpy as np

from arbiter.ml.metrics import pr_auc
from arbiter.models.scoring import Contribution, ReasonCode

PredictBatch = Callable[[np.ndarray], np.ndarray]

HIGH_CONTRIBUTION = 0.1
MEDIUM_CONTRIBUTION = 0.03
MIN_TRIGGER_CONTRIBUTION = 0.01
MIN_TRIGGER_IMPORTANCE = 0.05


@dataclass(frozen=True)
class ReasonTemplate:
    """Maps feature-name patterns to a named reason code."""

    code: str
    description: str
    patterns: tuple[re.Pattern[str], ...]
    # Binary flag value that triggers the code; None means contribution-driven
    trigger_value: float | None = None


def _patterns(*sources: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(s, re.IGNORECASE) for s in sources)


REASON_TEMPLATES: tuple[ReasonTemplate, ...] = (
    ReasonTemplate(
        "HighAmountVsBaseline",
        "Transaction amount significantly above baseline",
        _patterns(r"amount.*zscore", r"amount.*log", r"^amount$", r"amt.*zscore"),
    ),
    ReasonTemplate(
        "OutOfHours",
        "Wire initiated outside normal business hours",
        _patterns(r"isoutofhours", r"out.?of.?hours"),
        trigger_value=1.0,
    ),
    ReasonTemplate(
        "WeekendTransaction",
        "Transaction occurred on a weekend",
        _patterns(r"isweekend", r"weekend"),
        trigger_value=1.0,
    ),
    ReasonTemplate(
        "RiskCorridor",
        "Destination corridor associated with elevated risk",
        _patterns(r"country.*risk", r"destination.*risk", r"riskcorridor", r"highriskcountry"),
        trigger_value=1.0,
    ),
    ReasonTemplate(
        "CallbackBypass",
        "Callback verification was not completed",
        _patterns(r"callback.*verified", r"callback.*bypass"),
        trigger_value=0.0,
    ),
    ReasonTemplate(
        "SODException",
        "Segregation of duties exception: initiator and reviewer are the same",
        _patterns(r"initiator.*reviewer", r"sod.*exception", r"same.*person"),
        trigger_value=1.0,
    ),
    ReasonTemplate(
        "BurstActivity",
        "Multiple wires from same customer in rapid sequence",
        _patterns(r"burst", r"rapid.*sequence", r"frequency"),
    ),
    ReasonTemplate(
        "IrregularApproval",
        "Approval level inconsistent with transaction characteristics",
        _patterns(r"approval.*level",),
    ),
)


def permutation_importance(
    predict_batch: PredictBatch,
    X: np.ndarray,
    y: np.ndarray,
    feature_names: list[str],
    n_repeats: int = 3,
    seed: int = 42,
) -> list[tuple[str, float]]:
    """
    Mean drop in PR-AUC when each feature column is shuffled.

    Weights are normalised to sum to 1 (uniform when no shuffle hurts) and
    returned ordered by descending weight, ties in column order.
    """
    n_features = X.shape[1] if X.ndim == 2 else 0
    if X.shape[0] == 0 or n_features == 0:
        return [(name, 0.0) for name in feature_names]

    baseline = pr_auc(y, predict_batch(X))
    rng = np.random.default_rng(seed)
    drops = np.zeros(n_features)

    for j in range(n_features):
        total = 0.0
        for _ in range(n_repeats):
            shuffled = X.copy()
            shuffled[:, j] = rng.permutation(shuffled[:, j])
            total += max(0.0, baseline - pr_auc(y, predict_batch(shuffled)))
        drops[j] = total / n_repeats

    total_drop = drops.sum()
    if total_drop > 0:
        weights = drops / total_drop
    else:
        weights = np.full(n_features, 1.0 / n_features)

    order = np.argsort(-weights, kind="stable")
    return [(feature_names[j], float(weights[j])) for j in order]


def local_contributions(
    predict_batch: PredictBatch, x: np.ndarray, feature_means: np.ndarray
) -> np.ndarray:
    """
    Occlusion attribution for one row.

    Entry ``j`` is the row's score minus its score with feature ``j``
    replaced by the training mean, so positive values pushed the score up.
    """
    x = np.asarray(x, dtype=float)
    occluded = np.tile(x, (x.size + 1, 1))
    for j in range(x.size):
        occluded[j + 1, j] = feature_means[j]
    scores = predict_batch(occluded)
    return scores[0] - scores[1:]


def _level(magnitude: float) -> Contribution:
    if magnitude > HIGH_CONTRIBUTION:
        return "high"
    if magnitude > MEDIUM_CONTRIBUTION:
        return "medium"
    return "low"


def _template_triggered(
    template: ReasonTemplate, value: float, contribution: float, importance: float
) -> bool:
    if template.trigger_value is not None:
        if template.trigger_value == 0.0:
            if value < 0.5:
                return True
        elif value >= template.trigger_value:
            return True
    if abs(contribution) >= MIN_TRIGGER_CONTRIBUTION:
        return True
    return importance > MIN_TRIGGER_IMPORTANCE


def reason_codes(
    x: np.ndarray,
    feature_names: list[str],
    importance: list[tuple[str, float]],
    contributions: np.ndarray,
    max_codes: int = 5,
) -> list[ReasonCode]:
    """
    Explain one flagged row with template and generic reason codes.

    Template codes fire on matching feature names; every remaining feature
    that moved the score gets a generic code. Codes are ordered by the
    magnitude of their contribution and capped at ``max_codes``.
    """
    weights = dict(importance)
    candidates: list[tuple[float, ReasonCode]] = []
    used_codes: set[str] = set()
    used_features: set[str] = set()

    for j, name in enumerate(feature_names):
        contribution = float(contributions[j])
        for template in REASON_TEMPLATES:
            if template.code in used_codes:
                continue
            if not any(p.search(name) for p in template.patterns):
                continue
            if not _template_triggered(template, float(x[j]), contribution, weights.get(name, 0.0)):
                continue
            magnitude = abs(contribution) or weights.get(name, 0.0)
            candidates.append(
                (
                    magnitude,
                    ReasonCode(
                        code=template.code,
                        description=template.description,
                        feature=name,
                        direction="increase" if contribution >= 0 else "decrease",
                        contribution=_level(magnitude),
                    ),
                )
            )
            used_codes.add(template.code)
            used_features.add(name)

    for j in np.argsort(-np.abs(contributions), kind="stable"):
        name = feature_names[j]
        contribution = float(contributions[j])
        if name in used_features or contribution == 0.0:
            continue
        direction = "increase" if contribution > 0 else "decrease"
        candidates.append(
            (
                abs(contribution),
                ReasonCode(
                    code=f"Unusual_{name}",
                    description=f"{name} value {direction}s risk versus the training average",
                    feature=name,
                    direction=direction,
                    contribution=_level(abs(contribution)),
                ),
            )
        )
        if len(candidates) >= max_codes * 2:
            break

    candidates.sort(key=lambda item: -item[0])
    return [code for _, code in candidates[:max_codes]]
