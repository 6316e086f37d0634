# Copyright (c) Syntropy Systems
"""Rubric evaluation: constraint filtering, weighted scoring and narratives."""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from arbiter.errors import ValidationError
from arbiter.models.bakeoff import (
    CandidateMetrics,
    CandidateResult,
    Narrative,
    RubricConfig,
    RubricWeights,
)

# Differences smaller than this are not called out in narratives
DIFFERENTIATOR_EPSILON = 1e-3

_METRIC_LABELS = {
    "recall_at_review_rate": "Recall @ Review Rate",
    "pr_auc": "PR-AUC",
    "precision_at_review_rate": "Precision @ Review Rate",
    "f1": "F1 Score",
    "stability": "Stability",
    "explainability": "Explainability",
}


@dataclass(frozen=True)
class RubricOutcome:
    """Result of applying a rubric to a list of candidates.

    Indices refer to positions in the candidate list. ``ranked_indices`` is
    the pool the champion was drawn from, best first. ``fallback`` is True
    when no candidate met the constraints and the pool is every non-failed
    candidate.
    """

    champion_index: int
    ranked_indices: list[int]
    eligible_indices: list[int]
    scores: dict[int, float] = field(default_factory=dict)
    fallback: bool = False

    @property
    def runner_up_index(self) -> int | None:
        """Second-ranked candidate, if any."""
        return self.ranked_indices[1] if len(self.ranked_indices) > 1 else None


def weighted_score(metrics: CandidateMetrics, weights: RubricWeights) -> float:
    """Sum of weight times metric over the weighted metrics."""
    return sum(weight * metrics.get(name) for name, weight in weights.as_dict().items())


def meets_constraints(metrics: CandidateMetrics, rubric: RubricConfig) -> bool:
    """Whether every configured minimum is met or exceeded."""
    return all(
        metrics.get(name) >= minimum
        for name, minimum in rubric.constraints.minimums().items()
    )


def apply_rubric(
    candidates: Sequence[CandidateResult], rubric: RubricConfig
) -> RubricOutcome:
    """
    Pick a champion among ``candidates``.

    Failed candidates are never eligible. Among the rest, those meeting every
    constraint are ranked by weighted score; if none do, all non-failed
    candidates are ranked instead. Ties go to the earlier index.

    Raises:
        ValidationError: if every candidate failed.
    """
    trained = [i for i, c in enumerate(candidates) if not c.failed]
    if not trained:
        msg = "No candidate trained successfully; cannot select a champion"
        raise ValidationError(msg)

    scores = {i: weighted_score(candidates[i].metrics, rubric.weights) for i in trained}
    eligible = [i for i in trained if meets_constraints(candidates[i].metrics, rubric)]

    pool = eligible or trained
    # sorted() is stable, so equal scores keep index order
    ranked = sorted(pool, key=lambda i: -scores[i])

    return RubricOutcome(
        champion_index=ranked[0],
        ranked_indices=ranked,
        eligible_indices=eligible,
        scores=scores,
        fallback=not eligible,
    )


def _pct(value: float) -> str:
    return f"{value * 100:.1f}%"


def _display(candidate: CandidateResult) -> str:
    return candidate.algorithm.display_name


def generate_narrative(
    candidates: Sequence[CandidateResult],
    champion_index: int,
    rubric: RubricConfig,
) -> Narrative:
    """
    Explain why the champion won, as a one-liner and as markdown.

    Pure and deterministic for the same inputs.
    """
    if not candidates or not 0 <= champion_index < len(candidates):
        return Narrative(
            short="No candidates were evaluated.",
            long="The bake-off produced no candidate results to evaluate.",
        )

    outcome = apply_rubric(candidates, rubric)
    champion = candidates[champion_index]
    m = champion.metrics
    passed = meets_constraints(m, rubric)
    champion_score = weighted_score(m, rubric.weights)

    runner_up_index = next(
        (i for i in outcome.ranked_indices if i != champion_index), None
    )
    if runner_up_index is None:
        others = [i for i in outcome.scores if i != champion_index]
        runner_up_index = max(others, key=lambda i: (outcome.scores[i], -i)) if others else None

    if passed:
        reason = "met every constraint"
    else:
        reason = "no candidate met every constraint, ranked by weighted score alone"
    short = (
        f"Selected {_display(champion)} as champion: {reason}, weighted score "
        f"{champion_score:.3f}"
    )
    if runner_up_index is not None:
        margin = champion_score - outcome.scores[runner_up_index]
        short += (
            f", {margin:+.3f} ahead of {_display(candidates[runner_up_index])}"
        )
    short += (
        f" (recall {_pct(m.recall_at_review_rate)} at review capacity, PR-AUC {_pct(m.pr_auc)})."
    )

    lines = [
        "## Bake-off Summary",
        "",
        f"**Champion:** {_display(champion)} "
        f"(index {champion_index} of {len(candidates)} candidates)",
        "",
        "### Champion Metrics",
    ]
    for name, label in _METRIC_LABELS.items():
        lines.append(f"- **{label}:** {_pct(m.get(name))}")
    lines.append(f"- **Weighted Score:** {champion_score:.3f}")

    lines += ["", "### Constraint Check"]
    for name, minimum in rubric.constraints.minimums().items():
        value = m.get(name)
        verdict = "PASSED" if value >= minimum else "FAILED"
        lines.append(f"- Min {_METRIC_LABELS[name]} ({_pct(minimum)}): {verdict} ({_pct(value)})")

    if runner_up_index is not None:
        runner_up = candidates[runner_up_index]
        lines += ["", f"### Versus Runner-up ({_display(runner_up)}, index {runner_up_index})"]
        differences = []
        for name, weight in rubric.weights.as_dict().items():
            delta = m.get(name) - runner_up.metrics.get(name)
            if abs(delta) >= DIFFERENTIATOR_EPSILON:
                differences.append((abs(weight * delta), name, delta, weight))
        differences.sort(key=lambda d: -d[0])
        if not differences:
            lines.append("- No metric differs; the earlier candidate wins the tie")
        for _, name, delta, weight in differences:
            word = "higher" if delta > 0 else "lower"
            lines.append(
                f"- {_METRIC_LABELS[name]}: {_pct(abs(delta))} {word} "
                f"({_pct(m.get(name))} vs {_pct(runner_up.metrics.get(name))}, weight {weight:g})"
            )

    lines += ["", "### All Candidates"]
    for i, c in enumerate(candidates):
        tag = ""
        if i == champion_index:
            tag = " **(Champion)**"
        elif c.failed:
            tag = " **(Failed)**"
        elif i not in outcome.eligible_indices:
            tag = " (below constraints)"
        cm = c.metrics
        lines.append(
            f"- **{_display(c)}**{tag}: PR-AUC={_pct(cm.pr_auc)}, "
            f"Recall={_pct(cm.recall_at_review_rate)}, "
            f"Precision={_pct(cm.precision_at_review_rate)}, F1={_pct(cm.f1)}"
        )

    top = champion.top_features(5)
    if top:
        lines += ["", "### Top Feature Importance (Champion)"]
        for name, weight in top:
            lines.append(f"- **{name}:** {weight * 100:.2f}%")

    weights = rubric.weights.as_dict()
    lines += [
        "",
        "### Rubric Weights",
        "- " + ", ".join(f"{_METRIC_LABELS[name]}: {w:g}" for name, w in weights.items()),
    ]

    return Narrative(short=short, long="\n".join(lines))
