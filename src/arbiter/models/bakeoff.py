# Copyright (c) Syntropy Systems
"""Pydantic models for candidates, rubrics and bake-off progress."""

from __future__ import annotations

import math
from enum import Enum
from typing import cast

from pydantic import Field, field_validator, model_validator

from .base import ArbiterBaseModel, FrozenModel, JSONValue

WEIGHT_TOTAL = 1.0
_WEIGHT_TOLERANCE = 1e-6


class Algorithm(str, Enum):
    """Candidate algorithms with a registered trainer."""

    LOG_REG = "log_reg"
    DECISION_TREE = "decision_tree"
    RANDOM_FOREST = "random_forest"
    EXTRA_TREES = "extra_trees"
    GRADIENT_BOOSTED = "gradient_boosted"

    @property
    def display_name(self) -> str:
        """Human readable algorithm name."""
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES = {
    Algorithm.LOG_REG: "Logistic Regression",
    Algorithm.DECISION_TREE: "Decision Tree",
    Algorithm.RANDOM_FOREST: "Random Forest",
    Algorithm.EXTRA_TREES: "Extra-Trees",
    Algorithm.GRADIENT_BOOSTED: "Gradient Boosted Trees",
}


class CandidateConfig(FrozenModel):
    """One (algorithm, hyperparameters) pair entered into a bake-off."""

    algorithm: Algorithm
    hyperparams: dict[str, JSONValue] = Field(default_factory=dict)

    @field_validator("hyperparams", mode="before")
    @classmethod
    def _default_hyperparams(cls, value: object) -> dict[str, JSONValue]:
        if value is None:
            return {}
        return cast("dict[str, JSONValue]", value)


class CandidateMetrics(ArbiterBaseModel):
    """Evaluation metrics of one trained candidate, all on a [0, 1] scale."""

    pr_auc: float = 0.0
    recall_at_review_rate: float = 0.0
    precision_at_review_rate: float = 0.0
    f1: float = 0.0
    stability: float = 0.0
    explainability: float = 0.0

    def get(self, name: str) -> float:
        """Return a metric by field name."""
        return float(getattr(self, name))


class CandidateResult(FrozenModel):
    """Outcome of training one candidate.

    ``importance`` is ordered by descending weight. A ``failed`` result keeps
    zeroed metrics so it can still be reported, but it is never eligible to
    become champion.
    """

    algorithm: Algorithm
    hyperparams: dict[str, JSONValue] = Field(default_factory=dict)
    metrics: CandidateMetrics = Field(default_factory=CandidateMetrics)
    importance: list[tuple[str, float]] = Field(default_factory=list)
    serialized_artifact: bytes = b""
    failed: bool = False
    error: str | None = None

    def top_features(self, limit: int = 5) -> list[tuple[str, float]]:
        """Return the ``limit`` most important features."""
        return self.importance[:limit]


class RubricConstraints(ArbiterBaseModel):
    """Hard minimums a candidate must meet to be eligible."""

    min_recall_at_review_rate: float = Field(default=0.65, ge=0.0, le=1.0)
    min_precision_at_review_rate: float = Field(default=0.08, ge=0.0, le=1.0)

    def minimums(self) -> dict[str, float]:
        """Map metric field name to its required minimum."""
        return {
            "recall_at_review_rate": self.min_recall_at_review_rate,
            "precision_at_review_rate": self.min_precision_at_review_rate,
        }


class RubricWeights(ArbiterBaseModel):
    """Non-negative metric weights summing to ``WEIGHT_TOTAL``."""

    recall_at_review_rate: float = Field(default=0.4, ge=0.0)
    pr_auc: float = Field(default=0.25, ge=0.0)
    precision_at_review_rate: float = Field(default=0.15, ge=0.0)
    stability: float = Field(default=0.1, ge=0.0)
    explainability: float = Field(default=0.1, ge=0.0)

    @model_validator(mode="after")
    def _check_total(self) -> RubricWeights:
        total = sum(self.as_dict().values())
        if not math.isclose(total, WEIGHT_TOTAL, abs_tol=_WEIGHT_TOLERANCE):
            msg = f"Rubric weights must sum to {WEIGHT_TOTAL}, got {total:.6f}"
            raise ValueError(msg)
        return self

    def as_dict(self) -> dict[str, float]:
        """Map metric field name to weight, in a fixed order."""
        return {
            "recall_at_review_rate": self.recall_at_review_rate,
            "pr_auc": self.pr_auc,
            "precision_at_review_rate": self.precision_at_review_rate,
            "stability": self.stability,
            "explainability": self.explainability,
        }


class RubricConfig(ArbiterBaseModel):
    """Constraint and weighting configuration used to pick a champion."""

    constraints: RubricConstraints = Field(default_factory=RubricConstraints)
    weights: RubricWeights = Field(default_factory=RubricWeights)


class BakeoffProgress(ArbiterBaseModel):
    """Durable state needed to resume training across invocations.

    The order of ``candidate_configs`` defines candidate indices.
    """

    features_blob_url: str
    candidate_configs: list[CandidateConfig]
    label_column: str
    review_rate: float = Field(gt=0.0, le=1.0)

    @property
    def candidate_count(self) -> int:
        """Number of candidates in the bake-off."""
        return len(self.candidate_configs)


class CandidateSummary(ArbiterBaseModel):
    """Result of a single ``train_one`` call."""

    version_id: str
    candidate_index: int
    algorithm: Algorithm
    metrics: CandidateMetrics
    failed: bool
    error: str | None = None
    candidates_done: int
    candidate_count: int


class Narrative(ArbiterBaseModel):
    """Human readable explanation of a champion decision."""

    short: str
    long: str


class FinalizeResult(ArbiterBaseModel):
    """Result of finalizing a bake-off."""

    champion_version_id: str
    champion_algorithm: Algorithm
    narrative: Narrative


class BakeoffStatus(ArbiterBaseModel):
    """Inspectable progress of a bake-off."""

    id: str
    status: str
    candidates_done: int
    candidate_count: int
    champion_version_id: str | None = None
    error: str | None = None
