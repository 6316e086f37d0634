# Copyright (c) Syntropy Systems
"""Pydantic models for scoring pipeline outputs."""

from __future__ import annotations

from typing import Literal

from pydantic import Field

from .base import ArbiterBaseModel

Direction = Literal["increase", "decrease"]
Contribution = Literal["high", "medium", "low"]


class ReasonCode(ArbiterBaseModel):
    """Explanation attached to a flagged row."""

    code: str
    description: str
    feature: str
    direction: Direction
    contribution: Contribution


class Finding(ArbiterBaseModel):
    """One flagged row of a scoring run. Rank 1 is the highest risk."""

    wire_id: str
    rank: int = Field(ge=1)
    score: float
    predicted_label: bool
    reason_codes: list[ReasonCode] = Field(default_factory=list)
    local_explain_blob_url: str | None = None


class LabelMetrics(ArbiterBaseModel):
    """Quality metrics at the applied threshold, when labels are present."""

    precision: float
    recall: float
    f1: float


class FeatureWeight(ArbiterBaseModel):
    """Dataset-level importance of one feature."""

    feature: str
    weight: float


class ScoringSummary(ArbiterBaseModel):
    """Summary of a scoring run."""

    review_rate: float
    threshold_used: float
    flagged_count: int
    row_count: int
    metrics_if_labels_present: LabelMetrics | None = None
    global_top_features: list[FeatureWeight] = Field(default_factory=list)


class ScoringResult(ArbiterBaseModel):
    """Everything produced by one pass of the scoring pipeline."""

    scored_csv: bytes
    findings: list[Finding]
    summary: ScoringSummary
