# Copyright (c) Syntropy Systems
"""Pydantic models for the arbiter HTTP API."""

from typing import Any, Literal, Optional

from pydantic import Base64Bytes, BaseModel, Field

from arbiter.models.bakeoff import Algorithm, CandidateConfig, Narrative


# --- Dataset and Model Models ---


class DatasetUpload(BaseModel):
    """Request to register a dataset from base64 file content."""

    name: str = Field(..., description="Dataset name")
    source_format: Literal["csv", "xlsx"] = Field("csv", description="File format")
    content: Base64Bytes = Field(..., description="Base64-encoded file content")


class ModelCreate(BaseModel):
    """Request to create a model."""

    name: str = Field(..., description="Model name")
    description: Optional[str] = Field(None, description="Optional description")


# --- Bake-off Models ---


class StartBakeoffRequest(BaseModel):
    """Request to start a bake-off."""

    dataset_id: str
    model_id: str
    candidates: list[CandidateConfig] = Field(..., description="Candidates in index order")
    label_column: Optional[str] = Field(None, description="Label column (default: detected)")
    rubric: Optional[dict[str, Any]] = Field(None, description="Constraints and weights")
    review_rate: Optional[float] = Field(None, description="Fraction of rows flagged")
    mode: Literal["background", "incremental"] = Field(
        "background",
        description="background: queue for a worker; incremental: caller drives train-candidate",
    )


class StartBakeoffResponse(BaseModel):
    """Response to starting a bake-off."""

    bakeoff_id: str
    candidate_count: int
    status: str


class TrainCandidateRequest(BaseModel):
    """Request to train one candidate."""

    candidate_index: int = Field(..., ge=0)


class SelectChampionRequest(BaseModel):
    """Request to override the champion."""

    model_version_id: str


class FailRequest(BaseModel):
    """Request to mark a bake-off failed."""

    message: str = Field("Marked failed by operator", min_length=1)


class FinalizeResponse(BaseModel):
    """Champion decision of a finalized bake-off."""

    champion_version_id: str
    champion_algorithm: Algorithm
    narrative: Narrative


# --- Scoring Models ---


class ScoreRequest(BaseModel):
    """Request to score a dataset with a model version or a model's champion."""

    dataset_id: str
    model_id: Optional[str] = None
    model_version_id: Optional[str] = None
    review_rate: Optional[float] = Field(None, description="Fraction of rows flagged")
    threshold: Optional[float] = Field(None, description="Explicit cutoff; overrides review_rate")


class ErrorResponse(BaseModel):
    """Error body returned for every arbiter error."""

    error: str
    code: str
    detail: dict[str, Any] = Field(default_factory=dict)
