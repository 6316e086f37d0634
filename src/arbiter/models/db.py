# Copyright (c) Syntropy Systems
"""Pydantic models for database records."""

from __future__ import annotations

from typing import Optional, cast

from pydantic import Field, TypeAdapter, field_validator

from .bakeoff import (
    Algorithm,
    BakeoffProgress,
    CandidateMetrics,
    RubricConfig,
)
from .base import ArbiterBaseModel, JSONValue
from .scoring import ReasonCode, ScoringSummary

_LIST_STR_ADAPTER = TypeAdapter(list[str])
_JSON_OBJECT_ADAPTER = TypeAdapter(dict[str, JSONValue])
_IMPORTANCE_ADAPTER = TypeAdapter(list[tuple[str, float]])
_REASON_CODES_ADAPTER = TypeAdapter(list[ReasonCode])


class ColumnSchema(ArbiterBaseModel):
    """Inferred type of one dataset column."""

    name: str
    type: str


class DatasetSchema(ArbiterBaseModel):
    """Ordered column schema of a dataset."""

    columns: list[ColumnSchema] = Field(default_factory=list)

    def names(self) -> list[str]:
        """Return column names in order."""
        return [c.name for c in self.columns]


class DatasetRecord(ArbiterBaseModel):
    """Database dataset record."""

    id: str
    name: str
    source_format: str
    blob_url: str
    schema_: DatasetSchema = Field(default_factory=DatasetSchema, alias="schema_json")
    row_count: int = 0
    label_present: bool = False
    created_at: Optional[str] = None

    @field_validator("schema_", mode="before")
    @classmethod
    def _parse_schema(cls, value: object) -> DatasetSchema:
        if value is None:
            return DatasetSchema()
        if isinstance(value, str):
            return DatasetSchema.model_validate_json(value)
        return DatasetSchema.model_validate(value)


class ModelRecord(ArbiterBaseModel):
    """Database model record."""

    id: str
    name: str
    description: Optional[str] = None
    created_at: Optional[str] = None


class ModelVersionRecord(ArbiterBaseModel):
    """Database model version record.

    Immutable after creation except for ``is_champion``.
    """

    id: str
    model_id: str
    algorithm: Algorithm
    hyperparams: dict[str, JSONValue] = Field(default_factory=dict)
    artifact_blob_url: str
    metrics: CandidateMetrics = Field(default_factory=CandidateMetrics)
    importance: list[tuple[str, float]] = Field(default_factory=list)
    feature_names: list[str] = Field(default_factory=list)
    trained_dataset_id: Optional[str] = None
    failed: bool = False
    is_champion: bool = False
    created_at: Optional[str] = None

    @field_validator("hyperparams", mode="before")
    @classmethod
    def _parse_hyperparams(cls, value: object) -> dict[str, JSONValue]:
        if value is None:
            return {}
        if isinstance(value, str):
            return _JSON_OBJECT_ADAPTER.validate_json(value)
        return cast("dict[str, JSONValue]", value)

    @field_validator("metrics", mode="before")
    @classmethod
    def _parse_metrics(cls, value: object) -> CandidateMetrics:
        if value is None:
            return CandidateMetrics()
        if isinstance(value, str):
            return CandidateMetrics.model_validate_json(value)
        return CandidateMetrics.model_validate(value)

    @field_validator("importance", mode="before")
    @classmethod
    def _parse_importance(cls, value: object) -> list[tuple[str, float]]:
        if value is None:
            return []
        if isinstance(value, str):
            return _IMPORTANCE_ADAPTER.validate_json(value)
        return cast("list[tuple[str, float]]", value)

    @field_validator("feature_names", mode="before")
    @classmethod
    def _parse_feature_names(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return _LIST_STR_ADAPTER.validate_json(value)
        return cast("list[str]", value)


class BakeoffRecord(ArbiterBaseModel):
    """Database bake-off record."""

    id: str
    model_id: str
    dataset_id: str
    rubric: RubricConfig = Field(default_factory=RubricConfig)
    status: str
    progress: Optional[BakeoffProgress] = None
    candidate_version_ids: list[str] = Field(default_factory=list)
    champion_version_id: Optional[str] = None
    narrative_short: Optional[str] = None
    narrative_long: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @field_validator("rubric", mode="before")
    @classmethod
    def _parse_rubric(cls, value: object) -> RubricConfig:
        if value is None:
            return RubricConfig()
        if isinstance(value, str):
            return RubricConfig.model_validate_json(value)
        return RubricConfig.model_validate(value)

    @field_validator("progress", mode="before")
    @classmethod
    def _parse_progress(cls, value: object) -> Optional[BakeoffProgress]:
        if value is None:
            return None
        if isinstance(value, str):
            return BakeoffProgress.model_validate_json(value)
        return BakeoffProgress.model_validate(value)

    @field_validator("candidate_version_ids", mode="before")
    @classmethod
    def _parse_version_ids(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return _LIST_STR_ADAPTER.validate_json(value)
        return cast("list[str]", value)

    @property
    def candidates_done(self) -> int:
        """Number of candidates attempted so far."""
        return len(self.candidate_version_ids)

    @property
    def candidate_count(self) -> int:
        """Total number of candidates, zero before progress is persisted."""
        return self.progress.candidate_count if self.progress else 0


class RunRecord(ArbiterBaseModel):
    """Database scoring run record."""

    id: str
    dataset_id: str
    status: str
    model_version_id: Optional[str] = None
    outputs_blob_url: Optional[str] = None
    summary: Optional[ScoringSummary] = None
    error: Optional[str] = None
    created_at: Optional[str] = None
    finished_at: Optional[str] = None

    @field_validator("summary", mode="before")
    @classmethod
    def _parse_summary(cls, value: object) -> Optional[ScoringSummary]:
        if value is None:
            return None
        if isinstance(value, str):
            return ScoringSummary.model_validate_json(value)
        return ScoringSummary.model_validate(value)


class FindingRecord(ArbiterBaseModel):
    """Database finding record."""

    run_id: str
    wire_id: str
    rank: int
    score: float
    predicted_label: bool
    reason_codes: list[ReasonCode] = Field(default_factory=list)
    local_explain_blob_url: Optional[str] = None

    @field_validator("reason_codes", mode="before")
    @classmethod
    def _parse_reason_codes(cls, value: object) -> list[ReasonCode]:
        if value is None:
            return []
        if isinstance(value, str):
            return _REASON_CODES_ADAPTER.validate_json(value)
        return cast("list[ReasonCode]", value)


class TaskRecord(ArbiterBaseModel):
    """Database background task record."""

    id: int
    kind: str
    bakeoff_id: str
    status: str
    attempt: int = 1
    worker_id: Optional[str] = None
    heartbeat_at: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
