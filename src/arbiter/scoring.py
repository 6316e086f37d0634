# Copyright (c) Syntropy Systems
"""Scoring pipeline: apply one model version to a dataset.

Within a call everything is sequential: load, score, threshold, rank,
explain, persist. Calls share no state, so different runs may execute in
parallel.
"""
from __future__ import annotations

import math
import sqlite3
from typing import Optional

import numpy as np
import pandas as pd
from loguru import logger

from arbiter.datasets import find_label_column, load_dataset
from arbiter.db import (
    create_run,
    get_champion_version,
    get_dataset,
    get_model,
    get_model_version,
    get_run,
    record_scored_run,
    update_run,
)
from arbiter.errors import ArbiterError, NotFoundError, PipelineFailure, ValidationError
from arbiter.ml.explain import local_contributions, reason_codes
from arbiter.ml.features import align_features, build_feature_matrix
from arbiter.ml.metrics import classification_metrics
from arbiter.ml.trainers import get_trainer, load_artifact
from arbiter.models.db import ModelVersionRecord, RunRecord
from arbiter.models.scoring import (
    FeatureWeight,
    Finding,
    ScoringResult,
    ScoringSummary,
)
from arbiter.storage import BlobStore

log = logger.bind(domain="scoring")

DEFAULT_PREVIEW_LIMIT = 200
GLOBAL_TOP_FEATURES = 15
SCORE_COLUMN = "AnomalyScore"
LABEL_COLUMN = "PredictedLabel"
_WIRE_ID_COLUMNS = ("WireID", "wire_id", "wireId")


def flag_count(row_count: int, review_rate: float) -> int:
    """Minimum number of rows flagged at ``review_rate``."""
    if row_count == 0:
        return 0
    return min(row_count, max(1, math.ceil(round(review_rate * row_count, 9))))


def review_rate_threshold(scores: np.ndarray, review_rate: float) -> float:
    """
    Score cutoff flagging the top ``review_rate`` fraction of rows.

    The cutoff is the k-th highest score with ``k = max(1, ceil(rate * n))``.
    Rows scoring at or above it are flagged, so rows tied with the k-th
    score are all flagged and the flagged count can exceed k.
    """
    k = flag_count(scores.size, review_rate)
    if k == 0:
        return 1.0
    return float(np.sort(scores)[::-1][k - 1])


def _wire_id(row: pd.Series, index: int) -> str:
    for column in _WIRE_ID_COLUMNS:
        value = row.get(column)
        if value is not None and str(value).strip():
            return str(value)
    return f"row-{index}"


def resolve_model_version(
    conn: sqlite3.Connection,
    model_id: Optional[str] = None,
    model_version_id: Optional[str] = None,
) -> ModelVersionRecord:
    """
    Resolve the version to score with: an explicit version, or the champion.

    Raises:
        ValidationError: unknown version, version of another model, no
            champion, or nothing to resolve from.
        NotFoundError: unknown model.
    """
    if model_version_id:
        version = get_model_version(conn, model_version_id)
        if version is None:
            msg = f"Model version '{model_version_id}' not found"
            raise ValidationError(msg)
        if model_id and version.model_id != model_id:
            msg = f"Model version '{model_version_id}' does not belong to model '{model_id}'"
            raise ValidationError(msg)
        return version

    if not model_id:
        msg = "Either model_id or model_version_id is required"
        raise ValidationError(msg)
    if get_model(conn, model_id) is None:
        raise NotFoundError("Model", model_id)
    champion = get_champion_version(conn, model_id)
    if champion is None:
        msg = f"Model '{model_id}' has no champion version; run a bake-off first"
        raise ValidationError(msg)
    return champion


def run_scoring_pipeline(
    conn: sqlite3.Connection,
    store: BlobStore,
    dataset_id: str,
    model_version_id: str,
    review_rate: float,
    threshold: Optional[float] = None,
    preview_limit: int = DEFAULT_PREVIEW_LIMIT,
) -> ScoringResult:
    """
    Score every row of a dataset and build findings for the flagged ones.

    Writes nothing; ``score_dataset`` persists the result.

    Raises:
        NotFoundError: unknown dataset.
        ValidationError: unknown or failed version, review rate outside
            (0, 1], or dataset columns missing from the version's schema.
    """
    if not 0 < review_rate <= 1:
        msg = f"review_rate must be in (0, 1], got {review_rate}"
        raise ValidationError(msg)
    if threshold is not None and not math.isfinite(threshold):
        msg = f"threshold must be a finite number, got {threshold}"
        raise ValidationError(msg)

    dataset, parsed = load_dataset(conn, store, dataset_id)
    version = get_model_version(conn, model_version_id)
    if version is None:
        msg = f"Model version '{model_version_id}' not found"
        raise ValidationError(msg)
    if version.failed or not version.artifact_blob_url:
        msg = f"Model version '{model_version_id}' failed training and cannot score"
        raise ValidationError(msg)
    if parsed.total_rows == 0:
        msg = "Dataset has no rows"
        raise ValidationError(msg)

    artifact = load_artifact(store.download(version.artifact_blob_url))
    trainer = get_trainer(artifact.algorithm)

    training_schema = artifact.norm_context.training_schema()
    if training_schema.columns:
        missing = [name for name in training_schema.names() if name not in parsed.headers]
        if missing:
            msg = f"Dataset is missing columns the model was trained on: {', '.join(missing)}"
            raise ValidationError(msg, {"missing_columns": missing})
        schema = training_schema
    else:
        schema = dataset.schema_

    label_column = artifact.norm_context.label_column
    if label_column is None:
        label_column = find_label_column(parsed.headers)
    if label_column not in parsed.headers or label_column in training_schema.names():
        label_column = None
    matrix = build_feature_matrix(
        parsed.rows, schema, label_column, norm_context=artifact.norm_context
    )
    X = align_features(matrix, artifact.feature_names)

    def predict_batch(batch: np.ndarray) -> np.ndarray:
        return trainer.predict_batch(artifact, batch)

    scores = predict_batch(X)
    threshold_used = threshold if threshold is not None else review_rate_threshold(scores, review_rate)
    predicted = scores >= threshold_used

    scored = parsed.rows.copy()
    scored[SCORE_COLUMN] = [f"{s:.6f}" for s in scores]
    scored[LABEL_COLUMN] = np.where(predicted, "1", "0")
    scored_csv = scored.to_csv(index=False).encode("utf-8")

    # Stable so tied scores keep original row order
    order = np.argsort(-scores, kind="stable")
    flagged = [int(i) for i in order if predicted[i]]

    feature_means = X.mean(axis=0)
    findings = []
    for rank, index in enumerate(flagged[:preview_limit], start=1):
        contributions = local_contributions(predict_batch, X[index], feature_means)
        findings.append(
            Finding(
                wire_id=_wire_id(parsed.rows.iloc[index], index),
                rank=rank,
                score=float(scores[index]),
                predicted_label=True,
                reason_codes=reason_codes(
                    X[index], artifact.feature_names, version.importance, contributions
                ),
            )
        )

    label_metrics = None
    if label_column is not None:
        label_metrics = classification_metrics(matrix.y, predicted)

    summary = ScoringSummary(
        review_rate=review_rate,
        threshold_used=round(float(threshold_used), 6),
        flagged_count=len(flagged),
        row_count=parsed.total_rows,
        metrics_if_labels_present=label_metrics,
        global_top_features=[
            FeatureWeight(feature=name, weight=weight)
            for name, weight in version.importance[:GLOBAL_TOP_FEATURES]
        ],
    )
    log.info(
        "Scored {} rows with {}: {} flagged at threshold {:.6f}",
        parsed.total_rows,
        model_version_id,
        len(flagged),
        threshold_used,
    )
    return ScoringResult(scored_csv=scored_csv, findings=findings, summary=summary)


def score_dataset(
    conn: sqlite3.Connection,
    store: BlobStore,
    dataset_id: str,
    model_id: Optional[str] = None,
    model_version_id: Optional[str] = None,
    review_rate: float = 0.005,
    threshold: Optional[float] = None,
    preview_limit: int = DEFAULT_PREVIEW_LIMIT,
) -> RunRecord:
    """
    Create a run, score the dataset and persist outputs and findings.

    Findings and the ``scored`` status are written in one transaction; on
    any error the run is marked ``failed`` and the error re-raised.
    """
    if get_dataset(conn, dataset_id) is None:
        raise NotFoundError("Dataset", dataset_id)
    version = resolve_model_version(conn, model_id, model_version_id)

    run_id = create_run(conn, dataset_id)
    update_run(conn, run_id, "scoring", model_version_id=version.id)
    log.info("Run {} scoring dataset {} with version {}", run_id, dataset_id, version.id)

    try:
        result = run_scoring_pipeline(
            conn,
            store,
            dataset_id,
            version.id,
            review_rate,
            threshold=threshold,
            preview_limit=preview_limit,
        )
        outputs_url = store.upload(f"runs/{run_id}/scored-output.csv", result.scored_csv)
        record_scored_run(conn, run_id, version.id, outputs_url, result.summary, result.findings)
    except ArbiterError as e:
        update_run(conn, run_id, "failed", error=e.message)
        log.warning("Run {} failed: {}", run_id, e.message)
        raise
    except Exception as e:
        update_run(conn, run_id, "failed", error=str(e))
        log.opt(exception=e).error("Run {} failed", run_id)
        msg = f"Scoring failed: {e}"
        raise PipelineFailure(msg) from e

    run = get_run(conn, run_id)
    if run is None:
        msg = f"Run {run_id} vanished after scoring"
        raise PipelineFailure(msg)
    return run
