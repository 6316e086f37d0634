# Copyright (c) Syntropy Systems
"""Bake-off lifecycle: start, train candidates one by one, finalize.

State machine::

    queued --begin--> running --finalize--> completed
    queued/running --error or mark_failed--> failed

Every state change is a guarded compare-and-set in ``arbiter.db``; nothing
here holds a lock between calls. Training progress lives in the database
and the blob store, so any process can resume a bake-off from where the
last one stopped.
"""
from __future__ import annotations

import sqlite3
import time
from collections.abc import Sequence
from typing import Any, Optional, Union

import numpy as np
from loguru import logger
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from arbiter.datasets import find_label_column, load_dataset
from arbiter.db import (
    append_candidate_version,
    begin_bakeoff,
    complete_bakeoff,
    create_bakeoff,
    delete_model_version,
    enqueue_task,
    fail_bakeoff,
    get_bakeoff,
    get_model,
    get_model_versions,
    insert_model_version,
    new_id,
    set_bakeoff_progress,
    set_champion_version,
)
from arbiter.errors import (
    ArbiterError,
    ConflictError,
    NotFoundError,
    PipelineFailure,
    ValidationError,
)
from arbiter.ml.features import (
    build_feature_matrix,
    dump_feature_matrix,
    load_feature_matrix,
)
from arbiter.ml.trainers import get_trainer, train_candidate
from arbiter.models.bakeoff import (
    BakeoffProgress,
    BakeoffStatus,
    CandidateConfig,
    CandidateResult,
    CandidateSummary,
    FinalizeResult,
    RubricConfig,
)
from arbiter.models.db import BakeoffRecord, ModelVersionRecord
from arbiter.rubric import apply_rubric, generate_narrative
from arbiter.storage import BlobStore

log = logger.bind(domain="bakeoff")
train_log = logger.bind(domain="bakeoff.train")
finalize_log = logger.bind(domain="bakeoff.finalize")

DEFAULT_REVIEW_RATE = 0.005
TASK_KIND = "bakeoff"

_CANDIDATES_ADAPTER = TypeAdapter(list[CandidateConfig])


def _validated_candidates(
    candidate_configs: Sequence[Union[CandidateConfig, dict[str, Any]]],
) -> list[CandidateConfig]:
    try:
        candidates = _CANDIDATES_ADAPTER.validate_python(
            [c.model_dump() if isinstance(c, CandidateConfig) else c for c in candidate_configs]
        )
    except PydanticValidationError as e:
        msg = f"Invalid candidate configuration: {e.errors()[0]['msg']}"
        raise ValidationError(msg, {"errors": e.errors(include_url=False, include_context=False)}) from None
    if not candidates:
        msg = "At least one candidate is required"
        raise ValidationError(msg)
    for candidate in candidates:
        _ = get_trainer(candidate.algorithm)
    return candidates


def _validated_rubric(rubric: Union[RubricConfig, dict[str, Any], None]) -> RubricConfig:
    if rubric is None:
        return RubricConfig()
    if isinstance(rubric, RubricConfig):
        return rubric
    try:
        return RubricConfig.model_validate(rubric)
    except PydanticValidationError as e:
        msg = f"Invalid rubric: {e.errors()[0]['msg']}"
        raise ValidationError(msg, {"errors": e.errors(include_url=False, include_context=False)}) from None


def _require_bakeoff(conn: sqlite3.Connection, bakeoff_id: str) -> BakeoffRecord:
    bakeoff = get_bakeoff(conn, bakeoff_id)
    if bakeoff is None:
        raise NotFoundError("Bakeoff", bakeoff_id)
    return bakeoff


def _require_running(bakeoff: BakeoffRecord) -> BakeoffProgress:
    if bakeoff.status != "running":
        msg = f"Bakeoff is not running (status: {bakeoff.status})"
        raise ConflictError(msg, {"status": bakeoff.status})
    if bakeoff.progress is None:
        msg = "Bakeoff has no progress data; was it started?"
        raise ConflictError(msg)
    return bakeoff.progress


def start(
    conn: sqlite3.Connection,
    store: BlobStore,
    dataset_id: str,
    model_id: str,
    candidate_configs: Sequence[Union[CandidateConfig, dict[str, Any]]],
    rubric: Union[RubricConfig, dict[str, Any], None] = None,
    label_column: Optional[str] = None,
    review_rate: Optional[float] = None,
    enqueue: bool = True,
) -> str:
    """
    Create a queued bake-off and prepare its feature matrix.

    Inputs are validated before anything is written. The feature matrix is
    built once and stored as a blob so each training call only downloads
    it. When ``enqueue`` is set a background task carrying the bake-off id
    is queued for ``arbiter worker``.

    Raises:
        ValidationError: bad review rate, candidates, rubric or label column,
            or a label column without both classes.
        NotFoundError: unknown dataset or model.
    """
    review_rate = DEFAULT_REVIEW_RATE if review_rate is None else review_rate
    if not 0 < review_rate <= 1:
        msg = f"review_rate must be in (0, 1], got {review_rate}"
        raise ValidationError(msg)
    candidates = _validated_candidates(candidate_configs)
    rubric_config = _validated_rubric(rubric)

    if get_model(conn, model_id) is None:
        raise NotFoundError("Model", model_id)
    dataset, parsed = load_dataset(conn, store, dataset_id)
    if parsed.total_rows == 0:
        msg = "Dataset has no rows"
        raise ValidationError(msg)

    if label_column is None:
        label_column = find_label_column(parsed.headers)
        if label_column is None:
            msg = "No label column given and none could be detected"
            raise ValidationError(msg)
    elif label_column not in parsed.headers:
        msg = f"Label column '{label_column}' not in dataset"
        raise ValidationError(msg, {"columns": parsed.headers})

    bakeoff_id = create_bakeoff(conn, model_id, dataset_id, rubric_config)
    log.info(
        "Bakeoff {} queued (dataset={}, candidates={})",
        bakeoff_id,
        dataset_id,
        len(candidates),
    )

    try:
        matrix = build_feature_matrix(parsed.rows, dataset.schema_, label_column)
        if matrix.n_samples == 0 or not matrix.feature_names:
            msg = "Feature matrix is empty; check that the dataset has usable columns"
            raise ValidationError(msg)
        positives = int(np.sum(matrix.y))
        if positives == 0:
            msg = f"Label column '{label_column}' has no positive (1) labels"
            raise ValidationError(msg)
        if positives == matrix.n_samples:
            msg = f"Label column '{label_column}' has no negative (0) labels"
            raise ValidationError(msg)

        features_url = store.upload(
            f"bakeoffs/{bakeoff_id}/features.joblib", dump_feature_matrix(matrix)
        )
        progress = BakeoffProgress(
            features_blob_url=features_url,
            candidate_configs=candidates,
            label_column=label_column,
            review_rate=review_rate,
        )
        _ = set_bakeoff_progress(conn, bakeoff_id, progress)
        if enqueue:
            _ = enqueue_task(conn, TASK_KIND, bakeoff_id)
    except ArbiterError as e:
        _ = fail_bakeoff(conn, bakeoff_id, e.message)
        raise
    except Exception as e:
        _ = fail_bakeoff(conn, bakeoff_id, str(e))
        msg = f"Failed to prepare bakeoff: {e}"
        raise PipelineFailure(msg) from e

    log.info(
        "Bakeoff {} features ready ({} rows, {} features)",
        bakeoff_id,
        matrix.n_samples,
        len(matrix.feature_names),
    )
    return bakeoff_id


def begin(conn: sqlite3.Connection, bakeoff_id: str) -> BakeoffRecord:
    """Move a bake-off from queued to running.

    A bake-off that is already running is returned unchanged so an
    interrupted run can resume.
    """
    bakeoff = _require_bakeoff(conn, bakeoff_id)
    if bakeoff.status == "running":
        return bakeoff
    if bakeoff.status != "queued":
        msg = f"Bakeoff cannot begin from status {bakeoff.status}"
        raise ConflictError(msg, {"status": bakeoff.status})
    if bakeoff.progress is None:
        msg = "Bakeoff has no progress data; was it started?"
        raise ConflictError(msg)

    if not begin_bakeoff(conn, bakeoff_id):
        bakeoff = _require_bakeoff(conn, bakeoff_id)
        if bakeoff.status != "running":
            msg = f"Bakeoff cannot begin from status {bakeoff.status}"
            raise ConflictError(msg, {"status": bakeoff.status})
        return bakeoff

    log.info("Bakeoff {} running", bakeoff_id)
    return _require_bakeoff(conn, bakeoff_id)


def train_one(
    conn: sqlite3.Connection,
    store: BlobStore,
    bakeoff_id: str,
    candidate_index: int,
    budget_seconds: Optional[float] = None,
) -> CandidateSummary:
    """
    Train the candidate at ``candidate_index`` and record its version.

    ``candidate_index`` must equal the number of candidates already
    recorded. Duplicate and out-of-order calls are rejected before any
    work is done, and a call that loses a race at append time removes the
    version it created.

    Raises:
        ConflictError: bake-off not running, or index is not the next one.
        ValidationError: index outside the candidate list.
    """
    bakeoff = _require_bakeoff(conn, bakeoff_id)
    progress = _require_running(bakeoff)

    count = progress.candidate_count
    if not 0 <= candidate_index < count:
        msg = f"candidate_index {candidate_index} out of range ({count} candidates)"
        raise ValidationError(msg)
    done = bakeoff.candidates_done
    if candidate_index != done:
        msg = f"Duplicate or out-of-order: expected candidate_index {done}, got {candidate_index}"
        raise ConflictError(msg, {"candidates_done": done})

    config = progress.candidate_configs[candidate_index]
    train_log.info(
        "Training candidate {}/{} ({}) for bakeoff {}",
        candidate_index + 1,
        count,
        config.algorithm.value,
        bakeoff_id,
    )
    started = time.monotonic()
    matrix = load_feature_matrix(store.download(progress.features_blob_url))
    result = train_candidate(config, matrix, progress.review_rate)
    elapsed = time.monotonic() - started
    if budget_seconds is not None and elapsed > budget_seconds:
        train_log.warning(
            "Candidate {} took {:.1f}s, over the {:.0f}s budget",
            candidate_index,
            elapsed,
            budget_seconds,
        )

    version_id = new_id()
    artifact_url = ""
    if not result.failed:
        artifact_url = store.upload(
            f"models/{bakeoff.model_id}/versions/{version_id}/artifact.joblib",
            result.serialized_artifact,
        )
    version = insert_model_version(
        conn,
        model_id=bakeoff.model_id,
        algorithm=result.algorithm.value,
        hyperparams=dict(result.hyperparams),
        artifact_blob_url=artifact_url,
        metrics=result.metrics,
        importance=result.importance,
        feature_names=matrix.feature_names,
        trained_dataset_id=bakeoff.dataset_id,
        failed=result.failed,
        version_id=version_id,
    )

    if not append_candidate_version(conn, bakeoff_id, candidate_index, version.id):
        delete_model_version(conn, version.id)
        if artifact_url:
            store.delete(artifact_url)
        current = _require_bakeoff(conn, bakeoff_id)
        msg = (
            f"Candidate {candidate_index} was recorded concurrently "
            f"(status: {current.status}, candidates_done: {current.candidates_done})"
        )
        raise ConflictError(msg, {"candidates_done": current.candidates_done})

    train_log.info(
        "Candidate {} -> version {} (failed={})",
        candidate_index,
        version.id,
        result.failed,
    )
    return CandidateSummary(
        version_id=version.id,
        candidate_index=candidate_index,
        algorithm=result.algorithm,
        metrics=result.metrics,
        failed=result.failed,
        error=result.error,
        candidates_done=candidate_index + 1,
        candidate_count=count,
    )


def _results_from_versions(versions: Sequence[ModelVersionRecord]) -> list[CandidateResult]:
    return [
        CandidateResult(
            algorithm=v.algorithm,
            hyperparams=v.hyperparams,
            metrics=v.metrics,
            importance=v.importance,
            failed=v.failed,
        )
        for v in versions
    ]


def finalize(conn: sqlite3.Connection, store: BlobStore, bakeoff_id: str) -> FinalizeResult:
    """
    Pick the champion of a fully trained bake-off and complete it.

    Raises:
        ConflictError: bake-off not running or candidates still untrained.
        ValidationError: every candidate failed; the bake-off is marked failed.
    """
    bakeoff = _require_bakeoff(conn, bakeoff_id)
    progress = _require_running(bakeoff)

    count = progress.candidate_count
    if bakeoff.candidates_done < count:
        msg = f"Not all candidates trained: {bakeoff.candidates_done}/{count}"
        raise ConflictError(
            msg, {"candidates_done": bakeoff.candidates_done, "candidate_count": count}
        )

    versions = get_model_versions(conn, bakeoff.candidate_version_ids)
    if len(versions) != count:
        msg = f"Bakeoff {bakeoff_id} references missing model versions"
        raise PipelineFailure(msg)
    candidates = _results_from_versions(versions)

    try:
        outcome = apply_rubric(candidates, bakeoff.rubric)
    except ValidationError as e:
        _ = fail_bakeoff(conn, bakeoff_id, e.message)
        raise
    narrative = generate_narrative(candidates, outcome.champion_index, bakeoff.rubric)
    champion = versions[outcome.champion_index]

    if not complete_bakeoff(
        conn,
        bakeoff_id,
        bakeoff.model_id,
        champion.id,
        narrative.short,
        narrative.long,
        expected_count=count,
    ):
        current = _require_bakeoff(conn, bakeoff_id)
        msg = f"Bakeoff changed while finalizing (status: {current.status})"
        raise ConflictError(msg, {"status": current.status})

    try:
        store.delete(progress.features_blob_url)
    except (ArbiterError, OSError) as e:
        finalize_log.warning("Failed to delete features blob for {}: {}", bakeoff_id, e)

    finalize_log.info(
        "Bakeoff {} completed: champion {} ({})",
        bakeoff_id,
        champion.id,
        champion.algorithm.value,
    )
    return FinalizeResult(
        champion_version_id=champion.id,
        champion_algorithm=champion.algorithm,
        narrative=narrative,
    )


def run_batch(
    conn: sqlite3.Connection,
    store: BlobStore,
    bakeoff_id: str,
    budget_seconds: Optional[float] = None,
) -> BakeoffRecord:
    """
    Train every remaining candidate, then finalize.

    Resumes from the persisted candidate count. Any error marks the
    bake-off failed with the message; candidates already recorded are kept.
    Terminal bake-offs are returned unchanged.
    """
    bakeoff = _require_bakeoff(conn, bakeoff_id)
    if bakeoff.status in ("completed", "failed"):
        log.info("Bakeoff {} already {}", bakeoff_id, bakeoff.status)
        return bakeoff

    try:
        bakeoff = begin(conn, bakeoff_id)
        if bakeoff.progress is None:
            msg = f"Bakeoff {bakeoff_id} has no training progress"
            raise PipelineFailure(msg)
        if bakeoff.candidates_done:
            log.info(
                "Resuming bakeoff {} at candidate {}/{}",
                bakeoff_id,
                bakeoff.candidates_done + 1,
                bakeoff.candidate_count,
            )
        for index in range(bakeoff.candidates_done, bakeoff.candidate_count):
            _ = train_one(conn, store, bakeoff_id, index, budget_seconds=budget_seconds)
        _ = finalize(conn, store, bakeoff_id)
    except Exception as e:
        message = e.message if isinstance(e, ArbiterError) else f"{type(e).__name__}: {e}"
        log.opt(exception=e).error("Bakeoff {} failed: {}", bakeoff_id, message)
        _ = fail_bakeoff(conn, bakeoff_id, message)

    return _require_bakeoff(conn, bakeoff_id)


def select_champion(
    conn: sqlite3.Connection, bakeoff_id: str, model_version_id: str
) -> ModelVersionRecord:
    """Override the champion with another candidate of the same bake-off.

    Raises:
        ConflictError: the version is not a candidate, or its training failed.
    """
    bakeoff = _require_bakeoff(conn, bakeoff_id)
    if model_version_id not in bakeoff.candidate_version_ids:
        msg = "Model version is not a candidate in this bakeoff"
        raise ConflictError(msg, {"model_version_id": model_version_id})

    versions = get_model_versions(conn, [model_version_id])
    if not versions:
        raise NotFoundError("Model version", model_version_id)
    version = versions[0]
    if version.failed:
        msg = "A failed candidate cannot be champion"
        raise ConflictError(msg, {"model_version_id": model_version_id})

    set_champion_version(conn, bakeoff.model_id, model_version_id)
    log.info(
        "Champion of model {} set to {} from bakeoff {}",
        bakeoff.model_id,
        model_version_id,
        bakeoff_id,
    )
    return version.model_copy(update={"is_champion": True})


def mark_failed(conn: sqlite3.Connection, bakeoff_id: str, message: str) -> BakeoffRecord:
    """Manually fail a queued or running bake-off."""
    bakeoff = _require_bakeoff(conn, bakeoff_id)
    if not fail_bakeoff(conn, bakeoff_id, message):
        msg = f"Bakeoff is already {bakeoff.status}"
        raise ConflictError(msg, {"status": bakeoff.status})
    log.warning("Bakeoff {} marked failed: {}", bakeoff_id, message)
    return _require_bakeoff(conn, bakeoff_id)


def get_bakeoff_status(conn: sqlite3.Connection, bakeoff_id: str) -> BakeoffStatus:
    """Status and progress of a bake-off."""
    bakeoff = _require_bakeoff(conn, bakeoff_id)
    return BakeoffStatus(
        id=bakeoff.id,
        status=bakeoff.status,
        candidates_done=bakeoff.candidates_done,
        candidate_count=bakeoff.candidate_count,
        champion_version_id=bakeoff.champion_version_id,
        error=bakeoff.error,
    )
