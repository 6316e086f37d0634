# Copyright (c) Syntropy Systems
"""Tests for the scoring pipeline."""

import io
import sqlite3
from unittest.mock import patch

import numpy as np
import pandas as pd
import pytest

from arbiter.datasets import register_dataset
from arbiter.db import create_model, get_findings, get_model_version, list_runs
from arbiter.errors import NotFoundError, PipelineFailure, ValidationError
from arbiter.models.bakeoff import Algorithm, CandidateConfig
from arbiter.orchestrator import run_batch, start
from arbiter.scoring import (
    LABEL_COLUMN,
    SCORE_COLUMN,
    flag_count,
    resolve_model_version,
    review_rate_threshold,
    run_scoring_pipeline,
    score_dataset,
)
from arbiter.storage import BlobStore


@pytest.fixture
def champion_model(
    db_connection: sqlite3.Connection, blob_store: BlobStore, dataset_id: str, model_id: str
) -> str:
    """A model whose champion was picked by a completed bake-off."""
    bakeoff_id = start(
        db_connection,
        blob_store,
        dataset_id,
        model_id,
        [
            CandidateConfig(algorithm=Algorithm.LOG_REG),
            CandidateConfig(algorithm=Algorithm.DECISION_TREE),
        ],
        review_rate=0.1,
        enqueue=False,
    )
    bakeoff = run_batch(db_connection, blob_store, bakeoff_id)
    assert bakeoff.status == "completed"
    return model_id


def _register(conn, store, frame: pd.DataFrame, name: str = "score") -> str:
    return register_dataset(conn, store, frame.to_csv(index=False).encode(), name, "csv").id


def _train_log_reg(conn, store, frame: pd.DataFrame, name: str = "log-reg") -> str:
    """Train a single logistic regression champion on ``frame`` and return its model ID."""
    model_id = create_model(conn, name)
    bakeoff_id = start(
        conn,
        store,
        _register(conn, store, frame, f"{name}-train"),
        model_id,
        [CandidateConfig(algorithm=Algorithm.LOG_REG)],
        label_column="IsAnomaly",
        review_rate=0.1,
        enqueue=False,
    )
    bakeoff = run_batch(conn, store, bakeoff_id)
    assert bakeoff.status == "completed"
    return model_id


class TestThreshold:
    """Tests for review-rate thresholds."""

    def test_flag_count(self) -> None:
        assert flag_count(1000, 0.01) == 10
        assert flag_count(1000, 0.0001) == 1
        assert flag_count(10, 1.0) == 10
        assert flag_count(0, 0.5) == 0
        assert flag_count(999, 0.01) == 10

    def test_flag_count_ignores_float_noise(self) -> None:
        """Products like 0.07 * 100 that land just above an integer are not rounded up."""
        assert flag_count(100, 0.07) == 7
        assert flag_count(1000, 0.07) == 70
        assert flag_count(1000, 0.029) == 29
        assert flag_count(100, 0.071) == 8

    def test_kth_highest_score(self) -> None:
        scores = np.array([0.1, 0.9, 0.5, 0.7, 0.3])
        assert review_rate_threshold(scores, 0.4) == 0.7

    def test_distinct_scores_flag_exactly_k(self) -> None:
        """With no ties exactly ceil(rate * n) rows clear the threshold."""
        scores = np.random.default_rng(5).permutation(np.linspace(0.0, 1.0, 1000))
        threshold = review_rate_threshold(scores, 0.01)
        assert int(np.sum(scores >= threshold)) == 10

    def test_distinct_scores_at_inexact_rate(self) -> None:
        scores = np.linspace(0.0, 1.0, 100)
        threshold = review_rate_threshold(scores, 0.07)
        assert int(np.sum(scores >= threshold)) == 7

    def test_ties_at_boundary_are_all_flagged(self) -> None:
        """Rows tied with the k-th score clear the threshold too."""
        scores = np.array([0.9, 0.5, 0.5, 0.5, 0.1])
        threshold = review_rate_threshold(scores, 0.4)

        assert threshold == 0.5
        assert int(np.sum(scores >= threshold)) == 4


class TestResolveModelVersion:
    """Tests for choosing the version to score with."""

    def test_champion(self, db_connection: sqlite3.Connection, champion_model: str) -> None:
        version = resolve_model_version(db_connection, model_id=champion_model)
        assert version.is_champion

    def test_no_champion(self, db_connection: sqlite3.Connection) -> None:
        model_id = create_model(db_connection, "fresh")
        with pytest.raises(ValidationError, match="no champion"):
            _ = resolve_model_version(db_connection, model_id=model_id)

    def test_unknown_model(self, db_connection: sqlite3.Connection) -> None:
        with pytest.raises(NotFoundError):
            _ = resolve_model_version(db_connection, model_id="missing")

    def test_unknown_version(self, db_connection: sqlite3.Connection) -> None:
        with pytest.raises(ValidationError):
            _ = resolve_model_version(db_connection, model_version_id="missing")

    def test_nothing_given(self, db_connection: sqlite3.Connection) -> None:
        with pytest.raises(ValidationError):
            _ = resolve_model_version(db_connection)


class TestScoreDataset:
    """Tests for scoring runs end to end."""

    def test_top_review_rate_becomes_findings(
        self,
        db_connection: sqlite3.Connection,
        blob_store: BlobStore,
        champion_model: str,
        wire_factory,
    ) -> None:
        """1000 rows at 1% give 10 findings ranked by descending score."""
        frame = wire_factory(1000, anomaly_rate=0.01, seed=11)
        dataset_id = _register(db_connection, blob_store, frame)

        run = score_dataset(
            db_connection, blob_store, dataset_id, model_id=champion_model, review_rate=0.01
        )

        assert run.status == "scored"
        assert run.summary is not None
        assert run.summary.row_count == 1000
        findings = get_findings(db_connection, run.id)
        assert run.summary.flagged_count == len(findings)
        assert len(findings) >= 10
        assert [f.rank for f in findings] == list(range(1, len(findings) + 1))
        scores = [f.score for f in findings]
        assert scores == sorted(scores, reverse=True)
        assert all(f.score >= run.summary.threshold_used - 1e-6 for f in findings)
        assert all(f.predicted_label for f in findings)
        assert findings[0].wire_id.startswith("W")
        assert findings[0].reason_codes

    def test_outputs_and_label_metrics(
        self,
        db_connection: sqlite3.Connection,
        blob_store: BlobStore,
        champion_model: str,
        dataset_id: str,
    ) -> None:
        """The scored CSV keeps every row and adds score columns."""
        run = score_dataset(
            db_connection, blob_store, dataset_id, model_id=champion_model, review_rate=0.1
        )

        assert run.outputs_blob_url is not None
        output = pd.read_csv(
            io.BytesIO(blob_store.download(run.outputs_blob_url)), dtype=str
        )
        assert len(output) == 300
        assert SCORE_COLUMN in output.columns
        assert set(output[LABEL_COLUMN]) <= {"0", "1"}

        assert run.summary is not None
        labels = run.summary.metrics_if_labels_present
        assert labels is not None
        assert labels.recall >= 0.9
        assert run.summary.global_top_features
        assert len(run.summary.global_top_features) <= 15

    def test_explicit_threshold(
        self,
        db_connection: sqlite3.Connection,
        blob_store: BlobStore,
        champion_model: str,
        dataset_id: str,
    ) -> None:
        """An explicit threshold overrides the review rate."""
        run = score_dataset(
            db_connection, blob_store, dataset_id, model_id=champion_model, threshold=1.01
        )
        assert run.summary is not None
        assert run.summary.threshold_used == 1.01
        assert run.summary.flagged_count == 0
        assert get_findings(db_connection, run.id) == []

    def test_preview_limit_caps_findings(
        self,
        db_connection: sqlite3.Connection,
        blob_store: BlobStore,
        champion_model: str,
        dataset_id: str,
    ) -> None:
        run = score_dataset(
            db_connection,
            blob_store,
            dataset_id,
            model_id=champion_model,
            review_rate=0.5,
            preview_limit=5,
        )
        assert run.summary is not None
        assert run.summary.flagged_count >= 150
        assert len(get_findings(db_connection, run.id)) == 5

    def test_missing_columns_fail_run(
        self,
        db_connection: sqlite3.Connection,
        blob_store: BlobStore,
        champion_model: str,
        wire_factory,
    ) -> None:
        """A dataset without the training columns is rejected and never scored."""
        frame = wire_factory(50).drop(columns=["Amount"])
        dataset_id = _register(db_connection, blob_store, frame, "broken")

        with pytest.raises(ValidationError, match="Amount"):
            _ = score_dataset(db_connection, blob_store, dataset_id, model_id=champion_model)

        runs = list_runs(db_connection)
        assert [r.status for r in runs] == ["failed"]
        assert get_findings(db_connection, runs[0].id) == []

    def test_unlabelled_dataset(
        self,
        db_connection: sqlite3.Connection,
        blob_store: BlobStore,
        champion_model: str,
        wire_factory,
    ) -> None:
        """Without a label column no label metrics are reported."""
        frame = wire_factory(80).drop(columns=["IsAnomaly"])
        dataset_id = _register(db_connection, blob_store, frame, "unlabelled")

        run = score_dataset(db_connection, blob_store, dataset_id, model_id=champion_model)

        assert run.summary is not None
        assert run.summary.metrics_if_labels_present is None
        assert run.summary.flagged_count >= 1

    @pytest.mark.parametrize(("review_rate", "expected"), [(0.01, 10), (0.07, 70)])
    def test_distinct_scores_flag_exact_count(
        self,
        db_connection: sqlite3.Connection,
        blob_store: BlobStore,
        wire_factory,
        review_rate: float,
        expected: int,
    ) -> None:
        """With continuous scores a run flags exactly ceil(rate * n) of 1000 rows."""
        model_id = _train_log_reg(db_connection, blob_store, wire_factory(300))
        frame = wire_factory(1000, anomaly_rate=0.001, seed=23)
        dataset_id = _register(db_connection, blob_store, frame)

        run = score_dataset(
            db_connection, blob_store, dataset_id, model_id=model_id, review_rate=review_rate
        )

        assert run.summary is not None
        assert run.summary.flagged_count == expected
        findings = get_findings(db_connection, run.id)
        assert [f.rank for f in findings] == list(range(1, expected + 1))
        scores = [f.score for f in findings]
        assert all(a > b for a, b in zip(scores, scores[1:]))

        assert run.outputs_blob_url is not None
        output = pd.read_csv(io.BytesIO(blob_store.download(run.outputs_blob_url)), dtype=str)
        assert int((output[LABEL_COLUMN] == "1").sum()) == expected

    def test_label_like_feature_is_not_taken_as_label(
        self,
        db_connection: sqlite3.Connection,
        blob_store: BlobStore,
        wire_factory,
    ) -> None:
        """A trained feature named like a label stays a feature on unlabelled data."""
        rng = np.random.default_rng(3)
        train = wire_factory(300)
        train["FraudScore"] = [f"{v:.4f}" for v in rng.uniform(0, 1, len(train))]
        model_id = _train_log_reg(db_connection, blob_store, train, "fraud-score")

        version = resolve_model_version(db_connection, model_id=model_id)
        stored = get_model_version(db_connection, version.id)
        assert stored is not None
        assert "FraudScore" in stored.feature_names

        frame = wire_factory(120, seed=9).drop(columns=["IsAnomaly"])
        frame["FraudScore"] = [f"{v:.4f}" for v in rng.uniform(0, 1, len(frame))]
        dataset_id = _register(db_connection, blob_store, frame, "unlabelled-fraud-score")

        run = score_dataset(db_connection, blob_store, dataset_id, model_id=model_id)

        assert run.status == "scored"
        assert run.summary is not None
        assert run.summary.metrics_if_labels_present is None
        assert run.summary.flagged_count >= 1

    def test_unknown_dataset(
        self, db_connection: sqlite3.Connection, blob_store: BlobStore, champion_model: str
    ) -> None:
        with pytest.raises(NotFoundError):
            _ = score_dataset(db_connection, blob_store, "missing", model_id=champion_model)

    def test_vanished_run_raises(
        self,
        db_connection: sqlite3.Connection,
        blob_store: BlobStore,
        champion_model: str,
        dataset_id: str,
    ) -> None:
        with patch("arbiter.scoring.get_run", return_value=None):
            with pytest.raises(PipelineFailure, match="vanished"):
                _ = score_dataset(db_connection, blob_store, dataset_id, model_id=champion_model)

    def test_bad_review_rate(
        self,
        db_connection: sqlite3.Connection,
        blob_store: BlobStore,
        champion_model: str,
        dataset_id: str,
    ) -> None:
        with pytest.raises(ValidationError):
            _ = run_scoring_pipeline(
                db_connection,
                blob_store,
                dataset_id,
                resolve_model_version(db_connection, model_id=champion_model).id,
                review_rate=0.0,
            )
