# Copyright (c) Syntropy Systems
"""Tests for arbiter database operations."""

import sqlite3

from arbiter.db import (
    append_candidate_version,
    begin_bakeoff,
    claim_task,
    complete_bakeoff,
    complete_task,
    create_bakeoff,
    create_dataset,
    create_model,
    create_run,
    enqueue_task,
    fail_bakeoff,
    get_bakeoff,
    get_champion_version,
    get_finding,
    get_findings,
    get_run,
    get_task,
    insert_model_version,
    record_scored_run,
    requeue_orphaned_tasks,
    set_champion_version,
)
from arbiter.models.bakeoff import CandidateMetrics, RubricConfig
from arbiter.models.db import ColumnSchema, DatasetSchema
from arbiter.models.scoring import Finding, ReasonCode, ScoringSummary


def _dataset(conn: sqlite3.Connection) -> str:
    return create_dataset(
        conn,
        name="wires",
        source_format="csv",
        blob_url="blob://datasets/x/source.csv",
        schema=DatasetSchema(columns=[ColumnSchema(name="Amount", type="number")]),
        row_count=10,
    )


def _version(conn: sqlite3.Connection, model_id: str, recall: float = 0.5) -> str:
    return insert_model_version(
        conn,
        model_id=model_id,
        algorithm="log_reg",
        hyperparams={"C": 1.0},
        artifact_blob_url="blob://models/m/versions/v/artifact.joblib",
        metrics=CandidateMetrics(recall_at_review_rate=recall),
        importance=[("Amount", 1.0)],
        feature_names=["Amount"],
    ).id


def _running_bakeoff(conn: sqlite3.Connection) -> tuple[str, str]:
    model_id = create_model(conn, "m")
    bakeoff_id = create_bakeoff(conn, model_id, _dataset(conn), RubricConfig())
    assert begin_bakeoff(conn, bakeoff_id)
    return model_id, bakeoff_id


class TestBakeoffOperations:
    """Tests for guarded bake-off transitions."""

    def test_create_bakeoff_is_queued(self, db_connection: sqlite3.Connection) -> None:
        """A new bake-off is queued with no candidates."""
        model_id = create_model(db_connection, "m")
        bakeoff_id = create_bakeoff(db_connection, model_id, _dataset(db_connection), RubricConfig())

        bakeoff = get_bakeoff(db_connection, bakeoff_id)
        assert bakeoff is not None
        assert bakeoff.status == "queued"
        assert bakeoff.candidate_version_ids == []
        assert bakeoff.rubric == RubricConfig()

    def test_begin_only_from_queued(self, db_connection: sqlite3.Connection) -> None:
        """begin_bakeoff is a no-op once running."""
        _, bakeoff_id = _running_bakeoff(db_connection)
        assert not begin_bakeoff(db_connection, bakeoff_id)

    def test_append_requires_expected_count(self, db_connection: sqlite3.Connection) -> None:
        """Appends with a stale count are rejected."""
        model_id, bakeoff_id = _running_bakeoff(db_connection)
        first = _version(db_connection, model_id)
        second = _version(db_connection, model_id)

        assert append_candidate_version(db_connection, bakeoff_id, 0, first)
        assert not append_candidate_version(db_connection, bakeoff_id, 0, second)
        assert append_candidate_version(db_connection, bakeoff_id, 1, second)

        bakeoff = get_bakeoff(db_connection, bakeoff_id)
        assert bakeoff is not None
        assert bakeoff.candidate_version_ids == [first, second]

    def test_append_requires_running(self, db_connection: sqlite3.Connection) -> None:
        """Queued bake-offs do not accept candidates."""
        model_id = create_model(db_connection, "m")
        bakeoff_id = create_bakeoff(db_connection, model_id, _dataset(db_connection), RubricConfig())
        assert not append_candidate_version(
            db_connection, bakeoff_id, 0, _version(db_connection, model_id)
        )

    def test_complete_sets_single_champion(self, db_connection: sqlite3.Connection) -> None:
        """Completing a bake-off unsets any previous champion of the model."""
        model_id, bakeoff_id = _running_bakeoff(db_connection)
        old = _version(db_connection, model_id)
        set_champion_version(db_connection, model_id, old)
        new = _version(db_connection, model_id)
        assert append_candidate_version(db_connection, bakeoff_id, 0, new)

        assert complete_bakeoff(db_connection, bakeoff_id, model_id, new, "short", "long", 1)

        champion = get_champion_version(db_connection, model_id)
        assert champion is not None
        assert champion.id == new
        bakeoff = get_bakeoff(db_connection, bakeoff_id)
        assert bakeoff is not None
        assert bakeoff.status == "completed"
        assert bakeoff.champion_version_id == new
        assert bakeoff.narrative_short == "short"

    def test_complete_rejects_changed_count(self, db_connection: sqlite3.Connection) -> None:
        """A stale candidate count leaves the bake-off running."""
        model_id, bakeoff_id = _running_bakeoff(db_connection)
        version = _version(db_connection, model_id)
        assert append_candidate_version(db_connection, bakeoff_id, 0, version)

        assert not complete_bakeoff(db_connection, bakeoff_id, model_id, version, "s", "l", 2)
        bakeoff = get_bakeoff(db_connection, bakeoff_id)
        assert bakeoff is not None
        assert bakeoff.status == "running"

    def test_fail_keeps_candidates(self, db_connection: sqlite3.Connection) -> None:
        """Failing a bake-off keeps recorded candidates and is terminal."""
        model_id, bakeoff_id = _running_bakeoff(db_connection)
        version = _version(db_connection, model_id)
        assert append_candidate_version(db_connection, bakeoff_id, 0, version)

        assert fail_bakeoff(db_connection, bakeoff_id, "boom")
        assert not fail_bakeoff(db_connection, bakeoff_id, "again")

        bakeoff = get_bakeoff(db_connection, bakeoff_id)
        assert bakeoff is not None
        assert bakeoff.status == "failed"
        assert bakeoff.error == "boom"
        assert bakeoff.candidate_version_ids == [version]


class TestRunOperations:
    """Tests for scoring runs and findings."""

    def test_record_scored_run(self, db_connection: sqlite3.Connection) -> None:
        """Findings and the scored status are written together."""
        dataset_id = _dataset(db_connection)
        model_id = create_model(db_connection, "m")
        version_id = _version(db_connection, model_id)
        run_id = create_run(db_connection, dataset_id)

        reason = ReasonCode(
            code="HighAmount",
            description="Amount significantly above normal",
            feature="Amount",
            direction="increase",
            contribution="high",
        )
        findings = [
            Finding(wire_id="W2", rank=2, score=0.8, predicted_label=True),
            Finding(wire_id="W1", rank=1, score=0.9, predicted_label=True, reason_codes=[reason]),
        ]
        summary = ScoringSummary(review_rate=0.1, threshold_used=0.8, flagged_count=2, row_count=20)

        record_scored_run(db_connection, run_id, version_id, "blob://runs/r/out.csv", summary, findings)

        run = get_run(db_connection, run_id)
        assert run is not None
        assert run.status == "scored"
        assert run.finished_at is not None
        assert run.summary == summary

        stored = get_findings(db_connection, run_id)
        assert [f.wire_id for f in stored] == ["W1", "W2"]
        assert stored[0].reason_codes == [reason]

        one = get_finding(db_connection, run_id, "W2")
        assert one is not None
        assert one.rank == 2
        assert get_finding(db_connection, run_id, "missing") is None


class TestTaskOperations:
    """Tests for the background task queue."""

    def test_claim_and_complete(self, db_connection: sqlite3.Connection) -> None:
        """Tasks are claimed once and completed with an optional error."""
        first = enqueue_task(db_connection, "bakeoff", "b1")
        second = enqueue_task(db_connection, "bakeoff", "b2")

        task = claim_task(db_connection, "worker-1")
        assert task is not None
        assert task.id == first
        assert task.status == "running"
        assert task.worker_id == "worker-1"

        complete_task(db_connection, first)
        task2 = claim_task(db_connection, "worker-2")
        assert task2 is not None
        assert task2.id == second
        complete_task(db_connection, second, "it broke")

        assert claim_task(db_connection, "worker-1") is None
        done = get_task(db_connection, first)
        failed = get_task(db_connection, second)
        assert done is not None and done.status == "completed"
        assert failed is not None and failed.status == "failed"
        assert failed.error_message == "it broke"

    def test_requeue_orphaned(self, db_connection: sqlite3.Connection) -> None:
        """Running tasks with stale heartbeats return to the queue."""
        task_id = enqueue_task(db_connection, "bakeoff", "b1")
        assert claim_task(db_connection, "worker-1") is not None
        db_connection.execute(
            "UPDATE tasks SET heartbeat_at = '2000-01-01T00:00:00Z' WHERE id = ?", (task_id,)
        )

        orphaned = requeue_orphaned_tasks(db_connection, timeout_seconds=60)

        assert [t.id for t in orphaned] == [task_id]
        task = get_task(db_connection, task_id)
        assert task is not None
        assert task.status == "queued"
        assert task.attempt == 2
        assert task.worker_id is None
