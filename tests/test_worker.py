# Copyright (c) Syntropy Systems
"""Tests for the background worker."""

import sqlite3
from pathlib import Path

from arbiter.db import claim_task, enqueue_task, get_bakeoff, get_task, list_model_versions
from arbiter.models.bakeoff import Algorithm, CandidateConfig
from arbiter.orchestrator import begin, start, train_one
from arbiter.storage import BlobStore
from arbiter.worker import process_next_task, requeue_orphans

CONFIGS = [
    CandidateConfig(algorithm=Algorithm.LOG_REG),
    CandidateConfig(algorithm=Algorithm.DECISION_TREE, hyperparams={"maxDepth": 4}),
]


class TestProcessNextTask:
    """Tests for claiming and running queued bake-offs."""

    def test_empty_queue(self, db_path: Path, blob_store: BlobStore) -> None:
        """Nothing queued returns None."""
        assert process_next_task(db_path, blob_store, "worker-1") is None

    def test_runs_queued_bakeoff(
        self,
        db_path: Path,
        db_connection: sqlite3.Connection,
        blob_store: BlobStore,
        dataset_id: str,
        model_id: str,
    ) -> None:
        """A queued bake-off is trained, finalized and its task completed."""
        bakeoff_id = start(db_connection, blob_store, dataset_id, model_id, CONFIGS, review_rate=0.1)

        task = process_next_task(db_path, blob_store, "worker-1", heartbeat_interval=0.05)

        assert task is not None
        assert task.bakeoff_id == bakeoff_id
        assert task.status == "completed"
        stored = get_task(db_connection, task.id)
        assert stored is not None
        assert stored.status == "completed"
        assert stored.finished_at is not None

        bakeoff = get_bakeoff(db_connection, bakeoff_id)
        assert bakeoff is not None
        assert bakeoff.status == "completed"
        assert bakeoff.candidates_done == 2
        assert bakeoff.champion_version_id in bakeoff.candidate_version_ids

        assert process_next_task(db_path, blob_store, "worker-1") is None

    def test_resumes_partial_bakeoff(
        self,
        db_path: Path,
        db_connection: sqlite3.Connection,
        blob_store: BlobStore,
        dataset_id: str,
        model_id: str,
    ) -> None:
        """Candidates recorded by an earlier attempt are not trained again."""
        bakeoff_id = start(db_connection, blob_store, dataset_id, model_id, CONFIGS, review_rate=0.1)
        _ = begin(db_connection, bakeoff_id)
        first = train_one(db_connection, blob_store, bakeoff_id, 0)

        task = process_next_task(db_path, blob_store, "worker-1")

        assert task is not None
        assert task.status == "completed"
        bakeoff = get_bakeoff(db_connection, bakeoff_id)
        assert bakeoff is not None
        assert bakeoff.candidate_version_ids[0] == first.version_id
        assert len(list_model_versions(db_connection, model_id)) == 2

    def test_failed_bakeoff_fails_task(
        self,
        db_path: Path,
        db_connection: sqlite3.Connection,
        blob_store: BlobStore,
        dataset_id: str,
        model_id: str,
    ) -> None:
        """A bake-off whose features blob vanished fails along with its task."""
        bakeoff_id = start(db_connection, blob_store, dataset_id, model_id, CONFIGS, review_rate=0.1)
        bakeoff = get_bakeoff(db_connection, bakeoff_id)
        assert bakeoff is not None and bakeoff.progress is not None
        blob_store.delete(bakeoff.progress.features_blob_url)

        task = process_next_task(db_path, blob_store, "worker-1")

        assert task is not None
        assert task.status == "failed"
        assert task.error_message
        failed = get_bakeoff(db_connection, bakeoff_id)
        assert failed is not None
        assert failed.status == "failed"

    def test_unknown_task_kind(
        self, db_path: Path, db_connection: sqlite3.Connection, blob_store: BlobStore
    ) -> None:
        _ = enqueue_task(db_connection, "retrain", "b1")

        task = process_next_task(db_path, blob_store, "worker-1")

        assert task is not None
        assert task.status == "failed"
        assert task.error_message == "Unknown task kind: retrain"


class TestRequeueOrphans:
    """Tests for startup recovery."""

    def test_stale_task_requeued(self, db_path: Path, db_connection: sqlite3.Connection) -> None:
        """A running task with an old heartbeat is put back on the queue."""
        task_id = enqueue_task(db_connection, "bakeoff", "b1")
        assert claim_task(db_connection, "dead-worker") is not None
        db_connection.execute(
            "UPDATE tasks SET heartbeat_at = '2000-01-01T00:00:00Z' WHERE id = ?", (task_id,)
        )

        orphaned = requeue_orphans(db_path, timeout_seconds=60)

        assert [t.id for t in orphaned] == [task_id]
        task = get_task(db_connection, task_id)
        assert task is not None
        assert task.status == "queued"
        assert task.attempt == 2

    def test_fresh_task_untouched(self, db_path: Path, db_connection: sqlite3.Connection) -> None:
        task_id = enqueue_task(db_connection, "bakeoff", "b1")
        assert claim_task(db_connection, "live-worker") is not None

        assert requeue_orphans(db_path, timeout_seconds=60) == []
        task = get_task(db_connection, task_id)
        assert task is not None
        assert task.status == "running"
