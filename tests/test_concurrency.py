# Copyright (c) Syntropy Systems
"""Concurrency tests for bake-off progress and the task queue."""

import sqlite3
import threading
from pathlib import Path

import pytest

from arbiter.db import (
    claim_task,
    complete_task,
    enqueue_task,
    get_bakeoff,
    get_connection,
    list_model_versions,
)
from arbiter.errors import ConflictError
from arbiter.models.bakeoff import Algorithm, CandidateConfig
from arbiter.orchestrator import TASK_KIND, begin, start, train_one
from arbiter.storage import BlobStore


class TestConcurrentTraining:
    """Racing callers on the same candidate index."""

    def test_only_one_train_one_wins(
        self,
        db_path: Path,
        db_connection: sqlite3.Connection,
        blob_store: BlobStore,
        dataset_id: str,
        model_id: str,
    ) -> None:
        """Exactly one racer records the candidate; the rest get a conflict."""
        configs = [
            CandidateConfig(algorithm=Algorithm.DECISION_TREE, hyperparams={"maxDepth": 3}),
            CandidateConfig(algorithm=Algorithm.LOG_REG),
        ]
        bakeoff_id = start(
            db_connection, blob_store, dataset_id, model_id, configs, review_rate=0.1, enqueue=False
        )
        _ = begin(db_connection, bakeoff_id)

        num_racers = 4
        barrier = threading.Barrier(num_racers)
        successes: list[str] = []
        conflicts: list[str] = []
        errors: list[str] = []
        lock = threading.Lock()

        def race() -> None:
            conn = get_connection(db_path)
            try:
                _ = barrier.wait(timeout=10.0)
                summary = train_one(conn, blob_store, bakeoff_id, 0)
                with lock:
                    successes.append(summary.version_id)
            except ConflictError as e:
                with lock:
                    conflicts.append(e.message)
            except Exception as e:  # noqa: BLE001
                with lock:
                    errors.append(str(e))
            finally:
                conn.close()

        threads = [threading.Thread(target=race) for _ in range(num_racers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60.0)

        assert errors == []
        assert len(successes) == 1
        assert len(conflicts) == num_racers - 1

        bakeoff = get_bakeoff(db_connection, bakeoff_id)
        assert bakeoff is not None
        assert bakeoff.candidate_version_ids == successes
        assert [v.id for v in list_model_versions(db_connection, model_id)] == successes

    def test_sequential_retry_is_rejected(
        self,
        db_connection: sqlite3.Connection,
        blob_store: BlobStore,
        dataset_id: str,
        model_id: str,
    ) -> None:
        """Retrying an index after it succeeded never appends twice."""
        bakeoff_id = start(
            db_connection,
            blob_store,
            dataset_id,
            model_id,
            [CandidateConfig(algorithm=Algorithm.LOG_REG)] * 2,
            review_rate=0.1,
            enqueue=False,
        )
        _ = begin(db_connection, bakeoff_id)
        _ = train_one(db_connection, blob_store, bakeoff_id, 0)

        for _attempt in range(3):
            with pytest.raises(ConflictError) as exc_info:
                _ = train_one(db_connection, blob_store, bakeoff_id, 0)
            assert exc_info.value.detail == {"candidates_done": 1}

        bakeoff = get_bakeoff(db_connection, bakeoff_id)
        assert bakeoff is not None
        assert bakeoff.candidates_done == 1
        assert len(list_model_versions(db_connection, model_id)) == 1


class TestConcurrentTaskClaims:
    """Multiple workers claiming from the task queue."""

    def test_concurrent_claims_no_duplicates(self, db_path: Path) -> None:
        """Each task is claimed by exactly one worker."""
        num_tasks = 20
        num_workers = 5

        conn = get_connection(db_path)
        task_ids = [enqueue_task(conn, TASK_KIND, f"bakeoff-{i}") for i in range(num_tasks)]
        conn.close()

        claims: dict[int, str] = {}
        errors: list[str] = []
        lock = threading.Lock()

        def worker_loop(worker_id: str) -> None:
            conn = get_connection(db_path)
            try:
                while True:
                    task = claim_task(conn, worker_id)
                    if task is None:
                        break
                    with lock:
                        if task.id in claims:
                            errors.append(
                                f"Task {task.id} claimed twice: {claims[task.id]} and {worker_id}"
                            )
                        claims[task.id] = worker_id
                    complete_task(conn, task.id)
            except Exception as e:  # noqa: BLE001
                with lock:
                    errors.append(str(e))
            finally:
                conn.close()

        threads = [
            threading.Thread(target=worker_loop, args=(f"worker-{i}",)) for i in range(num_workers)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10.0)

        assert errors == [], f"Errors occurred: {errors}"
        assert sorted(claims) == sorted(task_ids)
