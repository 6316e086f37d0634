# Copyright (c) Syntropy Systems
"""Background execution of queued bake-offs."""
from __future__ import annotations

import sqlite3
from pathlib import Path
from threading import Event, Thread
from typing import Optional

from loguru import logger

from arbiter.db import (
    claim_task,
    complete_task,
    get_connection,
    heartbeat_task,
    requeue_orphaned_tasks,
)
from arbiter.errors import ArbiterError
from arbiter.models.db import TaskRecord
from arbiter.orchestrator import TASK_KIND, run_batch
from arbiter.storage import BlobStore

log = logger.bind(domain="worker")


def requeue_orphans(db_path: Path, timeout_seconds: int) -> list[TaskRecord]:
    """Requeue running tasks whose heartbeat is older than ``timeout_seconds``."""
    conn = get_connection(db_path)
    try:
        orphaned = requeue_orphaned_tasks(conn, timeout_seconds)
    finally:
        conn.close()
    for task in orphaned:
        log.warning("Requeued orphaned task #{} (bakeoff {})", task.id, task.bakeoff_id)
    return orphaned


def _heartbeat_loop(db_path: Path, task_id: int, stop: Event, interval: float) -> None:
    while not stop.wait(timeout=interval):
        try:
            conn = get_connection(db_path)
            try:
                heartbeat_task(conn, task_id)
            finally:
                conn.close()
        except sqlite3.Error as e:
            log.warning("Heartbeat for task #{} failed: {}", task_id, e)


def process_next_task(
    db_path: Path,
    store: BlobStore,
    worker_id: str,
    heartbeat_interval: float = 30,
    budget_seconds: Optional[float] = None,
) -> Optional[TaskRecord]:
    """
    Claim one queued task and run it to completion.

    The task only carries a bake-off id; everything else is read back from
    the database, so a task requeued after a crash resumes where the
    previous attempt stopped. Returns the claimed task, or None when the
    queue is empty.
    """
    conn = get_connection(db_path)
    try:
        task = claim_task(conn, worker_id)
        if task is None:
            return None

        log.info("Claimed task #{} ({} {}, attempt {})", task.id, task.kind, task.bakeoff_id, task.attempt)
        stop = Event()
        heartbeat = Thread(
            target=_heartbeat_loop,
            args=(db_path, task.id, stop, heartbeat_interval),
            daemon=True,
        )
        heartbeat.start()

        error_message = None
        try:
            if task.kind != TASK_KIND:
                error_message = f"Unknown task kind: {task.kind}"
            else:
                bakeoff = run_batch(conn, store, task.bakeoff_id, budget_seconds=budget_seconds)
                if bakeoff.status == "failed":
                    error_message = bakeoff.error or "Bakeoff failed"
        except ArbiterError as e:
            error_message = e.message
        finally:
            stop.set()
            heartbeat.join(timeout=2.0)

        complete_task(conn, task.id, error_message)
        if error_message:
            log.error("Task #{} failed: {}", task.id, error_message)
        else:
            log.info("Task #{} completed", task.id)
        return task.model_copy(
            update={"status": "failed" if error_message else "completed", "error_message": error_message}
        )
    finally:
        conn.close()
