# Copyright (c) Syntropy Systems
"""SQLite database layer with WAL mode and atomic operations.

Every mutation of a bake-off is a single compare-and-set keyed by bake-off id.
Callers never hold a lock across calls; status and length guards in the
``WHERE`` clauses make stale or racing writers fail instead of corrupting
state.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from arbiter.errors import PipelineFailure
from arbiter.models.bakeoff import BakeoffProgress, CandidateMetrics, RubricConfig
from arbiter.models.db import (
    BakeoffRecord,
    DatasetRecord,
    DatasetSchema,
    FindingRecord,
    ModelRecord,
    ModelVersionRecord,
    RunRecord,
    TaskRecord,
)
from arbiter.models.scoring import Finding, ScoringSummary

# SQL schema for arbiter database
SCHEMA = """
CREATE TABLE IF NOT EXISTS datasets (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    source_format TEXT NOT NULL,  -- csv, xlsx
    blob_url TEXT NOT NULL,
    schema_json TEXT,  -- JSON {columns: [{name, type}]}
    row_count INTEGER DEFAULT 0,
    label_present INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS models (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

-- One row per trained candidate; only is_champion ever changes
CREATE TABLE IF NOT EXISTS model_versions (
    id TEXT PRIMARY KEY,
    model_id TEXT NOT NULL REFERENCES models(id),
    algorithm TEXT NOT NULL,
    hyperparams TEXT,  -- JSON
    artifact_blob_url TEXT NOT NULL,
    metrics TEXT,  -- JSON
    importance TEXT,  -- JSON [[feature, weight], ...]
    feature_names TEXT,  -- JSON array
    trained_dataset_id TEXT,
    failed INTEGER DEFAULT 0,
    is_champion INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS bakeoffs (
    id TEXT PRIMARY KEY,
    model_id TEXT NOT NULL REFERENCES models(id),
    dataset_id TEXT NOT NULL REFERENCES datasets(id),
    rubric TEXT NOT NULL,  -- JSON
    status TEXT DEFAULT 'queued',  -- queued, running, completed, failed
    progress TEXT,  -- JSON BakeoffProgress
    candidate_version_ids TEXT DEFAULT '[]',  -- JSON array, append-only
    champion_version_id TEXT,
    narrative_short TEXT,
    narrative_long TEXT,
    error TEXT,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    started_at TEXT,
    finished_at TEXT
);

CREATE TABLE IF NOT EXISTS runs (
    id TEXT PRIMARY KEY,
    dataset_id TEXT NOT NULL,
    status TEXT DEFAULT 'created',  -- created, scoring, scored, failed
    model_version_id TEXT,
    outputs_blob_url TEXT,
    summary TEXT,  -- JSON
    error TEXT,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    finished_at TEXT
);

CREATE TABLE IF NOT EXISTS findings (
    run_id TEXT NOT NULL REFERENCES runs(id),
    wire_id TEXT NOT NULL,
    rank INTEGER NOT NULL,
    score REAL NOT NULL,
    predicted_label INTEGER NOT NULL,
    reason_codes TEXT,  -- JSON array
    local_explain_blob_url TEXT,
    PRIMARY KEY (run_id, rank)
);

-- Background queue; a task carries only the bake-off id
CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    bakeoff_id TEXT NOT NULL,
    status TEXT DEFAULT 'queued',  -- queued, running, completed, failed
    attempt INTEGER DEFAULT 1,
    worker_id TEXT,
    heartbeat_at TEXT,
    error_message TEXT,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    started_at TEXT,
    finished_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_versions_model ON model_versions(model_id);
CREATE INDEX IF NOT EXISTS idx_bakeoffs_status ON bakeoffs(status);
CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status);
CREATE INDEX IF NOT EXISTS idx_findings_wire ON findings(run_id, wire_id);
CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_tasks_heartbeat ON tasks(heartbeat_at);
"""


def get_connection(db_path: Path) -> sqlite3.Connection:
    """
    Get a database connection with proper settings for concurrent access.

    - isolation_level=None for explicit transaction control
    - WAL mode for concurrent readers/writers
    - busy_timeout to wait for locks instead of failing immediately
    - Row factory for dict-like access
    - check_same_thread=False so heartbeat threads may share a connection
    """
    conn = sqlite3.connect(
        str(db_path), timeout=5.0, isolation_level=None, check_same_thread=False
    )
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path) -> None:
    """Initialize the database with the schema."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def utcnow() -> str:
    """Get current UTC time as ISO format string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def new_id() -> str:
    """Generate a new entity ID."""
    return uuid.uuid4().hex


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside ``BEGIN IMMEDIATE`` / ``COMMIT``.

    Rolls back and re-raises on any error.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


# --- Dataset Operations ---

def create_dataset(
    conn: sqlite3.Connection,
    name: str,
    source_format: str,
    blob_url: str,
    schema: DatasetSchema,
    row_count: int,
    label_present: bool = False,
    dataset_id: Optional[str] = None,
) -> str:
    """Create a dataset record and return its ID."""
    dataset_id = dataset_id or new_id()
    conn.execute(
        """
        INSERT INTO datasets (id, name, source_format, blob_url, schema_json, row_count, label_present)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            dataset_id,
            name,
            source_format,
            blob_url,
            schema.model_dump_json(),
            row_count,
            int(label_present),
        ),
    )
    return dataset_id


def get_dataset(conn: sqlite3.Connection, dataset_id: str) -> Optional[DatasetRecord]:
    """Get a dataset by ID."""
    row = conn.execute("SELECT * FROM datasets WHERE id = ?", (dataset_id,)).fetchone()
    if row is None:
        return None
    return DatasetRecord.model_validate(dict(row))


def list_datasets(conn: sqlite3.Connection, limit: int = 50) -> list[DatasetRecord]:
    """List datasets, newest first."""
    rows = conn.execute(
        "SELECT * FROM datasets ORDER BY created_at DESC, rowid DESC LIMIT ?",
        (limit,),
    ).fetchall()
    return [DatasetRecord.model_validate(dict(row)) for row in rows]


# --- Model Operations ---

def create_model(
    conn: sqlite3.Connection,
    name: str,
    description: Optional[str] = None,
    model_id: Optional[str] = None,
) -> str:
    """Create a model and return its ID."""
    model_id = model_id or new_id()
    conn.execute(
        "INSERT INTO models (id, name, description) VALUES (?, ?, ?)",
        (model_id, name, description),
    )
    return model_id


def get_model(conn: sqlite3.Connection, model_id: str) -> Optional[ModelRecord]:
    """Get a model by ID."""
    row = conn.execute("SELECT * FROM models WHERE id = ?", (model_id,)).fetchone()
    if row is None:
        return None
    return ModelRecord.model_validate(dict(row))


def list_models(conn: sqlite3.Connection, limit: int = 50) -> list[ModelRecord]:
    """List models, newest first."""
    rows = conn.execute(
        "SELECT * FROM models ORDER BY created_at DESC, rowid DESC LIMIT ?",
        (limit,),
    ).fetchall()
    return [ModelRecord.model_validate(dict(row)) for row in rows]


# --- Model Version Operations ---

def insert_model_version(
    conn: sqlite3.Connection,
    model_id: str,
    algorithm: str,
    hyperparams: dict[str, Any],
    artifact_blob_url: str,
    metrics: CandidateMetrics,
    importance: Sequence[tuple[str, float]],
    feature_names: Sequence[str],
    trained_dataset_id: Optional[str] = None,
    failed: bool = False,
    version_id: Optional[str] = None,
) -> ModelVersionRecord:
    """Insert a model version and return the stored record."""
    version_id = version_id or new_id()
    conn.execute(
        """
        INSERT INTO model_versions (
            id, model_id, algorithm, hyperparams, artifact_blob_url, metrics,
            importance, feature_names, trained_dataset_id, failed
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            version_id,
            model_id,
            algorithm,
            json.dumps(hyperparams),
            artifact_blob_url,
            metrics.model_dump_json(),
            json.dumps([list(pair) for pair in importance]),
            json.dumps(list(feature_names)),
            trained_dataset_id,
            int(failed),
        ),
    )
    record = get_model_version(conn, version_id)
    if record is None:
        msg = f"Model version {version_id} vanished after insert"
        raise PipelineFailure(msg)
    return record


def get_model_version(
    conn: sqlite3.Connection, version_id: str
) -> Optional[ModelVersionRecord]:
    """Get a model version by ID."""
    row = conn.execute(
        "SELECT * FROM model_versions WHERE id = ?", (version_id,)
    ).fetchone()
    if row is None:
        return None
    return ModelVersionRecord.model_validate(dict(row))


def get_model_versions(
    conn: sqlite3.Connection, version_ids: Sequence[str]
) -> list[ModelVersionRecord]:
    """Get model versions in the order of ``version_ids``.

    Missing IDs are skipped.
    """
    versions = []
    for version_id in version_ids:
        version = get_model_version(conn, version_id)
        if version is not None:
            versions.append(version)
    return versions


def list_model_versions(
    conn: sqlite3.Connection, model_id: str
) -> list[ModelVersionRecord]:
    """List all versions of a model, oldest first."""
    rows = conn.execute(
        "SELECT * FROM model_versions WHERE model_id = ? ORDER BY created_at, rowid",
        (model_id,),
    ).fetchall()
    return [ModelVersionRecord.model_validate(dict(row)) for row in rows]


def delete_model_version(conn: sqlite3.Connection, version_id: str) -> None:
    """Delete a model version that was never linked to a bake-off."""
    conn.execute("DELETE FROM model_versions WHERE id = ?", (version_id,))


def get_champion_version(
    conn: sqlite3.Connection, model_id: str
) -> Optional[ModelVersionRecord]:
    """Get the champion version of a model, if any."""
    row = conn.execute(
        "SELECT * FROM model_versions WHERE model_id = ? AND is_champion = 1",
        (model_id,),
    ).fetchone()
    if row is None:
        return None
    return ModelVersionRecord.model_validate(dict(row))


def _set_champion(conn: sqlite3.Connection, model_id: str, version_id: str) -> None:
    conn.execute(
        "UPDATE model_versions SET is_champion = 0 WHERE model_id = ? AND id != ?",
        (model_id, version_id),
    )
    conn.execute(
        "UPDATE model_versions SET is_champion = 1 WHERE model_id = ? AND id = ?",
        (model_id, version_id),
    )


def set_champion_version(
    conn: sqlite3.Connection, model_id: str, version_id: str
) -> None:
    """Make ``version_id`` the only champion of ``model_id``."""
    with transaction(conn):
        _set_champion(conn, model_id, version_id)


# --- Bakeoff Operations ---

def create_bakeoff(
    conn: sqlite3.Connection,
    model_id: str,
    dataset_id: str,
    rubric: RubricConfig,
) -> str:
    """Create a bake-off in ``queued`` and return its ID."""
    bakeoff_id = new_id()
    conn.execute(
        """
        INSERT INTO bakeoffs (id, model_id, dataset_id, rubric, status, candidate_version_ids)
        VALUES (?, ?, ?, ?, 'queued', '[]')
        """,
        (bakeoff_id, model_id, dataset_id, rubric.model_dump_json()),
    )
    return bakeoff_id


def get_bakeoff(conn: sqlite3.Connection, bakeoff_id: str) -> Optional[BakeoffRecord]:
    """Get a bake-off by ID."""
    row = conn.execute("SELECT * FROM bakeoffs WHERE id = ?", (bakeoff_id,)).fetchone()
    if row is None:
        return None
    return BakeoffRecord.model_validate(dict(row))


def list_bakeoffs(
    conn: sqlite3.Connection,
    status: Optional[str] = None,
    limit: int = 50,
) -> list[BakeoffRecord]:
    """List bake-offs with optional status filter, newest first."""
    query = "SELECT * FROM bakeoffs WHERE 1=1"
    params: list[Any] = []

    if status:
        query += " AND status = ?"
        params.append(status)

    query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
    params.append(limit)

    rows = conn.execute(query, params).fetchall()
    return [BakeoffRecord.model_validate(dict(row)) for row in rows]


def set_bakeoff_progress(
    conn: sqlite3.Connection, bakeoff_id: str, progress: BakeoffProgress
) -> bool:
    """Persist progress on a ``queued`` bake-off. Returns False if not queued."""
    cursor = conn.execute(
        "UPDATE bakeoffs SET progress = ? WHERE id = ? AND status = 'queued'",
        (progress.model_dump_json(), bakeoff_id),
    )
    return cursor.rowcount == 1


def begin_bakeoff(conn: sqlite3.Connection, bakeoff_id: str) -> bool:
    """Transition ``queued -> running``. Returns False if not queued."""
    cursor = conn.execute(
        """
        UPDATE bakeoffs SET status = 'running', started_at = ?
        WHERE id = ? AND status = 'queued'
        """,
        (utcnow(), bakeoff_id),
    )
    return cursor.rowcount == 1


def append_candidate_version(
    conn: sqlite3.Connection,
    bakeoff_id: str,
    expected_count: int,
    version_id: str,
) -> bool:
    """
    Append one version ID to a running bake-off.

    The append only happens if the bake-off is still ``running`` and exactly
    ``expected_count`` IDs are already recorded, so duplicate or racing calls
    fail instead of appending twice. Returns whether the append happened.
    """
    with transaction(conn):
        row = conn.execute(
            "SELECT status, candidate_version_ids FROM bakeoffs WHERE id = ?",
            (bakeoff_id,),
        ).fetchone()
        if row is None or row["status"] != "running":
            return False

        version_ids = json.loads(row["candidate_version_ids"] or "[]")
        if len(version_ids) != expected_count:
            return False

        version_ids.append(version_id)
        conn.execute(
            "UPDATE bakeoffs SET candidate_version_ids = ? WHERE id = ?",
            (json.dumps(version_ids), bakeoff_id),
        )
    return True


def complete_bakeoff(
    conn: sqlite3.Connection,
    bakeoff_id: str,
    model_id: str,
    champion_version_id: str,
    narrative_short: str,
    narrative_long: str,
    expected_count: int,
) -> bool:
    """
    Mark the champion and transition ``running -> completed`` atomically.

    Returns False without changes if the bake-off is no longer running or its
    candidate list changed since it was read.
    """
    with transaction(conn):
        row = conn.execute(
            "SELECT status, candidate_version_ids FROM bakeoffs WHERE id = ?",
            (bakeoff_id,),
        ).fetchone()
        if row is None or row["status"] != "running":
            return False
        if len(json.loads(row["candidate_version_ids"] or "[]")) != expected_count:
            return False

        _set_champion(conn, model_id, champion_version_id)
        conn.execute(
            """
            UPDATE bakeoffs
            SET status = 'completed', champion_version_id = ?, narrative_short = ?,
                narrative_long = ?, error = NULL, finished_at = ?
            WHERE id = ?
            """,
            (champion_version_id, narrative_short, narrative_long, utcnow(), bakeoff_id),
        )
    return True


def fail_bakeoff(conn: sqlite3.Connection, bakeoff_id: str, message: str) -> bool:
    """
    Transition a queued or running bake-off to ``failed``.

    Candidate IDs are left untouched. Returns False if already terminal.
    """
    cursor = conn.execute(
        """
        UPDATE bakeoffs SET status = 'failed', error = ?, finished_at = ?
        WHERE id = ? AND status IN ('queued', 'running')
        """,
        (message, utcnow(), bakeoff_id),
    )
    return cursor.rowcount == 1


# --- Run Operations ---

def create_run(conn: sqlite3.Connection, dataset_id: str) -> str:
    """Create a scoring run in ``created`` and return its ID."""
    run_id = new_id()
    conn.execute(
        "INSERT INTO runs (id, dataset_id, status) VALUES (?, ?, 'created')",
        (run_id, dataset_id),
    )
    return run_id


def update_run(
    conn: sqlite3.Connection,
    run_id: str,
    status: str,
    model_version_id: Optional[str] = None,
    outputs_blob_url: Optional[str] = None,
    summary: Optional[ScoringSummary] = None,
    error: Optional[str] = None,
) -> None:
    """Update a run's status and whichever result fields are given."""
    finished_at = utcnow() if status in ("scored", "failed") else None
    conn.execute(
        """
        UPDATE runs
        SET status = ?,
            model_version_id = COALESCE(?, model_version_id),
            outputs_blob_url = COALESCE(?, outputs_blob_url),
            summary = COALESCE(?, summary),
            error = ?,
            finished_at = COALESCE(?, finished_at)
        WHERE id = ?
        """,
        (
            status,
            model_version_id,
            outputs_blob_url,
            summary.model_dump_json() if summary else None,
            error,
            finished_at,
            run_id,
        ),
    )


def get_run(conn: sqlite3.Connection, run_id: str) -> Optional[RunRecord]:
    """Get a run by ID."""
    row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
    if row is None:
        return None
    return RunRecord.model_validate(dict(row))


def list_runs(
    conn: sqlite3.Connection,
    status: Optional[str] = None,
    limit: int = 50,
) -> list[RunRecord]:
    """List runs with optional status filter, newest first."""
    query = "SELECT * FROM runs WHERE 1=1"
    params: list[Any] = []

    if status:
        query += " AND status = ?"
        params.append(status)

    query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
    params.append(limit)

    rows = conn.execute(query, params).fetchall()
    return [RunRecord.model_validate(dict(row)) for row in rows]


# --- Finding Operations ---

def _insert_findings(
    conn: sqlite3.Connection, run_id: str, findings: Sequence[Finding]
) -> None:
    conn.executemany(
        """
        INSERT INTO findings (
            run_id, wire_id, rank, score, predicted_label, reason_codes, local_explain_blob_url
        )
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        [
            (
                run_id,
                f.wire_id,
                f.rank,
                f.score,
                int(f.predicted_label),
                json.dumps([rc.model_dump() for rc in f.reason_codes]),
                f.local_explain_blob_url,
            )
            for f in findings
        ],
    )


def record_scored_run(
    conn: sqlite3.Connection,
    run_id: str,
    model_version_id: str,
    outputs_blob_url: str,
    summary: ScoringSummary,
    findings: Sequence[Finding],
) -> None:
    """Insert a run's findings and mark it ``scored`` in one transaction."""
    with transaction(conn):
        _insert_findings(conn, run_id, findings)
        update_run(
            conn,
            run_id,
            "scored",
            model_version_id=model_version_id,
            outputs_blob_url=outputs_blob_url,
            summary=summary,
        )


def get_findings(
    conn: sqlite3.Connection, run_id: str, limit: Optional[int] = None
) -> list[FindingRecord]:
    """Get a run's findings ordered by rank."""
    query = "SELECT * FROM findings WHERE run_id = ? ORDER BY rank"
    params: list[Any] = [run_id]
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)
    rows = conn.execute(query, params).fetchall()
    return [FindingRecord.model_validate(dict(row)) for row in rows]


def get_finding(
    conn: sqlite3.Connection, run_id: str, wire_id: str
) -> Optional[FindingRecord]:
    """Get one finding of a run by wire ID."""
    row = conn.execute(
        "SELECT * FROM findings WHERE run_id = ? AND wire_id = ? ORDER BY rank LIMIT 1",
        (run_id, wire_id),
    ).fetchone()
    if row is None:
        return None
    return FindingRecord.model_validate(dict(row))


# --- Task Operations ---

def enqueue_task(conn: sqlite3.Connection, kind: str, bakeoff_id: str) -> int:
    """Queue a background task and return its ID."""
    cursor = conn.execute(
        "INSERT INTO tasks (kind, bakeoff_id, status) VALUES (?, ?, 'queued')",
        (kind, bakeoff_id),
    )
    if cursor.lastrowid is None:
        msg = "Task insert returned no row ID"
        raise PipelineFailure(msg)
    return cursor.lastrowid


def claim_task(conn: sqlite3.Connection, worker_id: str) -> Optional[TaskRecord]:
    """
    Atomically claim the next queued task for a worker.

    Uses UPDATE...RETURNING with subquery for atomic claim.
    Returns the task if claimed, None if no tasks available.
    """
    now = utcnow()
    with transaction(conn):
        rows = conn.execute(
            """
            UPDATE tasks
            SET status = 'running',
                worker_id = ?,
                started_at = ?,
                heartbeat_at = ?
            WHERE id = (
                SELECT id FROM tasks
                WHERE status = 'queued'
                ORDER BY created_at, id
                LIMIT 1
            )
            RETURNING *
            """,
            (worker_id, now, now),
        ).fetchall()

    if not rows:
        return None
    return TaskRecord.model_validate(dict(rows[0]))


def heartbeat_task(conn: sqlite3.Connection, task_id: int) -> None:
    """Update the heartbeat timestamp of a running task."""
    conn.execute(
        "UPDATE tasks SET heartbeat_at = ? WHERE id = ? AND status = 'running'",
        (utcnow(), task_id),
    )


def complete_task(
    conn: sqlite3.Connection,
    task_id: int,
    error_message: Optional[str] = None,
) -> None:
    """Mark a task as completed, or failed when an error message is given."""
    status = "completed" if error_message is None else "failed"
    conn.execute(
        """
        UPDATE tasks SET status = ?, finished_at = ?, error_message = ?
        WHERE id = ?
        """,
        (status, utcnow(), error_message, task_id),
    )


def get_task(conn: sqlite3.Connection, task_id: int) -> Optional[TaskRecord]:
    """Get a task by ID."""
    row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if row is None:
        return None
    return TaskRecord.model_validate(dict(row))


def get_orphaned_tasks(
    conn: sqlite3.Connection, timeout_seconds: int = 120
) -> list[TaskRecord]:
    """
    Find running tasks with stale heartbeats (likely orphaned).

    A task is considered orphaned if:
    - Status is 'running'
    - heartbeat_at is older than timeout_seconds ago
    """
    cutoff_dt = datetime.now(timezone.utc) - timedelta(seconds=timeout_seconds)
    cutoff = cutoff_dt.strftime("%Y-%m-%dT%H:%M:%SZ")

    rows = conn.execute(
        """
        SELECT * FROM tasks
        WHERE status = 'running'
          AND heartbeat_at IS NOT NULL
          AND heartbeat_at < ?
        """,
        (cutoff,),
    ).fetchall()
    return [TaskRecord.model_validate(dict(row)) for row in rows]


def requeue_orphaned_tasks(
    conn: sqlite3.Connection, timeout_seconds: int = 120
) -> list[TaskRecord]:
    """
    Find and requeue orphaned tasks.

    They are reset to 'queued' with an incremented attempt counter; the
    bake-off they carry resumes from its persisted candidate count.
    """
    orphaned = get_orphaned_tasks(conn, timeout_seconds)

    for task in orphaned:
        conn.execute(
            """
            UPDATE tasks
            SET status = 'queued',
                worker_id = NULL,
                started_at = NULL,
                heartbeat_at = NULL,
                attempt = attempt + 1
            WHERE id = ? AND status = 'running'
            """,
            (task.id,),
        )

    return orphaned
