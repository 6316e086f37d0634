# Copyright (c) Syntropy Systems
"""Pytest fixtures for arbiter tests."""

import os
import sqlite3
import tempfile
from collections.abc import Generator
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Store original cwd at module load time
_original_cwd = Path.cwd()


def make_wires(n: int = 300, anomaly_rate: float = 0.1, seed: int = 7) -> pd.DataFrame:
    """Synthetic wire transfers where anomalies are large, late and unverified."""
    rng = np.random.default_rng(seed)
    is_anomaly = np.zeros(n, dtype=int)
    is_anomaly[rng.choice(n, size=max(1, int(n * anomaly_rate)), replace=False)] = 1

    amount = np.where(
        is_anomaly == 1,
        rng.uniform(50_000, 90_000, n),
        rng.uniform(100, 5_000, n),
    )
    hour = np.where(is_anomaly == 1, rng.integers(1, 4, n), rng.integers(9, 17, n))
    day = rng.integers(1, 28, n)
    verified = np.where(is_anomaly == 1, "false", "true")
    country = rng.choice(["US", "GB", "DE", "FR", "CA"], size=n)

    return pd.DataFrame(
        {
            "WireID": [f"W{i:05d}" for i in range(n)],
            "Amount": [f"{a:.2f}" for a in amount],
            "BeneficiaryCountry": country,
            "InitiatedAt": [f"2024-03-{d:02d} {h:02d}:15:00" for d, h in zip(day, hour)],
            "CallbackVerified": verified,
            "IsAnomaly": is_anomaly.astype(str),
        }
    )


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def arbiter_project(temp_dir: Path) -> Generator[Path, None, None]:
    """Create a temporary arbiter project directory."""
    from arbiter.db import init_db

    arbiter_dir = temp_dir / ".arbiter"
    arbiter_dir.mkdir()
    (arbiter_dir / "blobs").mkdir()

    # Initialize database
    init_db(arbiter_dir / "arbiter.db")

    # Change to temp directory
    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)


@pytest.fixture
def db_path(arbiter_project: Path) -> Path:
    """Path of the test project's database."""
    return arbiter_project / ".arbiter" / "arbiter.db"


@pytest.fixture
def db_connection(db_path: Path) -> Generator[sqlite3.Connection, None, None]:
    """Get a database connection for the test project."""
    from arbiter.db import get_connection

    conn = get_connection(db_path)
    yield conn
    conn.close()


@pytest.fixture
def blob_store(arbiter_project: Path):
    """Blob store of the test project."""
    from arbiter.storage import BlobStore

    return BlobStore(arbiter_project / ".arbiter" / "blobs")


@pytest.fixture
def wires_csv() -> bytes:
    """Labelled wire transfers as CSV bytes."""
    return make_wires().to_csv(index=False).encode("utf-8")


@pytest.fixture
def dataset_id(db_connection: sqlite3.Connection, blob_store, wires_csv: bytes) -> str:
    """A registered labelled dataset."""
    from arbiter.datasets import register_dataset

    return register_dataset(db_connection, blob_store, wires_csv, "wires", "csv").id


@pytest.fixture
def model_id(db_connection: sqlite3.Connection) -> str:
    """An empty model."""
    from arbiter.db import create_model

    return create_model(db_connection, "wire-anomalies", "Test model")


@pytest.fixture
def wire_factory():
    """Factory for synthetic wire frames: ``wire_factory(n, anomaly_rate, seed)``."""
    return make_wires
