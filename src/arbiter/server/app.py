# Copyright (c) Syntropy Systems
"""FastAPI application for the arbiter HTTP API."""

import sqlite3
from collections.abc import Iterator
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from loguru import logger

from arbiter import __version__
from arbiter.config import ArbiterConfig
from arbiter.datasets import register_dataset
from arbiter.db import (
    create_model,
    get_bakeoff,
    get_connection,
    get_dataset,
    get_finding,
    get_findings,
    get_model,
    get_run,
    init_db,
    list_datasets,
    list_model_versions,
    list_models,
)
from arbiter.errors import ArbiterError, NotFoundError
from arbiter.models.bakeoff import CandidateSummary
from arbiter.models.db import (
    BakeoffRecord,
    DatasetRecord,
    FindingRecord,
    ModelRecord,
    ModelVersionRecord,
    RunRecord,
)
from arbiter.orchestrator import (
    begin,
    finalize,
    mark_failed,
    select_champion,
    start,
    train_one,
)
from arbiter.scoring import score_dataset
from arbiter.storage import BlobStore

from .models import (
    DatasetUpload,
    ErrorResponse,
    FailRequest,
    FinalizeResponse,
    ModelCreate,
    ScoreRequest,
    SelectChampionRequest,
    StartBakeoffRequest,
    StartBakeoffResponse,
    TrainCandidateRequest,
)

log = logger.bind(domain="server")


def get_conn(request: Request) -> Iterator[sqlite3.Connection]:
    """Open a connection for the duration of one request."""
    conn = get_connection(request.app.state.db_path)
    try:
        yield conn
    finally:
        conn.close()


def get_store(request: Request) -> BlobStore:
    """Get the blob store of the app."""
    return request.app.state.store


def get_config(request: Request) -> ArbiterConfig:
    """Get the app configuration."""
    return request.app.state.config


def create_app(
    db_path: Path,
    blob_dir: Path,
    config: Optional[ArbiterConfig] = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        db_path: SQLite database path (created if missing)
        blob_dir: Root directory of the blob store
        config: Defaults for review rate, preview limit and training budget

    Returns:
        Configured FastAPI application
    """
    init_db(db_path)

    app = FastAPI(
        title="arbiter",
        description="Anomaly model bake-offs and scoring",
        version=__version__,
    )
    app.state.db_path = db_path
    app.state.store = BlobStore(blob_dir)
    app.state.config = config or ArbiterConfig()

    @app.exception_handler(ArbiterError)
    async def handle_arbiter_error(request: Request, exc: ArbiterError) -> JSONResponse:
        if exc.status_code >= 500:
            log.error("{} {} failed: {}", request.method, request.url.path, exc.message)
        body = ErrorResponse(error=exc.message, code=exc.error_code, detail=exc.detail)
        return JSONResponse(status_code=exc.status_code, content=body.model_dump())

    # --- Dataset Endpoints ---

    @app.post("/api/v1/datasets", response_model=DatasetRecord, status_code=201)
    def upload_dataset(
        request: DatasetUpload,
        conn: sqlite3.Connection = Depends(get_conn),
        store: BlobStore = Depends(get_store),
    ):
        """Register a dataset from uploaded file content."""
        return register_dataset(conn, store, request.content, request.name, request.source_format)

    @app.get("/api/v1/datasets", response_model=dict)
    def list_all_datasets(
        limit: int = Query(50, ge=1, le=500),
        conn: sqlite3.Connection = Depends(get_conn),
    ):
        """List datasets, newest first."""
        return {"datasets": [d.model_dump(by_alias=True) for d in list_datasets(conn, limit=limit)]}

    @app.get("/api/v1/datasets/{dataset_id}", response_model=DatasetRecord)
    def get_dataset_details(dataset_id: str, conn: sqlite3.Connection = Depends(get_conn)):
        """Get dataset details, including its inferred schema."""
        dataset = get_dataset(conn, dataset_id)
        if dataset is None:
            raise NotFoundError("Dataset", dataset_id)
        return dataset

    # --- Model Endpoints ---

    @app.post("/api/v1/models", response_model=ModelRecord, status_code=201)
    def create_new_model(request: ModelCreate, conn: sqlite3.Connection = Depends(get_conn)):
        """Create a model that bake-offs add versions to."""
        model_id = create_model(conn, request.name, request.description)
        return get_model(conn, model_id)

    @app.get("/api/v1/models", response_model=dict)
    def list_all_models(
        limit: int = Query(50, ge=1, le=500),
        conn: sqlite3.Connection = Depends(get_conn),
    ):
        """List models, newest first."""
        return {"models": [m.model_dump() for m in list_models(conn, limit=limit)]}

    @app.get("/api/v1/models/{model_id}/versions", response_model=list[ModelVersionRecord])
    def list_versions(model_id: str, conn: sqlite3.Connection = Depends(get_conn)):
        """List versions of a model, oldest first."""
        if get_model(conn, model_id) is None:
            raise NotFoundError("Model", model_id)
        return list_model_versions(conn, model_id)

    # --- Bake-off Endpoints ---

    @app.post("/api/v1/bakeoffs", response_model=StartBakeoffResponse, status_code=201)
    def start_bakeoff(
        request: StartBakeoffRequest,
        conn: sqlite3.Connection = Depends(get_conn),
        store: BlobStore = Depends(get_store),
        config: ArbiterConfig = Depends(get_config),
    ):
        """
        Start a bake-off.

        In background mode a worker trains and finalizes it; in incremental
        mode the caller drives it with train-candidate and finalize.
        """
        incremental = request.mode == "incremental"
        bakeoff_id = start(
            conn,
            store,
            request.dataset_id,
            request.model_id,
            request.candidates,
            rubric=request.rubric if request.rubric is not None else config.rubric,
            label_column=request.label_column,
            review_rate=request.review_rate if request.review_rate is not None else config.review_rate,
            enqueue=not incremental,
        )
        status = begin(conn, bakeoff_id).status if incremental else "queued"
        return StartBakeoffResponse(
            bakeoff_id=bakeoff_id,
            candidate_count=len(request.candidates),
            status=status,
        )

    @app.get("/api/v1/bakeoffs/{bakeoff_id}", response_model=BakeoffRecord)
    def get_bakeoff_details(bakeoff_id: str, conn: sqlite3.Connection = Depends(get_conn)):
        """Get a bake-off, including progress and narrative once completed."""
        bakeoff = get_bakeoff(conn, bakeoff_id)
        if bakeoff is None:
            raise NotFoundError("Bakeoff", bakeoff_id)
        return bakeoff

    @app.post("/api/v1/bakeoffs/{bakeoff_id}/train-candidate", response_model=CandidateSummary)
    def train_candidate(
        bakeoff_id: str,
        request: TrainCandidateRequest,
        conn: sqlite3.Connection = Depends(get_conn),
        store: BlobStore = Depends(get_store),
        config: ArbiterConfig = Depends(get_config),
    ):
        """Train the candidate at the next index of a running bake-off."""
        return train_one(
            conn,
            store,
            bakeoff_id,
            request.candidate_index,
            budget_seconds=config.train_budget_seconds,
        )

    @app.post("/api/v1/bakeoffs/{bakeoff_id}/finalize", response_model=FinalizeResponse)
    def finalize_bakeoff(
        bakeoff_id: str,
        conn: sqlite3.Connection = Depends(get_conn),
        store: BlobStore = Depends(get_store),
    ):
        """Pick the champion of a fully trained bake-off."""
        result = finalize(conn, store, bakeoff_id)
        return FinalizeResponse(
            champion_version_id=result.champion_version_id,
            champion_algorithm=result.champion_algorithm,
            narrative=result.narrative,
        )

    @app.post("/api/v1/bakeoffs/{bakeoff_id}/select-champion", response_model=ModelVersionRecord)
    def select_bakeoff_champion(
        bakeoff_id: str,
        request: SelectChampionRequest,
        conn: sqlite3.Connection = Depends(get_conn),
    ):
        """Override the champion with another candidate of the bake-off."""
        return select_champion(conn, bakeoff_id, request.model_version_id)

    @app.post("/api/v1/bakeoffs/{bakeoff_id}/fail", response_model=BakeoffRecord)
    def fail_bakeoff(
        bakeoff_id: str,
        request: FailRequest,
        conn: sqlite3.Connection = Depends(get_conn),
    ):
        """Mark a queued or running bake-off failed."""
        return mark_failed(conn, bakeoff_id, request.message)

    # --- Scoring Endpoints ---

    @app.post("/api/v1/score", response_model=RunRecord, status_code=201)
    def score(
        request: ScoreRequest,
        conn: sqlite3.Connection = Depends(get_conn),
        store: BlobStore = Depends(get_store),
        config: ArbiterConfig = Depends(get_config),
    ):
        """Score a dataset; the run is persisted before the response."""
        return score_dataset(
            conn,
            store,
            request.dataset_id,
            model_id=request.model_id,
            model_version_id=request.model_version_id,
            review_rate=request.review_rate if request.review_rate is not None else config.review_rate,
            threshold=request.threshold,
            preview_limit=config.preview_limit,
        )

    @app.get("/api/v1/runs/{run_id}", response_model=RunRecord)
    def get_run_details(run_id: str, conn: sqlite3.Connection = Depends(get_conn)):
        """Get a scoring run and its summary."""
        run = get_run(conn, run_id)
        if run is None:
            raise NotFoundError("Run", run_id)
        return run

    @app.get("/api/v1/runs/{run_id}/findings", response_model=list[FindingRecord])
    def list_run_findings(
        run_id: str,
        limit: int = Query(50, ge=1, le=1000),
        conn: sqlite3.Connection = Depends(get_conn),
    ):
        """List findings of a run by rank."""
        if get_run(conn, run_id) is None:
            raise NotFoundError("Run", run_id)
        return get_findings(conn, run_id, limit=limit)

    @app.get("/api/v1/runs/{run_id}/findings/{wire_id}", response_model=FindingRecord)
    def get_run_finding(run_id: str, wire_id: str, conn: sqlite3.Connection = Depends(get_conn)):
        """Get the finding for one wire of a run."""
        finding = get_finding(conn, run_id, wire_id)
        if finding is None:
            raise NotFoundError("Finding", wire_id)
        return finding

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app
