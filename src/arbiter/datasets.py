# Copyright (c) Syntropy Systems
"""Dataset parsing, schema inference and registration."""
from __future__ import annotations

import io
import re
import sqlite3
from dataclasses import dataclass
from pathlib import Path

import pandas as pd
from loguru import logger

from arbiter.db import create_dataset, get_dataset, new_id
from arbiter.errors import NotFoundError, PipelineFailure, ValidationError
from arbiter.models.db import ColumnSchema, DatasetRecord, DatasetSchema
from arbiter.storage import BlobStore

log = logger.bind(domain="datasets")

SOURCE_FORMATS = ("csv", "xlsx")

_LABEL_NAMES = ("isanomaly", "is_anomaly", "label", "target")
_BOOLEAN_VALUES = {"true", "false", "yes", "no", "0", "1"}
_CURRENCY = re.compile(r"[$,\s]")


@dataclass
class ParsedFile:
    """Rows of a parsed file, every cell kept as a string."""

    headers: list[str]
    rows: pd.DataFrame
    total_rows: int


def parse_file(data: bytes, source_format: str) -> ParsedFile:
    """Parse CSV or XLSX bytes into string-valued rows."""
    if source_format == "csv":
        frame = pd.read_csv(
            io.BytesIO(data), dtype=str, keep_default_na=False, skipinitialspace=True
        )
    elif source_format == "xlsx":
        frame = pd.read_excel(io.BytesIO(data), dtype=str).fillna("")
    else:
        msg = f"Unsupported source format: {source_format}"
        raise ValidationError(msg)

    frame.columns = [str(c).strip() for c in frame.columns]
    return ParsedFile(headers=list(frame.columns), rows=frame, total_rows=len(frame))


def _infer_column_type(values: pd.Series) -> str:
    non_empty = values[values.str.strip() != ""].str.strip()
    if non_empty.empty:
        return "string"

    if non_empty.str.lower().isin(_BOOLEAN_VALUES).all():
        return "boolean"

    cleaned = non_empty.str.replace(_CURRENCY, "", regex=True)
    numeric = pd.to_numeric(cleaned, errors="coerce")
    if numeric.notna().all():
        if non_empty.str.contains("$", regex=False).any():
            return "currency"
        if (numeric == numeric.round()).all() and not cleaned.str.contains(".", regex=False).any():
            return "integer"
        return "number"

    dates = pd.to_datetime(non_empty, errors="coerce", format="mixed")
    if dates.notna().all():
        return "date"

    if non_empty.nunique() <= max(20, len(non_empty) // 20):
        return "categorical"
    return "string"


def infer_schema(frame: pd.DataFrame) -> DatasetSchema:
    """Infer a column type for every column of ``frame``."""
    return DatasetSchema(
        columns=[
            ColumnSchema(name=name, type=_infer_column_type(frame[name].astype(str)))
            for name in frame.columns
        ]
    )


def find_label_column(headers: list[str]) -> str | None:
    """Find the ground-truth label column by name, case-insensitively."""
    for candidate in _LABEL_NAMES:
        for header in headers:
            if header.lower() == candidate:
                return header
    return None


def register_dataset(
    conn: sqlite3.Connection,
    store: BlobStore,
    data: bytes,
    name: str,
    source_format: str,
) -> DatasetRecord:
    """Upload a raw file, infer its schema and create the dataset record."""
    if source_format not in SOURCE_FORMATS:
        msg = f"Unsupported source format: {source_format}"
        raise ValidationError(msg)

    parsed = parse_file(data, source_format)
    if parsed.total_rows == 0:
        msg = "Dataset has no rows"
        raise ValidationError(msg)

    schema = infer_schema(parsed.rows)
    dataset_id = new_id()
    blob_url = store.upload(f"datasets/{dataset_id}/source.{source_format}", data)
    create_dataset(
        conn,
        name=name,
        source_format=source_format,
        blob_url=blob_url,
        schema=schema,
        row_count=parsed.total_rows,
        label_present=find_label_column(parsed.headers) is not None,
        dataset_id=dataset_id,
    )
    log.info("Registered dataset {} ({} rows, {} columns)", dataset_id, parsed.total_rows, len(parsed.headers))

    record = get_dataset(conn, dataset_id)
    if record is None:
        msg = f"Dataset {dataset_id} vanished after registration"
        raise PipelineFailure(msg)
    return record


def register_dataset_file(
    conn: sqlite3.Connection, store: BlobStore, path: Path, name: str | None = None
) -> DatasetRecord:
    """Register a CSV or XLSX file from disk."""
    source_format = path.suffix.lower().lstrip(".")
    return register_dataset(conn, store, path.read_bytes(), name or path.stem, source_format)


def load_dataset(
    conn: sqlite3.Connection, store: BlobStore, dataset_id: str
) -> tuple[DatasetRecord, ParsedFile]:
    """Fetch a dataset record and parse its rows."""
    dataset = get_dataset(conn, dataset_id)
    if dataset is None:
        raise NotFoundError("Dataset", dataset_id)
    parsed = parse_file(store.download(dataset.blob_url), dataset.source_format)
    return dataset, parsed
