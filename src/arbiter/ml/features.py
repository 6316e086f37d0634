# Copyright (c) Syntropy Systems
"""Feature engineering: raw string rows to a numeric feature matrix."""
from __future__ import annotations

import io
from dataclasses import dataclass, field

import joblib
import numpy as np
import pandas as pd

from arbiter.models.base import ArbiterBaseModel
from arbiter.models.db import ColumnSchema, DatasetSchema

TOP_CATEGORIES = 10

_NUMERIC_TYPES = {"number", "integer", "currency"}
_CATEGORICAL_TYPES = {"string", "categorical"}
_TRUTHY = {"1", "true", "yes"}
_FALSY = {"0", "false", "no"}


class NumericStat(ArbiterBaseModel):
    """Training-time mean and standard deviation of a numeric feature."""

    mean: float
    std: float


class NormalizationContext(ArbiterBaseModel):
    """Training-time statistics reused when scoring new data."""

    numeric_stats: dict[str, NumericStat] = {}
    categorical_mappings: dict[str, list[str]] = {}
    source_columns: list[ColumnSchema] = []
    label_column: str | None = None

    def training_schema(self) -> DatasetSchema:
        """Schema of the raw columns the features were built from."""
        return DatasetSchema(columns=self.source_columns)


@dataclass
class FeatureMatrix:
    """Numeric design matrix with labels and the stats used to build it."""

    X: np.ndarray
    y: np.ndarray
    feature_names: list[str]
    label_column: str | None
    norm_context: NormalizationContext = field(default_factory=NormalizationContext)

    @property
    def n_samples(self) -> int:
        return int(self.X.shape[0])


def parse_label(value: object) -> int:
    """Parse a label cell into 0 or 1."""
    if value is None:
        return 0
    text = str(value).strip().lower()
    if text in _TRUTHY:
        return 1
    if text in _FALSY or text == "":
        return 0
    try:
        return 1 if float(text) >= 0.5 else 0
    except ValueError:
        return 0


def _parse_numeric(values: pd.Series) -> np.ndarray:
    cleaned = values.astype(str).str.replace(r"[$,\s]", "", regex=True)
    return pd.to_numeric(cleaned, errors="coerce").to_numpy(dtype=float)


def _zscore(raw: np.ndarray, stat: NumericStat) -> np.ndarray:
    if stat.std == 0:
        return np.zeros_like(raw)
    out = (raw - stat.mean) / stat.std
    return np.where(np.isnan(raw), 0.0, out)


def _fit_stat(raw: np.ndarray) -> NumericStat:
    valid = raw[~np.isnan(raw)]
    if valid.size == 0:
        return NumericStat(mean=0.0, std=0.0)
    return NumericStat(mean=float(valid.mean()), std=float(valid.std()))


def build_feature_matrix(
    rows: pd.DataFrame,
    schema: DatasetSchema,
    label_column: str | None,
    norm_context: NormalizationContext | None = None,
) -> FeatureMatrix:
    """
    Build a numeric feature matrix from string-valued rows.

    Without ``norm_context`` (training) the statistics are fitted on ``rows``
    and returned; with it (scoring) the saved statistics and category lists
    are applied instead.
    """
    training = norm_context is None
    numeric_stats: dict[str, NumericStat] = {}
    categorical_mappings: dict[str, list[str]] = {}
    source_columns: list[ColumnSchema] = []

    if label_column is not None and label_column in rows.columns:
        y = np.array([parse_label(v) for v in rows[label_column]], dtype=int)
    else:
        y = np.zeros(len(rows), dtype=int)

    columns: list[np.ndarray] = []
    names: list[str] = []

    typed = [c for c in schema.columns if c.name != label_column and c.name in rows.columns]
    types = {c.name: c.type for c in typed}
    numeric_cols = [c.name for c in typed if c.type in _NUMERIC_TYPES]
    date_cols = [c.name for c in typed if c.type == "date"]
    boolean_cols = [c.name for c in typed if c.type == "boolean"]
    categorical_cols = [
        c.name
        for c in typed
        if c.type in _CATEGORICAL_TYPES
        or c.type not in _NUMERIC_TYPES | {"date", "boolean"}
    ]

    def stat_for(key: str, raw: np.ndarray) -> NumericStat:
        if not training and key in norm_context.numeric_stats:
            stat = norm_context.numeric_stats[key]
        else:
            stat = _fit_stat(raw)
        numeric_stats[key] = stat
        return stat

    for name in numeric_cols:
        raw = _parse_numeric(rows[name])
        columns.append(_zscore(raw, stat_for(name, raw)))
        names.append(name)
        source_columns.append(ColumnSchema(name=name, type=types[name]))

    # Amount-like columns get a separate z-score and a log transform
    for name in numeric_cols:
        if "amount" not in name.lower():
            continue
        raw = _parse_numeric(rows[name])
        z_key = f"{name}_zScore"
        columns.append(_zscore(raw, stat_for(z_key, raw)))
        names.append(z_key)
        safe = np.where(np.isnan(raw) | (raw < 0), 0.0, raw)
        columns.append(np.log1p(safe))
        names.append(f"{name}_log")

    for name in categorical_cols:
        values = rows[name].astype(str).str.strip()
        if not training and name in norm_context.categorical_mappings:
            top_values = norm_context.categorical_mappings[name]
        else:
            counts = values[values != ""].value_counts(sort=True)
            top_values = [str(v) for v in counts.index[:TOP_CATEGORIES]]
        categorical_mappings[name] = top_values
        for top_value in top_values:
            columns.append((values == top_value).to_numpy(dtype=float))
            names.append(f"{name}_{top_value}")
        source_columns.append(ColumnSchema(name=name, type=types[name]))

    for name in date_cols:
        parsed = pd.to_datetime(rows[name], errors="coerce", format="mixed")
        valid = parsed.notna().to_numpy()
        hour = np.where(valid, parsed.dt.hour.fillna(0).to_numpy(dtype=float), 0.0)
        # pandas counts Monday as 0; Sunday-first keeps the weekend at 0 and 6
        dow = np.where(valid, ((parsed.dt.dayofweek.fillna(0) + 1) % 7).to_numpy(dtype=float), 0.0)
        columns.append(hour)
        names.append(f"{name}_hourOfDay")
        columns.append(dow)
        names.append(f"{name}_dayOfWeek")
        columns.append(np.where(valid & ((dow == 0) | (dow == 6)), 1.0, 0.0))
        names.append(f"{name}_isWeekend")
        columns.append(np.where(valid & ((hour < 6) | (hour >= 22)), 1.0, 0.0))
        names.append(f"{name}_isOutOfHours")
        extended = ((hour >= 6) & (hour < 8)) | ((hour >= 17) & (hour < 22))
        columns.append(np.where(valid & extended, 1.0, 0.0))
        names.append(f"{name}_isExtendedHours")
        source_columns.append(ColumnSchema(name=name, type=types[name]))

    for name in boolean_cols:
        values = rows[name].astype(str).str.strip().str.lower()
        columns.append(values.isin(_TRUTHY).to_numpy(dtype=float))
        names.append(name)
        source_columns.append(ColumnSchema(name=name, type=types[name]))

    X = np.column_stack(columns) if columns else np.zeros((len(rows), 0))

    if training:
        context = NormalizationContext(
            numeric_stats=numeric_stats,
            categorical_mappings=categorical_mappings,
            source_columns=source_columns,
            label_column=label_column if label_column in rows.columns else None,
        )
    else:
        context = norm_context

    return FeatureMatrix(
        X=X.astype(float),
        y=y,
        feature_names=names,
        label_column=label_column,
        norm_context=context,
    )


def align_features(matrix: FeatureMatrix, training_feature_names: list[str]) -> np.ndarray:
    """Reorder scoring columns to the training order; unknown ones become zero."""
    if matrix.feature_names == training_feature_names:
        return matrix.X
    index = {name: i for i, name in enumerate(matrix.feature_names)}
    aligned = np.zeros((matrix.n_samples, len(training_feature_names)))
    for j, name in enumerate(training_feature_names):
        i = index.get(name)
        if i is not None:
            aligned[:, j] = matrix.X[:, i]
    return aligned


def dump_feature_matrix(matrix: FeatureMatrix) -> bytes:
    """Serialize a feature matrix for reuse across training calls."""
    payload = {
        "X": matrix.X,
        "y": matrix.y,
        "feature_names": matrix.feature_names,
        "label_column": matrix.label_column,
        "norm_context": matrix.norm_context.model_dump(),
    }
    buffer = io.BytesIO()
    _ = joblib.dump(payload, buffer, compress=3)
    return buffer.getvalue()


def load_feature_matrix(data: bytes) -> FeatureMatrix:
    """Inverse of ``dump_feature_matrix``."""
    payload = joblib.load(io.BytesIO(data))
    return FeatureMatrix(
        X=np.asarray(payload["X"], dtype=float),
        y=np.asarray(payload["y"], dtype=int),
        feature_names=list(payload["feature_names"]),
        label_column=payload["label_column"],
        norm_context=NormalizationContext.model_validate(payload["norm_context"]),
    )
