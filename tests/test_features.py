# Copyright (c) Syntropy Systems
"""Tests for dataset parsing and feature engineering."""

import sqlite3
from unittest.mock import patch

import numpy as np
import pandas as pd
import pytest

from arbiter.datasets import find_label_column, infer_schema, parse_file, register_dataset
from arbiter.errors import PipelineFailure, ValidationError
from arbiter.ml.features import (
    align_features,
    build_feature_matrix,
    dump_feature_matrix,
    load_feature_matrix,
    parse_label,
)
from arbiter.storage import BlobStore


class TestSchemaInference:
    """Tests for column type inference."""

    def test_wire_columns(self, wire_factory) -> None:
        """Amounts, timestamps, flags and codes get distinct types."""
        schema = infer_schema(wire_factory(60))
        types = {c.name: c.type for c in schema.columns}

        assert types["Amount"] == "number"
        assert types["InitiatedAt"] == "date"
        assert types["CallbackVerified"] == "boolean"
        assert types["BeneficiaryCountry"] == "categorical"

    def test_currency(self) -> None:
        """Dollar-formatted values are currency."""
        frame = pd.DataFrame({"Fee": ["$1,200.00", "$35.50", "$9.99"]})
        assert infer_schema(frame).columns[0].type == "currency"

    def test_unsupported_format(self) -> None:
        """Only CSV and XLSX parse."""
        with pytest.raises(ValidationError):
            _ = parse_file(b"{}", "json")

    def test_find_label_column(self) -> None:
        """Only well-known label names are detected, whatever their case."""
        assert find_label_column(["Amount", "is_fraud", "IsAnomaly"]) == "IsAnomaly"
        assert find_label_column(["Amount", "fraud_flag"]) is None
        assert find_label_column(["FraudScore", "label"]) == "label"
        assert find_label_column(["Amount"]) is None


class TestRegisterDataset:
    """Tests for dataset registration."""

    def test_register(
        self, db_connection: sqlite3.Connection, blob_store: BlobStore, wires_csv: bytes
    ) -> None:
        record = register_dataset(db_connection, blob_store, wires_csv, "wires", "csv")

        assert record.row_count == 300
        assert record.label_present is True

    def test_vanished_record_raises(
        self, db_connection: sqlite3.Connection, blob_store: BlobStore, wires_csv: bytes
    ) -> None:
        with patch("arbiter.datasets.get_dataset", return_value=None):
            with pytest.raises(PipelineFailure, match="vanished"):
                _ = register_dataset(db_connection, blob_store, wires_csv, "wires", "csv")


class TestParseLabel:
    """Tests for label parsing."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [("1", 1), ("true", 1), ("Yes", 1), ("0", 0), ("", 0), ("0.7", 1), ("junk", 0), (None, 0)],
    )
    def test_values(self, value: object, expected: int) -> None:
        assert parse_label(value) == expected


class TestFeatureMatrix:
    """Tests for building and reusing feature matrices."""

    def test_derived_features(self, wire_factory) -> None:
        """Amounts, dates and flags expand into named features."""
        frame = wire_factory(90)
        matrix = build_feature_matrix(frame, infer_schema(frame), "IsAnomaly")

        for name in (
            "Amount",
            "Amount_zScore",
            "Amount_log",
            "InitiatedAt_hourOfDay",
            "InitiatedAt_isOutOfHours",
            "CallbackVerified",
        ):
            assert name in matrix.feature_names
        assert "IsAnomaly" not in matrix.feature_names
        assert matrix.X.shape == (90, len(matrix.feature_names))
        assert int(matrix.y.sum()) == int((frame["IsAnomaly"] == "1").sum())

    def test_scoring_reuses_training_stats(self, wire_factory) -> None:
        """With a context the training mean and std are applied unchanged."""
        train = wire_factory(90, seed=1)
        schema = infer_schema(train)
        fitted = build_feature_matrix(train, schema, "IsAnomaly")

        score = wire_factory(30, seed=2)
        applied = build_feature_matrix(score, schema, None, norm_context=fitted.norm_context)

        stat = fitted.norm_context.numeric_stats["Amount"]
        column = applied.feature_names.index("Amount")
        expected = (score["Amount"].astype(float).to_numpy() - stat.mean) / stat.std
        np.testing.assert_allclose(applied.X[:, column], expected)

    def test_training_schema_recorded(self, wire_factory) -> None:
        """The context remembers which raw columns features came from."""
        frame = wire_factory(60)
        matrix = build_feature_matrix(frame, infer_schema(frame), "IsAnomaly")
        names = matrix.norm_context.training_schema().names()

        assert "Amount" in names
        assert "IsAnomaly" not in names

    def test_label_column_recorded(self, wire_factory) -> None:
        frame = wire_factory(40)

        labelled = build_feature_matrix(frame, infer_schema(frame), "IsAnomaly")
        assert labelled.norm_context.label_column == "IsAnomaly"

        unlabelled = frame.drop(columns=["IsAnomaly"])
        matrix = build_feature_matrix(unlabelled, infer_schema(unlabelled), None)
        assert matrix.norm_context.label_column is None

    def test_align_fills_unknown_with_zero(self, wire_factory) -> None:
        """Columns missing at scoring time become zero; extra ones are dropped."""
        frame = wire_factory(30)
        matrix = build_feature_matrix(frame, infer_schema(frame), "IsAnomaly")

        aligned = align_features(matrix, ["Amount", "NotAFeature"])

        assert aligned.shape == (30, 2)
        np.testing.assert_array_equal(aligned[:, 1], np.zeros(30))

    def test_dump_and_load(self, wire_factory) -> None:
        """A stored matrix loads back with its context."""
        frame = wire_factory(30)
        matrix = build_feature_matrix(frame, infer_schema(frame), "IsAnomaly")

        loaded = load_feature_matrix(dump_feature_matrix(matrix))

        np.testing.assert_array_equal(loaded.X, matrix.X)
        assert loaded.feature_names == matrix.feature_names
        assert loaded.norm_context == matrix.norm_context
