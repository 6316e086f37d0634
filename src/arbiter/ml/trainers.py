# Copyright (c) Syntropy Systems
"""Candidate trainers: one scikit-learn backed implementation per algorithm.

Every trainer satisfies the same contract so the orchestrator never branches
on algorithm names. Trainers are looked up through ``get_trainer``.
"""
from __future__ import annotations

import io
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar

import joblib
import numpy as np
from loguru import logger
from sklearn.base import ClassifierMixin
from sklearn.ensemble import (
    ExtraTreesClassifier,
    GradientBoostingClassifier,
    RandomForestClassifier,
)
from sklearn.linear_model import LogisticRegression
from sklearn.tree import DecisionTreeClassifier

from arbiter.errors import CandidateTrainingFailure, ValidationError
from arbiter.ml.explain import permutation_importance
from arbiter.ml.features import FeatureMatrix, NormalizationContext
from arbiter.ml.metrics import compute_all_metrics
from arbiter.models.bakeoff import (
    Algorithm,
    CandidateConfig,
    CandidateMetrics,
    CandidateResult,
)

log = logger.bind(domain="bakeoff.train")

DEFAULT_SEED = 42

# Hyperparameter names accepted from callers, mapped to estimator arguments
_ALIASES = {
    "seed": "random_state",
    "randomState": "random_state",
    "maxDepth": "max_depth",
    "nEstimators": "n_estimators",
    "minSamplesSplit": "min_samples_split",
    "minSamplesLeaf": "min_samples_leaf",
    "maxFeatures": "max_features",
    "learningRate": "learning_rate",
    "epochs": "max_iter",
}

_INT_PARAMS = {
    "random_state",
    "max_depth",
    "n_estimators",
    "min_samples_split",
    "min_samples_leaf",
    "max_iter",
}


@dataclass
class TrainedArtifact:
    """A fitted estimator plus what is needed to score new rows with it."""

    algorithm: Algorithm
    estimator: Any
    feature_names: list[str]
    norm_context: NormalizationContext = field(default_factory=NormalizationContext)


class CandidateTrainer(ABC):
    """Train, score and (de)serialize candidates of one algorithm."""

    algorithm: ClassVar[Algorithm]
    defaults: ClassVar[dict[str, Any]] = {}

    @abstractmethod
    def build_estimator(self, params: dict[str, Any]) -> ClassifierMixin:
        """Create an unfitted estimator from resolved parameters."""

    def resolve_params(self, hyperparams: dict[str, Any]) -> dict[str, Any]:
        """Merge caller hyperparameters over the defaults.

        Names the estimator does not accept are dropped with a warning.
        """
        params = dict(self.defaults)
        for key, value in hyperparams.items():
            name = _ALIASES.get(key, key)
            if name not in self.defaults:
                log.warning("Ignoring hyperparameter {!r} for {}", key, self.algorithm.value)
                continue
            if value is None:
                continue
            if name == "max_features" and isinstance(value, (int, float)):
                value = float(value) if 0 < value <= 1 else int(value)
            elif name in _INT_PARAMS:
                value = int(value)
            params[name] = value
        return params

    def train(
        self,
        X: np.ndarray,
        y: np.ndarray,
        hyperparams: dict[str, Any],
        review_rate: float,
        feature_names: list[str] | None = None,
        norm_context: NormalizationContext | None = None,
    ) -> CandidateResult:
        """Fit, evaluate and serialize one candidate.

        Metrics and permutation importance are computed on the training
        matrix. Raises on any training error; ``train_candidate`` is the
        non-raising wrapper.
        """
        names = feature_names or [f"feature_{j}" for j in range(X.shape[1])]
        if X.shape[0] == 0 or X.shape[1] == 0:
            msg = "Feature matrix is empty"
            raise CandidateTrainingFailure(msg)

        estimator = self.build_estimator(self.resolve_params(hyperparams))
        estimator.fit(X, y)
        artifact = TrainedArtifact(
            algorithm=self.algorithm,
            estimator=estimator,
            feature_names=names,
            norm_context=norm_context or NormalizationContext(),
        )

        scores = self.predict_batch(artifact, X)
        metrics = compute_all_metrics(y, scores, review_rate, self.algorithm)
        importance = permutation_importance(
            lambda batch: self.predict_batch(artifact, batch), X, y, names
        )

        return CandidateResult(
            algorithm=self.algorithm,
            hyperparams=hyperparams,
            metrics=metrics,
            importance=importance,
            serialized_artifact=self.serialize(artifact),
        )

    def predict_batch(self, artifact: TrainedArtifact, X: np.ndarray) -> np.ndarray:
        """Anomaly scores in [0, 1] for each row of ``X``."""
        estimator = artifact.estimator
        classes = list(estimator.classes_)
        if 1 not in classes:
            return np.zeros(X.shape[0])
        if len(classes) == 1:
            return np.ones(X.shape[0])
        proba = estimator.predict_proba(X)
        return np.clip(proba[:, classes.index(1)], 0.0, 1.0)

    def predict(self, artifact: TrainedArtifact, features: np.ndarray) -> float:
        """Anomaly score of a single feature vector."""
        row = np.asarray(features, dtype=float).reshape(1, -1)
        return float(self.predict_batch(artifact, row)[0])

    def serialize(self, artifact: TrainedArtifact) -> bytes:
        """Pickle an artifact to bytes with joblib."""
        payload = {
            "algorithm": artifact.algorithm.value,
            "estimator": artifact.estimator,
            "feature_names": artifact.feature_names,
            "norm_context": artifact.norm_context.model_dump(),
        }
        buffer = io.BytesIO()
        _ = joblib.dump(payload, buffer, compress=3)
        return buffer.getvalue()

    def deserialize(self, data: bytes) -> TrainedArtifact:
        """Load an artifact produced by ``serialize``."""
        artifact = load_artifact(data)
        if artifact.algorithm != self.algorithm:
            msg = f"Artifact holds {artifact.algorithm.value}, not {self.algorithm.value}"
            raise ValidationError(msg)
        return artifact


TRAINERS: dict[Algorithm, CandidateTrainer] = {}


def register(cls: type[CandidateTrainer]) -> type[CandidateTrainer]:
    """Class decorator adding a trainer to ``TRAINERS``."""
    TRAINERS[cls.algorithm] = cls()
    return cls


@register
class LogisticRegressionTrainer(CandidateTrainer):
    algorithm = Algorithm.LOG_REG
    defaults = {"C": 1.0, "max_iter": 1000, "random_state": DEFAULT_SEED}

    def build_estimator(self, params: dict[str, Any]) -> ClassifierMixin:
        return LogisticRegression(**params)


@register
class DecisionTreeTrainer(CandidateTrainer):
    algorithm = Algorithm.DECISION_TREE
    defaults = {
        "max_depth": 8,
        "min_samples_split": 5,
        "min_samples_leaf": 2,
        "random_state": DEFAULT_SEED,
    }

    def build_estimator(self, params: dict[str, Any]) -> ClassifierMixin:
        return DecisionTreeClassifier(**params)


@register
class RandomForestTrainer(CandidateTrainer):
    algorithm = Algorithm.RANDOM_FOREST
    defaults = {
        "n_estimators": 20,
        "max_depth": 10,
        "max_features": "sqrt",
        "min_samples_leaf": 1,
        "random_state": DEFAULT_SEED,
    }

    def build_estimator(self, params: dict[str, Any]) -> ClassifierMixin:
        return RandomForestClassifier(**params)


@register
class ExtraTreesTrainer(CandidateTrainer):
    algorithm = Algorithm.EXTRA_TREES
    defaults = {
        "n_estimators": 20,
        "max_depth": 10,
        "max_features": "sqrt",
        "min_samples_leaf": 1,
        "random_state": DEFAULT_SEED,
    }

    def build_estimator(self, params: dict[str, Any]) -> ClassifierMixin:
        return ExtraTreesClassifier(**params)


@register
class GradientBoostedTrainer(CandidateTrainer):
    algorithm = Algorithm.GRADIENT_BOOSTED
    defaults = {
        "n_estimators": 50,
        "learning_rate": 0.1,
        "max_depth": 3,
        "random_state": DEFAULT_SEED,
    }

    def build_estimator(self, params: dict[str, Any]) -> ClassifierMixin:
        return GradientBoostingClassifier(**params)


def get_trainer(algorithm: Algorithm | str) -> CandidateTrainer:
    """Look up the trainer registered for ``algorithm``."""
    try:
        return TRAINERS[Algorithm(algorithm)]
    except (ValueError, KeyError):
        msg = f"Unknown algorithm: {algorithm}"
        raise ValidationError(msg) from None


def load_artifact(data: bytes) -> TrainedArtifact:
    """Load any serialized artifact, whatever its algorithm."""
    payload = joblib.load(io.BytesIO(data))
    return TrainedArtifact(
        algorithm=Algorithm(payload["algorithm"]),
        estimator=payload["estimator"],
        feature_names=list(payload["feature_names"]),
        norm_context=NormalizationContext.model_validate(payload["norm_context"]),
    )


def train_candidate(
    config: CandidateConfig, matrix: FeatureMatrix, review_rate: float
) -> CandidateResult:
    """
    Train one candidate without raising.

    A training error is recorded on the returned result (``failed=True``,
    zeroed metrics and importance) so the bake-off can continue.
    """
    trainer = get_trainer(config.algorithm)
    started = time.monotonic()
    try:
        result = trainer.train(
            matrix.X,
            matrix.y,
            dict(config.hyperparams),
            review_rate,
            feature_names=matrix.feature_names,
            norm_context=matrix.norm_context,
        )
    except Exception as e:
        log.warning("Candidate {} failed: {}", config.algorithm.value, e)
        return CandidateResult(
            algorithm=config.algorithm,
            hyperparams=config.hyperparams,
            metrics=CandidateMetrics(),
            importance=[(name, 0.0) for name in matrix.feature_names],
            failed=True,
            error=str(e) or type(e).__name__,
        )

    log.info(
        "Trained {} in {:.2f}s (recall@RR={:.3f}, pr_auc={:.3f})",
        config.algorithm.value,
        time.monotonic() - started,
        result.metrics.recall_at_review_rate,
        result.metrics.pr_auc,
    )
    return result
