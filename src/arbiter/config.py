# Copyright (c) Syntropy Systems
"""Configuration management for arbiter."""
from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

import yaml
from loguru import logger

from arbiter.models.bakeoff import RubricConfig

PROJECT_DIR_NAME = ".arbiter"


@dataclass
class ArbiterConfig:
    """Configuration for arbiter."""

    # Default fraction of rows flagged for review
    review_rate: float = 0.005

    # Findings stored per scoring run
    preview_limit: int = 200

    # Wall-clock budget for one train-candidate call (seconds)
    train_budget_seconds: int = 55

    # Heartbeat interval for background tasks (seconds)
    heartbeat_interval: int = 30

    # Timeout for considering a task orphaned (seconds)
    heartbeat_timeout: int = 120

    # Poll interval for worker when no tasks available (seconds)
    poll_interval: int = 5

    log_level: str = "INFO"

    rubric: RubricConfig = field(default_factory=RubricConfig)


def find_arbiter_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .arbiter directory by walking up from start_path.

    Returns None if no .arbiter directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        arbiter_dir = current / PROJECT_DIR_NAME
        if arbiter_dir.is_dir():
            return arbiter_dir
        current = current.parent

    # Check root
    arbiter_dir = current / PROJECT_DIR_NAME
    if arbiter_dir.is_dir():
        return arbiter_dir

    return None


def get_global_config_dir() -> Path:
    """Get the global arbiter config directory (~/.arbiter)."""
    return Path.home() / PROJECT_DIR_NAME


def load_config(arbiter_dir: Path | None = None) -> ArbiterConfig:
    """Load configuration from .arbiter/config.yaml or defaults.

    Looks for config in:
    1. Provided arbiter_dir
    2. Nearest .arbiter directory walking up
    3. ~/.arbiter/config.yaml
    4. Defaults
    """
    config = ArbiterConfig()

    config_path = None

    if arbiter_dir is not None:
        config_path = arbiter_dir / "config.yaml"
    else:
        found_dir = find_arbiter_dir()
        if found_dir is not None:
            config_path = found_dir / "config.yaml"
        else:
            global_config = get_global_config_dir() / "config.yaml"
            if global_config.exists():
                config_path = global_config

    if config_path is not None and config_path.exists():
        with config_path.open() as f:
            data = cast("dict[str, object]", yaml.safe_load(f) or {})

        review_rate = data.get("review_rate")
        if isinstance(review_rate, (int, float)) and 0 < review_rate <= 1:
            config.review_rate = float(review_rate)
        for key in (
            "preview_limit",
            "train_budget_seconds",
            "heartbeat_interval",
            "heartbeat_timeout",
            "poll_interval",
        ):
            value = data.get(key)
            if isinstance(value, (int, float)):
                setattr(config, key, int(value))
        log_level = data.get("log_level")
        if isinstance(log_level, str):
            config.log_level = log_level.upper()
        rubric = data.get("rubric")
        if isinstance(rubric, dict):
            config.rubric = RubricConfig.model_validate(rubric)

    return config


def default_config_dict() -> dict[str, object]:
    """Config written by ``arbiter init``."""
    config = ArbiterConfig()
    return {
        "review_rate": config.review_rate,
        "preview_limit": config.preview_limit,
        "train_budget_seconds": config.train_budget_seconds,
        "heartbeat_interval": config.heartbeat_interval,
        "heartbeat_timeout": config.heartbeat_timeout,
        "poll_interval": config.poll_interval,
        "log_level": config.log_level,
        "rubric": config.rubric.model_dump(),
    }


def configure_logging(level: str = "INFO") -> None:
    """Route loguru output to stderr at ``level``."""
    logger.remove()
    _ = logger.add(
        sys.stderr,
        level=level,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
        "<cyan>{extra[domain]}</cyan> - {message}",
    )
    logger.configure(extra={"domain": "arbiter"})


def get_db_path(arbiter_dir: Path | None = None) -> Path:
    """Get the path to the SQLite database."""
    if arbiter_dir is None:
        arbiter_dir = require_arbiter_dir()
    return arbiter_dir / "arbiter.db"


def get_blob_dir(arbiter_dir: Path | None = None) -> Path:
    """Get the path to the blob directory."""
    if arbiter_dir is None:
        arbiter_dir = require_arbiter_dir()
    return arbiter_dir / "blobs"


def require_arbiter_dir() -> Path:
    """Get arbiter directory or raise an error if not found."""
    arbiter_dir = find_arbiter_dir()
    if arbiter_dir is None:
        msg = "No .arbiter directory found. Run 'arbiter init' first."
        raise RuntimeError(msg)
    return arbiter_dir
