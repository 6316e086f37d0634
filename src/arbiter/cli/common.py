# Copyright (c) Syntropy Systems
"""Helpers shared by arbiter commands."""

from dataclasses import dataclass
from pathlib import Path

import typer
from rich.console import Console

from arbiter.config import (
    ArbiterConfig,
    configure_logging,
    get_blob_dir,
    get_db_path,
    load_config,
    require_arbiter_dir,
)
from arbiter.storage import BlobStore

console = Console()


@dataclass
class Project:
    """Paths and config of the current arbiter project."""

    arbiter_dir: Path
    config: ArbiterConfig
    db_path: Path
    store: BlobStore


def open_project() -> Project:
    """Locate the project or exit with an error; also sets up logging."""
    try:
        arbiter_dir = require_arbiter_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    config = load_config(arbiter_dir)
    configure_logging(config.log_level)
    return Project(
        arbiter_dir=arbiter_dir,
        config=config,
        db_path=get_db_path(arbiter_dir),
        store=BlobStore(get_blob_dir(arbiter_dir)),
    )


def pct(value: float) -> str:
    """Format a [0, 1] metric as a percentage."""
    return f"{value * 100:.1f}%"
