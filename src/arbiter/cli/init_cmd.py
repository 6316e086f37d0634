# Copyright (c) Syntropy Systems
"""arbiter init command."""

from pathlib import Path

import typer
import yaml
from rich.console import Console

from arbiter.config import PROJECT_DIR_NAME, default_config_dict
from arbiter.db import init_db

console = Console()


def init(
    path: Path = typer.Argument(
        Path(),
        help="Directory to initialize (default: current directory)",
    ),
) -> None:
    """Initialize a new arbiter project.

    Creates a .arbiter directory with configuration, database and blob store.
    """
    target = path.resolve()
    arbiter_dir = target / PROJECT_DIR_NAME

    if arbiter_dir.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {arbiter_dir}")
        return

    arbiter_dir.mkdir(parents=True)
    blob_dir = arbiter_dir / "blobs"
    blob_dir.mkdir()

    config_path = arbiter_dir / "config.yaml"
    with config_path.open("w") as f:
        yaml.dump(default_config_dict(), f, default_flow_style=False, sort_keys=False)

    db_path = arbiter_dir / "arbiter.db"
    init_db(db_path)

    console.print(f"[green]Initialized arbiter project:[/green] {arbiter_dir}")
    console.print(f"  [dim]config:[/dim] {config_path}")
    console.print(f"  [dim]database:[/dim] {db_path}")
    console.print(f"  [dim]blobs:[/dim] {blob_dir}")
