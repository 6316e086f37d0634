# Copyright (c) Syntropy Systems
"""CLI command for running the arbiter HTTP API."""

import typer
import uvicorn
from rich.console import Console

from arbiter.cli.common import open_project
from arbiter.server.app import create_app

console = Console()


def server(
    port: int = typer.Option(8080, "--port", "-p", help="Port to listen on"),
    host: str = typer.Option("127.0.0.1", "--host", "-h", help="Host to bind to"),
) -> None:
    """
    Serve the bake-off and scoring API for the current project.

    Long-running bake-offs started over HTTP are queued for 'arbiter worker'
    unless started in incremental mode.

    Examples:

        arbiter server

        # Bind to all interfaces (for remote access)
        arbiter server --host 0.0.0.0 --port 8080
    """
    project = open_project()

    console.print("[bold]arbiter server[/bold]")
    console.print(f"  Host: {host}")
    console.print(f"  Port: {port}")
    console.print(f"  Database: {project.db_path}")
    console.print(f"  Blobs: {project.store.base_path}")
    console.print()

    app = create_app(project.db_path, project.store.base_path, config=project.config)
    uvicorn.run(app, host=host, port=port, log_level=project.config.log_level.lower())
