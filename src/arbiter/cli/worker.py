# Copyright (c) Syntropy Systems
"""arbiter worker command."""

import os
import signal
import socket
from threading import Event

import typer
from rich.console import Console

from arbiter.cli.common import Project, open_project
from arbiter.worker import process_next_task, requeue_orphans

console = Console()

# Shutdown event for graceful termination
_shutdown_event = Event()


def _signal_handler(signum, frame):
    """Handle SIGINT/SIGTERM for graceful shutdown."""
    console.print("\n[yellow]Shutdown requested, finishing current bakeoff...[/yellow]")
    _shutdown_event.set()


def worker(
    once: bool = typer.Option(False, "--once", help="Process at most one task, then exit"),
) -> None:
    """
    Start a worker that runs queued bake-offs.

    Bake-offs started with 'arbiter bakeoff start' are trained and finalized
    here. A bake-off interrupted by a crash is resumed from its last
    completed candidate once its task is requeued.

    Examples:

        arbiter worker

        arbiter worker --once
    """
    project = open_project()
    worker_id = f"{socket.gethostname()}:{os.getpid()}"

    orphaned = requeue_orphans(project.db_path, project.config.heartbeat_timeout)
    if orphaned:
        console.print(f"[yellow]Requeued {len(orphaned)} orphaned task(s)[/yellow]")
        for task in orphaned:
            console.print(f"  - Task #{task.id}: bakeoff {task.bakeoff_id} (attempt {task.attempt + 1})")

    console.print(f"[green]Worker started:[/green] {worker_id}")
    console.print(f"[dim]Polling for tasks every {project.config.poll_interval}s...[/dim]")

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    try:
        _worker_loop(project, worker_id, once)
    finally:
        console.print("[dim]Worker stopped[/dim]")


def _worker_loop(project: Project, worker_id: str, once: bool) -> None:
    """Main worker loop."""
    while not _shutdown_event.is_set():
        task = process_next_task(
            project.db_path,
            project.store,
            worker_id,
            heartbeat_interval=project.config.heartbeat_interval,
            budget_seconds=project.config.train_budget_seconds,
        )

        if task is None:
            if once:
                console.print("[dim]No queued tasks[/dim]")
                break
            # No tasks available, wait and retry
            _shutdown_event.wait(timeout=project.config.poll_interval)
            continue

        if task.status == "completed":
            console.print(f"[green]Bakeoff {task.bakeoff_id} completed[/green] (task #{task.id})")
        else:
            console.print(f"[red]Bakeoff {task.bakeoff_id} failed[/red]: {task.error_message}")

        if once:
            break
