# Copyright (c) Syntropy Systems
"""arbiter model commands."""

from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from arbiter.cli.common import open_project, pct
from arbiter.db import create_model, get_connection, get_model, list_model_versions, list_models

console = Console()

model_app = typer.Typer(
    name="model",
    help="Create models and inspect their versions.",
    no_args_is_help=True,
)


@model_app.command()
def create(
    name: str = typer.Argument(..., help="Model name"),
    description: Optional[str] = typer.Option(None, "--description", "-d", help="Description"),
) -> None:
    """Create a model that bake-offs train versions for."""
    project = open_project()
    conn = get_connection(project.db_path)
    try:
        model_id = create_model(conn, name, description)
    finally:
        conn.close()
    console.print(f"[green]Created model[/green] {model_id} ({name})")


@model_app.command(name="list")
def list_cmd(
    limit: int = typer.Option(50, "--limit", "-l", help="Maximum models to show"),
) -> None:
    """List models."""
    project = open_project()
    conn = get_connection(project.db_path)
    try:
        models = list_models(conn, limit=limit)
    finally:
        conn.close()

    if not models:
        console.print("[dim]No models[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Description")
    table.add_column("Created")
    for m in models:
        table.add_row(m.id, m.name, m.description or "", m.created_at or "-")
    console.print(table)


@model_app.command()
def versions(model_id: str = typer.Argument(..., help="Model ID")) -> None:
    """List the versions of a model; the champion is starred."""
    project = open_project()
    conn = get_connection(project.db_path)
    try:
        model = get_model(conn, model_id)
        if model is None:
            console.print(f"[red]Error:[/red] Model {model_id} not found")
            raise typer.Exit(1)
        rows = list_model_versions(conn, model_id)
    finally:
        conn.close()

    if not rows:
        console.print("[dim]No versions[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("", width=1)
    table.add_column("Version", style="dim")
    table.add_column("Algorithm")
    table.add_column("Recall@RR", justify="right")
    table.add_column("Precision@RR", justify="right")
    table.add_column("PR-AUC", justify="right")
    table.add_column("Status")
    for v in rows:
        table.add_row(
            "[yellow]*[/yellow]" if v.is_champion else "",
            v.id,
            v.algorithm.display_name,
            pct(v.metrics.recall_at_review_rate),
            pct(v.metrics.precision_at_review_rate),
            pct(v.metrics.pr_auc),
            "[red]failed[/red]" if v.failed else "[green]trained[/green]",
        )
    console.print(table)
