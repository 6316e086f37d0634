# Copyright (c) Syntropy Systems
"""arbiter dataset commands."""

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from arbiter.cli.common import open_project
from arbiter.datasets import find_label_column, register_dataset_file
from arbiter.db import get_connection, get_dataset, list_datasets
from arbiter.errors import ArbiterError

console = Console()

dataset_app = typer.Typer(
    name="dataset",
    help="Register and inspect datasets.",
    no_args_is_help=True,
)


@dataset_app.command()
def add(
    path: Path = typer.Argument(..., help="CSV or XLSX file", exists=True, dir_okay=False),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Dataset name (default: file stem)"),
) -> None:
    """Register a CSV or XLSX file as a dataset."""
    project = open_project()
    conn = get_connection(project.db_path)
    try:
        dataset = register_dataset_file(conn, project.store, path, name)
    except ArbiterError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1) from e
    finally:
        conn.close()

    label = find_label_column(dataset.schema_.names())
    console.print(f"[green]Registered dataset[/green] {dataset.id}")
    console.print(f"  [dim]name:[/dim] {dataset.name}")
    console.print(f"  [dim]rows:[/dim] {dataset.row_count}")
    console.print(f"  [dim]columns:[/dim] {len(dataset.schema_.columns)}")
    console.print(f"  [dim]label:[/dim] {label or '-'}")


@dataset_app.command(name="list")
def list_cmd(
    limit: int = typer.Option(50, "--limit", "-l", help="Maximum datasets to show"),
) -> None:
    """List registered datasets."""
    project = open_project()
    conn = get_connection(project.db_path)
    try:
        datasets = list_datasets(conn, limit=limit)
    finally:
        conn.close()

    if not datasets:
        console.print("[dim]No datasets[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Format")
    table.add_column("Rows", justify="right")
    table.add_column("Labels")
    table.add_column("Created")
    for d in datasets:
        table.add_row(
            d.id,
            d.name,
            d.source_format,
            str(d.row_count),
            "yes" if d.label_present else "no",
            d.created_at or "-",
        )
    console.print(table)


@dataset_app.command()
def show(dataset_id: str = typer.Argument(..., help="Dataset ID")) -> None:
    """Show a dataset's inferred schema."""
    project = open_project()
    conn = get_connection(project.db_path)
    try:
        dataset = get_dataset(conn, dataset_id)
    finally:
        conn.close()

    if dataset is None:
        console.print(f"[red]Error:[/red] Dataset {dataset_id} not found")
        raise typer.Exit(1)

    console.print(f"[bold]{dataset.name}[/bold] ({dataset.source_format}, {dataset.row_count} rows)")
    table = Table(show_header=True, header_style="bold")
    table.add_column("Column")
    table.add_column("Type")
    for column in dataset.schema_.columns:
        table.add_row(column.name, column.type)
    console.print(table)
