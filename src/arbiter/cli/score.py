# Copyright (c) Syntropy Systems
"""arbiter score, runs and findings commands."""

from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from arbiter.cli.common import open_project, pct
from arbiter.db import get_connection, get_findings, get_run, list_runs
from arbiter.errors import ArbiterError
from arbiter.scoring import score_dataset

console = Console()


def score(
    dataset_id: str = typer.Argument(..., help="Dataset to score"),
    model_id: Optional[str] = typer.Option(
        None, "--model", "-m", help="Score with this model's champion"
    ),
    version_id: Optional[str] = typer.Option(
        None, "--version", "-v", help="Score with a specific model version"
    ),
    review_rate: Optional[float] = typer.Option(
        None, "--review-rate", "-r", help="Fraction of rows flagged (default: from config)"
    ),
    threshold: Optional[float] = typer.Option(
        None, "--threshold", "-t", help="Explicit score cutoff; overrides the review rate"
    ),
) -> None:
    """
    Score a dataset and store the flagged rows as findings.

    Examples:

        arbiter score DATASET --model MODEL

        arbiter score DATASET --version VERSION --review-rate 0.01
    """
    project = open_project()
    conn = get_connection(project.db_path)
    try:
        run = score_dataset(
            conn,
            project.store,
            dataset_id,
            model_id=model_id,
            model_version_id=version_id,
            review_rate=review_rate if review_rate is not None else project.config.review_rate,
            threshold=threshold,
            preview_limit=project.config.preview_limit,
        )
    except ArbiterError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1) from e
    finally:
        conn.close()

    summary = run.summary
    if summary is None:
        console.print(f"[red]Error:[/red] Run {run.id} has no summary")
        raise typer.Exit(1)
    console.print(f"[green]Scored[/green] run {run.id} with version {run.model_version_id}")
    console.print(f"  Rows:      {summary.row_count}")
    console.print(f"  Flagged:   {summary.flagged_count}")
    console.print(f"  Threshold: {summary.threshold_used:.6f}")
    labels = summary.metrics_if_labels_present
    if labels is not None:
        console.print(
            f"  Labels:    precision {pct(labels.precision)}, recall {pct(labels.recall)}, "
            f"F1 {pct(labels.f1)}"
        )
    console.print(f"[dim]Output: {run.outputs_blob_url}[/dim]")
    console.print(f"[dim]Findings: arbiter findings {run.id}[/dim]")


def runs(
    status: Optional[str] = typer.Option(
        None, "--status", "-s", help="Filter by status (created, scoring, scored, failed)"
    ),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum runs to show"),
) -> None:
    """List scoring runs."""
    project = open_project()
    conn = get_connection(project.db_path)
    try:
        run_list = list_runs(conn, status=status, limit=limit)
    finally:
        conn.close()

    if not run_list:
        console.print("[dim]No runs found[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Dataset")
    table.add_column("Version")
    table.add_column("Status")
    table.add_column("Flagged", justify="right")
    table.add_column("Created")

    status_colors = {"scored": "green", "failed": "red", "scoring": "blue"}
    for run in run_list:
        color = status_colors.get(run.status, "yellow")
        table.add_row(
            run.id,
            run.dataset_id,
            run.model_version_id or "-",
            f"[{color}]{run.status}[/{color}]",
            str(run.summary.flagged_count) if run.summary else "-",
            run.created_at or "-",
        )

    console.print(table)


def findings(
    run_id: str = typer.Argument(..., help="Run ID"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum findings to show"),
    reasons: bool = typer.Option(False, "--reasons", help="Show every reason code"),
) -> None:
    """Show the highest-risk findings of a scoring run."""
    project = open_project()
    conn = get_connection(project.db_path)
    try:
        run = get_run(conn, run_id)
        if run is None:
            console.print(f"[red]Error:[/red] Run {run_id} not found")
            raise typer.Exit(1)
        finding_list = get_findings(conn, run_id, limit=limit)
    finally:
        conn.close()

    if run.status == "failed":
        console.print(f"[red]Run {run_id} failed:[/red] {run.error}")
        raise typer.Exit(1)
    if not finding_list:
        console.print(f"[dim]No findings for run {run_id} ({run.status})[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Rank", justify="right")
    table.add_column("Wire ID")
    table.add_column("Score", justify="right")
    table.add_column("Top reason")

    for f in finding_list:
        top = f.reason_codes[0].description if f.reason_codes else "-"
        table.add_row(str(f.rank), f.wire_id, f"{f.score:.4f}", top)

    console.print(table)

    if reasons:
        for f in finding_list:
            console.print(f"\n[bold]#{f.rank} {f.wire_id}[/bold]")
            for rc in f.reason_codes:
                console.print(f"  {rc.code} [{rc.contribution}] {rc.feature} ({rc.direction})")
