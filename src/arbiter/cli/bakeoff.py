# Copyright (c) Syntropy Systems
"""arbiter bakeoff commands."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from arbiter.cli.common import Project, open_project, pct
from arbiter.db import get_bakeoff, get_connection, get_model_versions, list_bakeoffs
from arbiter.errors import ArbiterError
from arbiter.models.bakeoff import Algorithm, CandidateConfig
from arbiter.models.base import JSONValue
from arbiter.orchestrator import (
    begin,
    finalize,
    get_bakeoff_status,
    mark_failed,
    run_batch,
    select_champion,
    start,
    train_one,
)

console = Console()

bakeoff_app = typer.Typer(
    name="bakeoff",
    help="Train candidate models and pick a champion.",
    no_args_is_help=True,
)


def parse_value(value: str) -> JSONValue:
    """Parse a hyperparameter value: int, float, bool or string."""
    lowered = value.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    try:
        if "." in value or "e" in lowered:
            return float(value)
        return int(value)
    except ValueError:
        return value


def parse_candidate(spec: str) -> CandidateConfig:
    """Parse ``algorithm[:key=value,...]`` into a candidate config.

    Examples:
        log_reg
        random_forest:nEstimators=50,maxDepth=8
    """
    algorithm, _, params = spec.partition(":")
    hyperparams: dict[str, JSONValue] = {}
    for pair in filter(None, params.split(",")):
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            msg = f"Invalid hyperparameter '{pair}' (expected key=value)"
            raise typer.BadParameter(msg)
        hyperparams[key.strip()] = parse_value(value.strip())
    try:
        return CandidateConfig(algorithm=Algorithm(algorithm.strip()), hyperparams=hyperparams)
    except ValueError as e:
        choices = ", ".join(a.value for a in Algorithm)
        msg = f"Unknown algorithm '{algorithm}' (choose from {choices})"
        raise typer.BadParameter(msg) from e


def _fail(e: ArbiterError) -> typer.Exit:
    console.print(f"[red]Error:[/red] {e.message}")
    return typer.Exit(1)


def _run_in_project(project: Project, bakeoff_id: str) -> None:
    conn = get_connection(project.db_path)
    try:
        bakeoff = run_batch(
            conn,
            project.store,
            bakeoff_id,
            budget_seconds=project.config.train_budget_seconds,
        )
    finally:
        conn.close()

    if bakeoff.status == "completed":
        console.print(f"[green]Bakeoff {bakeoff_id} completed[/green]")
        if bakeoff.narrative_short:
            console.print(bakeoff.narrative_short)
    else:
        console.print(f"[red]Bakeoff {bakeoff_id} {bakeoff.status}[/red]: {bakeoff.error or ''}")
        raise typer.Exit(1)


@bakeoff_app.command(name="start")
def start_cmd(
    dataset_id: str = typer.Argument(..., help="Dataset to train on"),
    model_id: str = typer.Argument(..., help="Model the versions belong to"),
    candidates: Optional[list[str]] = typer.Option(
        None,
        "--candidate",
        "-c",
        help="Candidate as algorithm[:key=value,...]; repeatable (default: every algorithm)",
    ),
    label_column: Optional[str] = typer.Option(None, "--label", "-l", help="Label column (default: detected)"),
    review_rate: Optional[float] = typer.Option(None, "--review-rate", "-r", help="Fraction of rows flagged"),
    rubric_path: Optional[Path] = typer.Option(
        None, "--rubric", help="YAML file with constraints and weights", exists=True, dir_okay=False
    ),
    incremental: bool = typer.Option(
        False, "--incremental", help="Do not queue; train with 'arbiter bakeoff train' calls"
    ),
    now: bool = typer.Option(False, "--now", help="Do not queue; train and finalize in this process"),
) -> None:
    """
    Start a bake-off.

    By default the bake-off is queued for 'arbiter worker'.

    Examples:

        arbiter bakeoff start DATASET MODEL -c log_reg -c random_forest:nEstimators=50

        arbiter bakeoff start DATASET MODEL --incremental
    """
    project = open_project()
    configs = [parse_candidate(c) for c in candidates] if candidates else [
        CandidateConfig(algorithm=a) for a in Algorithm
    ]

    rubric = project.config.rubric
    if rubric_path is not None:
        with rubric_path.open() as f:
            rubric = yaml.safe_load(f) or {}

    conn = get_connection(project.db_path)
    try:
        bakeoff_id = start(
            conn,
            project.store,
            dataset_id,
            model_id,
            configs,
            rubric=rubric,
            label_column=label_column,
            review_rate=review_rate if review_rate is not None else project.config.review_rate,
            enqueue=not (incremental or now),
        )
        if incremental:
            _ = begin(conn, bakeoff_id)
    except ArbiterError as e:
        raise _fail(e) from e
    finally:
        conn.close()

    console.print(f"[green]Started bakeoff[/green] {bakeoff_id} ({len(configs)} candidates)")
    if now:
        _run_in_project(project, bakeoff_id)
    elif incremental:
        console.print(f"[dim]Next: arbiter bakeoff train {bakeoff_id}[/dim]")
    else:
        console.print("[dim]Queued; run 'arbiter worker' to process it[/dim]")


@bakeoff_app.command()
def train(
    bakeoff_id: str = typer.Argument(..., help="Bakeoff ID"),
    index: Optional[int] = typer.Option(
        None, "--index", "-i", help="Candidate index (default: the next untrained one)"
    ),
) -> None:
    """Train one candidate of a running bake-off."""
    project = open_project()
    conn = get_connection(project.db_path)
    try:
        if index is None:
            status = get_bakeoff_status(conn, bakeoff_id)
            index = status.candidates_done
        summary = train_one(
            conn,
            project.store,
            bakeoff_id,
            index,
            budget_seconds=project.config.train_budget_seconds,
        )
    except ArbiterError as e:
        raise _fail(e) from e
    finally:
        conn.close()

    label = f"{summary.algorithm.display_name} (candidate {summary.candidate_index})"
    if summary.failed:
        console.print(f"[red]Failed:[/red] {label}: {summary.error}")
    else:
        console.print(
            f"[green]Trained:[/green] {label} recall@RR={pct(summary.metrics.recall_at_review_rate)} "
            f"precision@RR={pct(summary.metrics.precision_at_review_rate)} "
            f"PR-AUC={pct(summary.metrics.pr_auc)}"
        )
    console.print(f"[dim]{summary.candidates_done}/{summary.candidate_count} candidates done[/dim]")


@bakeoff_app.command(name="finalize")
def finalize_cmd(
    bakeoff_id: str = typer.Argument(..., help="Bakeoff ID"),
    long: bool = typer.Option(False, "--long", help="Print the full narrative"),
) -> None:
    """Pick the champion once every candidate is trained."""
    project = open_project()
    conn = get_connection(project.db_path)
    try:
        result = finalize(conn, project.store, bakeoff_id)
    except ArbiterError as e:
        raise _fail(e) from e
    finally:
        conn.close()

    console.print(
        f"[green]Champion:[/green] {result.champion_algorithm.display_name} "
        f"({result.champion_version_id})"
    )
    console.print(result.narrative.short)
    if long:
        console.print(Markdown(result.narrative.long))


@bakeoff_app.command()
def run(bakeoff_id: str = typer.Argument(..., help="Bakeoff ID")) -> None:
    """Train every remaining candidate and finalize, in this process."""
    project = open_project()
    _run_in_project(project, bakeoff_id)


@bakeoff_app.command()
def status(
    bakeoff_id: str = typer.Argument(..., help="Bakeoff ID"),
    long: bool = typer.Option(False, "--long", help="Print the full narrative"),
) -> None:
    """Show progress, candidates and the decision of a bake-off."""
    project = open_project()
    conn = get_connection(project.db_path)
    try:
        bakeoff = get_bakeoff(conn, bakeoff_id)
        if bakeoff is None:
            console.print(f"[red]Error:[/red] Bakeoff {bakeoff_id} not found")
            raise typer.Exit(1)
        versions = get_model_versions(conn, bakeoff.candidate_version_ids)
    finally:
        conn.close()

    status_color = {
        "queued": "yellow",
        "running": "blue",
        "completed": "green",
        "failed": "red",
    }.get(bakeoff.status, "white")

    console.print(f"[bold]Bakeoff {bakeoff.id}[/bold]")
    console.print(f"  Status:     [{status_color}]{bakeoff.status}[/{status_color}]")
    console.print(f"  Progress:   {bakeoff.candidates_done}/{bakeoff.candidate_count}")
    console.print(f"  Dataset:    {bakeoff.dataset_id}")
    console.print(f"  Model:      {bakeoff.model_id}")
    if bakeoff.progress:
        console.print(f"  Label:      {bakeoff.progress.label_column}")
        console.print(f"  Review rate: {bakeoff.progress.review_rate}")
    if bakeoff.error:
        console.print(f"  [red]Error:[/red] {bakeoff.error}")

    if bakeoff.progress:
        table = Table(show_header=True, header_style="bold")
        table.add_column("#", style="dim")
        table.add_column("Algorithm")
        table.add_column("Version", style="dim")
        table.add_column("Recall@RR", justify="right")
        table.add_column("Precision@RR", justify="right")
        table.add_column("PR-AUC", justify="right")
        table.add_column("Status")
        for i, config in enumerate(bakeoff.progress.candidate_configs):
            if i < len(versions):
                v = versions[i]
                state = "[red]failed[/red]" if v.failed else "[green]trained[/green]"
                if v.id == bakeoff.champion_version_id:
                    state = "[yellow]champion[/yellow]"
                table.add_row(
                    str(i),
                    config.algorithm.display_name,
                    v.id,
                    pct(v.metrics.recall_at_review_rate),
                    pct(v.metrics.precision_at_review_rate),
                    pct(v.metrics.pr_auc),
                    state,
                )
            else:
                table.add_row(str(i), config.algorithm.display_name, "-", "-", "-", "-", "[dim]pending[/dim]")
        console.print(table)

    if bakeoff.narrative_short:
        console.print()
        console.print(bakeoff.narrative_short)
    if long and bakeoff.narrative_long:
        console.print(Markdown(bakeoff.narrative_long))


@bakeoff_app.command(name="list")
def list_cmd(
    status_filter: Optional[str] = typer.Option(
        None, "--status", "-s", help="Filter by status (queued, running, completed, failed)"
    ),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum bake-offs to show"),
) -> None:
    """List bake-offs, newest first."""
    project = open_project()
    conn = get_connection(project.db_path)
    try:
        bakeoffs = list_bakeoffs(conn, status=status_filter, limit=limit)
    finally:
        conn.close()

    if not bakeoffs:
        console.print("[dim]No bake-offs found[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Model")
    table.add_column("Dataset")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Champion", style="dim")
    for b in bakeoffs:
        table.add_row(
            b.id,
            b.model_id,
            b.dataset_id,
            b.status,
            f"{b.candidates_done}/{b.candidate_count}",
            b.champion_version_id or "-",
        )
    console.print(table)


@bakeoff_app.command()
def champion(
    bakeoff_id: str = typer.Argument(..., help="Bakeoff ID"),
    version_id: str = typer.Argument(..., help="Candidate version to make champion"),
) -> None:
    """Override the champion with another candidate of the bake-off."""
    project = open_project()
    conn = get_connection(project.db_path)
    try:
        version = select_champion(conn, bakeoff_id, version_id)
    except ArbiterError as e:
        raise _fail(e) from e
    finally:
        conn.close()
    console.print(f"[green]Champion set:[/green] {version.algorithm.display_name} ({version.id})")


@bakeoff_app.command()
def fail(
    bakeoff_id: str = typer.Argument(..., help="Bakeoff ID"),
    message: str = typer.Option("Marked failed by operator", "--message", "-m", help="Reason"),
) -> None:
    """Mark a stuck bake-off as failed."""
    project = open_project()
    conn = get_connection(project.db_path)
    try:
        _ = mark_failed(conn, bakeoff_id, message)
    except ArbiterError as e:
        raise _fail(e) from e
    finally:
        conn.close()
    console.print(f"[yellow]Bakeoff {bakeoff_id} marked failed[/yellow]")
