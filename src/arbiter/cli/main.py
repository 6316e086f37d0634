# Copyright (c) Syntropy Systems
"""Main CLI entry point for arbiter."""

import typer

from arbiter.cli.bakeoff import bakeoff_app
from arbiter.cli.dataset import dataset_app
from arbiter.cli.init_cmd import init
from arbiter.cli.model import model_app
from arbiter.cli.score import findings, runs, score
from arbiter.cli.server_cmd import server
from arbiter.cli.worker import worker

app = typer.Typer(
    name="arbiter",
    help=(
        "Anomaly model bake-offs. Train candidates, pick a champion by rubric, "
        "score datasets into ranked findings."
    ),
    no_args_is_help=True,
    add_completion=False,
)

# Register commands
_ = app.command()(init)
_ = app.command()(score)
_ = app.command()(runs)
_ = app.command()(findings)
_ = app.command()(worker)
_ = app.command()(server)

# Register sub-apps
app.add_typer(dataset_app, name="dataset")
app.add_typer(model_app, name="model")
app.add_typer(bakeoff_app, name="bakeoff")


if __name__ == "__main__":
    app()
