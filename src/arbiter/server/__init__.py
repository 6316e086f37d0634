# Copyright (c) Syntropy Systems
"""arbiter HTTP API."""

from .app import create_app
from .models import (
    ScoreRequest,
    SelectChampionRequest,
    StartBakeoffRequest,
    TrainCandidateRequest,
)

__all__ = [
    "ScoreRequest",
    "SelectChampionRequest",
    "StartBakeoffRequest",
    "TrainCandidateRequest",
    "create_app",
]
