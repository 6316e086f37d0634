# Copyright (c) Syntropy Systems
"""Error taxonomy shared by the orchestrator, scoring pipeline and surfaces."""

from __future__ import annotations

from typing import Any


class ArbiterError(Exception):
    """Base class for errors surfaced to callers."""

    status_code: int = 500
    error_code: str = "error"

    def __init__(self, message: str, detail: dict[str, Any] | None = None) -> None:
        self.message = message
        self.detail = detail or {}
        super().__init__(message)


class NotFoundError(ArbiterError):
    """A dataset, model, bake-off, run or version does not exist."""

    status_code = 404
    error_code = "not_found"

    def __init__(self, resource: str, identifier: str | None = None) -> None:
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} '{identifier}' not found"
        super().__init__(message, {"resource": resource, "id": identifier})


class ConflictError(ArbiterError):
    """The request is valid but does not fit the current state.

    Raised for wrong bake-off status, out-of-order or duplicate candidate
    indices, and champion versions that are not bake-off candidates. Callers
    must re-sequence rather than retry blindly.
    """

    status_code = 409
    error_code = "conflict"


class ValidationError(ArbiterError):
    """Malformed input, raised before any state is mutated."""

    status_code = 422
    error_code = "validation_error"


class CandidateTrainingFailure(ArbiterError):
    """Training of one candidate failed.

    Recorded on that candidate's result only; never aborts a bake-off.
    """

    error_code = "candidate_training_failure"


class PipelineFailure(ArbiterError):
    """Unexpected error during background execution or scoring."""

    error_code = "pipeline_failure"
