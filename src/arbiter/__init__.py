"""
arbiter - Anomaly model bake-offs.

Train candidate models, pick a champion by rubric, score new data.
"""

from arbiter.orchestrator import finalize, run_batch, start, train_one
from arbiter.scoring import run_scoring_pipeline, score_dataset

__version__ = "0.1.0"
__all__ = [
    "finalize",
    "run_batch",
    "run_scoring_pipeline",
    "score_dataset",
    "start",
    "train_one",
    "__version__",
]
