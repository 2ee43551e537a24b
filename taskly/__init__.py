"""taskly: run commands concurrently under one supervising event loop."""

from taskly.api import RunOptions, build_orchestrator, run, run_concurrently
from taskly.models import OutcomeStatus, RunResult, RunState, TaskOutcome

__version__ = "0.1.0"

__all__ = [
    "OutcomeStatus",
    "RunOptions",
    "RunResult",
    "RunState",
    "TaskOutcome",
    "build_orchestrator",
    "run",
    "run_concurrently",
]
