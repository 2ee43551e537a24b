"""Orchestrator module for concurrent task runs.

This module contains the TaskOrchestrator, which admits tasks under a
concurrency bound and applies the kill and success policies, together with
the restart tracker and the result manager it reports into.
"""

from taskly.orchestrator.orchestrator import TaskOrchestrator
from taskly.orchestrator.restart import RestartConfig, RestartTracker
from taskly.orchestrator.result_manager import ResultManager

__all__ = [
    "RestartConfig",
    "RestartTracker",
    "ResultManager",
    "TaskOrchestrator",
]
