"""Task outcome collection and run statistics.

The ``ResultManager`` keeps every attempt of every task for auditing, the
final outcome of each task and the order in which final outcomes arrived,
which the success condition depends on.
"""

import json
from dataclasses import asdict
from pathlib import Path
from typing import Any

from taskly.models import OutcomeStatus, ProcessResult, TaskOutcome


class ResultManager:
    """Storage and reporting for one run's results."""

    def __init__(self) -> None:
        """Initialize result manager with empty storage."""
        self.outcomes: dict[str, TaskOutcome] = {}
        self.attempts: list[ProcessResult] = []
        self.completion_order: list[str] = []

    def add_attempt(self, result: ProcessResult) -> None:
        """Record a finished attempt (kept even when the task is restarted)."""
        self.attempts.append(result)

    def add_outcome(self, outcome: TaskOutcome) -> None:
        """Record the final outcome of a task.

        Outcomes that take part in success evaluation are appended to
        ``completion_order``.

        Raises:
            ValueError: If the task already has a final outcome
        """
        if outcome.id in self.outcomes:
            msg = f"Task {outcome.id} already has a final outcome"
            raise ValueError(msg)
        self.outcomes[outcome.id] = outcome
        if outcome.counts_for_success:
            self.completion_order.append(outcome.id)

    def get_outcome(self, task_id: str) -> TaskOutcome | None:
        return self.outcomes.get(task_id)

    def get_attempts(self, task_id: str) -> list[ProcessResult]:
        """All attempts of ``task_id`` in the order they finished."""
        return [a for a in self.attempts if a.task_id == task_id]

    def get_outcomes_by_status(self, status: OutcomeStatus) -> list[TaskOutcome]:
        return [o for o in self.outcomes.values() if o.status == status]

    def get_failed_tasks(self) -> list[TaskOutcome]:
        return [o for o in self.outcomes.values() if o.counts_for_success and not o.succeeded]

    def get_successful_tasks(self) -> list[TaskOutcome]:
        return [o for o in self.outcomes.values() if o.succeeded]

    def ordered_outcomes(self) -> list[TaskOutcome]:
        """Evaluated outcomes in the order they were finalized."""
        return [self.outcomes[task_id] for task_id in self.completion_order]

    def get_summary(self) -> dict[str, Any]:
        """Generate execution summary with statistics.

        Returns:
            Dictionary containing:
                - total_tasks: Number of tasks with a final outcome
                - successful / failed / killed / skipped / cancelled: Counts
                - restarts: Attempts beyond the first, over all tasks
                - total_duration_ms: Sum of final outcome durations
                - average_duration_ms: Mean duration of evaluated tasks
        """
        evaluated = [o for o in self.outcomes.values() if o.counts_for_success]
        total_duration = sum(o.duration_ms for o in evaluated)

        return {
            "total_tasks": len(self.outcomes),
            "successful": len(self.get_successful_tasks()),
            "failed": len(self.get_outcomes_by_status(OutcomeStatus.FAILED)),
            "killed": len(self.get_outcomes_by_status(OutcomeStatus.KILLED)),
            "skipped": len(self.get_outcomes_by_status(OutcomeStatus.SKIPPED)),
            "cancelled": len(self.get_outcomes_by_status(OutcomeStatus.CANCELLED)),
            "restarts": sum(max(o.attempts - 1, 0) for o in self.outcomes.values()),
            "total_duration_ms": total_duration,
            "average_duration_ms": total_duration / len(evaluated) if evaluated else 0.0,
        }

    def get_statistics(self) -> dict[str, Any]:
        """Summary plus longest/shortest task and a status breakdown."""
        stats = self.get_summary()
        evaluated = [o for o in self.outcomes.values() if o.counts_for_success]

        status_breakdown: dict[str, int] = {}
        for outcome in self.outcomes.values():
            status_breakdown[outcome.status.value] = status_breakdown.get(outcome.status.value, 0) + 1

        longest = max(evaluated, key=lambda o: o.duration_ms, default=None)
        shortest = min(evaluated, key=lambda o: o.duration_ms, default=None)
        stats.update(
            {
                "attempts": len(self.attempts),
                "timed_out": sum(1 for o in self.outcomes.values() if o.timed_out),
                "longest_task": {"id": longest.id, "duration_ms": longest.duration_ms} if longest else None,
                "shortest_task": {"id": shortest.id, "duration_ms": shortest.duration_ms} if shortest else None,
                "status_breakdown": status_breakdown,
            },
        )
        return stats

    def export_json(self, filepath: str | Path, extra: dict[str, Any] | None = None) -> None:
        """Export statistics, final outcomes and attempt history to JSON.

        Args:
            filepath: Path to output JSON file
            extra: Additional top-level keys (for example the run state)
        """
        filepath = Path(filepath)

        data = {
            **(extra or {}),
            "summary": self.get_statistics(),
            "results": [_outcome_dict(o) for o in self.outcomes.values()],
            "attempts": [_attempt_dict(a) for a in self.attempts],
        }

        # Ensure parent directory exists
        filepath.parent.mkdir(parents=True, exist_ok=True)

        with filepath.open("w") as f:
            json.dump(data, f, indent=2, default=str)

    def clear(self) -> None:
        """Clear all stored results."""
        self.outcomes.clear()
        self.attempts.clear()
        self.completion_order.clear()


def _outcome_dict(outcome: TaskOutcome) -> dict[str, Any]:
    data = asdict(outcome)
    data["status"] = outcome.status.value
    return data


def _attempt_dict(result: ProcessResult) -> dict[str, Any]:
    return {
        "task_id": result.task_id,
        "attempt": result.attempt,
        "exit_code": result.exit_code,
        "status": result.status.value,
        "duration_ms": result.duration_ms,
        "timed_out": result.timed_out,
        "terminated": result.terminated,
        "signal": result.signal,
        "error": result.error,
        "output_lines": len(result.output),
    }
