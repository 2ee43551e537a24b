"""Tests for outcome collection, statistics and JSON export."""

import json

import pytest

from taskly.models import OutcomeStatus, ProcessResult, ProcessStatus, TaskOutcome
from taskly.orchestrator.result_manager import ResultManager


def _outcome(task_id: str, status: OutcomeStatus, exit_code: int | None = 0, **kwargs) -> TaskOutcome:
    return TaskOutcome(
        id=task_id,
        index=kwargs.pop("index", 0),
        name=kwargs.pop("name", None),
        status=status,
        exit_code=exit_code,
        **kwargs,
    )


def _attempt(task_id: str, attempt: int, exit_code: int) -> ProcessResult:
    status = ProcessStatus.COMPLETED if exit_code == 0 else ProcessStatus.FAILED
    return ProcessResult(
        task_id=task_id,
        attempt=attempt,
        exit_code=exit_code,
        status=status,
        output=(),
        start_time=10.0,
        end_time=10.5,
    )


@pytest.fixture
def manager() -> ResultManager:
    """Result manager holding a mixed set of outcomes."""
    rm = ResultManager()
    rm.add_attempt(_attempt("build", 1, 1))
    rm.add_attempt(_attempt("build", 2, 0))
    rm.add_attempt(_attempt("lint", 1, 2))
    rm.add_outcome(_outcome("build", OutcomeStatus.COMPLETED, duration_ms=500, attempts=2))
    rm.add_outcome(_outcome("lint", OutcomeStatus.FAILED, exit_code=2, duration_ms=100, attempts=1))
    rm.add_outcome(_outcome("docs", OutcomeStatus.SKIPPED, exit_code=None))
    rm.add_outcome(_outcome("serve", OutcomeStatus.KILLED, exit_code=130, duration_ms=900, attempts=1, terminated=True))
    rm.add_outcome(_outcome("deploy", OutcomeStatus.CANCELLED, exit_code=None))
    return rm


class TestResultManager:
    """Test cases for ResultManager."""

    def test_completion_order_excludes_skipped_and_cancelled(self, manager):
        """Test that only evaluated outcomes enter the completion order."""
        assert manager.completion_order == ["build", "lint", "serve"]
        assert [o.id for o in manager.ordered_outcomes()] == ["build", "lint", "serve"]

    def test_duplicate_outcome_rejected(self, manager):
        """Test that a task can only have one final outcome."""
        with pytest.raises(ValueError, match="already has a final outcome"):
            manager.add_outcome(_outcome("build", OutcomeStatus.FAILED))

    def test_queries(self, manager):
        """Test lookups by id and status."""
        assert manager.get_outcome("lint").exit_code == 2
        assert manager.get_outcome("unknown") is None
        assert [o.id for o in manager.get_failed_tasks()] == ["lint", "serve"]
        assert [o.id for o in manager.get_successful_tasks()] == ["build"]
        assert [o.id for o in manager.get_outcomes_by_status(OutcomeStatus.SKIPPED)] == ["docs"]

    def test_attempt_history(self, manager):
        """Test that every attempt is kept in order."""
        assert [a.attempt for a in manager.get_attempts("build")] == [1, 2]
        assert manager.get_attempts("docs") == []

    def test_summary(self, manager):
        """Test summary counts and durations."""
        summary = manager.get_summary()

        assert summary["total_tasks"] == 5
        assert summary["successful"] == 1
        assert summary["failed"] == 1
        assert summary["killed"] == 1
        assert summary["skipped"] == 1
        assert summary["cancelled"] == 1
        assert summary["restarts"] == 1
        assert summary["total_duration_ms"] == 1500
        assert summary["average_duration_ms"] == 500.0

    def test_statistics(self, manager):
        """Test longest/shortest task and the status breakdown."""
        stats = manager.get_statistics()

        assert stats["attempts"] == 3
        assert stats["longest_task"] == {"id": "serve", "duration_ms": 900}
        assert stats["shortest_task"] == {"id": "lint", "duration_ms": 100}
        assert stats["status_breakdown"] == {
            "completed": 1,
            "failed": 1,
            "skipped": 1,
            "killed": 1,
            "cancelled": 1,
        }

    def test_empty_statistics(self):
        """Test statistics with no outcomes."""
        stats = ResultManager().get_statistics()
        assert stats["total_tasks"] == 0
        assert stats["average_duration_ms"] == 0.0
        assert stats["longest_task"] is None

    def test_export_json(self, manager, tmp_path):
        """Test the exported report layout."""
        path = tmp_path / "reports" / "run.json"
        manager.export_json(path, extra={"success": False, "state": "failed"})

        data = json.loads(path.read_text())
        assert data["success"] is False
        assert data["state"] == "failed"
        assert data["summary"]["total_tasks"] == 5
        assert [r["id"] for r in data["results"]] == ["build", "lint", "docs", "serve", "deploy"]
        assert data["results"][1]["status"] == "failed"
        assert data["attempts"][0] == {
            "task_id": "build",
            "attempt": 1,
            "exit_code": 1,
            "status": "failed",
            "duration_ms": 500,
            "timed_out": False,
            "terminated": False,
            "signal": None,
            "error": None,
            "output_lines": 0,
        }

    def test_clear(self, manager):
        """Test clearing all stored results."""
        manager.clear()
        assert manager.outcomes == {}
        assert manager.attempts == []
        assert manager.completion_order == []
