"""Restart budget tracking for failed task attempts.

A task may be restarted after an attempt that failed on its own (non-zero
exit). Attempts that were killed, terminated or timed out are final: they
either came from a policy decision or would most likely fail the same way.
"""

from enum import Enum

from taskly.log_config import get_logger
from taskly.models import ProcessResult, ProcessStatus, TaskSpec

# Initialize logger
logger = get_logger(__name__)


class AttemptClass(Enum):
    """Classification of a finished attempt for restart decisions.

    Attributes:
        SUCCEEDED: Exit code 0
        FAILED: Non-zero exit on its own; may be restarted
        KILLED: Timed out, terminated or killed by a signal; never restarted
    """

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    KILLED = "killed"


def classify_attempt(result: ProcessResult) -> AttemptClass:
    """Classify a terminal ``ProcessResult``.

    Example:
        >>> classify_attempt(result_with_exit_code_2)
        <AttemptClass.FAILED: 'failed'>
    """
    if result.timed_out or result.terminated or result.status == ProcessStatus.KILLED:
        return AttemptClass.KILLED
    if result.succeeded:
        return AttemptClass.SUCCEEDED
    return AttemptClass.FAILED


class RestartConfig:
    """Restart budget of one task.

    Attributes:
        max_restarts: Restarts allowed after the first attempt
        delay_ms: Delay before each restart in milliseconds
    """

    def __init__(self, max_restarts: int = 0, delay_ms: int = 0):
        """Initialize restart configuration.

        Raises:
            ValueError: If parameters are negative
        """
        if max_restarts < 0:
            msg = "max_restarts must be non-negative"
            raise ValueError(msg)
        if delay_ms < 0:
            msg = "delay_ms must be non-negative"
            raise ValueError(msg)

        self.max_restarts = max_restarts
        self.delay_ms = delay_ms

    @property
    def enabled(self) -> bool:
        return self.max_restarts > 0

    @property
    def max_attempts(self) -> int:
        return self.max_restarts + 1

    @classmethod
    def from_spec(cls, spec: TaskSpec) -> "RestartConfig":
        return cls(max_restarts=spec.restart_tries, delay_ms=spec.restart_delay_ms)


class RestartTracker:
    """Counts attempts per task and decides whether to restart.

    The tracker only holds counters; the orchestrator decides when a restart
    is still allowed by the run state (no restarts once a run is aborted).
    """

    def __init__(self) -> None:
        self._attempts: dict[str, int] = {}
        self._restarts = 0

    def record_attempt(self, task_id: str) -> int:
        """Register a new attempt of ``task_id`` and return its 1-based number."""
        self._attempts[task_id] = self._attempts.get(task_id, 0) + 1
        if self._attempts[task_id] > 1:
            self._restarts += 1
        return self._attempts[task_id]

    def attempts(self, task_id: str) -> int:
        return self._attempts.get(task_id, 0)

    @property
    def total_restarts(self) -> int:
        return self._restarts

    def should_restart(self, spec: TaskSpec, result: ProcessResult) -> bool:
        """Whether ``spec`` gets another attempt after ``result``."""
        attempt_class = classify_attempt(result)
        if attempt_class != AttemptClass.FAILED:
            return False

        config = RestartConfig.from_spec(spec)
        used = self.attempts(spec.id)
        if used >= config.max_attempts:
            if config.enabled:
                logger.warning(
                    "restart_budget_exhausted",
                    task_id=spec.id,
                    attempts=used,
                    exit_code=result.exit_code,
                )
            return False

        logger.info(
            "restart_scheduled",
            task_id=spec.id,
            attempt=used,
            next_attempt=used + 1,
            max_attempts=config.max_attempts,
            delay_ms=config.delay_ms,
            exit_code=result.exit_code,
        )
        return True
