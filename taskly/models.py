"""Core data types shared by the supervisor, formatter and orchestrator.

Task specifications and emitted lines are frozen once created. A
``ProcessRecord`` moves strictly forward through its statuses; a restart
always starts a fresh record so terminal records stay untouched.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

StreamName = Literal["stdout", "stderr"]
ShellMode = bool | str


class ProcessStatus(Enum):
    """Lifecycle status of one process attempt."""

    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessStatus.COMPLETED, ProcessStatus.FAILED, ProcessStatus.KILLED)


class OutcomeStatus(Enum):
    """Final status of a task as reported in a ``RunResult``."""

    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class RunState(Enum):
    """Run-level state machine: pending -> running -> terminal."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


_ALLOWED_TRANSITIONS: dict[ProcessStatus, set[ProcessStatus]] = {
    ProcessStatus.STARTING: {ProcessStatus.RUNNING, ProcessStatus.FAILED},
    ProcessStatus.RUNNING: {ProcessStatus.COMPLETED, ProcessStatus.FAILED, ProcessStatus.KILLED},
    ProcessStatus.COMPLETED: set(),
    ProcessStatus.FAILED: set(),
    ProcessStatus.KILLED: set(),
}


@dataclass(frozen=True)
class TaskSpec:
    """Normalized, immutable description of one task.

    Attributes:
        id: Unique task identifier within a run
        index: Position of the task in the input list
        name: Display name used by the ``name`` prefix
        command: Executable (or full command line in shell mode)
        args: Arguments passed to the executable
        cwd: Working directory, None for the current one
        env: Extra environment variables merged over the inherited ones
        shell_mode: True for the default shell, a shell name/path, or False
        color: Explicit prefix color, None for automatic assignment
        restart_tries: Number of restarts allowed after failed attempts
        restart_delay_ms: Delay before each restart
    """

    id: str
    index: int
    command: str
    args: tuple[str, ...] = ()
    name: str | None = None
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    shell_mode: ShellMode = True
    color: str | None = None
    restart_tries: int = 0
    restart_delay_ms: int = 0

    @property
    def command_line(self) -> str:
        """Command and arguments joined for display and validation."""
        return " ".join((self.command, *self.args)) if self.args else self.command


@dataclass(frozen=True)
class OutputLine:
    """One framed line of child output."""

    task_id: str
    content: str
    stream: StreamName
    timestamp: float
    formatted: str


@dataclass(frozen=True)
class ColorAssignment:
    """Color bound to a task id for the duration of a run."""

    task_id: str
    color: str | None
    ansi_code: str


@dataclass
class ProcessRecord:
    """Mutable bookkeeping for one attempt of a task.

    Attributes:
        id: Task id this attempt belongs to
        attempt: 1-based attempt number
        pid: OS process id once spawned
        status: Current lifecycle status
        start_time: Monotonic start time
        end_time: Monotonic end time once terminal
        exit_code: Exit code once terminal
        output_buffer: Lines captured so far, in arrival order
    """

    id: str
    attempt: int = 1
    pid: int | None = None
    status: ProcessStatus = ProcessStatus.STARTING
    start_time: float = field(default_factory=time.monotonic)
    end_time: float | None = None
    exit_code: int | None = None
    output_buffer: list[OutputLine] = field(default_factory=list)

    def advance(self, status: ProcessStatus) -> None:
        """Move to ``status``, rejecting backward or post-terminal moves.

        Raises:
            ValueError: If the transition is not allowed
        """
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            msg = f"Invalid status transition for {self.id}: {self.status.value} -> {status.value}"
            raise ValueError(msg)
        self.status = status
        if status.is_terminal:
            self.end_time = time.monotonic()


@dataclass(frozen=True)
class ProcessResult:
    """Terminal message describing how one attempt ended.

    Attributes:
        task_id: Task id
        attempt: 1-based attempt number
        exit_code: Exit code (124 timeout, 137/130 terminate, 128+N signal)
        status: Terminal ``ProcessStatus``
        output: Captured lines
        start_time: Monotonic start time
        end_time: Monotonic end time
        error: Error message when the attempt failed abnormally
        timed_out: True when the timeout fired
        terminated: True when ``terminate`` ended the process
        signal: Signal number that ended the process, if any
    """

    task_id: str
    attempt: int
    exit_code: int
    status: ProcessStatus
    output: tuple[OutputLine, ...]
    start_time: float
    end_time: float
    error: str | None = None
    timed_out: bool = False
    terminated: bool = False
    signal: int | None = None

    @property
    def duration_ms(self) -> int:
        return int((self.end_time - self.start_time) * 1000)

    @property
    def succeeded(self) -> bool:
        """Exit code 0 with no kill or timeout involved."""
        return (
            self.exit_code == 0
            and self.status == ProcessStatus.COMPLETED
            and not self.timed_out
            and not self.terminated
        )


@dataclass(frozen=True)
class TaskCompletion:
    """Message sent from a task runner to the orchestrator control loop.

    ``result`` is None when the task never started (run aborted first) or
    the runner failed unexpectedly, in which case ``error`` is set.
    """

    spec: TaskSpec
    result: ProcessResult | None
    error: str | None = None


@dataclass(frozen=True)
class TaskOutcome:
    """Final outcome of a task after all of its attempts."""

    id: str
    index: int
    name: str | None
    status: OutcomeStatus
    exit_code: int | None
    duration_ms: int = 0
    attempts: int = 0
    timed_out: bool = False
    terminated: bool = False
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.COMPLETED and self.exit_code == 0

    @property
    def counts_for_success(self) -> bool:
        """Skipped and cancelled tasks do not take part in success evaluation."""
        return self.status not in (OutcomeStatus.SKIPPED, OutcomeStatus.CANCELLED)


@dataclass
class RunResult:
    """Aggregate result of a run.

    ``per_task`` holds exactly one entry per input task, in input order.
    """

    success: bool
    state: RunState
    per_task: list[TaskOutcome]

    def outcome(self, task_id: str) -> TaskOutcome:
        for item in self.per_task:
            if item.id == task_id:
                return item
        msg = f"No outcome for task {task_id}"
        raise KeyError(msg)

    def to_dict(self) -> dict[str, Any]:
        """Shape returned by the programmatic API."""
        return {
            "success": self.success,
            "state": self.state.value,
            "results": [
                {
                    "name": o.name,
                    "exitCode": o.exit_code,
                    "index": o.index,
                    "status": o.status.value,
                }
                for o in self.per_task
            ],
        }
