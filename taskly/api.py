"""Programmatic entry points.

``run_concurrently`` is the embeddable coroutine behind the CLI; ``run`` is
its blocking wrapper for synchronous callers.

Example:
    >>> from taskly import run
    >>> result = run(["echo one", "echo two"], kill_others_on="failure")
    >>> result.to_dict()["success"]
    True
"""

import asyncio
from collections.abc import Sequence
from typing import Any

import structlog
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from taskly.config import KillTrigger, OutputConfig, RunPolicy, SuccessCondition, SupervisorConfig, TasklyConfig
from taskly.errors import ErrorCode, ValidationError
from taskly.errors.handler import ErrorHandler
from taskly.models import RunResult
from taskly.orchestrator.orchestrator import TaskOrchestrator
from taskly.output.formatter import DEFAULT_SEPARATOR, DEFAULT_TIMESTAMP_FORMAT, OutputFormatter
from taskly.output.sink import OutputSink
from taskly.resolver import CommandResolver, TaskInput

# Initialize logger
logger = structlog.get_logger(__name__)


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


class RunOptions(BaseModel):
    """Flat option set accepted by ``run_concurrently``.

    Attributes:
        max_processes: Maximum concurrently live processes (0 means unlimited)
        kill_others_on: Final outcomes that stop every other task
        success_condition: ``all``, ``first`` or ``last``
        ignore_missing: Skip tasks whose command or script does not exist
        cwd: Default working directory
        names: Task names by index
        prefix: Prefix type or template
        prefix_colors: Colors by task index
        timestamp_format: Format of the ``{time}`` placeholder
        separator: Text between the prefix and the line content
        raw: Pass output through without prefixes
        color: Emit ANSI colors around prefixes
        shell: Shell mode for plain string commands
        restart_tries: Restart budget for plain string commands
        restart_delay: Restart delay in milliseconds for plain string commands
        timeout_seconds: Per-attempt timeout (0 disables)
        kill_grace_seconds: Wait between SIGTERM and SIGKILL when stopping
    """

    max_processes: int = Field(default=0, ge=0)
    kill_others_on: frozenset[KillTrigger] = Field(default_factory=frozenset)
    success_condition: SuccessCondition = "all"
    ignore_missing: bool = False
    cwd: str | None = None
    names: list[str] = Field(default_factory=list)
    prefix: str = "index"
    prefix_colors: list[str] = Field(default_factory=list)
    timestamp_format: str = DEFAULT_TIMESTAMP_FORMAT
    separator: str = DEFAULT_SEPARATOR
    raw: bool = False
    color: bool = True
    shell: bool | str = True
    restart_tries: int = Field(default=0, ge=0)
    restart_delay: int = Field(default=0, ge=0)
    timeout_seconds: float = Field(default=0, ge=0)
    kill_grace_seconds: float = Field(default=3.0, ge=0)

    model_config = {"extra": "forbid"}

    @field_validator("kill_others_on", "names", "prefix_colors", mode="before")
    @classmethod
    def parse_csv(cls, v: Any) -> Any:
        return _split_csv(v)

    def to_config(self) -> TasklyConfig:
        """Translate into the nested ``TasklyConfig`` layout."""
        return TasklyConfig(
            policy=RunPolicy(
                max_processes=self.max_processes,
                kill_others_on=self.kill_others_on,
                success_condition=self.success_condition,
                ignore_missing=self.ignore_missing,
            ),
            output=OutputConfig(
                prefix=self.prefix,
                prefix_colors=self.prefix_colors,
                timestamp_format=self.timestamp_format,
                separator=self.separator,
                raw=self.raw,
            ),
            supervisor=SupervisorConfig(
                timeout_seconds=self.timeout_seconds,
                kill_grace_seconds=self.kill_grace_seconds,
            ),
            names=self.names,
            cwd=self.cwd,
            shell=self.shell,
            restart_tries=self.restart_tries,
            restart_delay=self.restart_delay,
        )


def build_orchestrator(
    config: TasklyConfig,
    sink: OutputSink | None = None,
    error_handler: ErrorHandler | None = None,
    use_color: bool = True,
) -> TaskOrchestrator:
    """Wire formatter, resolver and orchestrator from a ``TasklyConfig``."""
    formatter = OutputFormatter(
        prefix=config.output.prefix,
        timestamp_format=config.output.timestamp_format,
        separator=config.output.separator,
        raw=config.output.raw,
        use_color=use_color,
    )
    resolver = CommandResolver(
        cwd=config.cwd,
        default_shell=config.shell,
        names=config.names,
        prefix_colors=config.output.prefix_colors,
        restart_tries=config.restart_tries,
        restart_delay_ms=config.restart_delay,
    )
    return TaskOrchestrator(
        policy=config.policy,
        formatter=formatter,
        error_handler=error_handler,
        resolver=resolver,
        sink=sink,
        supervisor_config=config.supervisor,
    )


def _merge_options(options: RunOptions | None, overrides: dict[str, Any]) -> RunOptions:
    try:
        if options is None:
            return RunOptions(**overrides)
        if not overrides:
            return options
        return RunOptions(**{**options.model_dump(), **overrides})
    except PydanticValidationError as e:
        msg = f"Invalid run options: {e.errors()[0]['msg']}"
        raise ValidationError(msg, ErrorCode.INVALID_OPTIONS, original_error=e) from e


async def run_concurrently(
    commands: Sequence[TaskInput],
    options: RunOptions | None = None,
    sink: OutputSink | None = None,
    error_handler: ErrorHandler | None = None,
    **overrides: Any,
) -> RunResult:
    """Run ``commands`` concurrently and return the aggregate result.

    Args:
        commands: Command strings or task mappings
        options: Run options; keyword ``overrides`` are applied on top
        sink: Output destination (console by default)
        error_handler: Shared error handler (a non-exiting one by default)
        **overrides: Individual ``RunOptions`` fields

    Returns:
        RunResult of the run

    Raises:
        ValidationError: If the options or the task list are invalid
    """
    run_options = _merge_options(options, overrides)
    orchestrator = build_orchestrator(
        run_options.to_config(),
        sink=sink,
        error_handler=error_handler,
        use_color=run_options.color,
    )
    return await orchestrator.run(commands)


def run(
    commands: Sequence[TaskInput],
    options: RunOptions | None = None,
    sink: OutputSink | None = None,
    **overrides: Any,
) -> RunResult:
    """Blocking wrapper around ``run_concurrently``."""
    return asyncio.run(run_concurrently(commands, options, sink=sink, **overrides))
