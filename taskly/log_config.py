"""Structured logging setup for taskly.

Child process output owns stdout, so taskly's own diagnostics are routed to
stderr through the standard library logging module and rendered by structlog
either as JSON lines or in the human-readable console format.

Example:
    >>> from taskly.log_config import configure_logging, get_logger
    >>> configure_logging(level="INFO", json_logs=False)
    >>> logger = get_logger(__name__)
    >>> logger.info("task_admitted", task_id="build", attempt=1)
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, TextIO

import structlog

ROOT_LOGGER_NAME = "taskly"
RUN_ID_KEY = "run_id"

_SHARED_PROCESSORS: tuple[Any, ...] = (
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
)


def _resolve_level(level: str) -> int:
    numeric_level = logging.getLevelNamesMapping().get(level.strip().upper())
    if numeric_level is None:
        msg = f"Invalid log level: {level}"
        raise ValueError(msg)
    return numeric_level


def _renderer(json_logs: bool, stream: TextIO) -> Any:
    if json_logs:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(
        colors=stream.isatty(),
        exception_formatter=structlog.dev.plain_traceback,
    )


def configure_logging(
    level: str = "WARNING",
    json_logs: bool = False,
    stream: TextIO | None = None,
) -> None:
    """Configure structlog and the ``taskly`` stdlib logger.

    Calling it again replaces the previous handler, so the CLI can reconfigure
    once the final log level is known.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Render JSON lines instead of the console format
        stream: Destination stream (defaults to stderr)

    Raises:
        ValueError: If an invalid log level is provided
    """
    numeric_level = _resolve_level(level)
    target = stream or sys.stderr

    handler = logging.StreamHandler(target)
    handler.setFormatter(logging.Formatter("%(message)s"))

    taskly_logger = logging.getLogger(ROOT_LOGGER_NAME)
    for existing in list(taskly_logger.handlers):
        taskly_logger.removeHandler(existing)
    taskly_logger.addHandler(handler)
    taskly_logger.setLevel(numeric_level)
    # Keep taskly events off the root logger's handlers (pytest, embedders).
    taskly_logger.propagate = False

    structlog.configure(
        processors=[*_SHARED_PROCESSORS, _renderer(json_logs, target)],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger for ``name`` (typically ``__name__``)."""
    return structlog.get_logger(name)


@contextmanager
def run_context(run_id: str, **fields: Any) -> Iterator[None]:
    """Tag every event logged inside the block with ``run_id``.

    Runner tasks created inside the block copy the context, so events from
    supervisors carry the id as well.

    Example:
        >>> with run_context("3f2a9c"):
        ...     logger.info("run_started")  # includes run_id="3f2a9c"
    """
    structlog.contextvars.bind_contextvars(**{RUN_ID_KEY: run_id, **fields})
    try:
        yield
    finally:
        structlog.contextvars.unbind_contextvars(RUN_ID_KEY, *fields)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
