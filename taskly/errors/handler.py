"""Error handling service with graceful shutdown.

``ErrorHandler`` is created once per program and passed to the components
that report errors. It logs every error at a level derived from its
severity, keeps an append-only list of ``ErrorRecord`` entries, forwards
errors to optional reporters and coordinates a graceful shutdown: registered
callbacks run concurrently under a timeout and the requested exit status is
recorded for the caller.
"""

import asyncio
import inspect
import signal
import sys
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from types import TracebackType
from typing import Any

import structlog

from taskly.errors import (
    ErrorCode,
    ErrorFactory,
    ErrorSeverity,
    SystemFault,
    TasklyError,
    get_error_severity,
)

# Initialize logger
logger = structlog.get_logger(__name__)

# Constants
DEFAULT_SHUTDOWN_TIMEOUT = 10.0
HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)
RECENT_ERRORS_LIMIT = 10

ShutdownCallback = Callable[[], Awaitable[None] | None]
ErrorReporter = Callable[[TasklyError, dict[str, Any]], None]

_SEVERITY_LOG_METHOD = {
    ErrorSeverity.LOW: "info",
    ErrorSeverity.MEDIUM: "warning",
    ErrorSeverity.HIGH: "error",
    ErrorSeverity.CRITICAL: "critical",
}


@dataclass(frozen=True)
class ErrorRecord:
    """Immutable entry of the handler's error log."""

    code: ErrorCode
    severity: ErrorSeverity
    message: str
    error_type: str
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class ErrorHandler:
    """Central sink for errors and owner of the shutdown sequence.

    Example:
        >>> handler = ErrorHandler(shutdown_timeout=5)
        >>> handler.add_shutdown_callback(orchestrator.stop)
        >>> handler.install()
        >>> handler.handle(ProcessError("spawn failed"), task_id="build")

    Attributes:
        exit_on_critical: Start a shutdown with exit status 1 on critical errors
        shutdown_timeout: Seconds allowed for shutdown callbacks
        exit_code: Exit status requested by the last shutdown, if any
    """

    def __init__(
        self,
        exit_on_critical: bool = True,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
    ):
        self.exit_on_critical = exit_on_critical
        self.shutdown_timeout = shutdown_timeout
        self.exit_code: int | None = None

        self._records: list[ErrorRecord] = []
        self._reporters: list[ErrorReporter] = []
        self._shutdown_callbacks: list[ShutdownCallback] = []
        self._shutting_down = False
        self._shutdown_task: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._installed_signals: list[signal.Signals] = []
        self._previous_excepthook: Callable[..., Any] | None = None
        self._previous_loop_handler: Callable[..., Any] | None = None
        self.shutdown_complete = asyncio.Event()

    @property
    def records(self) -> tuple[ErrorRecord, ...]:
        return tuple(self._records)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add_reporter(self, reporter: ErrorReporter) -> None:
        self._reporters.append(reporter)

    def add_shutdown_callback(self, callback: ShutdownCallback) -> None:
        self._shutdown_callbacks.append(callback)

    def remove_shutdown_callback(self, callback: ShutdownCallback) -> None:
        if callback in self._shutdown_callbacks:
            self._shutdown_callbacks.remove(callback)

    def handle(self, error: BaseException, **context: Any) -> ErrorRecord:
        """Log and record an error.

        Non-taskly exceptions are wrapped first (``OSError`` through the
        errno mapping, anything else as ``SYSTEM_ERROR``).

        Args:
            error: The exception to handle
            **context: Additional context logged and stored with the record

        Returns:
            The appended ErrorRecord
        """
        taskly_error = self._coerce(error)
        severity = get_error_severity(taskly_error.code)

        fields = {**taskly_error.context.as_log_fields(), **context}
        log_method = getattr(logger, _SEVERITY_LOG_METHOD[severity])
        log_method(
            "error_handled",
            code=taskly_error.code.value,
            severity=severity.value,
            error=taskly_error.detailed_message(),
            **fields,
        )

        record = ErrorRecord(
            code=taskly_error.code,
            severity=severity,
            message=taskly_error.message,
            error_type=type(taskly_error).__name__,
            context=fields,
        )
        self._records.append(record)

        for reporter in self._reporters:
            try:
                reporter(taskly_error, fields)
            except Exception as e:  # noqa: BLE001
                logger.error("error_reporter_failed", reporter_error=str(e))

        if severity == ErrorSeverity.CRITICAL and self.exit_on_critical:
            logger.critical("critical_error_initiating_shutdown", code=taskly_error.code.value)
            self._schedule_shutdown(1)

        return record

    async def shutdown(self, exit_code: int = 0) -> int:
        """Run shutdown callbacks once and record ``exit_code``.

        Callbacks run concurrently. If they do not finish within
        ``shutdown_timeout`` the timeout is logged and shutdown completes
        anyway. Re-entrant calls return immediately.

        Returns:
            The exit status recorded by the first shutdown
        """
        if self._shutting_down:
            logger.debug("shutdown_already_in_progress", requested_exit_code=exit_code)
            return self.exit_code if self.exit_code is not None else exit_code

        self._shutting_down = True
        self.exit_code = exit_code
        logger.info("graceful_shutdown_started", exit_code=exit_code)

        callbacks = [self._run_callback(cb) for cb in list(self._shutdown_callbacks)]
        try:
            await asyncio.wait_for(
                asyncio.gather(*callbacks, return_exceptions=True),
                timeout=self.shutdown_timeout,
            )
        except TimeoutError:
            logger.error("graceful_shutdown_timeout", timeout_seconds=self.shutdown_timeout)
        else:
            logger.info("graceful_shutdown_completed", exit_code=exit_code)
        finally:
            self.shutdown_complete.set()

        return exit_code

    def install(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Register signal handlers and unhandled exception hooks.

        SIGINT, SIGTERM and SIGHUP start a shutdown with exit status 0.
        Unhandled exceptions in tasks or the main thread are handled as
        critical errors.
        """
        self._loop = loop or asyncio.get_running_loop()

        for sig in HANDLED_SIGNALS:
            try:
                self._loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError, ValueError):
                logger.debug("signal_handler_unavailable", signal=sig.name)
            else:
                self._installed_signals.append(sig)

        self._previous_loop_handler = self._loop.get_exception_handler()
        self._loop.set_exception_handler(self._on_loop_exception)

        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._on_uncaught_exception

        logger.debug("error_handler_installed", signals=[s.name for s in self._installed_signals])

    def uninstall(self) -> None:
        """Restore the handlers replaced by ``install``."""
        if self._loop is not None:
            for sig in self._installed_signals:
                self._loop.remove_signal_handler(sig)
            self._loop.set_exception_handler(self._previous_loop_handler)
        self._installed_signals.clear()

        if self._previous_excepthook is not None:
            sys.excepthook = self._previous_excepthook
            self._previous_excepthook = None

    def statistics(self) -> dict[str, Any]:
        """Counts of recorded errors by severity and code."""
        by_severity = {severity.value: 0 for severity in ErrorSeverity}
        by_code: dict[str, int] = {}
        for record in self._records:
            by_severity[record.severity.value] += 1
            by_code[record.code.value] = by_code.get(record.code.value, 0) + 1

        return {
            "total_errors": len(self._records),
            "errors_by_severity": by_severity,
            "errors_by_code": by_code,
            "recent_errors": [r.message for r in self._records[-RECENT_ERRORS_LIMIT:]],
        }

    def _coerce(self, error: BaseException) -> TasklyError:
        if isinstance(error, TasklyError):
            return error
        if isinstance(error, OSError):
            return ErrorFactory.from_os_error(error)
        return SystemFault(f"Unexpected error: {error}", original_error=error)

    def _schedule_shutdown(self, exit_code: int) -> None:
        if self._shutting_down:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("shutdown_requested_without_event_loop", exit_code=exit_code)
            return
        self._shutdown_task = loop.create_task(self.shutdown(exit_code))

    async def _run_callback(self, callback: ShutdownCallback) -> None:
        try:
            result = callback()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.exception("shutdown_callback_failed", error=str(e))
            raise

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.warning("shutdown_signal_received", signal=sig.name)
        self._schedule_shutdown(0)

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        exception = context.get("exception")
        if exception is None:
            logger.error("event_loop_error", message=context.get("message"))
            return
        self.handle(
            SystemFault(f"Unhandled exception: {exception}", original_error=exception),
            source="event_loop",
        )
        if self.exit_on_critical:
            self._schedule_shutdown(1)

    def _on_uncaught_exception(
        self,
        exc_type: type[BaseException],
        exc: BaseException,
        tb: TracebackType | None,
    ) -> None:
        self.handle(SystemFault(f"Uncaught exception: {exc}", original_error=exc), source="main")
        if self.exit_on_critical:
            self._schedule_shutdown(1)
        if self._previous_excepthook is not None:
            self._previous_excepthook(exc_type, exc, tb)
