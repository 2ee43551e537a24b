"""Supervision of a single child process attempt.

A ``ProcessSupervisor`` owns one OS process from spawn to its terminal
result. Natural exit, timeout and explicit termination all funnel into a
single guarded completion, so exactly one ``ProcessResult`` is produced no
matter which of them happens first. Output is read from both pipes
concurrently, framed into lines and forwarded in arrival order.
"""

import asyncio
import os
import signal
import time
from collections.abc import Callable

import structlog

from taskly.config import SupervisorConfig
from taskly.errors import (
    ErrorCode,
    ErrorContext,
    ErrorFactory,
    ProcessError,
    SecurityViolation,
)
from taskly.errors.handler import ErrorHandler
from taskly.models import (
    OutputLine,
    ProcessRecord,
    ProcessResult,
    ProcessStatus,
    StreamName,
    TaskSpec,
)
from taskly.output.formatter import OutputFormatter
from taskly.process.framing import LineFramer
from taskly.process.resources import ResourceSample, ResourceSampler
from taskly.process.security import build_environment, validate_command

# Initialize logger
logger = structlog.get_logger(__name__)

# Constants
EXIT_TIMEOUT = 124
EXIT_PERMISSION_DENIED = 126
EXIT_NOT_FOUND = 127
EXIT_SIGKILL = 137
EXIT_TERMINATED = 130
EXIT_SIGNAL_BASE = 128
READ_CHUNK_SIZE = 64 * 1024
DRAIN_TIMEOUT_SECONDS = 1.0
REAP_MARGIN_SECONDS = 2.0

SHELL_FLAGS = {
    "cmd": ("/d", "/s", "/c"),
    "cmd.exe": ("/d", "/s", "/c"),
    "powershell": ("-NoProfile", "-Command"),
    "powershell.exe": ("-NoProfile", "-Command"),
    "pwsh": ("-NoProfile", "-Command"),
}

OutputCallback = Callable[[OutputLine], None]
ResourceCallback = Callable[[ResourceSample], None]


class ProcessSupervisor:
    """Spawns and supervises one attempt of a task.

    Example:
        >>> supervisor = ProcessSupervisor(spec, formatter, on_output=sink.write_line)
        >>> record = await supervisor.spawn()
        >>> result = await supervisor.wait()
        >>> result.exit_code
        0

    Attributes:
        spec: Task being run
        record: Lifecycle record of this attempt
        config: Timeout, resource and termination settings
    """

    def __init__(
        self,
        spec: TaskSpec,
        formatter: OutputFormatter,
        config: SupervisorConfig | None = None,
        error_handler: ErrorHandler | None = None,
        on_output: OutputCallback | None = None,
        on_resource: ResourceCallback | None = None,
        attempt: int = 1,
        registry: dict[str, "ProcessSupervisor"] | None = None,
    ):
        self.spec = spec
        self.formatter = formatter
        self.config = config or SupervisorConfig()
        self.error_handler = error_handler
        self.on_output = on_output
        self.on_resource = on_resource
        self.record = ProcessRecord(id=spec.id, attempt=attempt)

        self._registry = registry if registry is not None else {}
        self._process: asyncio.subprocess.Process | None = None
        self._result: asyncio.Future[ProcessResult] | None = None
        self._pumps: list[asyncio.Task] = []
        self._watcher: asyncio.Task | None = None
        self._monitor: asyncio.Task | None = None
        self._timeout_handle: asyncio.TimerHandle | None = None
        self._escalation_handle: asyncio.TimerHandle | None = None

    @property
    def pid(self) -> int | None:
        return self.record.pid

    @property
    def is_live(self) -> bool:
        """True while the attempt is running and has no result yet."""
        return self.record.status == ProcessStatus.RUNNING and not self.done

    @property
    def done(self) -> bool:
        return self._result is not None and self._result.done()

    @property
    def process_alive(self) -> bool:
        """True while the OS process has not been reaped."""
        return self._process is not None and self._process.returncode is None

    async def spawn(self) -> ProcessRecord:
        """Validate the command and start the child process.

        Spawn failures do not raise: the record moves to ``failed`` and a
        result is available from ``wait``.

        Returns:
            The attempt's ProcessRecord

        Raises:
            SecurityViolation: If the command matches a deny rule
        """
        if self._result is not None:
            msg = f"Supervisor for {self.spec.id} already spawned"
            raise RuntimeError(msg)

        loop = asyncio.get_running_loop()
        self._result = loop.create_future()
        command_line = self.spec.command_line

        try:
            validate_command(command_line, task_id=self.spec.id, cwd=self.spec.cwd)
        except SecurityViolation as e:
            logger.warning("command_rejected", task_id=self.spec.id, rule=e.context.metadata.get("rule"))
            self._complete(ProcessStatus.FAILED, 1, error=e.message)
            raise

        if self.spec.cwd and not os.path.isdir(self.spec.cwd):
            error = ProcessError(
                f"Working directory does not exist: {self.spec.cwd}",
                ErrorCode.SPAWN_FAILED,
                ErrorContext(task_id=self.spec.id, command=command_line, cwd=self.spec.cwd),
            )
            self._fail_spawn(error, 1)
            return self.record

        env = build_environment(self.spec.env, self._task_variables())
        self.record.start_time = time.monotonic()

        try:
            self._process = await self._create_process(command_line, env)
        except OSError as e:
            error = ErrorFactory.from_spawn_error(
                e,
                command_line,
                task_id=self.spec.id,
                cwd=self.spec.cwd,
                retry_attempt=self.record.attempt,
            )
            if isinstance(e, FileNotFoundError):
                exit_code = EXIT_NOT_FOUND
            elif isinstance(e, PermissionError):
                exit_code = EXIT_PERMISSION_DENIED
            else:
                exit_code = 1
            self._fail_spawn(error, exit_code)
            return self.record

        self.record.pid = self._process.pid
        self.record.advance(ProcessStatus.RUNNING)
        self._registry[self.spec.id] = self
        self.formatter.describe(self.spec.id, pid=self._process.pid)

        logger.info(
            "process_spawned",
            task_id=self.spec.id,
            pid=self._process.pid,
            attempt=self.record.attempt,
            command=command_line,
        )

        self._pumps = [
            asyncio.create_task(self._pump(self._process.stdout, "stdout")),
            asyncio.create_task(self._pump(self._process.stderr, "stderr")),
        ]
        self._watcher = asyncio.create_task(self._watch())

        if self.config.timeout_seconds > 0:
            self._timeout_handle = loop.call_later(self.config.timeout_seconds, self._on_timeout)

        if self.config.resource_check_interval > 0:
            self._monitor = asyncio.create_task(self._monitor_resources())

        return self.record

    async def wait(self) -> ProcessResult:
        """Wait for and return the terminal result of this attempt."""
        if self._result is None:
            msg = f"Supervisor for {self.spec.id} has not been spawned"
            raise RuntimeError(msg)
        return await asyncio.shield(self._result)

    def terminate(self, sig: int = signal.SIGTERM) -> bool:
        """Signal the process and complete the attempt as terminated.

        Returns:
            False if the attempt is not live or the process already vanished
        """
        if not self.is_live:
            return False
        try:
            self._send_signal(sig)
        except ProcessLookupError:
            return False

        exit_code = EXIT_SIGKILL if sig == signal.SIGKILL else EXIT_TERMINATED
        logger.info("process_terminated", task_id=self.spec.id, pid=self.pid, signal=signal.Signals(sig).name)
        self._complete(ProcessStatus.KILLED, exit_code, terminated=True, signal_number=sig)
        return True

    def stop(self, grace_seconds: float | None = None) -> bool:
        """Terminate politely, escalating to SIGKILL after ``grace_seconds``.

        Returns:
            True if the SIGTERM was delivered
        """
        grace = self.config.kill_grace_seconds if grace_seconds is None else grace_seconds
        if not self.terminate(signal.SIGTERM):
            return False
        if self.process_alive:
            loop = asyncio.get_running_loop()
            self._escalation_handle = loop.call_later(grace, self._escalate)
        return True

    async def aclose(self, timeout: float | None = None) -> None:
        """Reap the process, killing it if needed, and cancel helper tasks."""
        if timeout is None:
            timeout = self.config.kill_grace_seconds + REAP_MARGIN_SECONDS

        if self.process_alive:
            try:
                await asyncio.wait_for(self._process.wait(), timeout)
            except TimeoutError:
                logger.warning("process_reap_timeout_killing", task_id=self.spec.id, pid=self.pid)
                self._kill_quietly()
                await self._process.wait()

        if self._escalation_handle is not None:
            self._escalation_handle.cancel()

        tasks = [t for t in (*self._pumps, self._watcher, self._monitor) if t is not None]
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _create_process(self, command_line: str, env: dict[str, str]) -> asyncio.subprocess.Process:
        kwargs = {
            "cwd": self.spec.cwd,
            "env": env,
            "stdin": asyncio.subprocess.DEVNULL,
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
            "start_new_session": True,
        }
        shell = self.spec.shell_mode
        if shell is True:
            return await asyncio.create_subprocess_shell(command_line, **kwargs)
        if shell is False:
            return await asyncio.create_subprocess_exec(self.spec.command, *self.spec.args, **kwargs)
        flags = SHELL_FLAGS.get(os.path.basename(shell).lower(), ("-c",))
        return await asyncio.create_subprocess_exec(shell, *flags, command_line, **kwargs)

    def _task_variables(self) -> dict[str, str]:
        variables = {
            "TASKLY_TASK_ID": self.spec.id,
            "TASKLY_TASK_INDEX": str(self.spec.index),
            "TASKLY_TASK_COMMAND": self.spec.command_line,
            "TASKLY_TASK_CWD": self.spec.cwd or os.getcwd(),
            "TASKLY_TASK_ATTEMPT": str(self.record.attempt),
        }
        assignment = self.formatter.assign(self.spec.id, self.spec.color)
        if assignment.color:
            variables["TASKLY_TASK_COLOR"] = assignment.color
        return variables

    def _fail_spawn(self, error: ProcessError, exit_code: int) -> None:
        logger.error("process_spawn_failed", task_id=self.spec.id, error=error.message, exit_code=exit_code)
        if self.error_handler is not None:
            self.error_handler.handle(error)
        self._complete(ProcessStatus.FAILED, exit_code, error=error.message)

    async def _pump(self, stream: asyncio.StreamReader, name: StreamName) -> None:
        framer = LineFramer()
        while chunk := await stream.read(READ_CHUNK_SIZE):
            for line in framer.feed(chunk):
                self._emit(line, name)
        tail = framer.flush()
        if tail is not None:
            self._emit(tail, name)

    def _emit(self, content: str, stream: StreamName) -> None:
        now = time.time()
        line = OutputLine(
            task_id=self.spec.id,
            content=content,
            stream=stream,
            timestamp=now,
            formatted=self.formatter.render(self.spec.id, content, stream, now),
        )
        if not self.done:
            self.record.output_buffer.append(line)
        if self.on_output is not None:
            self.on_output(line)

    async def _watch(self) -> None:
        returncode = await self._process.wait()
        pending = [t for t in self._pumps if not t.done()]
        if pending:
            _, still_open = await asyncio.wait(pending, timeout=DRAIN_TIMEOUT_SECONDS)
            if still_open:
                logger.debug("output_drain_incomplete", task_id=self.spec.id, open_streams=len(still_open))
        self._on_exit(returncode)

    def _on_exit(self, returncode: int) -> None:
        if self.done:
            return
        if returncode < 0:
            signum = -returncode
            logger.info("process_killed_by_signal", task_id=self.spec.id, pid=self.pid, signal=signum)
            self._complete(ProcessStatus.KILLED, EXIT_SIGNAL_BASE + signum, signal_number=signum)
            return

        status = ProcessStatus.COMPLETED if returncode == 0 else ProcessStatus.FAILED
        logger.info("process_exited", task_id=self.spec.id, pid=self.pid, exit_code=returncode)
        self._complete(status, returncode)

    def _on_timeout(self) -> None:
        self._timeout_handle = None
        if not self.is_live:
            return
        timeout = self.config.timeout_seconds
        logger.warning("process_timed_out", task_id=self.spec.id, pid=self.pid, timeout_seconds=timeout)
        try:
            self._send_signal(signal.SIGKILL)
        except ProcessLookupError:
            logger.debug("timeout_kill_process_gone", task_id=self.spec.id)
        message = f"Process timed out after {timeout}s"
        if self.error_handler is not None:
            self.error_handler.handle(
                ProcessError(
                    message,
                    ErrorCode.PROCESS_TIMEOUT,
                    ErrorContext(task_id=self.spec.id, command=self.spec.command_line, pid=self.pid),
                ),
            )
        self._complete(
            ProcessStatus.KILLED,
            EXIT_TIMEOUT,
            error=message,
            timed_out=True,
            signal_number=signal.SIGKILL,
        )

    def _escalate(self) -> None:
        self._escalation_handle = None
        if self.process_alive:
            logger.warning("process_kill_escalated", task_id=self.spec.id, pid=self.pid)
            self._kill_quietly()

    async def _monitor_resources(self) -> None:
        sampler = ResourceSampler(
            self.spec.id,
            self._process.pid,
            self.config.max_memory_mb,
            self.config.max_cpu_percent,
        )
        while self.is_live:
            await asyncio.sleep(self.config.resource_check_interval)
            if not self.is_live:
                return
            sample = sampler.sample()
            if sample is None:
                continue
            if self.on_resource is not None:
                self.on_resource(sample)
            if not sample.exceeded:
                continue

            logger.warning(
                "resource_limit_exceeded",
                task_id=self.spec.id,
                memory_mb=sample.memory_mb,
                cpu_percent=sample.cpu_percent,
                policy=self.config.resource_policy,
            )
            if self.config.resource_policy == "kill":
                if self.error_handler is not None:
                    self.error_handler.handle(
                        ProcessError(
                            "Process exceeded its resource limits",
                            ErrorCode.PROCESS_RESOURCE_LIMIT,
                            ErrorContext(
                                task_id=self.spec.id,
                                pid=self.pid,
                                metadata={"memory_mb": sample.memory_mb, "cpu_percent": sample.cpu_percent},
                            ),
                        ),
                    )
                self.terminate(signal.SIGKILL)
                return

    def _send_signal(self, sig: int) -> None:
        # Children run in their own session, so the whole group is signalled
        if self._process is None:
            raise ProcessLookupError
        try:
            os.killpg(self._process.pid, sig)
        except PermissionError:
            self._process.send_signal(sig)

    def _kill_quietly(self) -> None:
        try:
            self._send_signal(signal.SIGKILL)
        except ProcessLookupError:
            pass

    def _complete(
        self,
        status: ProcessStatus,
        exit_code: int,
        error: str | None = None,
        timed_out: bool = False,
        terminated: bool = False,
        signal_number: int | None = None,
    ) -> bool:
        if self._result is None or self._result.done():
            return False

        self.record.advance(status)
        self.record.exit_code = exit_code
        result = ProcessResult(
            task_id=self.spec.id,
            attempt=self.record.attempt,
            exit_code=exit_code,
            status=status,
            output=tuple(self.record.output_buffer),
            start_time=self.record.start_time,
            end_time=self.record.end_time or time.monotonic(),
            error=error,
            timed_out=timed_out,
            terminated=terminated,
            signal=signal_number,
        )
        self._result.set_result(result)
        self._finalize()
        return True

    def _finalize(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None
        if self._monitor is not None and not self._monitor.done():
            self._monitor.cancel()
        if self._registry.get(self.spec.id) is self:
            del self._registry[self.spec.id]
