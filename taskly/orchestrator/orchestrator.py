"""Run orchestration under a concurrency bound with kill and success policies.

This module implements the TaskOrchestrator class. Tasks are admitted in
input order while fewer than ``max_processes`` are active. Each admitted
task gets a runner coroutine that drives its attempts (including restarts)
and reports the final ``ProcessResult`` on a completion queue. The control
loop consumes that queue one message at a time, so outcome bookkeeping, the
kill-others broadcast and admission never interleave.
"""

import asyncio
import signal
import uuid
from collections import deque
from collections.abc import Iterable

import structlog

from taskly.config import RunPolicy, SupervisorConfig
from taskly.errors import ErrorCode, ErrorContext, ErrorFactory, SecurityViolation, TaskExecutionError
from taskly.errors.handler import ErrorHandler
from taskly.log_config import run_context
from taskly.models import (
    OutcomeStatus,
    ProcessResult,
    ProcessStatus,
    RunResult,
    RunState,
    TaskCompletion,
    TaskOutcome,
    TaskSpec,
)
from taskly.orchestrator.restart import RestartTracker
from taskly.orchestrator.result_manager import ResultManager
from taskly.output.formatter import OutputFormatter
from taskly.output.sink import ConsoleSink, OutputSink
from taskly.process.resources import ResourceSample
from taskly.process.supervisor import EXIT_NOT_FOUND, ProcessSupervisor
from taskly.resolver import CommandResolver, MissingKind, MissingTask, TaskInput

# Initialize logger
logger = structlog.get_logger(__name__)


class TaskOrchestrator:
    """Runs a set of tasks concurrently and reduces them to one result.

    Key Features:
        - FIFO admission bounded by ``max_processes`` (0 means unlimited)
        - Kill-others on the final success or failure of any task
        - Restarts of failed attempts, holding the task's slot during the delay
        - ``all`` / ``first`` / ``last`` success conditions over final outcomes
        - Skipping or failing tasks whose command or script is missing

    Example:
        >>> policy = RunPolicy(kill_others_on={"failure"}, max_processes=2)
        >>> orchestrator = TaskOrchestrator(policy)
        >>> result = await orchestrator.run(["npm run lint", "npm test"])
        >>> result.success
        True

    Attributes:
        policy: Run policy
        formatter: Output formatter shared by all supervisors
        error_handler: Error handler receiving task and spawn errors
        resolver: Normalizes input into TaskSpecs and checks for missing commands
        sink: Destination of output lines and diagnostics
        supervisor_config: Timeout, resource and termination settings
        results: Attempt history and final outcomes of the current run
        state: Run state machine
    """

    def __init__(
        self,
        policy: RunPolicy | None = None,
        formatter: OutputFormatter | None = None,
        error_handler: ErrorHandler | None = None,
        resolver: CommandResolver | None = None,
        sink: OutputSink | None = None,
        supervisor_config: SupervisorConfig | None = None,
        result_manager: ResultManager | None = None,
    ):
        self.policy = policy or RunPolicy()
        self.formatter = formatter or OutputFormatter()
        self.error_handler = error_handler or ErrorHandler(exit_on_critical=False)
        self.resolver = resolver or CommandResolver()
        self.sink = sink or ConsoleSink()
        self.supervisor_config = supervisor_config or SupervisorConfig()
        self.results = result_manager or ResultManager()
        self.state = RunState.PENDING

        self._running = False
        self._live: dict[str, ProcessSupervisor] = {}
        self._supervisors: list[ProcessSupervisor] = []
        self._runners: dict[str, asyncio.Task] = {}
        self._queue: deque[TaskSpec] = deque()
        self._completions: asyncio.Queue[TaskCompletion] = asyncio.Queue()
        self._restarts = RestartTracker()
        self._abort_event = asyncio.Event()
        self._finished = asyncio.Event()
        self._aborted_with_work = False
        self._stopped_externally = False
        self._forced_failure = False

        logger.debug(
            "task_orchestrator_initialized",
            max_processes=self.policy.max_processes,
            kill_others_on=sorted(self.policy.kill_others_on),
            success_condition=self.policy.success_condition,
        )

    @property
    def live_ids(self) -> list[str]:
        """Ids of tasks whose current attempt is running."""
        return list(self._live)

    @property
    def aborted(self) -> bool:
        return self._abort_event.is_set()

    async def run(self, tasks: Iterable[TaskInput]) -> RunResult:
        """Run ``tasks`` to completion and return the aggregate result.

        Args:
            tasks: Command strings, TaskDescriptions or mappings

        Returns:
            RunResult with one outcome per task, in input order

        Raises:
            ValidationError: If the task list is empty or invalid (nothing is spawned)
            TaskExecutionError: If a run is already in progress on this instance
        """
        if self._running:
            msg = "A run is already in progress on this orchestrator"
            raise TaskExecutionError(msg)

        specs = self.resolver.resolve(tasks)
        for spec in specs:
            self.formatter.assign(spec.id, spec.color)
            self.formatter.describe(spec.id, index=spec.index, name=spec.name, command=spec.command_line)

        self._reset()
        self._running = True
        self.state = RunState.RUNNING

        with run_context(uuid.uuid4().hex[:12]):
            logger.info(
                "run_started",
                total_tasks=len(specs),
                task_ids=[s.id for s in specs],
                max_processes=self.policy.max_processes,
            )

            completed_normally = False
            try:
                self._queue.extend(specs)
                self._admit()
                while self._runners:
                    completion = await self._completions.get()
                    self._handle_completion(completion)
                    self._admit()
                completed_normally = True
            finally:
                await self._cleanup(completed_normally)
                self._running = False
                self._finished.set()

            result = self._build_result(specs)
            logger.info(
                "run_completed",
                success=result.success,
                state=result.state.value,
                **self.results.get_summary(),
            )
        return result

    async def stop(self, sig: int = signal.SIGTERM) -> None:
        """Abort the current run and wait for it to wind down.

        Live processes receive ``sig`` (SIGKILL follows after the grace
        period), queued tasks are cancelled and no restarts happen.
        """
        if not self._running:
            return
        logger.warning("run_stop_requested", signal=signal.Signals(sig).name)
        self._stopped_externally = True
        self._abort("external stop", sig)
        await self._finished.wait()

    def _reset(self) -> None:
        self.results.clear()
        self._live.clear()
        self._supervisors.clear()
        self._runners.clear()
        self._queue.clear()
        self._completions = asyncio.Queue()
        self._restarts = RestartTracker()
        self._abort_event = asyncio.Event()
        self._finished = asyncio.Event()
        self._aborted_with_work = False
        self._stopped_externally = False
        self._forced_failure = False

    def _admit(self) -> None:
        limit = self.policy.max_processes
        while self._queue and not self.aborted:
            if limit and len(self._runners) >= limit:
                return
            spec = self._queue.popleft()

            missing = self.resolver.find_missing(spec)
            if missing is not None:
                self._handle_missing(missing)
                continue

            logger.debug("task_admitted", task_id=spec.id, active=len(self._runners) + 1)
            self._runners[spec.id] = asyncio.create_task(self._run_task(spec), name=f"taskly:{spec.id}")

    async def _run_task(self, spec: TaskSpec) -> None:
        result: ProcessResult | None = None
        try:
            while not self.aborted:
                attempt = self._restarts.record_attempt(spec.id)
                supervisor = ProcessSupervisor(
                    spec,
                    self.formatter,
                    config=self.supervisor_config,
                    error_handler=self.error_handler,
                    on_output=self.sink.write_line,
                    on_resource=self._on_resource,
                    attempt=attempt,
                    registry=self._live,
                )
                self._supervisors.append(supervisor)

                try:
                    await supervisor.spawn()
                except SecurityViolation as e:
                    self.error_handler.handle(e, context="command-validation")
                    result = await supervisor.wait()
                    self.results.add_attempt(result)
                    break

                if self.aborted and supervisor.is_live:
                    supervisor.stop(self.supervisor_config.kill_grace_seconds)

                result = await supervisor.wait()
                self.results.add_attempt(result)

                if self.aborted or not self._restarts.should_restart(spec, result):
                    break
                if not await self._restart_pause(spec):
                    break
        except Exception as e:
            self.error_handler.handle(e, task_id=spec.id)
            await self._completions.put(TaskCompletion(spec, result, error=str(e)))
            return

        await self._completions.put(TaskCompletion(spec, result))

    async def _restart_pause(self, spec: TaskSpec) -> bool:
        """Wait out the restart delay; False if the run was aborted meanwhile."""
        if spec.restart_delay_ms > 0:
            try:
                await asyncio.wait_for(self._abort_event.wait(), spec.restart_delay_ms / 1000)
            except TimeoutError:
                pass
        return not self.aborted

    def _handle_completion(self, completion: TaskCompletion) -> None:
        spec, result = completion.spec, completion.result
        self._runners.pop(spec.id, None)
        attempts = self._restarts.attempts(spec.id)

        if completion.error is not None:
            outcome = self._outcome(
                spec,
                OutcomeStatus.FAILED,
                exit_code=result.exit_code if result else 1,
                attempts=attempts,
                error=completion.error,
            )
        elif result is None:
            outcome = self._outcome(spec, OutcomeStatus.CANCELLED, exit_code=None, attempts=0)
        else:
            if result.succeeded:
                status = OutcomeStatus.COMPLETED
            elif result.status == ProcessStatus.KILLED:
                status = OutcomeStatus.KILLED
            else:
                status = OutcomeStatus.FAILED
            outcome = self._outcome(
                spec,
                status,
                exit_code=result.exit_code,
                attempts=attempts,
                duration_ms=result.duration_ms,
                timed_out=result.timed_out,
                terminated=result.terminated,
                error=result.error,
            )

        self._finalize_outcome(spec, outcome)

    def _handle_missing(self, missing: MissingTask) -> None:
        spec = missing.spec
        if self.policy.ignore_missing:
            label = f" {spec.name}" if spec.name else ""
            self.sink.diagnostic(f"[skip] Ignored (#{spec.index}{label}): {spec.command_line} ({missing.reason})")
            logger.info("task_skipped_missing", task_id=spec.id, reason=missing.reason)
            self._finalize_outcome(spec, self._outcome(spec, OutcomeStatus.SKIPPED, exit_code=None, attempts=0))
            return

        code = ErrorCode.PM_VALIDATION_FAILED if missing.kind == MissingKind.SCRIPT else ErrorCode.SPAWN_FAILED
        self.error_handler.handle(
            ErrorFactory.create(code, missing.reason, task_id=spec.id, command=spec.command_line, cwd=spec.cwd),
        )
        self._forced_failure = True
        self._finalize_outcome(
            spec,
            self._outcome(spec, OutcomeStatus.FAILED, exit_code=EXIT_NOT_FOUND, attempts=0, error=missing.reason),
        )

    def _finalize_outcome(self, spec: TaskSpec, outcome: TaskOutcome) -> None:
        self.results.add_outcome(outcome)
        logger.info(
            "task_completed",
            task_id=spec.id,
            status=outcome.status.value,
            exit_code=outcome.exit_code,
            attempts=outcome.attempts,
            duration_ms=outcome.duration_ms,
        )

        if outcome.counts_for_success and not outcome.succeeded:
            self.sink.diagnostic(self._failure_diagnostic(spec, outcome))
            if outcome.status == OutcomeStatus.FAILED and outcome.attempts > 0:
                self.error_handler.handle(
                    TaskExecutionError(
                        outcome.error or f"Task exited with code {outcome.exit_code}",
                        ErrorCode.TASK_FAILED,
                        ErrorContext(
                            task_id=spec.id,
                            command=spec.command_line,
                            cwd=spec.cwd,
                            exit_code=outcome.exit_code,
                            retry_attempt=outcome.attempts - 1,
                            max_retries=spec.restart_tries,
                        ),
                    ),
                )

        if self.aborted or not outcome.counts_for_success:
            return
        trigger = "success" if outcome.succeeded else "failure"
        if trigger in self.policy.kill_others_on:
            logger.warning("kill_others_triggered", task_id=spec.id, trigger=trigger)
            self._abort(f"{spec.id} {trigger}", signal.SIGTERM)

    def _abort(self, reason: str, sig: int) -> None:
        if self.aborted:
            return
        if self._runners or self._queue:
            self._aborted_with_work = True
        self._abort_event.set()

        live = list(self._live.values())
        logger.info("run_aborting", reason=reason, live=len(live), queued=len(self._queue))
        for supervisor in live:
            if sig == signal.SIGTERM:
                supervisor.stop(self.supervisor_config.kill_grace_seconds)
            else:
                supervisor.terminate(sig)

        while self._queue:
            spec = self._queue.popleft()
            self._finalize_outcome(spec, self._outcome(spec, OutcomeStatus.CANCELLED, exit_code=None, attempts=0))

    async def _cleanup(self, completed_normally: bool) -> None:
        if not completed_normally:
            for supervisor in list(self._live.values()):
                supervisor.stop(self.supervisor_config.kill_grace_seconds)
            for runner in self._runners.values():
                runner.cancel()
        if self._runners:
            await asyncio.gather(*self._runners.values(), return_exceptions=True)
        await asyncio.gather(*(s.aclose() for s in self._supervisors), return_exceptions=True)

    def _build_result(self, specs: list[TaskSpec]) -> RunResult:
        per_task = []
        for spec in specs:
            outcome = self.results.get_outcome(spec.id)
            if outcome is None:
                outcome = self._outcome(spec, OutcomeStatus.CANCELLED, exit_code=None, attempts=0)
            per_task.append(outcome)

        success = self._evaluate_success() and not self._forced_failure and not self._stopped_externally

        if self._stopped_externally or self._aborted_with_work:
            self.state = RunState.ABORTED
        elif success:
            self.state = RunState.SUCCEEDED
        else:
            self.state = RunState.FAILED

        return RunResult(success=success, state=self.state, per_task=per_task)

    def _evaluate_success(self) -> bool:
        ordered = self.results.ordered_outcomes()
        match self.policy.success_condition:
            case "first":
                return bool(ordered) and ordered[0].succeeded
            case "last":
                return bool(ordered) and ordered[-1].succeeded
            case _:
                return all(o.succeeded for o in ordered)

    def _on_resource(self, sample: ResourceSample) -> None:
        logger.debug(
            "resource_sample",
            task_id=sample.task_id,
            memory_mb=sample.memory_mb,
            cpu_percent=sample.cpu_percent,
        )

    @staticmethod
    def _outcome(
        spec: TaskSpec,
        status: OutcomeStatus,
        exit_code: int | None,
        attempts: int,
        duration_ms: int = 0,
        timed_out: bool = False,
        terminated: bool = False,
        error: str | None = None,
    ) -> TaskOutcome:
        return TaskOutcome(
            id=spec.id,
            index=spec.index,
            name=spec.name,
            status=status,
            exit_code=exit_code,
            duration_ms=duration_ms,
            attempts=attempts,
            timed_out=timed_out,
            terminated=terminated,
            error=error,
        )

    @staticmethod
    def _failure_diagnostic(spec: TaskSpec, outcome: TaskOutcome) -> str:
        label = f"[{spec.name or spec.id}]"
        if outcome.timed_out:
            detail = f"timed out (exit code {outcome.exit_code})"
        elif outcome.terminated:
            detail = f"was terminated (exit code {outcome.exit_code})"
        elif outcome.error:
            detail = f"failed: {outcome.error}"
        else:
            detail = f"exited with code {outcome.exit_code}"
        return f"{label} {spec.command_line} {detail}"
