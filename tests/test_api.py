"""Tests for the programmatic API."""

import pytest

from taskly import OutcomeStatus, RunOptions, RunState, run, run_concurrently
from taskly.api import build_orchestrator
from taskly.errors import ErrorCode, ValidationError
from taskly.output.sink import MemorySink


class TestRunOptions:
    """Test cases for RunOptions."""

    def test_defaults(self):
        """Test the default option values."""
        options = RunOptions()
        assert options.max_processes == 0
        assert options.kill_others_on == frozenset()
        assert options.success_condition == "all"
        assert options.shell is True
        assert options.prefix == "index"

    def test_csv_fields(self):
        """Test that list options accept comma separated strings."""
        options = RunOptions(kill_others_on="failure, success", names="api,web", prefix_colors="red,blue")
        assert options.kill_others_on == frozenset({"failure", "success"})
        assert options.names == ["api", "web"]
        assert options.prefix_colors == ["red", "blue"]

    def test_to_config(self):
        """Test the translation into the nested configuration."""
        config = RunOptions(
            max_processes=2,
            kill_others_on=["failure"],
            raw=True,
            timeout_seconds=5,
            restart_tries=1,
            cwd="/srv",
        ).to_config()

        assert config.policy.max_processes == 2
        assert config.policy.kill_others_on == frozenset({"failure"})
        assert config.output.raw
        assert config.supervisor.timeout_seconds == 5
        assert config.restart_tries == 1
        assert config.cwd == "/srv"

    def test_build_orchestrator_wires_config(self):
        """Test that the orchestrator receives policy and supervisor settings."""
        config = RunOptions(max_processes=3, kill_grace_seconds=1).to_config()
        orchestrator = build_orchestrator(config, sink=MemorySink(), use_color=False)

        assert orchestrator.policy.max_processes == 3
        assert orchestrator.supervisor_config.kill_grace_seconds == 1
        assert not orchestrator.formatter.use_color


class TestRunConcurrently:
    """Test cases for run_concurrently and run."""

    @pytest.mark.asyncio
    async def test_run_concurrently(self):
        """Test a successful run with output collected in memory."""
        sink = MemorySink()
        result = await run_concurrently(["echo api", "echo web"], sink=sink, names="api,web")

        assert result.success
        assert result.state == RunState.SUCCEEDED
        assert sink.contents("api") == ["api"]
        assert sink.contents("web") == ["web"]
        assert result.to_dict() == {
            "success": True,
            "state": "succeeded",
            "results": [
                {"name": "api", "exitCode": 0, "index": 0, "status": "completed"},
                {"name": "web", "exitCode": 0, "index": 1, "status": "completed"},
            ],
        }

    @pytest.mark.asyncio
    async def test_overrides_applied_over_options(self):
        """Test that keyword overrides take precedence over an options object."""
        options = RunOptions(kill_others_on="failure")
        result = await run_concurrently(
            ["exit 1", "sleep 10"],
            options,
            sink=MemorySink(),
            kill_grace_seconds=0.5,
        )

        assert not result.success
        assert result.per_task[1].status == OutcomeStatus.KILLED

    @pytest.mark.asyncio
    async def test_invalid_option(self):
        """Test that invalid options raise a taskly ValidationError."""
        with pytest.raises(ValidationError) as exc_info:
            await run_concurrently(["true"], sink=MemorySink(), success_condition="most")
        assert exc_info.value.code == ErrorCode.INVALID_OPTIONS

    @pytest.mark.asyncio
    async def test_unknown_option(self):
        """Test that unknown option names are rejected."""
        with pytest.raises(ValidationError):
            await run_concurrently(["true"], sink=MemorySink(), kill_everything=True)

    @pytest.mark.asyncio
    async def test_empty_command_list(self):
        """Test that zero commands is a validation error."""
        with pytest.raises(ValidationError):
            await run_concurrently([], sink=MemorySink())

    def test_blocking_run(self):
        """Test the synchronous wrapper."""
        result = run(["exit 2"], sink=MemorySink())

        assert not result.success
        assert result.state == RunState.FAILED
        assert result.per_task[0].exit_code == 2
