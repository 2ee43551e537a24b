"""Demonstration of the taskly programmatic API.

This example runs a few shell commands concurrently, shows how the kill
policy and success conditions change the aggregate result, and writes a
JSON report with the collected statistics.
"""

import asyncio
import sys
from pathlib import Path

# Add the project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from taskly import RunOptions, build_orchestrator, run_concurrently
from taskly.config import TasklyConfig
from taskly.log_config import configure_logging, get_logger
from taskly.output import MemorySink


async def demonstrate_basic_run() -> None:
    """Run three commands with named, colored prefixes."""
    print("=== Basic run ===\n")
    result = await run_concurrently(
        ["echo building; sleep 0.2; echo built", "echo linting", "echo testing; exit 0"],
        names="build,lint,test",
        prefix="name",
        prefix_colors="blue,magenta,green",
    )
    print(f"\nsuccess={result.success} state={result.state.value}\n")


async def demonstrate_kill_others() -> None:
    """Stop a long running server as soon as the test command fails."""
    print("=== Kill others on failure ===\n")
    options = RunOptions(kill_others_on="failure", prefix="[{name}]", names=["server", "tests"])
    result = await run_concurrently(["sleep 30", "sleep 0.3; exit 3"], options)

    for outcome in result.per_task:
        print(f"{outcome.name}: {outcome.status.value} (exit {outcome.exit_code})")
    print()


async def demonstrate_restarts_and_report() -> None:
    """Retry a flaky command and export a JSON report."""
    print("=== Restarts and report ===\n")
    logger = get_logger("taskly.examples")

    config = TasklyConfig.from_mapping(
        {
            "restart_tries": 2,
            "restart_delay": 100,
            "policy": {"success_condition": "last"},
        },
    )
    sink = MemorySink()
    orchestrator = build_orchestrator(config, sink=sink, use_color=False)
    result = await orchestrator.run(["echo attempt; exit 1", "echo done"])

    for attempt in orchestrator.results.attempts:
        logger.info("attempt_recorded", task_id=attempt.task_id, attempt=attempt.attempt, exit_code=attempt.exit_code)

    report = Path("taskly-report.json")
    orchestrator.results.export_json(report, extra={"success": result.success, "state": result.state.value})
    print(f"Restarts: {orchestrator.results.get_summary()['restarts']}, report written to {report}\n")


async def main() -> None:
    """Main demonstration function."""
    configure_logging(level="INFO")

    await demonstrate_basic_run()
    await demonstrate_kill_others()
    await demonstrate_restarts_and_report()


if __name__ == "__main__":
    asyncio.run(main())
