#!/usr/bin/env python3
"""Main Entry Point and CLI Integration.

This module provides the ``taskly`` command line interface. It loads the
configuration (file, then ``TASKLY_*`` environment variables, then flags),
configures logging, installs the error handler's signal hooks and runs the
given commands concurrently. The exit status is 0 when the run succeeded,
1 when it did not and 2 for argument or configuration errors.
"""

import argparse
import asyncio
import os
import sys
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from taskly.api import build_orchestrator
from taskly.config import TaskDescription, TasklyConfig, load_config
from taskly.errors import ConfigurationError, ErrorCode, ValidationError, user_friendly_message
from taskly.errors.handler import ErrorHandler
from taskly.log_config import configure_logging

# Initialize logger (will be configured after loading config)
logger = structlog.get_logger("taskly.cli")

# Constants
EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = argparse.ArgumentParser(
        prog="taskly",
        description="Run commands concurrently with prefixed output and a single exit status",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run two commands, stop everything when one fails
  taskly --kill-others-on failure "npm run watch" "npm test"

  # Name the tasks and color their prefixes
  taskly --names api,web --prefix name --prefix-colors blue,magenta "make api" "make web"

  # At most two at a time, retry flaky commands twice
  taskly --max-processes 2 --restart-tries 2 --restart-delay 500 "./a.sh" "./b.sh" "./c.sh"

  # Run the tasks defined in taskly.config.yaml
  taskly --config taskly.config.yaml
        """,
    )

    parser.add_argument("commands", nargs="*", help="Commands to run (quote each one)")

    policy = parser.add_argument_group("run policy")
    policy.add_argument(
        "-m",
        "--max-processes",
        type=int,
        help="Maximum number of processes running at once (0 means unlimited)",
    )
    policy.add_argument(
        "-k",
        "--kill-others-on",
        type=str,
        help="Comma separated outcomes (success, failure) that stop all other tasks",
    )
    policy.add_argument(
        "-s",
        "--success-condition",
        choices=["all", "first", "last"],
        help="Which outcomes decide the exit status (default: all)",
    )
    policy.add_argument(
        "--ignore-missing",
        action="store_true",
        default=None,
        help="Skip tasks whose command or package script does not exist",
    )
    policy.add_argument("--restart-tries", type=int, help="Restarts allowed after a failed attempt")
    policy.add_argument("--restart-delay", type=int, help="Delay before each restart, in milliseconds")
    policy.add_argument("--timeout", type=float, help="Kill each attempt after this many seconds")

    output = parser.add_argument_group("output")
    output.add_argument("-r", "--raw", action="store_true", default=None, help="Print output without prefixes")
    output.add_argument(
        "-p",
        "--prefix",
        type=str,
        help="Prefix type (index, pid, time, command, name, none) or a template like '{index}-{pid}'",
    )
    output.add_argument("-c", "--prefix-colors", type=str, help="Comma separated colors by task index, or auto")
    output.add_argument("-n", "--names", type=str, help="Comma separated task names by index")
    output.add_argument("-t", "--timestamp-format", type=str, help="Format of the {time} prefix")
    output.add_argument("--separator", type=str, help="Text between the prefix and each line (default: one space)")

    execution = parser.add_argument_group("execution")
    execution.add_argument("--cwd", type=str, help="Default working directory for all tasks")
    shell = execution.add_mutually_exclusive_group()
    shell.add_argument(
        "--shell",
        nargs="?",
        const=True,
        default=None,
        metavar="NAME",
        help="Run commands through the default shell, or the named one (default)",
    )
    shell.add_argument(
        "--no-shell",
        dest="shell",
        action="store_false",
        default=None,
        help="Execute commands directly without a shell",
    )

    general = parser.add_argument_group("general")
    general.add_argument("--config", type=str, help="Path to a YAML or JSON configuration file")
    general.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        help="Set logging level (default: WARNING)",
    )
    general.add_argument("--json-logs", action="store_true", help="Emit log events as JSON lines")
    general.add_argument("--report", type=str, help="Write a JSON run report to this path")

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    return build_parser().parse_args(argv)


def apply_cli_overrides(config: TasklyConfig, args: argparse.Namespace) -> TasklyConfig:
    """Layer command line flags over ``config`` and re-validate.

    Raises:
        ConfigurationError: If a flag value is invalid
    """
    data = config.model_dump()
    overrides: dict[tuple[str, ...], Any] = {
        ("policy", "max_processes"): args.max_processes,
        ("policy", "kill_others_on"): args.kill_others_on,
        ("policy", "success_condition"): args.success_condition,
        ("policy", "ignore_missing"): args.ignore_missing,
        ("output", "raw"): args.raw,
        ("output", "prefix"): args.prefix,
        ("output", "prefix_colors"): args.prefix_colors,
        ("output", "timestamp_format"): args.timestamp_format,
        ("output", "separator"): args.separator,
        ("supervisor", "timeout_seconds"): args.timeout,
        ("names",): args.names,
        ("cwd",): args.cwd,
        ("shell",): args.shell,
        ("restart_tries",): args.restart_tries,
        ("restart_delay",): args.restart_delay,
        ("logging_level",): args.log_level,
    }
    for path, value in overrides.items():
        if value is None:
            continue
        current = data
        for key in path[:-1]:
            current = current[key]
        current[path[-1]] = value

    try:
        return TasklyConfig.model_validate(data)
    except PydanticValidationError as e:
        error = e.errors()[0]
        location = ".".join(str(part) for part in error["loc"])
        msg = f"Invalid option {location}: {error['msg']}"
        raise ConfigurationError(msg, ErrorCode.CONFIG_ERROR, original_error=e) from e


def collect_tasks(args: argparse.Namespace, config: TasklyConfig) -> list[str | TaskDescription]:
    """Commands from the command line, or the configured tasks when none are given."""
    if args.commands:
        return list(args.commands)
    return [
        task if task.name else task.model_copy(update={"name": name})
        for name, task in config.tasks.items()
    ]


def use_color() -> bool:
    """Color prefixes only on a terminal and when ``NO_COLOR`` is unset."""
    return "NO_COLOR" not in os.environ and sys.stdout.isatty()


async def main_async(args: argparse.Namespace) -> int:
    """Main async entry point.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for failure, 2 for usage errors)
    """
    try:
        config = apply_cli_overrides(load_config(args.config, cwd=args.cwd), args)
        configure_logging(config.logging_level, json_logs=args.json_logs)
    except ConfigurationError as e:
        sys.stderr.write(f"taskly: {e.message}\n")
        return EXIT_USAGE

    for warning in config.validate_config():
        logger.warning("configuration_warning", message=warning)

    error_handler = ErrorHandler()
    orchestrator = build_orchestrator(config, error_handler=error_handler, use_color=use_color())
    error_handler.add_shutdown_callback(orchestrator.stop)
    error_handler.install()

    try:
        result = await orchestrator.run(collect_tasks(args, config))
    except ValidationError as e:
        sys.stderr.write(f"taskly: {user_friendly_message(e)}\n")
        return EXIT_USAGE
    finally:
        error_handler.uninstall()

    summary = orchestrator.results.get_summary()
    logger.info(
        "run_summary",
        success=result.success,
        state=result.state.value,
        total=summary["total_tasks"],
        successful=summary["successful"],
        failed=summary["failed"],
        restarts=summary["restarts"],
    )

    if args.report:
        orchestrator.results.export_json(
            args.report,
            extra={"success": result.success, "state": result.state.value},
        )
        logger.info("run_report_written", path=args.report)

    if error_handler.shutting_down:
        await error_handler.shutdown_complete.wait()
    if error_handler.exit_code is not None:
        return error_handler.exit_code
    return EXIT_SUCCESS if result.success else EXIT_FAILURE


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the taskly command.

    This function parses arguments, runs the async main function,
    and exits with the appropriate code.
    """
    args = parse_args(argv)

    try:
        exit_code = asyncio.run(main_async(args))
    except KeyboardInterrupt:
        exit_code = EXIT_FAILURE
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
