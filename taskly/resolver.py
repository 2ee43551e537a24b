"""Turning user task input into ``TaskSpec`` objects.

The resolver accepts plain command strings, ``TaskDescription`` models or
mappings, expands package manager shortcuts (``npm:build`` becomes
``npm run build``) and wildcard scripts (``npm:test:*`` becomes one task per
matching ``package.json`` script), assigns ids and validates the result. It
also answers whether a task's executable or package script exists, which
the orchestrator uses for ``ignore_missing``.
"""

import json
import os
import re
import shlex
import shutil
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from taskly.config import TaskDescription
from taskly.errors import ErrorCode, ErrorContext, ValidationError
from taskly.models import ShellMode, TaskSpec

# Initialize logger
logger = structlog.get_logger(__name__)

# Constants
PACKAGE_MANAGERS = ("npm", "pnpm", "yarn", "bun")
_SHORTCUT_RE = re.compile(r"^(npm|pnpm|yarn|bun):(.+)$")
_SHELL_SYNTAX = re.compile(r"[|&;<>()$`*?\[\]{}~\\\n]")
SHELL_BUILTINS = frozenset(
    {
        ".", ":", "[", "alias", "bg", "break", "cd", "command", "continue", "echo",
        "eval", "exec", "exit", "export", "false", "fg", "getopts", "hash", "jobs",
        "kill", "printf", "pwd", "read", "readonly", "return", "set", "shift",
        "source", "test", "times", "trap", "true", "type", "ulimit", "umask",
        "unalias", "unset", "wait",
    },
)

TaskInput = str | TaskDescription | Mapping[str, Any]


class MissingKind(Enum):
    """Why a task cannot run."""

    COMMAND = "command"
    SCRIPT = "script"


@dataclass(frozen=True)
class MissingTask:
    """A task whose executable or package script does not exist."""

    spec: TaskSpec
    kind: MissingKind
    target: str

    @property
    def reason(self) -> str:
        if self.kind == MissingKind.SCRIPT:
            return f"script not found in package.json: {self.target}"
        return f"command not found: {self.target}"


def expand_shortcut(command: str) -> str:
    """Expand ``pm:script`` into ``pm run script``.

    Example:
        >>> expand_shortcut("pnpm:dev")
        'pnpm run dev'
    """
    match = _SHORTCUT_RE.match(command.strip())
    if not match:
        return command
    return f"{match.group(1)} run {match.group(2).strip()}"


def split_command(command: str) -> list[str]:
    """Split a command line into executable and arguments (POSIX rules).

    Raises:
        ValidationError: If the command is empty or has unbalanced quotes
    """
    try:
        parts = shlex.split(command)
    except ValueError as e:
        msg = f"Cannot parse command {command!r}: {e}"
        raise ValidationError(msg, ErrorCode.INVALID_COMMAND, ErrorContext(command=command)) from e
    if not parts:
        msg = "Command must not be empty"
        raise ValidationError(msg, ErrorCode.INVALID_COMMAND, ErrorContext(command=command))
    return parts


def detect_script_run(parts: Sequence[str]) -> tuple[str, str] | None:
    """Return ``(package_manager, script)`` for ``pm run script`` commands."""
    if len(parts) >= 3 and parts[0] in PACKAGE_MANAGERS and parts[1] == "run":  # noqa: PLR2004
        return parts[0], parts[2]
    return None


def read_package_scripts(cwd: str | Path) -> dict[str, str] | None:
    """Scripts declared in ``cwd/package.json``, or None when unreadable."""
    path = Path(cwd) / "package.json"
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    scripts = data.get("scripts") if isinstance(data, dict) else None
    return scripts if isinstance(scripts, dict) else None


def _wildcard_regex(pattern: str) -> re.Pattern[str]:
    return re.compile("^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$")


class CommandResolver:
    """Normalizes task input into validated ``TaskSpec`` objects.

    Attributes:
        cwd: Default working directory (None for the process cwd)
        default_shell: Shell mode used for plain string commands
        names: Names by task index, used when a task has none
        prefix_colors: Colors by task index, used when a task has none
        restart_tries: Default restart budget for plain string commands
        restart_delay_ms: Default restart delay for plain string commands
    """

    def __init__(
        self,
        cwd: str | None = None,
        default_shell: ShellMode = True,
        names: Sequence[str] = (),
        prefix_colors: Sequence[str] = (),
        restart_tries: int = 0,
        restart_delay_ms: int = 0,
    ):
        self.cwd = cwd
        self.default_shell = default_shell
        self.names = list(names)
        self.prefix_colors = list(prefix_colors)
        self.restart_tries = restart_tries
        self.restart_delay_ms = restart_delay_ms

    def resolve(self, tasks: Iterable[TaskInput]) -> list[TaskSpec]:
        """Expand, normalize and validate ``tasks``.

        Returns:
            TaskSpecs in input order, indexed from 0

        Raises:
            ValidationError: On empty input, invalid task entries or duplicate ids
        """
        descriptions = [self.describe(item) for item in tasks]
        if not descriptions:
            msg = "At least one task is required"
            raise ValidationError(msg, ErrorCode.INVALID_OPTIONS)

        expanded: list[TaskDescription] = []
        for description in descriptions:
            expanded.extend(self.expand_wildcards(description))

        specs = [self.normalize(index, description) for index, description in enumerate(expanded)]

        seen: set[str] = set()
        for spec in specs:
            if spec.id in seen:
                msg = f"Duplicate task id: {spec.id}"
                raise ValidationError(msg, ErrorCode.INVALID_TASK_CONFIG, ErrorContext(task_id=spec.id))
            seen.add(spec.id)

        logger.debug("tasks_resolved", count=len(specs), task_ids=[s.id for s in specs])
        return specs

    def describe(self, item: TaskInput) -> TaskDescription:
        """Coerce one input item into a ``TaskDescription``."""
        if isinstance(item, TaskDescription):
            return item
        try:
            if isinstance(item, str):
                return TaskDescription(
                    command=item,
                    shell=self.default_shell,
                    restart_tries=self.restart_tries,
                    restart_delay=self.restart_delay_ms,
                )
            if isinstance(item, Mapping):
                data = {"shell": self.default_shell, **item}
                return TaskDescription(**data)
        except PydanticValidationError as e:
            msg = f"Invalid task {item!r}: {e.errors()[0]['msg']}"
            raise ValidationError(msg, ErrorCode.INVALID_TASK_CONFIG, original_error=e) from e

        msg = f"Unsupported task type: {type(item).__name__}"
        raise ValidationError(msg, ErrorCode.INVALID_TASK_CONFIG)

    def expand_wildcards(self, description: TaskDescription) -> list[TaskDescription]:
        """Expand ``pm run pattern*`` into one task per matching script.

        Matches are sorted by script name. Without matches (or without a
        readable package.json) the task is returned unchanged.
        """
        command = expand_shortcut(description.command)
        try:
            parts = shlex.split(command)
        except ValueError:
            return [description]
        script_run = detect_script_run(parts)
        if script_run is None or "*" not in script_run[1]:
            return [description]

        manager, pattern = script_run
        scripts = read_package_scripts(self._cwd_for(description.cwd)) or {}
        regex = _wildcard_regex(pattern)
        matches = sorted(name for name in scripts if regex.match(name))
        if not matches:
            return [description]

        logger.debug("wildcard_scripts_expanded", pattern=pattern, matches=matches)
        return [
            description.model_copy(
                update={
                    "command": f"{manager} run {script}",
                    "name": f"{description.name}:{script}" if description.name else script,
                },
            )
            for script in matches
        ]

    def normalize(self, index: int, description: TaskDescription) -> TaskSpec:
        """Build the immutable ``TaskSpec`` for the task at ``index``."""
        command_line = expand_shortcut(description.command).strip()
        name = description.name or (self.names[index] if index < len(self.names) else None)
        color = description.prefix_color or (
            self.prefix_colors[index] if index < len(self.prefix_colors) else None
        )

        if description.shell is False:
            parts = split_command(command_line)
            command, args = parts[0], tuple(parts[1:])
        else:
            command, args = command_line, ()

        return TaskSpec(
            id=name or self._generated_id(index, command_line),
            index=index,
            command=command,
            args=args,
            name=name,
            cwd=self._cwd_for(description.cwd) if (description.cwd or self.cwd) else None,
            env=dict(description.env),
            shell_mode=description.shell,
            color=color,
            restart_tries=description.restart_tries,
            restart_delay_ms=description.restart_delay,
        )

    def find_missing(self, spec: TaskSpec) -> MissingTask | None:
        """Check that the task's executable and package script exist.

        In shell mode only simple commands (no shell syntax, not a builtin)
        are checked, since anything else is interpreted by the shell.
        """
        if spec.shell_mode is False:
            parts = [spec.command, *spec.args]
        else:
            if _SHELL_SYNTAX.search(spec.command_line):
                return None
            try:
                parts = shlex.split(spec.command_line)
            except ValueError:
                return None
            if not parts or "=" in parts[0] or parts[0] in SHELL_BUILTINS:
                return None

        cwd = spec.cwd or self.cwd or os.getcwd()
        if not self._executable_exists(parts[0], cwd, spec.env):
            return MissingTask(spec, MissingKind.COMMAND, parts[0])

        script_run = detect_script_run(parts)
        if script_run is not None:
            scripts = read_package_scripts(cwd)
            if not scripts or script_run[1] not in scripts:
                return MissingTask(spec, MissingKind.SCRIPT, script_run[1])

        return None

    def _cwd_for(self, task_cwd: str | None) -> str:
        base = self.cwd or os.getcwd()
        if not task_cwd:
            return base
        return task_cwd if os.path.isabs(task_cwd) else os.path.normpath(os.path.join(base, task_cwd))

    @staticmethod
    def _executable_exists(executable: str, cwd: str, env: Mapping[str, str]) -> bool:
        if os.sep in executable or executable.startswith("."):
            target = executable if os.path.isabs(executable) else os.path.join(cwd, executable)
            return os.path.isfile(target)
        search_path = env.get("PATH", os.environ.get("PATH", os.defpath))
        return shutil.which(executable, path=search_path) is not None

    @staticmethod
    def _generated_id(index: int, command_line: str) -> str:
        head = command_line.split(maxsplit=1)[0] if command_line.split() else "task"
        base = re.sub(r"[^A-Za-z0-9]", "", os.path.basename(head)) or "task"
        return f"{base}-{index}"
