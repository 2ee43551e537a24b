"""Command validation and child environment construction.

Commands are checked against a table of deny rules before anything is
spawned. The table is data: each rule pairs a compiled pattern with the
error code and description reported when it matches.
"""

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass

from taskly.errors import ErrorCode, ErrorContext, SecurityViolation


@dataclass(frozen=True)
class SecurityRule:
    """One deny rule of the command validation table."""

    name: str
    pattern: re.Pattern[str]
    code: ErrorCode
    description: str


SAFE_DEVICES = ("null", "stdout", "stderr", "tty", "zero", "fd/1", "fd/2")

SECURITY_RULES: tuple[SecurityRule, ...] = (
    SecurityRule(
        "command_substitution",
        re.compile(r"\$\("),
        ErrorCode.COMMAND_INJECTION,
        "command substitution $(...)",
    ),
    SecurityRule(
        "backtick_substitution",
        re.compile(r"`"),
        ErrorCode.COMMAND_INJECTION,
        "backtick command substitution",
    ),
    SecurityRule(
        "eval_call",
        re.compile(r"\beval\s*\("),
        ErrorCode.COMMAND_INJECTION,
        "eval(...) call",
    ),
    SecurityRule(
        "exec_call",
        re.compile(r"\bexec\s*\("),
        ErrorCode.COMMAND_INJECTION,
        "exec(...) call",
    ),
    SecurityRule(
        "download_piped_to_shell",
        re.compile(r"\b(?:curl|wget)\b[^|]*\|\s*(?:sudo\s+)?(?:ba|z|da|k)?sh\b"),
        ErrorCode.SECURITY_VIOLATION,
        "download piped into a shell interpreter",
    ),
    SecurityRule(
        "recursive_root_delete",
        re.compile(r"\brm\s+(?:-{1,2}[\w-]+\s+)*/\*?(?=\s|$|[;&|])"),
        ErrorCode.SECURITY_VIOLATION,
        "recursive deletion of the filesystem root",
    ),
    SecurityRule(
        "privilege_escalation",
        re.compile(r"(?:^|[;&|(])\s*(?:sudo|su|doas|pkexec)(?=\s|$)"),
        ErrorCode.SECURITY_VIOLATION,
        "privilege escalation",
    ),
    SecurityRule(
        "device_redirect",
        re.compile(r">\s*/dev/(?!(?:" + "|".join(re.escape(d) for d in SAFE_DEVICES) + r")\b)"),
        ErrorCode.SECURITY_VIOLATION,
        "redirection into a device file",
    ),
)

STRIPPED_ENV_VARS = frozenset(
    {
        "LD_PRELOAD",
        "LD_AUDIT",
        "DYLD_INSERT_LIBRARIES",
        "NODE_OPTIONS",
    },
)


def find_violation(command_line: str) -> SecurityRule | None:
    """Return the first rule ``command_line`` matches, or None."""
    for rule in SECURITY_RULES:
        if rule.pattern.search(command_line):
            return rule
    return None


def validate_command(command_line: str, task_id: str | None = None, cwd: str | None = None) -> None:
    """Raise ``SecurityViolation`` if ``command_line`` matches a deny rule.

    Args:
        command_line: Full command line as it would be executed
        task_id: Task id for error context
        cwd: Working directory for error context

    Raises:
        SecurityViolation: If a deny rule matches
    """
    rule = find_violation(command_line)
    if rule is None:
        return
    msg = f"Command rejected: {rule.description}"
    context = ErrorContext(
        task_id=task_id,
        command=command_line,
        cwd=cwd,
        metadata={"rule": rule.name, "context": "command-validation"},
    )
    raise SecurityViolation(msg, rule.code, context)


def build_environment(
    task_env: Mapping[str, str],
    task_vars: Mapping[str, str],
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Build the child environment.

    The inherited environment is merged with the task's variables and the
    ``TASKLY_*`` variables describing the task, and loader or runtime
    injection variables are removed from the result.

    Args:
        task_env: Variables configured on the task
        task_vars: Variables taskly sets for every child
        base: Inherited environment (defaults to ``os.environ``)

    Returns:
        The environment mapping for the child process
    """
    env = dict(os.environ if base is None else base)
    env.update(task_env)
    env.update(task_vars)
    for name in STRIPPED_ENV_VARS:
        env.pop(name, None)
    return env
