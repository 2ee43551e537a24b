"""Prefix, color and timestamp rendering for task output.

The formatter owns the color assignment of every task in a run. Assignments
are idempotent: the first call for a task id fixes its color for the rest of
the run. Automatic colors come from a fixed palette indexed by a counter that
advances once per distinct task id, so the same input order always yields
the same colors.
"""

import re
import time
from dataclasses import dataclass
from datetime import datetime

import structlog

from taskly.errors import ErrorCode, ErrorContext, ValidationError
from taskly.models import ColorAssignment, StreamName
from taskly.output import colors

# Initialize logger
logger = structlog.get_logger(__name__)

# Constants
DEFAULT_TIMESTAMP_FORMAT = "yyyy-MM-dd HH:mm:ss.SSS"
DEFAULT_SEPARATOR = " "
PREFIX_TYPES = frozenset({"index", "pid", "time", "command", "name", "none"})
COMMAND_PREFIX_LENGTH = 16

_TIMESTAMP_TOKENS = re.compile(r"yyyy|SSS|MM|dd|HH|mm|ss")
_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def format_timestamp(timestamp: float, fmt: str = DEFAULT_TIMESTAMP_FORMAT) -> str:
    """Render ``timestamp`` (epoch seconds, local time) with yyyy/MM/dd tokens.

    Example:
        >>> format_timestamp(0.0, "yyyy")
        '1970'
    """
    moment = datetime.fromtimestamp(timestamp)
    values = {
        "yyyy": f"{moment.year:04d}",
        "MM": f"{moment.month:02d}",
        "dd": f"{moment.day:02d}",
        "HH": f"{moment.hour:02d}",
        "mm": f"{moment.minute:02d}",
        "ss": f"{moment.second:02d}",
        "SSS": f"{moment.microsecond // 1000:03d}",
    }
    return _TIMESTAMP_TOKENS.sub(lambda m: values[m.group(0)], fmt)


@dataclass
class _TaskLabel:
    index: int = 0
    name: str | None = None
    command: str = ""
    pid: int | None = None


class OutputFormatter:
    """Renders output lines with colored prefixes.

    Example:
        >>> formatter = OutputFormatter(prefix="name")
        >>> formatter.assign("api", "green")
        >>> formatter.describe("api", index=0, name="api", command="npm start")
        >>> formatter.render("api", "listening on :8080")
        '\\x1b[32m[api]\\x1b[0m listening on :8080'

    Attributes:
        prefix: Prefix type or template
        timestamp_format: Format used for the ``time`` prefix
        raw: Return content unchanged
        use_color: Emit ANSI escapes around prefixes
        separator: Text placed between the prefix and the content
    """

    def __init__(
        self,
        prefix: str = "index",
        timestamp_format: str = DEFAULT_TIMESTAMP_FORMAT,
        raw: bool = False,
        use_color: bool = True,
        separator: str = DEFAULT_SEPARATOR,
    ):
        self.prefix = prefix or "none"
        self.timestamp_format = timestamp_format or DEFAULT_TIMESTAMP_FORMAT
        self.raw = raw
        self.use_color = use_color
        self.separator = separator
        self._assignments: dict[str, ColorAssignment] = {}
        self._labels: dict[str, _TaskLabel] = {}
        self._slots: dict[str, int] = {}

    @property
    def is_template(self) -> bool:
        return self.prefix not in PREFIX_TYPES

    def assign(self, task_id: str, explicit_color: str | None = None) -> ColorAssignment:
        """Return the color of ``task_id``, assigning one on first use.

        Args:
            task_id: Task identifier
            explicit_color: Named color, ``#RRGGBB``, ``rgb(r,g,b)``, ``auto`` or None

        Returns:
            The task's ColorAssignment (unchanged on repeated calls)

        Raises:
            ValidationError: If ``explicit_color`` is an unknown color name
        """
        if task_id in self._assignments:
            return self._assignments[task_id]

        slot = self._slots.setdefault(task_id, len(self._slots))

        color = explicit_color.strip() if explicit_color else None
        if not color or color == colors.AUTO:
            color = colors.AUTO_PALETTE[slot % len(colors.AUTO_PALETTE)]
            code = colors.ANSI_CODES[color]
        else:
            code = colors.ansi_code_for(color)
            if code is None:
                if not colors.is_truecolor_form(color):
                    msg = f"Invalid color: {color}"
                    raise ValidationError(
                        msg,
                        ErrorCode.INVALID_COLOR,
                        ErrorContext(task_id=task_id, metadata={"color": color}),
                    )
                logger.debug("malformed_color_uncolored", task_id=task_id, color=color)
                code = ""

        assignment = ColorAssignment(task_id=task_id, color=color, ansi_code=code)
        self._assignments[task_id] = assignment
        return assignment

    def describe(
        self,
        task_id: str,
        index: int | None = None,
        name: str | None = None,
        command: str | None = None,
        pid: int | None = None,
    ) -> None:
        """Record the values used by prefix placeholders for ``task_id``.

        Only the given (non-None) values are updated, so the pid can be added
        once the process has been spawned.
        """
        label = self._labels.setdefault(task_id, _TaskLabel())
        if index is not None:
            label.index = index
        if name is not None:
            label.name = name
        if command is not None:
            label.command = command
        if pid is not None:
            label.pid = pid

    def render(
        self,
        task_id: str,
        content: str,
        stream: StreamName = "stdout",
        timestamp: float | None = None,
    ) -> str:
        """Format one line of output for ``task_id``.

        The result is ``<prefix><separator><content>``. ``stream`` is available
        to templates as ``{stream}``.
        """
        if self.raw:
            return content
        prefix = self.prefix_text(task_id, timestamp, stream)
        if not prefix:
            return content
        if self.use_color:
            code = self.assign(task_id).ansi_code
            if code:
                prefix = f"{code}{prefix}{colors.RESET}"
        return f"{prefix}{self.separator}{content}"

    def prefix_text(self, task_id: str, timestamp: float | None = None, stream: StreamName = "stdout") -> str:
        """Uncolored prefix for ``task_id`` (empty for ``none``)."""
        label = self._labels.get(task_id) or _TaskLabel()
        when = time.time() if timestamp is None else timestamp

        match self.prefix:
            case "none":
                return ""
            case "index":
                return f"[{label.index}]"
            case "pid":
                return f"[{label.pid}]" if label.pid else ""
            case "time":
                return f"[{format_timestamp(when, self.timestamp_format)}]"
            case "command":
                return f"[{label.command[:COMMAND_PREFIX_LENGTH]}]"
            case "name":
                return f"[{label.name}]" if label.name else f"[{label.index}]"

        values = {
            "index": str(label.index),
            "pid": str(label.pid) if label.pid else "",
            "time": format_timestamp(when, self.timestamp_format),
            "command": label.command,
            "name": label.name or "",
            "stream": stream,
        }
        return _PLACEHOLDER.sub(lambda m: values.get(m.group(1), m.group(0)), self.prefix)

    def colorize(self, text: str, color: str | None) -> str:
        if not self.use_color:
            return text
        return colors.colorize(text, color)
