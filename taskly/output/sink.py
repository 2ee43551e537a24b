"""Destinations for rendered task output and run diagnostics."""

import sys
from typing import Protocol, TextIO

from taskly.models import OutputLine


class OutputSink(Protocol):
    """Receives rendered lines in per-task arrival order."""

    def write_line(self, line: OutputLine) -> None: ...

    def diagnostic(self, message: str) -> None: ...


class ConsoleSink:
    """Writes task stdout to stdout and task stderr plus diagnostics to stderr."""

    def __init__(self, stdout: TextIO | None = None, stderr: TextIO | None = None):
        self.stdout = stdout or sys.stdout
        self.stderr = stderr or sys.stderr

    def write_line(self, line: OutputLine) -> None:
        stream = self.stderr if line.stream == "stderr" else self.stdout
        stream.write(line.formatted + "\n")
        stream.flush()

    def diagnostic(self, message: str) -> None:
        self.stderr.write(message + "\n")
        self.stderr.flush()


class MemorySink:
    """Collects lines and diagnostics in memory (embedding and tests)."""

    def __init__(self) -> None:
        self.lines: list[OutputLine] = []
        self.diagnostics: list[str] = []

    def write_line(self, line: OutputLine) -> None:
        self.lines.append(line)

    def diagnostic(self, message: str) -> None:
        self.diagnostics.append(message)

    def contents(self, task_id: str) -> list[str]:
        """Raw content of every line emitted by ``task_id``."""
        return [line.content for line in self.lines if line.task_id == task_id]
