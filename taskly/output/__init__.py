"""Output formatting and sinks."""

from taskly.output.formatter import OutputFormatter, format_timestamp
from taskly.output.sink import ConsoleSink, MemorySink, OutputSink

__all__ = [
    "ConsoleSink",
    "MemorySink",
    "OutputFormatter",
    "OutputSink",
    "format_timestamp",
]
