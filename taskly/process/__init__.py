"""Child process supervision: spawning, line framing, security checks and resource sampling."""

from taskly.process.framing import LineFramer
from taskly.process.supervisor import ProcessSupervisor

__all__ = [
    "LineFramer",
    "ProcessSupervisor",
]
