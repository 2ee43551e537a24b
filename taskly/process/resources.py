"""Resource usage sampling for supervised processes.

Samples are taken over the whole process tree (the spawned process and its
descendants), since shell mode places the real workload in a child of the
shell.
"""

from dataclasses import dataclass

import psutil
import structlog

# Initialize logger
logger = structlog.get_logger(__name__)

BYTES_PER_MB = 1024 * 1024


@dataclass(frozen=True)
class ResourceSample:
    """One resource measurement of a process tree.

    Attributes:
        task_id: Task the process belongs to
        pid: Root process id
        memory_mb: Resident memory of the tree in MB
        cpu_percent: CPU usage of the tree since the previous sample
        memory_exceeded: True when ``memory_mb`` is above the limit
        cpu_exceeded: True when ``cpu_percent`` is above the limit
    """

    task_id: str
    pid: int
    memory_mb: float
    cpu_percent: float
    memory_exceeded: bool = False
    cpu_exceeded: bool = False

    @property
    def exceeded(self) -> bool:
        return self.memory_exceeded or self.cpu_exceeded


class ResourceSampler:
    """Measures one process tree against memory and CPU limits.

    The sampler keeps its ``psutil.Process`` handles between calls so
    ``cpu_percent`` reports usage over the interval since the last sample.
    """

    def __init__(self, task_id: str, pid: int, max_memory_mb: float, max_cpu_percent: float):
        self.task_id = task_id
        self.pid = pid
        self.max_memory_mb = max_memory_mb
        self.max_cpu_percent = max_cpu_percent
        self._procs: dict[int, psutil.Process] = {}

    def sample(self) -> ResourceSample | None:
        """Take a sample, or return None when the process cannot be read."""
        try:
            root = self._procs.get(self.pid) or psutil.Process(self.pid)
            tree = [root, *root.children(recursive=True)]
        except psutil.Error as e:
            logger.debug("resource_sample_unavailable", task_id=self.task_id, pid=self.pid, error=str(e))
            return None

        memory = 0
        cpu = 0.0
        live: dict[int, psutil.Process] = {}
        for proc in tree:
            proc = self._procs.get(proc.pid, proc)
            try:
                memory += proc.memory_info().rss
                cpu += proc.cpu_percent(interval=None)
            except psutil.Error:
                # Exited between listing and reading
                continue
            live[proc.pid] = proc
        self._procs = live

        memory_mb = memory / BYTES_PER_MB
        return ResourceSample(
            task_id=self.task_id,
            pid=self.pid,
            memory_mb=round(memory_mb, 2),
            cpu_percent=round(cpu, 1),
            memory_exceeded=memory_mb > self.max_memory_mb,
            cpu_exceeded=cpu > self.max_cpu_percent,
        )
