"""Tests for process tree resource sampling."""

from unittest.mock import MagicMock, patch

import psutil

from taskly.process.resources import BYTES_PER_MB, ResourceSampler


def _fake_process(pid: int, rss_mb: float, cpu: float, children=()) -> MagicMock:
    proc = MagicMock()
    proc.pid = pid
    proc.memory_info.return_value = MagicMock(rss=int(rss_mb * BYTES_PER_MB))
    proc.cpu_percent.return_value = cpu
    proc.children.return_value = list(children)
    return proc


class TestResourceSampler:
    """Test cases for ResourceSampler."""

    def test_sums_process_tree(self):
        """Test that memory and CPU are summed over the tree."""
        child = _fake_process(11, 64, 20.0)
        root = _fake_process(10, 32, 5.0, children=[child])

        with patch("taskly.process.resources.psutil.Process", return_value=root):
            sample = ResourceSampler("build", 10, max_memory_mb=512, max_cpu_percent=100).sample()

        assert sample.task_id == "build"
        assert sample.memory_mb == 96.0
        assert sample.cpu_percent == 25.0
        assert not sample.exceeded

    def test_limits_exceeded(self):
        """Test that breaches of either limit are flagged."""
        root = _fake_process(10, 600, 150.0)

        with patch("taskly.process.resources.psutil.Process", return_value=root):
            sample = ResourceSampler("build", 10, max_memory_mb=512, max_cpu_percent=100).sample()

        assert sample.memory_exceeded
        assert sample.cpu_exceeded
        assert sample.exceeded

    def test_vanished_process_returns_none(self):
        """Test that an unreadable root process yields no sample."""
        with patch("taskly.process.resources.psutil.Process", side_effect=psutil.NoSuchProcess(10)):
            assert ResourceSampler("build", 10, 512, 100).sample() is None

    def test_child_exiting_during_sample_is_skipped(self):
        """Test that a child disappearing mid-sample is ignored."""
        gone = _fake_process(12, 10, 1.0)
        gone.memory_info.side_effect = psutil.NoSuchProcess(12)
        root = _fake_process(10, 32, 5.0, children=[gone])

        with patch("taskly.process.resources.psutil.Process", return_value=root):
            sample = ResourceSampler("build", 10, 512, 100).sample()

        assert sample.memory_mb == 32.0

    def test_handles_reused_between_samples(self):
        """Test that the root handle is kept so CPU deltas are meaningful."""
        root = _fake_process(10, 32, 5.0)

        with patch("taskly.process.resources.psutil.Process", return_value=root) as process_cls:
            sampler = ResourceSampler("build", 10, 512, 100)
            sampler.sample()
            sampler.sample()

        process_cls.assert_called_once_with(10)

    def test_samples_current_process(self):
        """Test sampling a real process."""
        sample = ResourceSampler("self", psutil.Process().pid, 1_000_000, 100_000).sample()
        assert sample is not None
        assert sample.memory_mb > 0
