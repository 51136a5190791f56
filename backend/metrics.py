"""In-memory gauges and counters for the droplet agent.

The disk usage monitor writes the droplet filesystem gauge here and the
lifecycle manager bumps its reaping counters. Admission logic and the status
API read them back.

Usage:
    >>> from metrics import AgentMetrics
    >>> metrics = AgentMetrics()
    >>> metrics.set_fs_percent_used(42)
    >>> metrics.record_crashed_reaped()
    >>> metrics.snapshot().to_dict()
"""

import threading
import time
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class AgentMetricsData:
    """Point-in-time copy of the agent's gauges and counters.

    Attributes:
        droplet_fs_percent_used: Last measured usage of the droplet
            filesystem, or None before the first probe completes.
        fs_usage_updated_at: Unix timestamp of the last successful probe.
        crashed_instances_reaped: Crashed instances removed by the reaper.
        untracked_dirs_removed: Directories removed by the untracked sweep.
        chown_failures: Ownership changes that did not succeed.
        started_at: Unix timestamp when the collector was created.
    """

    droplet_fs_percent_used: int | None = None
    fs_usage_updated_at: float | None = None
    crashed_instances_reaped: int = 0
    untracked_dirs_removed: int = 0
    chown_failures: int = 0
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, int | float | None]:
        """Convert to a plain dict.

        Returns:
            Dict with all metric fields.
        """
        return {
            "droplet_fs_percent_used": self.droplet_fs_percent_used,
            "fs_usage_updated_at": self.fs_usage_updated_at,
            "crashed_instances_reaped": self.crashed_instances_reaped,
            "untracked_dirs_removed": self.untracked_dirs_removed,
            "chown_failures": self.chown_failures,
            "started_at": self.started_at,
        }


class AgentMetrics:
    """Process-wide gauge state.

    Updates are guarded by a lock so the reaper, the probe callbacks and the
    status API can share one instance.
    """

    def __init__(self) -> None:
        """Initialize an empty metrics collector."""
        self._data = AgentMetricsData()
        self._lock = threading.Lock()
        logger.info("agent_metrics_initialized")

    @property
    def droplet_fs_percent_used(self) -> int | None:
        return self._data.droplet_fs_percent_used

    def set_fs_percent_used(self, percent: int) -> None:
        """Publish a completed droplet filesystem usage measurement.

        Args:
            percent: Percent of the filesystem in use (0-100).
        """
        with self._lock:
            self._data.droplet_fs_percent_used = percent
            self._data.fs_usage_updated_at = time.time()

        logger.debug("droplet_fs_usage_updated", percent_used=percent)

    def record_crashed_reaped(self, count: int = 1) -> None:
        with self._lock:
            self._data.crashed_instances_reaped += count

    def record_untracked_removed(self, count: int = 1) -> None:
        with self._lock:
            self._data.untracked_dirs_removed += count

    def record_chown_failure(self) -> None:
        with self._lock:
            self._data.chown_failures += 1

    def snapshot(self) -> AgentMetricsData:
        """Return a copy of the current gauges and counters."""
        with self._lock:
            return AgentMetricsData(**vars(self._data))
