"""Wiring of the droplet agent's instance-management components.

``DropletAgent`` builds the registries, the stager, the lifecycle manager and
the disk usage monitor from settings, and owns the background loops that keep
them current.
"""

import asyncio
import contextlib
import os

import structlog

from config import Settings, settings
from instances import (
    DiskUsageMonitor,
    DropletRegistry,
    InstanceLifecycleManager,
    RuntimeRegistry,
    RuntimeSpec,
    Stager,
)
from metrics import AgentMetrics

logger = structlog.get_logger(__name__)


class DropletAgent:
    """Per-host instance management.

    Attributes:
        config: Settings the agent was built from.
        droplets: The droplet state map.
        runtimes: Validated runtime cache.
        stager: Builds instance sandboxes.
        lifecycle: Reaps crashed and untracked instance directories.
        disk_usage: Droplet filesystem usage probe.
        metrics: Shared gauges and counters.
    """

    def __init__(self, config: Settings | None = None) -> None:
        self.config = config or settings
        self.metrics = AgentMetrics()
        self.droplets = DropletRegistry()
        self.runtimes = RuntimeRegistry(
            self.config.runtime_names,
            probe_timeout=self.config.runtime_probe_timeout_seconds,
        )
        self.stager = Stager(self.runtimes)
        self.lifecycle = InstanceLifecycleManager(
            self.config.droplets_dir,
            self.droplets,
            self.metrics,
            crash_reap_timeout=self.config.crash_reap_timeout_seconds,
            disable_dir_cleanup=self.config.disable_dir_cleanup,
        )
        self.disk_usage = DiskUsageMonitor(
            self.config.droplets_dir,
            self.metrics,
            dump_dir=self.config.du_dump_dir,
            dump_threshold=self.config.droplet_fs_percent_used_threshold,
        )
        self._tasks: list[asyncio.Task[None]] = []

    def runtime_specs(self) -> list[RuntimeSpec]:
        """Runtime definitions from settings, with names filled in from keys."""
        return [
            RuntimeSpec.from_dict({"name": name, **definition})
            for name, definition in self.config.runtimes.items()
        ]

    def droplet_fs_full(self) -> bool:
        """Admission check: True when no new instances should be placed here."""
        return self.disk_usage.over_threshold(
            self.config.droplet_fs_percent_used_threshold
        )

    async def start(self) -> None:
        """Prepare the droplets root, validate runtimes and start the loops."""
        os.makedirs(self.config.droplets_dir, exist_ok=True)

        await self.runtimes.initialize_runtimes(self.runtime_specs())
        self.lifecycle.sweep_untracked()
        self.disk_usage.update_usage(blocking=True)

        self._tasks.append(
            await self.lifecycle.start_reaper_loop(
                self.config.crash_reap_interval_seconds
            )
        )
        self._tasks.append(
            await self.disk_usage.start_usage_loop(
                self.config.disk_usage_interval_seconds
            )
        )

        logger.info(
            "droplet_agent_started",
            droplets_dir=self.config.droplets_dir,
            runtimes=sorted(
                entry.name for entry in self.runtimes.entries() if entry.enabled
            ),
            droplet_fs_percent_used=self.metrics.droplet_fs_percent_used,
        )

    async def shutdown(self) -> None:
        """Cancel background loops."""
        for task in self._tasks:
            if not task.done():
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        logger.info("droplet_agent_stopped")
