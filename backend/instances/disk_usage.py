"""Droplet filesystem usage probing.

Runs ``df`` against the droplets root and publishes the percent-used gauge
that admission decisions read. The probe can run synchronously (startup,
tests) or as a task on the running event loop.
"""

import asyncio
import glob
import os
import subprocess
import threading
import time

import structlog

from instances.security import sanitize_output
from metrics import AgentMetrics

logger = structlog.get_logger(__name__)

DF_TIMEOUT_SECONDS = 30


def parse_percent_used(output: str) -> int:
    """Extract the capacity percentage from ``df -P`` output.

    Args:
        output: Raw stdout of ``df -Pk <dir>``.

    Returns:
        Percent of the filesystem in use.

    Raises:
        ValueError: If the output has no data line with a percentage column.
    """
    lines = [line for line in output.strip().splitlines() if line.strip()]
    if len(lines) < 2:
        raise ValueError(f"Unexpected df output: {output!r}")

    for token in lines[-1].split():
        if token.endswith("%") and token[:-1].isdigit():
            return int(token[:-1])

    raise ValueError(f"No usage percentage in df output: {lines[-1]!r}")


def _reap_in_background(proc: subprocess.Popen[bytes]) -> None:
    """Wait for ``proc`` on a daemon thread so it never lingers as a zombie."""
    threading.Thread(
        target=proc.wait, name=f"du-reaper-{proc.pid}", daemon=True
    ).start()


class DiskUsageMonitor:
    """Measures how full the droplet filesystem is.

    Attributes:
        droplets_root: Directory whose filesystem is probed.
        dump_dir: Where ``apps.du.*`` dumps are written.
        dump_threshold: Percent used above which every measurement also
            dumps the droplets root. None disables automatic dumps.
    """

    def __init__(
        self,
        droplets_root: str,
        metrics: AgentMetrics,
        dump_dir: str | None = None,
        dump_threshold: int | None = None,
    ) -> None:
        self.droplets_root = droplets_root
        self.dump_threshold = dump_threshold
        self.dump_dir = dump_dir or os.path.dirname(os.path.abspath(droplets_root))
        self.metrics = metrics

    @property
    def percent_used(self) -> int | None:
        return self.metrics.droplet_fs_percent_used

    def update_usage(self, blocking: bool = False) -> asyncio.Task[int | None] | None:
        """Probe the droplet filesystem and update the usage gauge.

        Args:
            blocking: Run ``df`` synchronously and raise on failure. Otherwise
                the probe is scheduled on the running loop and failures are
                only logged.

        Returns:
            The scheduled task in non-blocking mode, else None.

        Raises:
            FileNotFoundError: Blocking mode, droplets root does not exist.
            OSError: Blocking mode, ``df`` failed or its output was unreadable.
        """
        if not blocking:
            return asyncio.get_running_loop().create_task(
                self.refresh(), name="droplet_fs_usage"
            )

        if not os.path.isdir(self.droplets_root):
            raise FileNotFoundError(
                f"Droplets directory '{self.droplets_root}' does not exist"
            )

        try:
            result = subprocess.run(
                ["df", "-Pk", self.droplets_root],
                capture_output=True,
                text=True,
                timeout=DF_TIMEOUT_SECONDS,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise OSError(f"df timed out for '{self.droplets_root}'") from e

        if result.returncode != 0:
            raise OSError(
                f"df exited with {result.returncode}: {sanitize_output(result.stderr)}"
            )

        try:
            percent = parse_percent_used(result.stdout)
        except ValueError as e:
            raise OSError(str(e)) from e

        self.metrics.set_fs_percent_used(percent)
        self._dump_if_over_threshold(percent)
        return None

    async def refresh(self) -> int | None:
        """Probe usage on the event loop. Never raises.

        Returns:
            The new percentage, or None if the probe failed.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                "df",
                "-Pk",
                self.droplets_root,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(
                "droplet_fs_usage_spawn_failed",
                droplets_root=self.droplets_root,
                error=str(e),
            )
            return None

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=DF_TIMEOUT_SECONDS
            )
        except TimeoutError:
            proc.kill()
            await proc.wait()
            logger.error("droplet_fs_usage_timeout", droplets_root=self.droplets_root)
            return None

        if proc.returncode != 0:
            logger.error(
                "droplet_fs_usage_failed",
                droplets_root=self.droplets_root,
                exit_code=proc.returncode,
                stderr=sanitize_output(stderr.decode("utf-8", errors="replace")),
            )
            return None

        try:
            percent = parse_percent_used(stdout.decode("utf-8", errors="replace"))
        except ValueError as e:
            logger.error("droplet_fs_usage_unparseable", error=str(e))
            return None

        self.metrics.set_fs_percent_used(percent)
        self._dump_if_over_threshold(percent)
        return percent

    async def start_usage_loop(self, interval_seconds: float = 60.0) -> asyncio.Task[None]:
        """Start a background task that refreshes the usage gauge periodically.

        Args:
            interval_seconds: Seconds between probes.

        Returns:
            The background asyncio.Task that can be cancelled on shutdown.
        """

        async def _loop() -> None:
            logger.info("droplet_fs_usage_loop_started", interval_seconds=interval_seconds)
            while True:
                try:
                    await asyncio.sleep(interval_seconds)
                    await self.refresh()
                except asyncio.CancelledError:
                    logger.info("droplet_fs_usage_loop_stopped")
                    return
                except Exception as e:
                    logger.error("droplet_fs_usage_loop_error", error=str(e))

        return asyncio.create_task(_loop(), name="droplet_fs_usage_loop")

    def over_threshold(self, threshold: int) -> bool:
        """Return True if the last measurement is above ``threshold`` percent.

        An unmeasured filesystem is not considered full.
        """
        percent = self.percent_used
        return percent is not None and percent > threshold

    def _dump_if_over_threshold(self, percent: int) -> None:
        if self.dump_threshold is None or percent <= self.dump_threshold:
            return
        logger.warning(
            "droplet_fs_over_threshold",
            percent_used=percent,
            threshold=self.dump_threshold,
        )
        try:
            self.dump_apps_dir()
        except OSError as e:
            logger.error("apps_dir_dump_failed", dump_dir=self.dump_dir, error=str(e))

    def dump_apps_dir(self) -> list[subprocess.Popen[bytes]]:
        """Write a summary and a detailed ``du`` listing of the droplets root.

        Produces ``apps.du.<YYYYmmdd_HHMM>.sum`` and
        ``apps.du.<YYYYmmdd_HHMM>.details`` in the dump directory. The ``du``
        processes run detached and are reaped by background threads; the
        handles are returned for callers that want to wait as well.
        """
        tsig = time.strftime("%Y%m%d_%H%M")
        summary_file = os.path.join(self.dump_dir, f"apps.du.{tsig}.sum")
        details_file = os.path.join(self.dump_dir, f"apps.du.{tsig}.details")

        children = sorted(glob.glob(os.path.join(self.droplets_root, "*")))
        commands = [
            (summary_file, ["du", "-sk", *(children or [self.droplets_root])]),
            (details_file, ["du", "-k", "-d", "6", self.droplets_root]),
        ]

        procs: list[subprocess.Popen[bytes]] = []
        for path, argv in commands:
            with open(path, "wb") as out:
                procs.append(
                    subprocess.Popen(
                        argv,
                        stdin=subprocess.DEVNULL,
                        stdout=out,
                        stderr=subprocess.STDOUT,
                        start_new_session=True,
                    )
                )
                _reap_in_background(procs[-1])

        logger.info(
            "apps_dir_dumped",
            summary_file=summary_file,
            details_file=details_file,
            pids=[p.pid for p in procs],
        )
        return procs
