"""Instance directory lifecycle: sweeping, crash reaping and inspection prep.

The lifecycle manager reconciles the droplets root on disk with the droplet
registry. Untracked directories are deleted, crashed instances are kept for a
while so operators can look at what they left behind and are then reaped.
"""

import asyncio
import os
import threading
import time

import structlog

from instances.fs_utils import chown_tree, remove_tree
from instances.registry import DropletRegistry, InstanceKey, InstanceRecord
from metrics import AgentMetrics
from models.schemas import InstanceState

logger = structlog.get_logger(__name__)

CRASH_REAP_TIMEOUT = 3600
CRASH_REAP_INTERVAL = 30


class InstanceLifecycleManager:
    """Owns reclamation of instance directories under the droplets root.

    ``sweep_untracked`` and ``reap_crashed`` share one lock, so they can be
    called from the event loop and from worker threads alike.

    Attributes:
        droplets_root: Directory with one subdirectory per instance.
        registry: The droplet state map.
        crash_reap_timeout: Seconds a crashed instance is kept before reaping.
        disable_dir_cleanup: If True, directories are never deleted; records
            are still reaped.
    """

    def __init__(
        self,
        droplets_root: str,
        registry: DropletRegistry,
        metrics: AgentMetrics,
        crash_reap_timeout: float = CRASH_REAP_TIMEOUT,
        disable_dir_cleanup: bool = False,
    ) -> None:
        self.droplets_root = droplets_root
        self.registry = registry
        self.metrics = metrics
        self.crash_reap_timeout = crash_reap_timeout
        self.disable_dir_cleanup = disable_dir_cleanup
        self._reap_lock = threading.Lock()
        self._chowns: dict[str, asyncio.Task[bool]] = {}

    def sweep_untracked(self) -> list[str]:
        """Delete every instance directory the registry does not reference.

        Returns:
            The directories that were removed.
        """
        with self._reap_lock:
            if not os.path.isdir(self.droplets_root):
                logger.warning(
                    "droplets_root_missing", droplets_root=self.droplets_root
                )
                return []

            root = os.path.realpath(self.droplets_root)
            tracked = {os.path.realpath(d) for d in self.registry.directories()}

            removed: list[str] = []
            with os.scandir(root) as entries:
                candidates = [
                    os.path.join(root, entry.name)
                    for entry in entries
                    if entry.is_dir(follow_symlinks=False)
                ]

            for path in sorted(candidates):
                if path in tracked:
                    continue
                try:
                    remove_tree(path)
                except OSError as e:
                    logger.error("untracked_dir_removal_failed", path=path, error=str(e))
                    continue
                removed.append(path)
                logger.info("untracked_dir_removed", path=path)

        if removed:
            self.metrics.record_untracked_removed(len(removed))
        return removed

    def reap_crashed(self, now: float | None = None) -> list[InstanceKey]:
        """Reap crashed instances older than the crash timeout.

        Deletes the instance directory and drops the record. A directory that
        is still being chowned, or that fails to delete, is left for the next
        call.

        Args:
            now: Current time; defaults to ``time.time()``.

        Returns:
            Keys of the reaped instances.
        """
        now = time.time() if now is None else now
        reaped: list[InstanceKey] = []

        with self._reap_lock:
            for record in self.registry.records():
                if record.state != InstanceState.CRASHED:
                    continue
                if now - record.state_timestamp <= self.crash_reap_timeout:
                    continue
                if self._chown_in_flight(record.directory):
                    logger.debug("crash_reap_deferred", directory=record.directory)
                    continue

                if not self.disable_dir_cleanup:
                    try:
                        remove_tree(record.directory)
                    except OSError as e:
                        logger.error(
                            "crash_reap_failed",
                            application_id=record.application_id,
                            instance_id=record.instance_id,
                            directory=record.directory,
                            error=str(e),
                        )
                        continue

                self.registry.remove(record.application_id, record.instance_id)
                reaped.append(record.key)
                logger.info(
                    "crashed_instance_reaped",
                    application_id=record.application_id,
                    instance_id=record.instance_id,
                    directory=record.directory,
                )

        if reaped:
            self.metrics.record_crashed_reaped(len(reaped))
        return reaped

    def prepare_for_inspection(self, record: InstanceRecord) -> asyncio.Task[bool] | None:
        """Chown a crashed instance's directory to the agent's effective user.

        The instance ran as a different user, so without this operators
        cannot read what it left behind. Never raises.

        Returns:
            The background chown task, or None if nothing was scheduled.
        """
        if record.state != InstanceState.CRASHED:
            return None

        try:
            task = chown_tree(record.directory, os.geteuid(), os.getegid())
        except RuntimeError as e:
            # No running event loop.
            logger.warning("chown_not_scheduled", directory=record.directory, error=str(e))
            self.metrics.record_chown_failure()
            return None

        self._chowns[record.directory] = task
        task.add_done_callback(
            lambda t, directory=record.directory: self._chown_done(directory, t)
        )
        logger.debug("crashed_instance_chown_scheduled", directory=record.directory)
        return task

    def cleanup_instance(self, record: InstanceRecord) -> asyncio.Task[bool] | None:
        """Handle the directory of an instance that has stopped.

        Crashed instances are kept for inspection (unless flapping); anything
        else has its directory removed. Removing the record is left to the
        caller. Never raises.
        """
        if record.state == InstanceState.CRASHED and not record.flapping:
            return self.prepare_for_inspection(record)

        if self.disable_dir_cleanup:
            return None

        try:
            remove_tree(record.directory)
            logger.debug(
                "instance_dir_cleaned",
                directory=record.directory,
                flapping=record.flapping,
            )
        except OSError as e:
            logger.error("instance_dir_cleanup_failed", directory=record.directory, error=str(e))
        return None

    def _chown_in_flight(self, directory: str) -> bool:
        task = self._chowns.get(directory)
        return task is not None and not task.done()

    def _chown_done(self, directory: str, task: asyncio.Task[bool]) -> None:
        if self._chowns.get(directory) is task:
            del self._chowns[directory]
        if task.cancelled() or not task.result():
            self.metrics.record_chown_failure()

    async def start_reaper_loop(
        self, interval_seconds: float = CRASH_REAP_INTERVAL
    ) -> asyncio.Task[None]:
        """Start a background task that reaps crashed instances periodically.

        The task runs until cancelled (typically at shutdown).

        Args:
            interval_seconds: Seconds between reaper runs.

        Returns:
            The background asyncio.Task that can be cancelled on shutdown.
        """

        async def _loop() -> None:
            logger.info("crash_reaper_started", interval_seconds=interval_seconds)
            while True:
                try:
                    await asyncio.sleep(interval_seconds)
                    self.reap_crashed()
                except asyncio.CancelledError:
                    logger.info("crash_reaper_stopped")
                    return
                except Exception as e:
                    logger.error("crash_reaper_error", error=str(e))

        return asyncio.create_task(_loop(), name="crash_reaper")
