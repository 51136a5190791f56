"""Staging of instance sandboxes from uploaded droplet archives.

Archives come from outside the agent, so every failure on this path is
reported as a boolean instead of an exception.
"""

import contextlib
import os
import tarfile
import zlib
from collections.abc import Mapping
from typing import Any

import structlog

from instances.fs_utils import ensure_writable
from instances.runtimes import RuntimeRegistry, RuntimeSpec, runtime_name
from instances.security import validate_archive_members

logger = structlog.get_logger(__name__)

STARTUP_SCRIPT = "startup"
LOCAL_RUNTIME_PLACEHOLDER = "%VCAP_LOCAL_RUNTIME%"

# KeyError: tarfile cannot find the target of a hard link member.
_ARCHIVE_ERRORS = (tarfile.TarError, EOFError, zlib.error, KeyError, ValueError, OSError)


class Stager:
    """Creates instance directories and unpacks droplets into them."""

    def __init__(self, runtimes: RuntimeRegistry) -> None:
        self.runtimes = runtimes

    def stage(
        self,
        archive_path: str,
        instance_directory: str,
        runtime: str | RuntimeSpec | Mapping[str, Any] | None = None,
    ) -> bool:
        """Create ``instance_directory`` and extract ``archive_path`` into it.

        On extraction failure the directory is left in place; the caller
        decides whether to keep it for diagnosis. Whenever staging fails after
        extraction started, any startup script is removed so nothing can run a
        half-staged sandbox.

        Args:
            archive_path: Droplet archive (tar, optionally compressed).
            instance_directory: Sandbox directory to create. Must not exist.
            runtime: Runtime to bind into the startup script, if any.

        Returns:
            True if the sandbox is fully staged.
        """
        parent = os.path.dirname(os.path.abspath(instance_directory))
        try:
            ensure_writable(parent)
            os.mkdir(instance_directory)
        except OSError as e:
            logger.warning(
                "instance_dir_create_failed",
                instance_directory=instance_directory,
                error=str(e),
            )
            return False

        if not self._extract(archive_path, instance_directory):
            self._remove_startup(instance_directory)
            return False

        if not self.bind_local_runtime(instance_directory, runtime):
            self._remove_startup(instance_directory)
            return False

        logger.info(
            "instance_staged",
            instance_directory=instance_directory,
            runtime=runtime_name(runtime),
        )
        return True

    def _remove_startup(self, instance_directory: str) -> None:
        with contextlib.suppress(OSError):
            os.remove(os.path.join(instance_directory, STARTUP_SCRIPT))

    def _extract(self, archive_path: str, instance_directory: str) -> bool:
        """Extract a droplet archive after validating its member paths."""
        try:
            with tarfile.open(archive_path, mode="r:*") as tar:
                members = tar.getmembers()
                is_valid, error_msg = validate_archive_members(
                    instance_directory, members
                )
                if not is_valid:
                    logger.warning(
                        "droplet_archive_rejected",
                        archive_path=archive_path,
                        reason=error_msg,
                    )
                    return False
                tar.extractall(instance_directory, members=members, filter="data")
        except _ARCHIVE_ERRORS as e:
            logger.warning(
                "droplet_extract_failed",
                archive_path=archive_path,
                instance_directory=instance_directory,
                error=str(e),
            )
            return False

        logger.debug(
            "droplet_extracted",
            archive_path=archive_path,
            instance_directory=instance_directory,
            members=len(members),
        )
        return True

    def bind_local_runtime(
        self,
        instance_directory: str,
        runtime: str | RuntimeSpec | Mapping[str, Any] | None,
    ) -> bool:
        """Substitute the runtime's executable into the startup script.

        Replaces the first ``%VCAP_LOCAL_RUNTIME%`` in ``<dir>/startup``. A
        missing directory, missing script or script without the placeholder
        is a no-op.

        Returns:
            False only if the script needs a runtime that cannot be resolved
            or cannot be rewritten.
        """
        startup = os.path.join(instance_directory, STARTUP_SCRIPT)
        if not os.path.isfile(startup):
            return True

        try:
            with open(startup, encoding="utf-8", errors="surrogateescape") as f:
                contents = f.read()
        except OSError as e:
            logger.warning("startup_read_failed", path=startup, error=str(e))
            return False

        if LOCAL_RUNTIME_PLACEHOLDER not in contents:
            return True

        name = runtime_name(runtime)
        entry = self.runtimes.get(name) if name else None
        if entry is None or not entry.expanded_executable:
            logger.warning(
                "local_runtime_unresolved",
                instance_directory=instance_directory,
                runtime=name,
            )
            return False

        contents = contents.replace(
            LOCAL_RUNTIME_PLACEHOLDER, entry.expanded_executable, 1
        )
        try:
            with open(startup, "w", encoding="utf-8", errors="surrogateescape") as f:
                f.write(contents)
        except OSError as e:
            logger.warning("startup_write_failed", path=startup, error=str(e))
            return False

        logger.debug(
            "local_runtime_bound",
            path=startup,
            runtime=name,
            executable=entry.expanded_executable,
        )
        return True
