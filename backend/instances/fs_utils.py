"""Filesystem helpers shared by every component that mutates instance directories.

All directory creation and removal goes through this module so that the
writability check happens in one place. Ownership changes run as detached
asyncio subprocesses and only ever log their failures.
"""

import asyncio
import os
import shutil

import structlog

logger = structlog.get_logger(__name__)

# Strong references to in-flight chown tasks; the loop only keeps weak ones.
_background_tasks: set[asyncio.Task[bool]] = set()


def ensure_writable(path: str) -> None:
    """Check that ``path`` is an existing directory writable by this process.

    Args:
        path: Directory to check.

    Raises:
        PermissionError: If the path is missing, not a directory, or not writable.
    """
    if not (os.path.isdir(path) and os.access(path, os.W_OK | os.X_OK)):
        raise PermissionError(f"Directory '{path}' is not writable")


def remove_tree(path: str) -> None:
    """Recursively delete ``path``.

    A path that does not exist is a no-op. The parent directory is checked for
    writability before anything is removed, so a permission problem surfaces
    without touching the tree.

    Args:
        path: File or directory to remove.

    Raises:
        PermissionError: If the parent directory is not writable.
        OSError: If removal fails part way (e.g. a busy mount point).
    """
    if not os.path.lexists(path):
        return

    ensure_writable(os.path.dirname(os.path.abspath(path)) or "/")

    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        else:
            os.remove(path)
    except FileNotFoundError:
        # Raced with another remover.
        return
    except OSError as e:
        logger.error("remove_tree_failed", path=path, error=str(e))
        raise OSError(f"Failed to remove '{path}': {e}") from e

    logger.debug("tree_removed", path=path)


async def _run_chown(path: str, uid: int, gid: int) -> bool:
    """Run ``chown -R`` and log the outcome. Never raises."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "chown",
            "-R",
            f"{uid}:{gid}",
            path,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await proc.communicate()
    except OSError as e:
        logger.warning("chown_spawn_failed", path=path, error=str(e))
        return False

    if proc.returncode != 0:
        logger.warning(
            "chown_failed",
            path=path,
            exit_code=proc.returncode,
            stderr=stderr.decode("utf-8", errors="replace").strip()[:200],
        )
        return False

    logger.debug("chown_complete", path=path, uid=uid, gid=gid)
    return True


def chown_tree(path: str, uid: int, gid: int) -> asyncio.Task[bool]:
    """Reassign ownership of ``path`` recursively in the background.

    Must be called from inside a running event loop. The returned task resolves
    to True on success; callers are free to ignore it.

    Args:
        path: Root of the tree to chown.
        uid: Target user id.
        gid: Target group id.

    Returns:
        The background task running the chown.
    """
    task = asyncio.get_running_loop().create_task(
        _run_chown(path, uid, gid), name=f"chown:{path}"
    )
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task
