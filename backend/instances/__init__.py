"""Instance directory lifecycle and runtime registry.

This package manages the on-disk side of application instances: staging
droplets into sandbox directories, validating language runtimes, watching
droplet filesystem usage and reclaiming directories of crashed or untracked
instances.
"""

from instances.disk_usage import DiskUsageMonitor
from instances.fs_utils import chown_tree, ensure_writable, remove_tree
from instances.lifecycle import InstanceLifecycleManager
from instances.registry import DropletRegistry, InstanceRecord
from instances.runtimes import RuntimeEntry, RuntimeRegistry, RuntimeSpec
from instances.stager import Stager

__all__ = [
    "DiskUsageMonitor",
    "DropletRegistry",
    "InstanceLifecycleManager",
    "InstanceRecord",
    "RuntimeEntry",
    "RuntimeRegistry",
    "RuntimeSpec",
    "Stager",
    "chown_tree",
    "ensure_writable",
    "remove_tree",
]
