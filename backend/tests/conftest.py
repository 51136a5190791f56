"""Shared test fixtures for backend tests.

Provides throwaway droplets roots, registries, a fake runtime executable and
a droplet archive factory so tests never touch real agent state.
"""

import io
import os
import stat
import sys
import tarfile
from collections.abc import Callable
from pathlib import Path

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from instances.runtimes import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(Path(__file__).resolve().parent.parent)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from instances.lifecycle import InstanceLifecycleManager  # noqa: E402
from instances.registry import DropletRegistry  # noqa: E402
from instances.runtimes import RuntimeEntry, RuntimeRegistry  # noqa: E402
from metrics import AgentMetrics  # noqa: E402

FAKE_RUNTIME_VERSION = "1.8.7"


def seed_runtime(registry: RuntimeRegistry, entry: RuntimeEntry) -> None:
    """Install an already validated entry without probing anything."""
    registry._runtimes[entry.name] = entry


_FAKE_RUNTIME_SCRIPT = f"""#!/bin/sh
case "$1" in
  --version) echo "fakeruby {FAKE_RUNTIME_VERSION} (2012-02-08 patchlevel 358)"; exit 0 ;;
  -e) echo "{FAKE_RUNTIME_VERSION}"; exit 0 ;;
esac
echo "fakeruby: invalid option $1" >&2
exit 1
"""

# ---------------------------------------------------------------------------
# Filesystem layout
# ---------------------------------------------------------------------------


@pytest.fixture()
def droplets_root(tmp_path: Path) -> str:
    """Create an empty droplets root (``<tmp>/apps``)."""
    root = tmp_path / "apps"
    root.mkdir()
    return str(root)


@pytest.fixture()
def make_instance_dir(droplets_root: str) -> Callable[[str], str]:
    """Factory creating an instance directory under the droplets root."""

    def _make(name: str = "test_instance_dir") -> str:
        path = os.path.join(droplets_root, name)
        os.mkdir(path)
        return path

    return _make


# ---------------------------------------------------------------------------
# Agent components
# ---------------------------------------------------------------------------


@pytest.fixture()
def metrics() -> AgentMetrics:
    return AgentMetrics()


@pytest.fixture()
def registry() -> DropletRegistry:
    return DropletRegistry()


@pytest.fixture()
def lifecycle(
    droplets_root: str, registry: DropletRegistry, metrics: AgentMetrics
) -> InstanceLifecycleManager:
    return InstanceLifecycleManager(
        droplets_root, registry, metrics, crash_reap_timeout=3600
    )


@pytest.fixture()
def runtimes() -> RuntimeRegistry:
    """A runtime registry that supports only ``ruby18``."""
    return RuntimeRegistry(["ruby18"], probe_timeout=5.0)


# ---------------------------------------------------------------------------
# Runtimes and droplets
# ---------------------------------------------------------------------------


@pytest.fixture()
def fake_ruby(tmp_path: Path) -> str:
    """Write an executable that answers version probes like an interpreter.

    ``--version`` and ``-e ...`` print the version and exit 0; anything else
    exits 1.
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)
    script = bin_dir / "fakeruby"
    script.write_text(_FAKE_RUNTIME_SCRIPT)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(script)


def make_droplet(path: Path, files: dict[str, str], *, mode: int = 0o755) -> str:
    """Write a gzipped droplet archive containing ``files``."""
    with tarfile.open(path, "w:gz") as tar:
        for name, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name=name)
            info.size = len(data)
            info.mode = mode
            tar.addfile(info, io.BytesIO(data))
    return str(path)


@pytest.fixture()
def droplet_factory(tmp_path: Path) -> Callable[..., str]:
    """Factory for droplet archives under ``<tmp>/droplets``."""
    archives = tmp_path / "droplets"
    archives.mkdir()
    counter = iter(range(1_000_000))

    def _make(files: dict[str, str], *, mode: int = 0o755) -> str:
        return make_droplet(archives / f"droplet_{next(counter)}.tgz", files, mode=mode)

    return _make
