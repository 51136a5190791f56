"""Tests for instances/lifecycle.py -- untracked sweep, crash reaping, chown.

Each test gets its own droplets root under ``tmp_path``; nothing outside it is
touched.
"""

import asyncio
import os
import time
from collections.abc import Callable
from unittest.mock import patch

import pytest

from instances import fs_utils
from instances.lifecycle import InstanceLifecycleManager
from instances.registry import DropletRegistry, InstanceRecord
from metrics import AgentMetrics
from models.schemas import InstanceState

TIMEOUT = 3600


def _crashed_record(
    directory: str,
    *,
    application_id: int | str = 0,
    instance_id: int | str = 0,
    age: float = TIMEOUT + 60,
    flapping: bool = False,
) -> InstanceRecord:
    return InstanceRecord(
        application_id=application_id,
        instance_id=instance_id,
        directory=directory,
        state=InstanceState.CRASHED,
        state_timestamp=time.time() - age,
        flapping=flapping,
    )


# =========================================================================
# sweep_untracked
# =========================================================================


class TestSweepUntracked:
    def test_keeps_instance_dirs_for_tracked_apps(
        self,
        lifecycle: InstanceLifecycleManager,
        registry: DropletRegistry,
        make_instance_dir: Callable[[str], str],
    ) -> None:
        inst_dir = make_instance_dir("test_instance_dir")
        registry.add(InstanceRecord(application_id=1, instance_id=0, directory=inst_dir))

        removed = lifecycle.sweep_untracked()

        assert removed == []
        assert os.path.isdir(inst_dir)

    def test_removes_instance_dirs_for_untracked_apps(
        self,
        lifecycle: InstanceLifecycleManager,
        make_instance_dir: Callable[[str], str],
        metrics: AgentMetrics,
    ) -> None:
        inst_dir = make_instance_dir("test_instance_dir")

        removed = lifecycle.sweep_untracked()

        assert removed == [os.path.realpath(inst_dir)]
        assert not os.path.exists(inst_dir)
        assert metrics.snapshot().untracked_dirs_removed == 1

    def test_removes_exactly_the_untracked_set(
        self,
        lifecycle: InstanceLifecycleManager,
        registry: DropletRegistry,
        make_instance_dir: Callable[[str], str],
    ) -> None:
        tracked = [make_instance_dir(f"tracked_{i}") for i in range(3)]
        untracked = [make_instance_dir(f"orphan_{i}") for i in range(2)]
        for i, path in enumerate(tracked):
            state = InstanceState.CRASHED if i == 0 else InstanceState.RUNNING
            registry.add(
                InstanceRecord(application_id="app", instance_id=i, directory=path, state=state)
            )

        lifecycle.sweep_untracked()

        assert all(os.path.isdir(path) for path in tracked)
        assert not any(os.path.exists(path) for path in untracked)

    def test_ignores_plain_files(
        self, lifecycle: InstanceLifecycleManager, droplets_root: str
    ) -> None:
        stray = os.path.join(droplets_root, "README")
        with open(stray, "w") as f:
            f.write("not an instance")

        assert lifecycle.sweep_untracked() == []
        assert os.path.exists(stray)

    def test_missing_root_is_noop(
        self, registry: DropletRegistry, metrics: AgentMetrics, tmp_path
    ) -> None:
        manager = InstanceLifecycleManager(str(tmp_path / "missing"), registry, metrics)
        assert manager.sweep_untracked() == []

    def test_removal_failure_does_not_stop_sweep(
        self,
        lifecycle: InstanceLifecycleManager,
        make_instance_dir: Callable[[str], str],
    ) -> None:
        first = make_instance_dir("a_busy")
        second = make_instance_dir("b_orphan")

        real_remove = fs_utils.remove_tree

        def _remove(path: str) -> None:
            if path.endswith("a_busy"):
                raise OSError("Device or resource busy")
            real_remove(path)

        with patch("instances.lifecycle.remove_tree", side_effect=_remove):
            removed = lifecycle.sweep_untracked()

        assert os.path.isdir(first)
        assert not os.path.exists(second)
        assert removed == [os.path.realpath(second)]


# =========================================================================
# reap_crashed
# =========================================================================


class TestReapCrashed:
    def test_removes_instance_dirs_for_crashed_apps(
        self,
        lifecycle: InstanceLifecycleManager,
        registry: DropletRegistry,
        make_instance_dir: Callable[[str], str],
        metrics: AgentMetrics,
    ) -> None:
        inst_dir = make_instance_dir("test_instance_dir")
        registry.add(_crashed_record(inst_dir))

        reaped = lifecycle.reap_crashed()

        assert reaped == [(0, 0)]
        assert not os.path.exists(inst_dir)
        assert registry.get(0, 0) is None
        assert registry.application_ids() == []
        assert metrics.snapshot().crashed_instances_reaped == 1

    def test_recent_crash_is_kept(
        self,
        lifecycle: InstanceLifecycleManager,
        registry: DropletRegistry,
        make_instance_dir: Callable[[str], str],
    ) -> None:
        inst_dir = make_instance_dir("test_instance_dir")
        registry.add(_crashed_record(inst_dir, age=0))

        assert lifecycle.reap_crashed() == []
        assert os.path.isdir(inst_dir)
        assert (0, 0) in registry

    def test_crash_exactly_at_timeout_is_kept(
        self,
        lifecycle: InstanceLifecycleManager,
        registry: DropletRegistry,
        make_instance_dir: Callable[[str], str],
    ) -> None:
        inst_dir = make_instance_dir("test_instance_dir")
        record = _crashed_record(inst_dir)
        registry.add(record)

        assert lifecycle.reap_crashed(now=record.state_timestamp + TIMEOUT) == []
        assert os.path.isdir(inst_dir)

    @pytest.mark.parametrize(
        "state",
        [InstanceState.STARTING, InstanceState.RUNNING, InstanceState.STOPPED, InstanceState.DELETED],
    )
    def test_old_non_crashed_instance_is_untouched(
        self,
        lifecycle: InstanceLifecycleManager,
        registry: DropletRegistry,
        make_instance_dir: Callable[[str], str],
        state: InstanceState,
    ) -> None:
        inst_dir = make_instance_dir("test_instance_dir")
        registry.add(
            InstanceRecord(
                application_id=0,
                instance_id=0,
                directory=inst_dir,
                state=state,
                state_timestamp=time.time() - TIMEOUT * 2,
            )
        )

        assert lifecycle.reap_crashed() == []
        assert os.path.isdir(inst_dir)
        assert (0, 0) in registry

    def test_is_idempotent(
        self,
        lifecycle: InstanceLifecycleManager,
        registry: DropletRegistry,
        make_instance_dir: Callable[[str], str],
    ) -> None:
        registry.add(_crashed_record(make_instance_dir("test_instance_dir")))

        assert lifecycle.reap_crashed() == [(0, 0)]
        assert lifecycle.reap_crashed() == []

    def test_other_instances_of_app_survive(
        self,
        lifecycle: InstanceLifecycleManager,
        registry: DropletRegistry,
        make_instance_dir: Callable[[str], str],
    ) -> None:
        crashed_dir = make_instance_dir("crashed")
        running_dir = make_instance_dir("running")
        registry.add(_crashed_record(crashed_dir, application_id=7, instance_id="a"))
        registry.add(
            InstanceRecord(
                application_id=7,
                instance_id="b",
                directory=running_dir,
                state=InstanceState.RUNNING,
            )
        )

        lifecycle.reap_crashed()

        assert registry.application_ids() == [7]
        assert list(registry.instances_for(7)) == ["b"]
        assert os.path.isdir(running_dir)

    def test_failed_removal_keeps_record_for_next_tick(
        self,
        lifecycle: InstanceLifecycleManager,
        registry: DropletRegistry,
        make_instance_dir: Callable[[str], str],
    ) -> None:
        inst_dir = make_instance_dir("test_instance_dir")
        registry.add(_crashed_record(inst_dir))

        with patch(
            "instances.lifecycle.remove_tree", side_effect=OSError("busy")
        ):
            assert lifecycle.reap_crashed() == []

        assert (0, 0) in registry
        assert lifecycle.reap_crashed() == [(0, 0)]
        assert not os.path.exists(inst_dir)

    def test_disable_dir_cleanup_keeps_directory(
        self,
        registry: DropletRegistry,
        metrics: AgentMetrics,
        droplets_root: str,
        make_instance_dir: Callable[[str], str],
    ) -> None:
        manager = InstanceLifecycleManager(
            droplets_root, registry, metrics, crash_reap_timeout=TIMEOUT, disable_dir_cleanup=True
        )
        inst_dir = make_instance_dir("test_instance_dir")
        registry.add(_crashed_record(inst_dir))

        assert manager.reap_crashed() == [(0, 0)]
        assert os.path.isdir(inst_dir)
        assert len(registry) == 0

    async def test_reap_waits_for_inflight_chown(
        self,
        lifecycle: InstanceLifecycleManager,
        registry: DropletRegistry,
        make_instance_dir: Callable[[str], str],
    ) -> None:
        inst_dir = make_instance_dir("test_instance_dir")
        record = _crashed_record(inst_dir)
        registry.add(record)

        task = lifecycle.prepare_for_inspection(record)
        assert task is not None

        if not task.done():
            assert lifecycle.reap_crashed() == []
            assert os.path.isdir(inst_dir)

        await task
        assert lifecycle.reap_crashed() == [(0, 0)]
        assert not os.path.exists(inst_dir)


# =========================================================================
# prepare_for_inspection / cleanup_instance
# =========================================================================


class TestPrepareForInspection:
    async def test_rechowns_crashed_instance_dir(
        self,
        lifecycle: InstanceLifecycleManager,
        make_instance_dir: Callable[[str], str],
    ) -> None:
        inst_dir = make_instance_dir("test_instance_dir")
        record = _crashed_record(inst_dir)

        with patch("instances.lifecycle.chown_tree", wraps=fs_utils.chown_tree) as chown:
            task = lifecycle.prepare_for_inspection(record)
            assert task is not None
            assert await task is True

        chown.assert_called_once_with(inst_dir, os.geteuid(), os.getegid())
        assert os.stat(inst_dir).st_uid == os.geteuid()

    async def test_non_crashed_instance_is_ignored(
        self,
        lifecycle: InstanceLifecycleManager,
        make_instance_dir: Callable[[str], str],
    ) -> None:
        record = InstanceRecord(
            application_id=0,
            instance_id=0,
            directory=make_instance_dir("test_instance_dir"),
            state=InstanceState.RUNNING,
        )
        assert lifecycle.prepare_for_inspection(record) is None

    async def test_chown_failure_is_counted_not_raised(
        self,
        lifecycle: InstanceLifecycleManager,
        droplets_root: str,
        metrics: AgentMetrics,
    ) -> None:
        record = _crashed_record(os.path.join(droplets_root, "vanished"))

        task = lifecycle.prepare_for_inspection(record)
        assert task is not None
        assert await task is False
        await asyncio.sleep(0)

        assert metrics.snapshot().chown_failures == 1

    def test_without_event_loop_does_not_raise(
        self,
        lifecycle: InstanceLifecycleManager,
        make_instance_dir: Callable[[str], str],
        metrics: AgentMetrics,
    ) -> None:
        record = _crashed_record(make_instance_dir("test_instance_dir"))
        assert lifecycle.prepare_for_inspection(record) is None
        assert metrics.snapshot().chown_failures == 1


class TestCleanupInstance:
    async def test_crashed_instance_is_kept_and_chowned(
        self,
        lifecycle: InstanceLifecycleManager,
        make_instance_dir: Callable[[str], str],
    ) -> None:
        inst_dir = make_instance_dir("test_instance_dir")

        task = lifecycle.cleanup_instance(_crashed_record(inst_dir, age=0))

        assert task is not None
        await task
        assert os.path.isdir(inst_dir)

    def test_stopped_instance_dir_is_removed(
        self,
        lifecycle: InstanceLifecycleManager,
        make_instance_dir: Callable[[str], str],
    ) -> None:
        inst_dir = make_instance_dir("test_instance_dir")
        record = InstanceRecord(
            application_id=0, instance_id=0, directory=inst_dir, state=InstanceState.STOPPED
        )

        assert lifecycle.cleanup_instance(record) is None
        assert not os.path.exists(inst_dir)

    def test_flapping_crashed_instance_dir_is_removed(
        self,
        lifecycle: InstanceLifecycleManager,
        make_instance_dir: Callable[[str], str],
    ) -> None:
        inst_dir = make_instance_dir("test_instance_dir")

        lifecycle.cleanup_instance(_crashed_record(inst_dir, age=0, flapping=True))

        assert not os.path.exists(inst_dir)


# =========================================================================
# Reaper loop
# =========================================================================


class TestReaperLoop:
    async def test_loop_reaps_and_stops_on_cancel(
        self,
        lifecycle: InstanceLifecycleManager,
        registry: DropletRegistry,
        make_instance_dir: Callable[[str], str],
    ) -> None:
        inst_dir = make_instance_dir("test_instance_dir")
        registry.add(_crashed_record(inst_dir))

        task = await lifecycle.start_reaper_loop(interval_seconds=0.01)
        for _ in range(200):
            if not os.path.exists(inst_dir):
                break
            await asyncio.sleep(0.01)

        task.cancel()
        await task

        assert not os.path.exists(inst_dir)
        assert task.done()

    async def test_loop_survives_tick_errors(
        self, lifecycle: InstanceLifecycleManager
    ) -> None:
        calls: list[int] = []

        def _boom(now: float | None = None) -> list:
            calls.append(1)
            raise RuntimeError("tick failed")

        with patch.object(lifecycle, "reap_crashed", side_effect=_boom):
            task = await lifecycle.start_reaper_loop(interval_seconds=0.01)
            for _ in range(200):
                if len(calls) >= 2:
                    break
                await asyncio.sleep(0.01)
            task.cancel()
            await task

        assert len(calls) >= 2
