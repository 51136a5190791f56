"""Droplet state map: what this agent believes is running.

Records are keyed by ``(application_id, instance_id)``. All access goes
through ``DropletRegistry`` so that the lifecycle collaborator and the crash
reaper never observe a half-updated table.
"""

import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass, field

import structlog

from models.schemas import InstanceState

logger = structlog.get_logger(__name__)

InstanceKey = tuple[int | str, int | str]


@dataclass
class InstanceRecord:
    """One application instance and its sandbox directory."""

    application_id: int | str
    instance_id: int | str
    directory: str
    state: InstanceState = InstanceState.STARTING
    state_timestamp: float = field(default_factory=time.time)
    runtime: str | None = None
    flapping: bool = False

    @property
    def key(self) -> InstanceKey:
        return (self.application_id, self.instance_id)

    def set_state(self, state: InstanceState, now: float | None = None) -> None:
        """Move to ``state`` and stamp the transition time."""
        self.state = state
        self.state_timestamp = time.time() if now is None else now


class DropletRegistry:
    """Lock-guarded table of instance records.

    Iteration helpers return snapshots, so callers may mutate the registry
    while walking the result.
    """

    def __init__(self) -> None:
        self._droplets: dict[int | str, dict[int | str, InstanceRecord]] = {}
        self._lock = threading.RLock()

    def add(self, record: InstanceRecord) -> None:
        """Insert or replace the record for its key."""
        with self._lock:
            self._droplets.setdefault(record.application_id, {})[
                record.instance_id
            ] = record
        logger.debug(
            "instance_tracked",
            application_id=record.application_id,
            instance_id=record.instance_id,
            directory=record.directory,
        )

    def get(
        self, application_id: int | str, instance_id: int | str
    ) -> InstanceRecord | None:
        with self._lock:
            return self._droplets.get(application_id, {}).get(instance_id)

    def remove(
        self, application_id: int | str, instance_id: int | str
    ) -> InstanceRecord | None:
        """Remove a record, dropping the application once it has no instances.

        Returns:
            The removed record, or None if it was not tracked.
        """
        with self._lock:
            instances = self._droplets.get(application_id)
            if instances is None:
                return None
            record = instances.pop(instance_id, None)
            if not instances:
                del self._droplets[application_id]
            return record

    def records(self) -> list[InstanceRecord]:
        with self._lock:
            return [
                record
                for instances in self._droplets.values()
                for record in instances.values()
            ]

    def items(self) -> list[tuple[InstanceKey, InstanceRecord]]:
        return [(record.key, record) for record in self.records()]

    def directories(self) -> set[str]:
        """Absolute paths of every tracked instance directory."""
        return {record.directory for record in self.records() if record.directory}

    def application_ids(self) -> list[int | str]:
        with self._lock:
            return list(self._droplets)

    def instances_for(self, application_id: int | str) -> dict[int | str, InstanceRecord]:
        with self._lock:
            return dict(self._droplets.get(application_id, {}))

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, tuple) or len(key) != 2:
            return False
        return self.get(key[0], key[1]) is not None

    def __len__(self) -> int:
        with self._lock:
            return sum(len(instances) for instances in self._droplets.values())

    def __iter__(self) -> Iterator[InstanceRecord]:
        return iter(self.records())
