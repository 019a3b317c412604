"""The base resource manager and its replica-balancing allocation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from gpuplugin.rm.devices import AnnotatedID, Devices


class AllocationError(Exception):
    """Raised when a preferred allocation cannot be computed."""


@dataclass
class _ReplicaCount:
    total: int = 0
    available: int = 0

    @property
    def used(self) -> int:
        return self.total - self.available


class ResourceManager:
    """Holds the devices advertised for one resource name."""

    def __init__(self, config: Any, resource: str, devices: Devices) -> None:
        self.config = config
        self.resource = resource
        self.devices = devices

    def distributed_alloc(
        self, available: Sequence[str], required: Sequence[str], size: int
    ) -> list[str]:
        """Return ``size`` devices, spreading replicas evenly over the underlying GPUs.

        Devices in ``required`` always come first; the rest are picked one at a
        time from the GPU with the fewest replicas already in use.
        """
        candidates = (
            self.devices.subset(available)
            .difference(self.devices.subset(required))
            .get_ids()
        )
        needed = size - len(required)
        if len(candidates) < needed:
            raise AllocationError("not enough available devices to satisfy allocation")

        replicas: dict[str, _ReplicaCount] = {}
        for candidate in candidates:
            replicas.setdefault(AnnotatedID(candidate).get_id(), _ReplicaCount()).available += 1
        for device_id in self.devices:
            count = replicas.get(AnnotatedID(device_id).get_id())
            if count is not None:
                count.total += 1

        chosen: list[str] = []
        for _ in range(needed):
            candidates.sort(key=lambda c: replicas[AnnotatedID(c).get_id()].used)
            pick = candidates.pop(0)
            replicas[AnnotatedID(pick).get_id()].available -= 1
            chosen.append(pick)

        return [*required, *chosen]