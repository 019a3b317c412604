"""Devices managed by a resource manager, and replica-annotated device IDs."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol

HEALTHY = "Healthy"
UNHEALTHY = "Unhealthy"

_ANNOTATION_SEPARATOR = "::"
_REPLICA_PATTERN = re.compile(r"[+-]?[0-9]+")
_DXG_PATH = "/dev/dxg"


class DeviceInfo(Protocol):
    """What is needed to construct a Device."""

    def get_uuid(self) -> str: ...

    def get_paths(self) -> list[str]: ...

    def get_numa_node(self) -> tuple[bool, int]: ...


@dataclass
class Device:
    """A device advertised to the kubelet, with its paths and index."""

    id: str
    index: str = ""
    paths: list[str] = field(default_factory=list)
    health: str = HEALTHY
    numa_node: Optional[int] = None

    def aligned_allocation_supported(self) -> bool:
        """Return whether the device supports an aligned allocation."""
        if self.is_mig_device():
            return False
        return _DXG_PATH not in self.paths

    def is_mig_device(self) -> bool:
        """Return whether this is a MIG device."""
        return ":" in self.index

    def get_uuid(self) -> str:
        """Return the UUID part of the (possibly annotated) device ID."""
        return AnnotatedID(self.id).get_id()


class Devices(dict):
    """A mapping of device ID to Device."""

    def contains(self, *ids: str) -> bool:
        """Return whether every one of ``ids`` is present."""
        return all(device_id in self for device_id in ids)

    def get_by_id(self, id: str) -> Optional[Device]:
        """Return the device with the given ID, or None."""
        return self.get(id)

    def get_by_index(self, index: str) -> Optional[Device]:
        """Return the device with the given index, or None."""
        return next((d for d in self.values() if d.index == index), None)

    def subset(self, ids: Iterable[str]) -> Devices:
        """Return the devices whose IDs are in ``ids``; unknown IDs are ignored."""
        return Devices((i, self[i]) for i in ids if i in self)

    def difference(self, other: Devices) -> Devices:
        """Return the devices present here but not in ``other``."""
        return Devices((i, d) for i, d in self.items() if i not in other)

    def get_ids(self) -> list[str]:
        """Return the IDs of all devices."""
        return [d.id for d in self.values()]

    def get_indices(self) -> list[str]:
        """Return the indices of all devices."""
        return [d.index for d in self.values()]

    def get_paths(self) -> list[str]:
        """Return the paths of all devices, concatenated."""
        return [p for d in self.values() for p in d.paths]

    def aligned_allocation_supported(self) -> bool:
        """Return whether every device supports an aligned allocation."""
        return all(d.aligned_allocation_supported() for d in self.values())


class AnnotatedID(str):
    """A device ID that may carry a replica number, as ``<id>::<replica>``."""

    def has_annotations(self) -> bool:
        """Return whether the ID carries a replica annotation."""
        return _ANNOTATION_SEPARATOR in self

    def split(self) -> tuple[str, int]:  # type: ignore[override]
        """Return the plain ID and the replica number (0 when absent or malformed)."""
        base, sep, replica = self.partition(_ANNOTATION_SEPARATOR)
        if not sep:
            return str(self), 0
        if _REPLICA_PATTERN.fullmatch(replica):
            return base, int(replica)
        return base, 0

    def get_id(self) -> str:
        """Return the plain ID without its annotation."""
        return self.split()[0]


def new_annotated_id(id: str, replica: int) -> AnnotatedID:
    """Return an annotated ID for the given replica of ``id``."""
    return AnnotatedID(f"{id}{_ANNOTATION_SEPARATOR}{replica}")


def any_has_annotations(ids: Iterable[str]) -> bool:
    """Return whether any of the IDs carries a replica annotation."""
    return any(AnnotatedID(i).has_annotations() for i in ids)


def strip_annotations(ids: Iterable[str]) -> list[str]:
    """Return the plain IDs of the given annotated IDs."""
    return [AnnotatedID(i).get_id() for i in ids]


def build_device(index: str, info: DeviceInfo) -> Device:
    """Build a healthy Device at ``index`` from the given device information."""
    try:
        uuid = info.get_uuid()
    except Exception as err:
        raise RuntimeError(f"error getting UUID device: {err}") from err
    try:
        paths = info.get_paths()
    except Exception as err:
        raise RuntimeError(f"error getting device paths: {err}") from err
    try:
        has_numa, numa = info.get_numa_node()
    except Exception as err:
        raise RuntimeError(f"error getting device NUMA node: {err}") from err

    return Device(
        id=uuid,
        index=index,
        paths=list(paths or []),
        health=HEALTHY,
        numa_node=numa if has_numa else None,
    )


def c_string(values: Iterable[int]) -> str:
    """Return the text of a NUL-terminated sequence of (possibly signed) byte values."""
    data = bytearray()
    for value in values:
        if value == 0:
            break
        data.append(value & 0xFF)
    return data.decode("utf-8", errors="replace")