"""Maps of resource names to devices, and time-slicing replication."""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Protocol, Sequence

from gpuplugin.rm.devices import Device, DeviceInfo, Devices, build_device, new_annotated_id


class DeviceMapError(Exception):
    """Raised when a device map cannot be built or updated."""


class _DeviceRef(Protocol):
    def is_uuid(self) -> bool: ...

    def is_gpu_index(self) -> bool: ...

    def is_mig_index(self) -> bool: ...


class _ReplicatedDevices(Protocol):
    all: bool
    count: int
    list: Sequence[Any]


class _ReplicatedResource(Protocol):
    name: str
    rename: str
    replicas: int
    devices: _ReplicatedDevices


class DeviceMap(dict):
    """A mapping of resource name to the Devices for that resource."""

    def set_entry(self, name: str, index: str, info: DeviceInfo) -> None:
        """Build a device from ``info`` and insert it under ``name``."""
        try:
            device = build_device(index, info)
        except Exception as err:
            raise DeviceMapError(f"error building Device: {err}") from err
        self.insert(name, device)

    def insert(self, name: str, device: Device) -> None:
        """Insert ``device`` under ``name``, replacing any device with the same ID."""
        self.setdefault(name, Devices())[device.id] = device

    def merge(self, other: DeviceMap) -> None:
        """Insert every device of ``other`` into this map."""
        for name, devices in other.items():
            for device in devices.values():
                self.insert(name, device)

    def is_empty(self) -> bool:
        """Return whether no resource has any device."""
        return not any(self.values())

    def get_ids_of_devices_to_replicate(self, resource: _ReplicatedResource) -> list[str]:
        """Return the IDs of the devices of ``resource`` that are to be replicated."""
        devices = self.get(resource.name)
        if devices is None:
            return []

        selection = resource.devices
        if selection.all:
            return devices.get_ids()

        if selection.count > 0:
            if selection.count > len(devices):
                raise DeviceMapError(
                    f"requested {selection.count} devices to be replicated, "
                    f"but only {len(devices)} devices available"
                )
            return devices.get_ids()[: selection.count]

        if selection.list:
            ids = []
            for ref in selection.list:
                if ref.is_uuid():
                    device = devices.get_by_id(str(ref))
                    if device is None:
                        raise DeviceMapError(f"no matching device with UUID: {ref}")
                    ids.append(device.id)
                if ref.is_gpu_index() or ref.is_mig_index():
                    device = devices.get_by_index(str(ref))
                    if device is None:
                        raise DeviceMapError(f"no matching device at index: {ref}")
                    ids.append(device.id)
            return ids

        raise DeviceMapError("unexpected error")


def update_device_map_with_replicas(config: Any, devices: DeviceMap) -> DeviceMap:
    """Return a device map with replicas added per the time-slicing configuration."""
    resources = config.sharing.time_slicing.resources
    updated = DeviceMap()

    replicated_names = {r.name for r in resources}
    for name, ds in devices.items():
        if name not in replicated_names:
            updated[name] = Devices(ds)

    for resource in resources:
        try:
            ids = devices.get_ids_of_devices_to_replicate(resource)
        except DeviceMapError as err:
            raise DeviceMapError(
                f"unable to get IDs of devices to replicate for '{resource.name}' resource: {err}"
            ) from err
        if not ids:
            continue

        originals = devices[resource.name]
        for device in originals.difference(originals.subset(ids)).values():
            updated.insert(resource.name, device)

        name = resource.rename or resource.name
        for device_id in ids:
            original = originals[device_id]
            for replica in range(resource.replicas):
                updated.insert(
                    name,
                    replace(
                        original,
                        id=str(new_annotated_id(device_id, replica)),
                        paths=list(original.paths),
                    ),
                )

    return updated