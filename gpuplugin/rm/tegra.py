"""Resource management for integrated Tegra GPUs."""

from __future__ import annotations

from typing import Any, Optional, Sequence

from gpuplugin.rm.device_map import DeviceMap, DeviceMapError, update_device_map_with_replicas
from gpuplugin.rm.resource_manager import ResourceManager

TEGRA_DEVICE_NAME = "tegra"


class TegraDevice:
    """Device information for the single Tegra device of a system."""

    def get_uuid(self) -> str:
        """Return the fixed identifier of the Tegra device."""
        return TEGRA_DEVICE_NAME

    def get_paths(self) -> list[str]:
        """Return no paths: a Tegra device has none."""
        return []

    def get_numa_node(self) -> tuple[bool, int]:
        """Return that no NUMA node is known."""
        return False, -1


def build_tegra_device_map(config: Any) -> DeviceMap:
    """Return a device map with the Tegra device under every matching GPU resource."""
    devices = DeviceMap()
    index = 0
    for resource in config.resources.gpus:
        if resource.pattern.matches(TEGRA_DEVICE_NAME):
            devices.set_entry(resource.name, str(index), TegraDevice())
            index += 1
    return devices


class TegraResourceManager(ResourceManager):
    """A resource manager for Tegra devices; health checks are disabled."""

    def get_preferred_allocation(
        self, available: Sequence[str], required: Sequence[str], size: int
    ) -> list[str]:
        """Return a distributed allocation over the available devices."""
        return self.distributed_alloc(available, required, size)

    def get_device_paths(self, ids: Sequence[str]) -> list[str]:
        """Return no device paths."""
        return []

    def check_health(self, stop: Any, unhealthy: Any) -> Optional[None]:
        """Do nothing: health checks are not performed for Tegra devices."""
        return None


def new_tegra_resource_managers(config: Any) -> list[TegraResourceManager]:
    """Return one resource manager per non-empty Tegra resource in ``config``."""
    try:
        device_map = build_tegra_device_map(config)
    except DeviceMapError as err:
        raise DeviceMapError(f"error building Tegra device map: {err}") from err

    try:
        device_map = update_device_map_with_replicas(config, device_map)
    except DeviceMapError as err:
        raise DeviceMapError(
            "error updating device map with replicas from "
            f"config.sharing.timeSlicing.resources: {err}"
        ) from err

    return [
        TegraResourceManager(config, name, devices)
        for name, devices in device_map.items()
        if devices
    ]