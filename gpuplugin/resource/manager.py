"""Resource manager and device interfaces, with the null and fallback managers."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

logger = logging.getLogger(__name__)


class ResourceError(Exception):
    """Raised when a resource manager or device operation fails or is unsupported."""


class Device(ABC):
    """A device with which labels are associated."""

    @abstractmethod
    def is_mig_enabled(self) -> bool:
        """Return whether MIG mode is enabled on the device."""

    @abstractmethod
    def is_mig_capable(self) -> bool:
        """Return whether the device supports MIG."""

    @abstractmethod
    def get_mig_devices(self) -> list[Device]:
        """Return the MIG devices configured on the device."""

    @abstractmethod
    def get_attributes(self) -> dict[str, Any]:
        """Return the device attributes."""

    @abstractmethod
    def get_name(self) -> str:
        """Return the device name or model."""

    @abstractmethod
    def get_total_memory_mb(self) -> int:
        """Return the total device memory in MiB."""

    @abstractmethod
    def get_device_handle_from_mig_device_handle(self) -> Device:
        """Return the parent of a MIG device."""

    @abstractmethod
    def get_cuda_compute_capability(self) -> tuple[int, int]:
        """Return the CUDA compute capability as (major, minor)."""


class Manager(ABC):
    """Manages the devices of a node."""

    @abstractmethod
    def init(self) -> None:
        """Initialise the underlying library."""

    @abstractmethod
    def shutdown(self) -> None:
        """Shut down the underlying library."""

    @abstractmethod
    def get_devices(self) -> list[Device]:
        """Return the devices available on the system."""

    @abstractmethod
    def get_driver_version(self) -> str:
        """Return the driver version."""

    @abstractmethod
    def get_cuda_driver_version(self) -> tuple[int, int]:
        """Return the CUDA driver version as (major, minor)."""


class NullManager(Manager):
    """A manager with no devices whose init and shutdown do nothing."""

    def init(self) -> None:
        """Do nothing."""

    def shutdown(self) -> None:
        """Do nothing."""

    def get_devices(self) -> list[Device]:
        """Return no devices."""
        return []

    def get_cuda_driver_version(self) -> tuple[int, int]:
        """Always raise: the CUDA driver version is unknown."""
        raise ResourceError("get_cuda_driver_version is unsupported")

    def get_driver_version(self) -> str:
        """Always raise: the driver version is unknown."""
        raise ResourceError("get_driver_version is unsupported")


class FallbackManager(Manager):
    """Wraps a manager and turns into a null manager on the first init failure."""

    def __init__(self, manager: Manager) -> None:
        self._wraps: Manager = manager
        self._fallback: Manager = NullManager()

    def init(self) -> None:
        """Initialise the wrapped manager, falling back to a null manager on failure."""
        try:
            self._wraps.init()
        except Exception as err:  # any init failure triggers the fallback
            logger.warning("Failed to initialize resource manager: %s", err)
            self._wraps = self._fallback

    def shutdown(self) -> None:
        """Shut down the active manager."""
        self._wraps.shutdown()

    def get_devices(self) -> list[Device]:
        """Return the devices of the active manager."""
        return self._wraps.get_devices()

    def get_cuda_driver_version(self) -> tuple[int, int]:
        """Return the CUDA driver version of the active manager."""
        return self._wraps.get_cuda_driver_version()

    def get_driver_version(self) -> str:
        """Return the driver version of the active manager."""
        return self._wraps.get_driver_version()


def new_fallback_to_null_on_init_error(manager: Manager) -> Manager:
    """Return a manager that becomes a null manager on the first init error."""
    return FallbackManager(manager)