"""The NVML-backed resource manager and its device health checks."""

from __future__ import annotations

import logging
import os
import re
from typing import Any, Optional, Protocol, Sequence

from gpuplugin.rm.devices import Device, Devices
from gpuplugin.rm.resource_manager import ResourceManager

logger = logging.getLogger(__name__)

ENV_DISABLE_HEALTH_CHECKS = "DP_DISABLE_HEALTHCHECKS"
ALL_HEALTH_CHECKS = "xids"

EVENT_TYPE_SINGLE_BIT_ECC_ERROR = 0x0000000000000001
EVENT_TYPE_DOUBLE_BIT_ECC_ERROR = 0x0000000000000002
EVENT_TYPE_XID_CRITICAL_ERROR = 0x0000000000000008

EVENT_WAIT_TIMEOUT_MS = 5000
NO_INSTANCE = 0xFFFFFFFF

# Application errors: the GPU should still be healthy.
APPLICATION_ERROR_XIDS = (
    13,  # Graphics Engine Exception
    31,  # GPU memory page fault
    43,  # GPU stopped processing
    45,  # Preemptive cleanup, due to previous errors
    68,  # Video processor exception
)

BASE_DEVICE_PATHS = (
    "/dev/nvidiactl",
    "/dev/nvidia-uvm",
    "/dev/nvidia-uvm-tools",
    "/dev/nvidia-modeset",
)

_UINT64_MAX = 2**64 - 1
_UNSIGNED = re.compile(r"[0-9]+")
_SIGNED = re.compile(r"[+-]?[0-9]+")


class HealthCheckError(Exception):
    """Raised when health checking cannot be set up or a placement is unknown."""


class _Stop(Protocol):
    def is_set(self) -> bool: ...


class _Sink(Protocol):
    def put(self, item: Device) -> Any: ...


class NvmlResourceManager(ResourceManager):
    """A resource manager for devices discovered through NVML.

    The ``nvml`` object provides ``init()``, ``shutdown()``,
    ``event_set_create()`` and ``device_get_handle_by_uuid(uuid)``; its
    operations raise on failure. An event set's ``wait(timeout_ms)`` returns
    the next event, or None when the wait timed out.
    """

    def __init__(self, config: Any, resource: str, devices: Devices, nvml: Any) -> None:
        super().__init__(config, resource, devices)
        self.nvml = nvml

    def get_device_paths(self, ids: Sequence[str]) -> list[str]:
        """Return the control device nodes plus the paths of the requested devices."""
        return [*BASE_DEVICE_PATHS, *self.devices.subset(ids).get_paths()]

    def check_health(self, stop: _Stop, unhealthy: _Sink) -> None:
        """Watch the managed devices, putting unhealthy ones into ``unhealthy`` until ``stop`` is set."""
        self._check_health(stop, self.devices, unhealthy)

    def _check_health(self, stop: _Stop, devices: Devices, unhealthy: _Sink) -> None:
        disabled = os.environ.get(ENV_DISABLE_HEALTH_CHECKS, "").lower()
        if disabled == "all":
            disabled = ALL_HEALTH_CHECKS
        if "xids" in disabled:
            return

        try:
            self.nvml.init()
        except Exception as err:
            if self.config.flags.fail_on_init_error:
                raise HealthCheckError(f"failed to initialize NVML: {err}") from err
            return

        try:
            skipped_xids = set(APPLICATION_ERROR_XIDS)
            skipped_xids.update(get_additional_xids(disabled))

            try:
                event_set = self.nvml.event_set_create()
            except Exception as err:
                raise HealthCheckError(f"failed to create event set: {err}") from err

            try:
                self._watch(stop, devices, unhealthy, event_set, skipped_xids)
            finally:
                event_set.free()
        finally:
            try:
                self.nvml.shutdown()
            except Exception as err:
                logger.info("Error shutting down NVML: %s", err)

    def _watch(
        self,
        stop: _Stop,
        devices: Devices,
        unhealthy: _Sink,
        event_set: Any,
        skipped_xids: set[int],
    ) -> None:
        parent_to_device: dict[str, Device] = {}
        gi_by_id: dict[str, int] = {}
        ci_by_id: dict[str, int] = {}

        event_mask = (
            EVENT_TYPE_XID_CRITICAL_ERROR
            | EVENT_TYPE_DOUBLE_BIT_ECC_ERROR
            | EVENT_TYPE_SINGLE_BIT_ECC_ERROR
        )
        for device in devices.values():
            try:
                uuid, gi, ci = self.get_device_placement(device)
            except Exception as err:
                logger.warning(
                    "Could not determine device placement for %s: %s; Marking it unhealthy.",
                    device.id,
                    err,
                )
                unhealthy.put(device)
                continue
            gi_by_id[device.id] = gi
            ci_by_id[device.id] = ci
            parent_to_device[uuid] = device

            try:
                gpu = self.nvml.device_get_handle_by_uuid(uuid)
            except Exception as err:
                logger.info("unable to get device handle from UUID: %s; marking it as unhealthy", err)
                unhealthy.put(device)
                continue

            try:
                supported = gpu.get_supported_event_types()
            except Exception as err:
                logger.info(
                    "Unable to determine the supported events for %s: %s; marking it as unhealthy",
                    device.id,
                    err,
                )
                unhealthy.put(device)
                continue

            try:
                gpu.register_events(event_mask & supported, event_set)
            except Exception as err:
                if isinstance(err, NotImplementedError):
                    logger.warning("Device %s is too old to support healthchecking.", device.id)
                logger.info("Marking device %s as unhealthy: %s", device.id, err)
                unhealthy.put(device)

        while not stop.is_set():
            try:
                event = event_set.wait(EVENT_WAIT_TIMEOUT_MS)
            except Exception as err:
                logger.info("Error waiting for event: %s; Marking all devices as unhealthy", err)
                for device in devices.values():
                    unhealthy.put(device)
                continue
            if event is None:
                continue

            if event.event_type != EVENT_TYPE_XID_CRITICAL_ERROR:
                logger.info("Skipping non-nvmlEventTypeXidCriticalError event: %r", event)
                continue

            if event.event_data in skipped_xids:
                logger.info("Skipping event %r", event)
                continue

            logger.info("Processing event %r", event)
            try:
                event_uuid = event.device.get_uuid()
            except Exception as err:
                logger.info(
                    "Failed to determine uuid for event %r: %s; Marking all devices as unhealthy.",
                    event,
                    err,
                )
                for device in devices.values():
                    unhealthy.put(device)
                continue

            device = parent_to_device.get(event_uuid)
            if device is None:
                logger.info("Ignoring event for unexpected device: %s", event_uuid)
                continue

            if (
                device.is_mig_device()
                and event.gpu_instance_id != NO_INSTANCE
                and event.compute_instance_id != NO_INSTANCE
            ):
                gi = gi_by_id[device.id]
                ci = ci_by_id[device.id]
                if not (
                    gi & NO_INSTANCE == event.gpu_instance_id
                    and ci & NO_INSTANCE == event.compute_instance_id
                ):
                    continue
                logger.info("Event for mig device %s (gi=%s, ci=%s)", device.id, gi, ci)

            logger.info(
                "XidCriticalError: Xid=%d on Device=%s; marking device as unhealthy.",
                event.event_data,
                device.id,
            )
            unhealthy.put(device)

    def get_device_placement(self, device: Device) -> tuple[str, int, int]:
        """Return (parent UUID, GPU instance, compute instance) for a device.

        Full devices report their own UUID and 0xFFFFFFFF for both instances.
        """
        if not device.is_mig_device():
            return device.get_uuid(), NO_INSTANCE, NO_INSTANCE
        return self.get_mig_device_parts(device)

    def get_mig_device_parts(self, device: Device) -> tuple[str, int, int]:
        """Return the parent UUID and the GI and CI ids of a MIG device."""
        if not device.is_mig_device():
            raise HealthCheckError("cannot get GI and CI of full device")

        uuid = device.get_uuid()
        # Older drivers cannot look up MIG devices by UUID; parse the UUID instead.
        try:
            mig = self.nvml.device_get_handle_by_uuid(uuid)
        except Exception:
            return parse_mig_device_uuid(uuid)

        try:
            parent = mig.get_device_handle_from_mig_device_handle()
        except Exception as err:
            raise HealthCheckError(f"failed to get parent device handle: {err}") from err
        try:
            parent_uuid = parent.get_uuid()
        except Exception as err:
            raise HealthCheckError(f"failed to get parent uuid: {err}") from err
        try:
            gi = mig.get_gpu_instance_id()
        except Exception as err:
            raise HealthCheckError(f"failed to get GPU Instance ID: {err}") from err
        try:
            ci = mig.get_compute_instance_id()
        except Exception as err:
            raise HealthCheckError(f"failed to get Compute Instance ID: {err}") from err
        return parent_uuid, gi, ci


def get_additional_xids(value: Optional[str]) -> list[int]:
    """Return the valid unsigned Xids in a comma-separated string; other entries are ignored."""
    if not value:
        return []
    xids = []
    for part in value.split(","):
        trimmed = part.strip()
        if not trimmed:
            continue
        if not _UNSIGNED.fullmatch(trimmed) or int(trimmed) > _UINT64_MAX:
            logger.info("Ignoring malformed Xid value %s", trimmed)
            continue
        xids.append(int(trimmed))
    return xids


def parse_mig_device_uuid(mig: str) -> tuple[str, int, int]:
    """Split a ``MIG-GPU-<uuid>/<gi>/<ci>`` UUID into parent UUID, GI and CI."""
    failure = HealthCheckError("Unable to parse UUID as MIG device")

    prefix, sep, rest = mig.partition("-")
    if not sep or prefix != "MIG":
        raise failure

    tokens = rest.split("/", 2)
    if len(tokens) != 3 or not tokens[0].startswith("GPU-"):
        raise failure

    parent, gi, ci = tokens
    if not _SIGNED.fullmatch(gi) or not _SIGNED.fullmatch(ci):
        raise failure
    return parent, int(gi), int(ci)