"""Detection of vGPU devices and the host driver they run against."""

from __future__ import annotations

from dataclasses import dataclass, field

from gpuplugin.vgpu.pciutil import NvidiaPCI, PCIDevice, PCIError, get_byte, new_mock_nvidia_pci

VGPU_CAPABILITY_RECORD_START = 5
HOST_DRIVER_VERSION_LENGTH = 10
HOST_DRIVER_BRANCH_LENGTH = 10


class VGPUError(Exception):
    """Raised when vGPU information cannot be determined."""


@dataclass(frozen=True)
class VGPUInfo:
    """Driver information of the vGPU manager on the hypervisor host."""

    host_driver_version: str
    host_driver_branch: str


@dataclass
class VGPUDevice:
    """A PCI device recognised as a vGPU, with its vendor capability record."""

    pci: PCIDevice
    vgpu_capability: bytes = field(repr=False)

    def get_info(self) -> VGPUInfo:
        """Return host driver version and branch from the capability records."""
        capability = self.vgpu_capability
        if not capability:
            raise VGPUError(
                f"vendor capability record is not populated for device {self.pci.address}"
            )

        not_found = VGPUError(
            "cannot find driver version record in vendor specific capability "
            f"for device {self.pci.address}"
        )

        # Walk the records until the host driver version record (id 0) is found.
        pos = VGPU_CAPABILITY_RECORD_START
        if pos >= len(capability):
            raise not_found
        record = get_byte(capability, pos)
        while record != 0 and pos < len(capability):
            if pos + 1 >= len(capability):
                raise not_found
            record_length = get_byte(capability, pos + 1)
            if record_length == 0:
                raise not_found
            pos += record_length
            if pos >= len(capability):
                raise not_found
            record = get_byte(capability, pos)

        data_start = pos + 2
        version_end = data_start + HOST_DRIVER_VERSION_LENGTH
        branch_end = version_end + HOST_DRIVER_BRANCH_LENGTH
        if record != 0 or branch_end > len(capability):
            raise not_found

        version = capability[data_start:version_end].decode("latin-1").strip("\x00")
        branch = capability[version_end:branch_end].decode("latin-1").strip("\x00")
        return VGPUInfo(host_driver_version=version, host_driver_branch=branch)


class VGPULib:
    """Finds vGPU devices among the NVIDIA PCI devices."""

    def __init__(self, pci: NvidiaPCI) -> None:
        self.pci = pci

    def devices(self) -> list[VGPUDevice]:
        """Return all vGPU devices attached to the guest."""
        try:
            pci_devices = self.pci.devices()
        except PCIError as err:
            raise VGPUError(f"error getting NVIDIA specific PCI devices: {err}") from err

        vgpus = []
        for device in pci_devices:
            try:
                capability = device.get_vendor_specific_capability()
            except PCIError as err:
                raise VGPUError(
                    f"unable to read vendor specific capability for {device.address}: {err}"
                ) from err
            if capability is None:
                continue
            if self.is_vgpu_device(capability):
                vgpus.append(VGPUDevice(pci=device, vgpu_capability=capability))
        return vgpus

    def is_vgpu_device(self, capability: bytes) -> bool:
        """Return True if the capability carries the vGPU signature "VF"."""
        return len(capability) >= 5 and capability[3] == 0x56 and capability[4] == 0x46


def new_mock_vgpu() -> VGPULib:
    """Return a VGPULib backed by the mock PCI devices."""
    return VGPULib(new_mock_nvidia_pci())