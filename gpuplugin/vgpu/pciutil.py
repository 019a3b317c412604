"""Discovery of NVIDIA PCI devices and access to their configuration space."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional, Protocol

PCI_DEVICES_ROOT = "/sys/bus/pci/devices"
PCI_STATUS_BYTE = 0x06
PCI_STATUS_CAPABILITY_LIST = 0x10
PCI_CAPABILITY_LIST = 0x34
PCI_CAPABILITY_LIST_ID = 0
PCI_CAPABILITY_LIST_NEXT = 1
PCI_CAPABILITY_LENGTH = 2
PCI_CAPABILITY_VENDOR_SPECIFIC_ID = 0x09
PCI_NVIDIA_VENDOR_ID = "0x10de"

_CONFIG_SPACE_SIZE = 256


class PCIError(Exception):
    """Raised when PCI device information cannot be read or interpreted."""


def get_byte(buffer: bytes, pos: int) -> int:
    """Return the byte at ``pos``."""
    return buffer[pos]


def get_word(buffer: bytes, pos: int) -> int:
    """Return the little-endian 16-bit value starting at ``pos``."""
    return int.from_bytes(buffer[pos:pos + 2], "little") if pos + 2 <= len(buffer) else _short(buffer, pos)


def get_long(buffer: bytes, pos: int) -> int:
    """Return the little-endian 32-bit value starting at ``pos``."""
    return int.from_bytes(buffer[pos:pos + 4], "little") if pos + 4 <= len(buffer) else _short(buffer, pos)


def _short(buffer: bytes, pos: int) -> int:
    raise IndexError(f"buffer of length {len(buffer)} too short to read at position {pos}")


@dataclass
class PCIDevice:
    """A single PCI device with its raw configuration space."""

    path: str
    address: str
    device_class: str
    vendor: str
    config: bytes = field(repr=False)

    def get_vendor_specific_capability(self) -> Optional[bytes]:
        """Return the vendor-specific capability record, or None if there is none."""
        config = self.config
        if len(config) < _CONFIG_SPACE_SIZE:
            raise PCIError(
                f"entire PCI configuration is not read for device {self.address}. "
                "Please run GFD with privileged mode to read complete PCI configuration data"
            )

        if config[PCI_STATUS_BYTE] & PCI_STATUS_CAPABILITY_LIST == 0:
            return None

        visited: set[int] = set()
        pos = get_byte(config, PCI_CAPABILITY_LIST)
        while pos != 0:
            cap_id = get_byte(config, pos + PCI_CAPABILITY_LIST_ID)
            next_pos = get_byte(config, pos + PCI_CAPABILITY_LIST_NEXT)
            length = get_byte(config, pos + PCI_CAPABILITY_LENGTH)

            if pos in visited:
                break  # chain looped
            if cap_id == 0xFF:
                break  # chain broken
            if cap_id == PCI_CAPABILITY_VENDOR_SPECIFIC_ID:
                start = pos + PCI_CAPABILITY_LIST_ID
                return bytes(config[start:start + length])

            visited.add(pos)
            pos = next_pos

        return None


class NvidiaPCI(Protocol):
    """Anything that can list NVIDIA PCI devices."""

    def devices(self) -> list[PCIDevice]:
        ...


class NvidiaPCILib:
    """Lists NVIDIA PCI devices from a sysfs-style directory tree."""

    def __init__(self, root: str = PCI_DEVICES_ROOT) -> None:
        self.root = root

    def devices(self) -> list[PCIDevice]:
        """Return every NVIDIA PCI device below the root directory."""
        try:
            names = sorted(entry.name for entry in os.scandir(self.root))
        except OSError as err:
            raise PCIError(f"unable to read PCI bus devices: {err}") from err

        found = []
        for address in names:
            device_path = os.path.join(self.root, address)

            vendor = self._read(device_path, "vendor", address, "vendor id").decode().strip()
            if vendor != PCI_NVIDIA_VENDOR_ID:
                continue

            device_class = self._read(device_path, "class", address, "class").decode()
            config = self._read(device_path, "config", address, "configuration space")

            found.append(
                PCIDevice(
                    path=device_path,
                    address=address,
                    device_class=device_class[:4],
                    vendor=vendor,
                    config=config,
                )
            )
        return found

    @staticmethod
    def _read(device_path: str, name: str, address: str, what: str) -> bytes:
        try:
            with open(os.path.join(device_path, name), "rb") as handle:
                return handle.read()
        except OSError as err:
            if name == "config":
                message = f"unable to read PCI {what} for {address}: {err}"
            else:
                message = f"unable to read PCI device {what} for {address}: {err}"
            raise PCIError(message) from err


def _config_space(chunks: dict[int, str]) -> bytes:
    space = bytearray(_CONFIG_SPACE_SIZE)
    for offset, text in chunks.items():
        data = bytes.fromhex(text)
        space[offset:offset + len(data)] = data
    return bytes(space)


_GPU_PASSTHROUGH_CONFIG = _config_space(
    {
        0x00: (
            "de 10 8a 11 07 04 10 00 a1 00 00 03 00 f8 00 00"
            "00 00 00 ec 0c 00 00 e0 00 00 00 00 0c 00 00 ea"
            "00 00 00 00 01 c1 00 00 00 00 00 00 de 10 14 10"
            "00 00 00 ee 60 00 00 00 00 00 00 00 05 01 00 00"
            "de 10 14 10 00 00 00 00 00 00 00 00 00 00 00 00"
            "01 00 00 00 01 00 00 00 ce d6 23 00 00 00 00 00"
            "01 68 03 00 08 00 00 00 05 78 81 00 00 70 e6 fe"
            "00 00 00 00 00 43 00 00 10 b4 02 00 e1 8d 64 00"
            "10 29 00 00 03 3d 45 10 00 00 01 11 00 00 00 00"
            "00 00 00 00 00 00 00 00 00 00 00 00 13 00 00 00"
            "00 00 00 00 0e 00 00 00 03 00 3e 00 00 00 00 00"
            "00 00 00 00 09 00 14 01"
        ),
    }
)

_VGPU_CONFIG = _config_space(
    {
        0x00: (
            "de 10 b8 1e 02 05 ff 06 a1 00 00 03 00 00 00 00"
            "00 00 00 fc 0c 00 00 d0 00 00 00 00 04 00 00 fa"
            "00 00 00 00 00 00 00 00 00 00 00 00 de 10 0f 13"
            "00 00 00 00 d0 00 00 00 00 00 00 00 0a 01 00 00"
            "00 00 00 00 00 00 00 00 00 00 00 00 00 00 00 00"
            "01 00 00 00 01 00 00 00 ce d6 23 00 00 00 00 00"
            "00 00 00 00 00 00 00 00 05 00 81 00 00 00 e0 fe"
            "00 00 00 00 4e 40"
        ),
        0xD0: (
            "09 68 1b 56 46 00 16 34 36 30 2e 31 36 00 00 00"
            "00 72 34 36 30 5f 30 30"
        ),
    }
)


class MockNvidiaPCI:
    """An in-memory list of PCI devices."""

    def __init__(self, devices: Optional[list[PCIDevice]] = None) -> None:
        self._devices = list(devices or [])

    def devices(self) -> list[PCIDevice]:
        """Return the stored devices."""
        return list(self._devices)


def new_mock_nvidia_pci() -> MockNvidiaPCI:
    """Return a mock holding one passthrough GPU and one vGPU device."""
    return MockNvidiaPCI(
        [
            PCIDevice(
                path="",
                address="passthrough",
                device_class="300",
                vendor=PCI_NVIDIA_VENDOR_ID,
                config=_GPU_PASSTHROUGH_CONFIG,
            ),
            PCIDevice(
                path="",
                address="vgpu",
                device_class="300",
                vendor=PCI_NVIDIA_VENDOR_ID,
                config=_VGPU_CONFIG,
            ),
        ]
    )