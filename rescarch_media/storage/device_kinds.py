"""Block device family classification.

Each supported device family is a ``DeviceClass`` subclass that knows how to
recognise its kernel names and how to describe itself. The result is for
display and for the non-removable warning only; nothing safety-critical
depends on it.

Example:
    >>> classify("nvme0n1").kind
    <DeviceKind.NVME: 'nvme'>
    >>> classify("sdb").category(rotational=False, removable=True)
    'USB/Removable Drive'
"""

from __future__ import annotations

import re
from pathlib import Path

from rescarch_media.domain.models import DeviceKind

SYS_BLOCK = Path("/sys/block")


def _read_sysfs(name: str, *parts: str) -> str:
    try:
        return " ".join(SYS_BLOCK.joinpath(name, *parts).read_text().split())
    except OSError:
        return ""


class DeviceClass:
    """Base class for a device family."""

    kind: DeviceKind = DeviceKind.OTHER
    pattern: re.Pattern | None = None
    label: str = "Block Device"
    # Virtual and non-physical devices never need the internal-disk warning
    is_virtual: bool = False

    def matches(self, name: str) -> bool:
        return self.pattern is not None and self.pattern.match(name) is not None

    def category(self, rotational: bool, removable: bool) -> str:
        return self.label

    def extra_info(self, name: str) -> list[str]:
        return []


class LoopDevice(DeviceClass):
    kind = DeviceKind.LOOP
    pattern = re.compile(r"^loop[0-9]+")
    label = "Loop Device"
    is_virtual = True

    def extra_info(self, name: str) -> list[str]:
        backing = _read_sysfs(name, "loop", "backing_file")
        return [f"Backing: {backing}"] if backing else []


class RamDevice(DeviceClass):
    kind = DeviceKind.RAM
    pattern = re.compile(r"^(ram|brd)[0-9]+")
    label = "RAM Block Device"
    is_virtual = True


class NvmeDevice(DeviceClass):
    kind = DeviceKind.NVME
    pattern = re.compile(r"^nvme[0-9]+n[0-9]+")
    label = "NVMe SSD"

    def extra_info(self, name: str) -> list[str]:
        model = _read_sysfs(name, "device", "model")
        return [f"Model: {model}"] if model else []


class MmcDevice(DeviceClass):
    kind = DeviceKind.MMC
    pattern = re.compile(r"^mmcblk[0-9]+")
    label = "MMC/SD Card"

    def extra_info(self, name: str) -> list[str]:
        info = []
        card_name = _read_sysfs(name, "device", "name")
        card_type = _read_sysfs(name, "device", "type")
        if card_name:
            info.append(f"Name: {card_name}")
        if card_type:
            info.append(f"Type: {card_type}")
        return info


class SataSasDevice(DeviceClass):
    kind = DeviceKind.SATA_SAS
    pattern = re.compile(r"^sd[a-z]+")
    label = "SATA/SAS HDD"

    def category(self, rotational: bool, removable: bool) -> str:
        if removable:
            return "USB/Removable Drive"
        return "SATA/SAS HDD" if rotational else "SATA/SAS SSD"


class VirtualDisk(DeviceClass):
    kind = DeviceKind.VIRTUAL
    pattern = re.compile(r"^vd[a-z]+")
    label = "Virtual Disk"
    is_virtual = True


class XenVirtualDisk(DeviceClass):
    kind = DeviceKind.XEN_VIRTUAL
    pattern = re.compile(r"^xvd[a-z]+")
    label = "Xen Virtual Disk"
    is_virtual = True


class IdeDevice(DeviceClass):
    kind = DeviceKind.IDE
    pattern = re.compile(r"^hd[a-z]+")
    label = "IDE/PATA Drive"


class OpticalDrive(DeviceClass):
    kind = DeviceKind.OPTICAL
    pattern = re.compile(r"^sr[0-9]+")
    label = "Optical Drive"


class NetworkBlockDevice(DeviceClass):
    kind = DeviceKind.NETWORK_BLOCK
    pattern = re.compile(r"^nbd[0-9]+")
    label = "Network Block Device"
    is_virtual = True


class CephRbdDevice(DeviceClass):
    kind = DeviceKind.CEPH_RBD
    pattern = re.compile(r"^rbd[0-9]+")
    label = "Ceph RBD"
    is_virtual = True


class OtherDevice(DeviceClass):
    kind = DeviceKind.OTHER


DEVICE_CLASSES: tuple[DeviceClass, ...] = (
    LoopDevice(),
    RamDevice(),
    NvmeDevice(),
    MmcDevice(),
    SataSasDevice(),
    VirtualDisk(),
    XenVirtualDisk(),
    IdeDevice(),
    OpticalDrive(),
    NetworkBlockDevice(),
    CephRbdDevice(),
)

FALLBACK_CLASS = OtherDevice()


def classify(name: str) -> DeviceClass:
    """Return the device family for a kernel device name such as ``sdb``."""
    for device_class in DEVICE_CLASSES:
        if device_class.matches(name):
            return device_class
    return FALLBACK_CLASS


def class_for_kind(kind: DeviceKind) -> DeviceClass:
    for device_class in (*DEVICE_CLASSES, FALLBACK_CLASS):
        if device_class.kind == kind:
            return device_class
    raise KeyError(kind)
