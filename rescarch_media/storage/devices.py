"""Target block device inspection using lsblk, findmnt and sysfs.

This module turns a user supplied device path into a ``TargetDevice`` and
answers the safety questions asked about it before anything destructive runs.

Device Resolution:
    resolve() checks, in order:
    1. The path exists (DeviceNotFound)
    2. The path is a block device (NotABlockDevice)
    3. lsblk reports TYPE "disk"/"loop", not "part" (DeviceIsPartition)
    It then collects size, transport, rotational and removable flags, vendor,
    model and the partition table kind.

System Disk Protection:
    - is_system_disk(): the device is the parent of the root filesystem source
    - mounted_system_paths(): partitions of the device mounted on /, /boot,
      /home, /usr, /var, /etc or /opt
    Both are hard blocks in the safety gate. Neither prompts.

Mount Management:
    unmount_device() unmounts every partition of the target with retries and
    a lazy unmount as last resort. The write workflow calls it before wiping
    and again before the raw copy.

Example:
    >>> from rescarch_media.storage.devices import resolve
    >>> device = resolve("/dev/sdb")
    >>> print(device.category, device.size_bytes)
    USB/Removable Drive 15518924800
"""

from __future__ import annotations

import json
import os
import re
import stat
import subprocess
import time
from pathlib import Path
from typing import Any, Optional

from rescarch_media.domain.models import PartitionTableKind, TargetDevice
from rescarch_media.logging import LoggerFactory

from .commands import command_output, run_command
from .device_kinds import classify
from .exceptions import DeviceIsPartition, DeviceNotFound, NotABlockDevice

log = LoggerFactory.for_device()

SYSTEM_MOUNTPOINTS = ("/", "/boot", "/home", "/usr", "/var", "/etc", "/opt")
DISK_TYPES = {"disk", "loop"}
LSBLK_COLUMNS = "NAME,TYPE,SIZE,MODEL,VENDOR,TRAN,RM,ROTA,PTTYPE,PKNAME"
_FSROOT_SUFFIX = re.compile(r"\[[^\]]*\]$")


def _as_bool(value: Any) -> bool:
    """lsblk reports flags as true/false in new versions and "1"/"0" in old ones."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip() in {"1", "true"}


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = " ".join(str(value).split())
    return value or None


def normalize_device_path(path: str) -> str:
    """Strip trailing slashes so /dev/sdb/ and /dev/sdb are the same target."""
    stripped = path.rstrip("/")
    return stripped or path


def is_block_device(path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def lsblk_json(device_path: str, columns: str, *, nodeps: bool = False) -> list[dict]:
    """Return lsblk JSON rows for a device; empty list if lsblk fails."""
    command = ["lsblk", "-J", "-b", "-o", columns]
    if nodeps:
        command.append("-d")
    command.append(device_path)
    try:
        result = run_command(command, log_output=False)
        data = json.loads(result.stdout)
    except (subprocess.CalledProcessError, OSError, json.JSONDecodeError) as error:
        log.debug(f"lsblk failed for {device_path}: {error}")
        return []
    return data.get("blockdevices", []) or []


def get_children(device: dict) -> list[dict]:
    return device.get("children", []) or []


def _read_removable(name: str) -> Optional[bool]:
    try:
        return Path("/sys/block", name, "removable").read_text().strip() == "1"
    except OSError:
        return None


def _blockdev_size(device_path: str) -> int:
    output = command_output(["blockdev", "--getsize64", device_path]).strip()
    try:
        return int(output)
    except ValueError:
        return 0


def partition_table_kind(value: Optional[str]) -> PartitionTableKind:
    value = (value or "").strip().lower()
    if value in ("dos", "msdos"):
        return PartitionTableKind.MBR
    if value == "gpt":
        return PartitionTableKind.GPT
    return PartitionTableKind.UNKNOWN


def resolve(path: str) -> TargetDevice:
    """Resolve a device path into a TargetDevice.

    Raises:
        DeviceNotFound: Path does not exist
        NotABlockDevice: Path exists but is not a block device
        DeviceIsPartition: Path is a partition rather than a whole disk
    """
    device_path = normalize_device_path(path)
    if not os.path.exists(device_path):
        raise DeviceNotFound(device_path)
    if not is_block_device(device_path):
        raise NotABlockDevice(device_path)

    rows = lsblk_json(device_path, LSBLK_COLUMNS, nodeps=True)
    info = rows[0] if rows else {}
    device_type = (info.get("type") or "disk").strip()
    if device_type == "part":
        raise DeviceIsPartition(device_path, _clean(info.get("pkname")))

    name = info.get("name") or os.path.basename(device_path)
    size_bytes = int(info.get("size") or 0) or _blockdev_size(device_path)
    rotational = _as_bool(info.get("rota"))
    removable = _read_removable(name)
    if removable is None:
        removable = _as_bool(info.get("rm"))
    transport = _clean(info.get("tran"))

    device_class = classify(name)
    device = TargetDevice(
        path=device_path,
        name=name,
        size_bytes=size_bytes,
        transport=transport,
        rotational=rotational,
        removable=removable,
        kind=device_class.kind,
        category=device_class.category(rotational=rotational, removable=removable),
        vendor=_clean(info.get("vendor")),
        model=_clean(info.get("model")),
        partition_table_kind=partition_table_kind(info.get("pttype")),
    )
    log.debug(f"Resolved {device_path}: {device}")
    return device


def root_parent_name() -> str:
    """Kernel name of the disk holding the root filesystem, or ''."""
    source = command_output(["findmnt", "-n", "-o", "SOURCE", "--nofsroot", "/"]).strip()
    # btrfs subvolume roots read like /dev/sda2[/@]
    source = _FSROOT_SUFFIX.sub("", source)
    if not source:
        return ""
    parent = command_output(["lsblk", "-no", "PKNAME", source]).strip()
    if parent:
        return parent.splitlines()[0].strip()
    # Root directly on a whole disk
    if source.startswith("/dev/"):
        return os.path.basename(source)
    return ""


def is_system_disk(device: TargetDevice) -> bool:
    """True if the device backs the currently mounted root filesystem."""
    root_parent = root_parent_name()
    if not root_parent:
        return False
    return device.name == root_parent or device.path == f"/dev/{root_parent}"


def _collect_mounts(node: dict, mounts: list[tuple[str, str]]) -> None:
    mountpoints = list(node.get("mountpoints") or [])
    if node.get("mountpoint"):
        mountpoints.append(node["mountpoint"])
    for mountpoint in dict.fromkeys(mp for mp in mountpoints if mp):
        mounts.append((node.get("name", ""), mountpoint))
    for child in get_children(node):
        _collect_mounts(child, mounts)


def mounted_partitions(device: TargetDevice) -> list[tuple[str, str]]:
    """All (partition name, mountpoint) pairs on the device."""
    mounts: list[tuple[str, str]] = []
    for row in lsblk_json(device.path, "NAME,MOUNTPOINT"):
        _collect_mounts(row, mounts)
    return mounts


def mounted_system_paths(device: TargetDevice) -> list[tuple[str, str]]:
    """Mounted partitions of the device that sit on protected system paths."""
    return [
        (name, mountpoint)
        for name, mountpoint in mounted_partitions(device)
        if mountpoint in SYSTEM_MOUNTPOINTS
    ]


def _is_mountpoint_active(mountpoint: str) -> bool:
    try:
        with open("/proc/mounts", "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1 and parts[1] == mountpoint:
                    return True
    except FileNotFoundError:
        return os.path.ismount(mountpoint)
    return False


def unmount_device(device: TargetDevice, attempts: int = 3) -> bool:
    """Unmount every mounted partition of a device.

    Tries a normal unmount ``attempts`` times, then a lazy unmount.

    Returns:
        True if nothing on the device remains mounted
    """

    def active(mounts: list[tuple[str, str]]) -> list[tuple[str, str]]:
        return [(name, mp) for name, mp in mounts if _is_mountpoint_active(mp)]

    mounts = mounted_partitions(device)
    if not mounts:
        log.debug(f"No mounted partitions on {device.name}")
        return True

    run_command(["sync"], check=False)

    for attempt in range(1, attempts + 1):
        remaining = active(mounts)
        if not remaining:
            log.debug("Successfully unmounted all partitions")
            return True
        log.debug(f"Unmount attempt {attempt}/{attempts}...")
        for _partition_name, mountpoint in remaining:
            try:
                run_command(["umount", mountpoint])
                log.info(f"Unmounted {mountpoint}")
            except (subprocess.CalledProcessError, OSError) as error:
                log.debug(f"Failed to unmount {mountpoint}: {error}")
        if not active(mounts):
            return True
        if attempt < attempts:
            time.sleep(1)

    log.warning("Normal unmount failed, attempting lazy unmount...")
    for _partition_name, mountpoint in active(mounts):
        try:
            run_command(["umount", "-l", mountpoint])
            log.info(f"Lazy unmounted {mountpoint}")
        except (subprocess.CalledProcessError, OSError) as error:
            log.debug(f"Failed to lazy unmount {mountpoint}: {error}")

    still_mounted = active(mounts)
    if still_mounted:
        log.error(
            "Failed to unmount: " + ", ".join(mp for _name, mp in still_mounted)
        )
        return False
    return True
