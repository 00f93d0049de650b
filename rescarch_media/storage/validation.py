"""Safety validation for writing media.

This module provides the checks that run before anything touches the target:
- Privileges and required external tools
- Source ISO and offline repository image sanity
- System disk and system mount protection
- Capacity for the image plus the requested partitions
- Interactive confirmations for non-removable targets and data destruction

Validation functions raise specific exceptions from the exceptions module
rather than returning boolean values. System disk and system mount checks are
hard blocks: they never prompt and cannot be skipped with ``--yes``.

Example:
    from rescarch_media.storage.validation import validate_device

    try:
        device = validate_device("/dev/sdb")
    except SafetyBlock:
        # Refuse to continue
        raise
"""

import os
import time
from pathlib import Path
from typing import Callable, Optional

from rescarch_media.config import settings
from rescarch_media.domain.models import (
    MIB,
    OfflineRepoImage,
    SourceImage,
    TargetDevice,
    WritePlan,
)
from rescarch_media.logging import LoggerFactory
from rescarch_media.ui.console import Prompt, confirm_typed

from . import devices
from .commands import is_available
from .device_kinds import class_for_kind
from .exceptions import (
    InsufficientCapacity,
    InsufficientPrivilege,
    MissingDependency,
    SourceNotFound,
    SourceNotReadable,
    SourceTooSmall,
    SystemDiskBlocked,
    SystemMountBlocked,
    UserCancelled,
)

log = LoggerFactory.for_system()

WRITE_TOOLS = (
    "lsblk",
    "dd",
    "mkfs.ext4",
    "partprobe",
    "mount",
    "umount",
    "sfdisk",
    "sgdisk",
    "blkid",
    "blockdev",
    "wipefs",
    "findmnt",
    "parted",
)
OFFLINE_TOOLS = ("pacman", "pactree", "repo-add", "tar", "mkfs.erofs")

MIN_SOURCE_BYTES = MIB
MIN_OFFLINE_IMAGE_BYTES = 1024


def check_privileges() -> None:
    """Raises InsufficientPrivilege unless running as root."""
    if os.geteuid() != 0:
        raise InsufficientPrivilege()


def check_required_tools(tools) -> None:
    """Raises MissingDependency for the first tool not found on PATH."""
    for tool in tools:
        if not is_available(tool):
            raise MissingDependency(tool)


def _validate_file(path: Path, minimum_bytes: int) -> int:
    if not path.is_file():
        raise SourceNotFound(str(path))
    if not os.access(path, os.R_OK):
        raise SourceNotReadable(str(path))
    size_bytes = path.stat().st_size
    if size_bytes < minimum_bytes:
        raise SourceTooSmall(str(path), size_bytes, minimum_bytes)
    return size_bytes


def validate_source(path) -> SourceImage:
    """Validate the ISO file.

    Raises:
        SourceNotFound: File does not exist
        SourceNotReadable: File cannot be read
        SourceTooSmall: File is smaller than 1 MiB
    """
    path = Path(path)
    size_bytes = _validate_file(path, MIN_SOURCE_BYTES)
    log.debug(f"Source image {path}: {size_bytes} bytes")
    return SourceImage(path=path, size_bytes=size_bytes)


def validate_offline_image(path) -> OfflineRepoImage:
    """Validate a pre-built offline repository image.

    Raises:
        SourceNotFound: File does not exist
        SourceNotReadable: File cannot be read
        SourceTooSmall: File is smaller than 1 KiB
    """
    path = Path(path)
    size_bytes = _validate_file(path, MIN_OFFLINE_IMAGE_BYTES)
    log.debug(f"Offline repository image {path}: {size_bytes} bytes")
    return OfflineRepoImage(path=path, size_bytes=size_bytes)


def validate_device(path: str) -> TargetDevice:
    """Resolve the target and refuse system disks.

    Raises:
        DeviceNotFound, NotABlockDevice, DeviceIsPartition: From resolution
        SystemDiskBlocked: Device holds the running root filesystem
        SystemMountBlocked: A partition is mounted on a system path
    """
    device = devices.resolve(path)
    if devices.is_system_disk(device):
        raise SystemDiskBlocked(device.path)
    system_mounts = devices.mounted_system_paths(device)
    if system_mounts:
        raise SystemMountBlocked(device.path, system_mounts)
    return device


def validate_capacity(
    plan: WritePlan,
    source: SourceImage,
    device: TargetDevice,
    offline_image: Optional[OfflineRepoImage] = None,
) -> int:
    """Check the device can hold everything requested.

    Returns:
        Bytes left over after the requested content

    Raises:
        InsufficientCapacity: Device is too small
    """
    overhead_mb = settings.OFFLINE_OVERHEAD_MB
    required = plan.required_bytes(source, offline_image, overhead_mb)
    if required > device.size_bytes:
        raise InsufficientCapacity(device.path, required, device.size_bytes)
    return device.size_bytes - required


def needs_removable_confirmation(device: TargetDevice) -> bool:
    """True for devices that look like internal physical disks."""
    if device.removable or device.transport == "usb":
        return False
    return not class_for_kind(device.kind).is_virtual


def confirm_removable(
    device: TargetDevice,
    prompt: Prompt,
    assume_yes: bool = False,
    warn: Optional[Callable[[str], None]] = None,
) -> None:
    """Ask for a typed YES before writing to a non-removable device.

    Raises:
        UserCancelled: If the user does not type YES
    """
    if not needs_removable_confirmation(device):
        return
    warn = warn or log.warning
    warn("This device does NOT appear to be a removable drive!")
    warn(f"Transport type: {device.transport or 'unknown'}, Removable: {int(device.removable)}")
    warn("This may be an internal drive - proceed with extreme caution!")
    if assume_yes:
        log.warning(f"Non-removable target {device.path} accepted by --yes")
        return
    if not confirm_typed(prompt, "Are you SURE you want to continue? (type 'YES' in capitals): "):
        raise UserCancelled()


def confirm_destruction(
    device: TargetDevice,
    prompt: Prompt,
    assume_yes: bool = False,
    warn: Optional[Callable[[str], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Last confirmation before the wipe, or a countdown with ``--yes``.

    Raises:
        UserCancelled: If the user does not type YES
    """
    warn = warn or log.warning
    if not assume_yes:
        warn(f"THIS WILL PERMANENTLY ERASE ALL DATA ON {device.path}!")
        if not confirm_typed(prompt, "Type 'YES' in capitals to proceed: "):
            raise UserCancelled()
        return
    countdown = settings.get_int("countdown_seconds")
    warn("Skipping confirmation due to -y flag")
    warn(f"Writing to {device.path} in {countdown} seconds... (Ctrl+C to abort)")
    if countdown > 0:
        sleep(countdown)
