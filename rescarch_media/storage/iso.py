"""ISO image inspection and raw writing.

This module provides:
- get_iso_label(): volume label via isoinfo, then blkid
- count_source_markers() / verify_source_markers(): RescArch authenticity heuristic
- wipe_device(): clear partition table and filesystem signatures
- write_image(): raw dd copy of the ISO onto the whole device
- write_payload(): raw dd copy of an image onto a partition

Writes are not rolled back on failure. A partially written device has to be
rewritten from the start.
"""

from __future__ import annotations

import glob
import os
import subprocess
from pathlib import Path
from typing import Callable, Optional

from rescarch_media.domain.models import SourceImage, TargetDevice
from rescarch_media.logging import LoggerFactory

from . import devices, partition_table
from .cleanup import CleanupRegistry
from .commands import (
    command_output,
    is_available,
    run_best_effort,
    run_command,
    run_destructive,
    run_streaming_copy,
    sync,
)
from .exceptions import UnverifiedSource, ValidationError, WipeFailed, WriteFailed

log = LoggerFactory.for_write()

DEFAULT_ISO_LABEL = "RESCARCH"
MARKER_NAME = "rescarch"

ProgressCallback = Callable[[int, Optional[float]], None]


def get_iso_label(iso_path: Path) -> str:
    """Read the ISO volume label, falling back to the default label."""
    label = ""
    if is_available("isoinfo"):
        for line in command_output(["isoinfo", "-d", "-i", str(iso_path)]).splitlines():
            if line.startswith("Volume id:"):
                label = line.split(":", 1)[1].replace(" ", "")
                break
    if not label:
        label = command_output(["blkid", "-s", "LABEL", "-o", "value", str(iso_path)])
        label = label.strip().replace(" ", "")
    return label or DEFAULT_ISO_LABEL


def _file_mentions(paths: list[str], needle: str) -> bool:
    for path in paths:
        try:
            if needle in Path(path).read_text(errors="replace").lower():
                return True
        except OSError:
            continue
    return False


def count_source_markers(root: Path) -> int:
    """Count independent RescArch markers in a mounted ISO tree.

    Markers:
        1. A rescarch directory at the top level or under /usr/share
        2. "rescarch" in a systemd-boot entry (or the GRUB config)
        3. "rescarch" in the syslinux config
    """
    markers = 0
    if (root / MARKER_NAME).is_dir() or (root / "usr" / "share" / MARKER_NAME).is_dir():
        markers += 1

    entries = sorted(glob.glob(str(root / "loader" / "entries" / "*.conf")))
    if entries and _file_mentions(entries, MARKER_NAME):
        markers += 1
    elif _file_mentions([str(root / "boot" / "grub" / "grub.cfg")], MARKER_NAME):
        markers += 1

    if _file_mentions([str(root / "syslinux" / "syslinux.cfg")], MARKER_NAME):
        markers += 1
    return markers


def verify_source_markers(iso_path: Path, registry: CleanupRegistry) -> int:
    """Mount the ISO read-only and check it looks like a RescArch image.

    Returns:
        Number of markers found

    Raises:
        ValidationError: If the ISO cannot be loop-mounted
        UnverifiedSource: If no marker is present
    """
    mount_dir = registry.make_temp_dir(prefix="rescarch-iso-")
    try:
        run_command(["mount", "-o", "loop,ro", str(iso_path), mount_dir])
    except (subprocess.CalledProcessError, OSError) as error:
        raise ValidationError(f"Failed to mount ISO file for verification: {error}") from error
    registry.register_mount(mount_dir)
    try:
        markers = count_source_markers(Path(mount_dir))
    finally:
        run_best_effort(["umount", mount_dir])
        if not os.path.ismount(mount_dir):
            registry.unregister_mount(mount_dir)
    try:
        os.rmdir(mount_dir)
        registry.unregister_dir(mount_dir)
    except OSError as error:
        log.debug(f"Leaving {mount_dir} for cleanup: {error}")

    log.debug(f"Found {markers} RescArch marker(s) in {iso_path}")
    if markers < 1:
        raise UnverifiedSource(str(iso_path))
    return markers


def wipe_device(device: TargetDevice, *, dry_run: bool = False) -> None:
    """Remove partition table and filesystem signatures, then re-read the table.

    Raises:
        WipeFailed: If both wipefs and the zero-fill fallback fail
    """
    try:
        run_destructive(["wipefs", "-aq", device.path], dry_run=dry_run)
    except (subprocess.CalledProcessError, OSError) as error:
        log.warning(f"wipefs failed, using fallback method: {error}")
        try:
            run_destructive(
                ["dd", "if=/dev/zero", f"of={device.path}", "bs=1M", "count=10", "status=none"],
                dry_run=dry_run,
            )
        except (subprocess.CalledProcessError, OSError) as fallback_error:
            raise WipeFailed(
                f"Failed to wipe {device.path}: {fallback_error}", device=device.path
            ) from fallback_error
    partition_table.refresh(device.path, settle_seconds=2)


def _copy(
    source: Path,
    target: str,
    block_size: str,
    *,
    dry_run: bool,
    progress_callback: Optional[ProgressCallback],
) -> None:
    command = [
        "dd",
        f"if={source}",
        f"of={target}",
        f"bs={block_size}",
        "status=progress",
        "oflag=sync",
    ]
    if dry_run:
        run_destructive(command, dry_run=True)
        return
    try:
        run_streaming_copy(command, progress_callback=progress_callback)
    except (subprocess.CalledProcessError, OSError) as error:
        stderr = getattr(error, "stderr", None) or str(error)
        raise WriteFailed(
            f"Failed to write {source.name} to {target}",
            device=target,
            diagnostics=stderr.strip(),
        ) from error


def write_image(
    source: SourceImage,
    device: TargetDevice,
    *,
    dry_run: bool = False,
    progress_callback: Optional[ProgressCallback] = None,
) -> None:
    """Write the ISO onto the raw device with synchronous writes, then sync.

    Raises:
        WriteFailed: If the device cannot be unmounted or dd fails
    """
    if not dry_run and not devices.unmount_device(device):
        raise WriteFailed(
            f"Failed to unmount {device.path} before writing", device=device.path
        )
    log.info(f"Writing {source.path} ({source.size_bytes} bytes) to {device.path}")
    _copy(
        source.path,
        device.path,
        "4M",
        dry_run=dry_run,
        progress_callback=progress_callback,
    )
    sync()


def write_payload(
    image_path: Path,
    partition_path: str,
    *,
    dry_run: bool = False,
    progress_callback: Optional[ProgressCallback] = None,
) -> None:
    """Write a filesystem image verbatim onto a partition.

    Raises:
        WriteFailed: If dd fails
    """
    log.info(f"Writing {image_path} to {partition_path}")
    _copy(
        image_path,
        partition_path,
        "1M",
        dry_run=dry_run,
        progress_callback=progress_callback,
    )
    sync()
