"""Partition table operations for appending partitions after a live image.

This module handles both table kinds a hybrid ISO can carry:
- MBR (dos): read with ``sfdisk -d``, appended with ``sfdisk --append``
- GPT: read with ``sgdisk -p``, appended with ``sgdisk -n 0:0:...``

The appending tools do not reliably report the number of the partition they
create, so callers predict it from ``last_partition_number() + 1`` and then
wait for that exact device node.

Table edits and device node creation are asynchronous. ``refresh()`` must run
after every edit before anything looks for the new node.
"""

from __future__ import annotations

import os
import re
import subprocess
import time
from dataclasses import dataclass
from typing import Optional

from rescarch_media.config import settings
from rescarch_media.domain.models import MIB, PartitionTableKind
from rescarch_media.logging import LoggerFactory

from .commands import (
    command_output,
    diagnostic_output,
    run_best_effort,
    run_destructive,
)
from .devices import is_block_device, partition_table_kind
from .exceptions import PartitionCreateFailed, PartitionTimeout, UnknownPartitionTable

log = LoggerFactory.for_partition()

DEFAULT_SECTOR_SIZE = 512

# type hint -> (MBR id, GPT type code)
TYPE_CODES = {
    "linux": ("83", "8300"),
}

_P_SEPARATOR_PATTERN = re.compile(r"(nvme|mmcblk|loop)")


@dataclass(frozen=True)
class PartitionEntry:
    """One row of a partition listing, in sectors."""

    number: int
    start: int
    size: int

    @property
    def end(self) -> int:
        return self.start + max(self.size - 1, 0)


def _partition_number(node: str, device_path: str) -> Optional[int]:
    suffix = node[len(device_path):] if node.startswith(device_path) else node
    match = re.search(r"(\d+)$", suffix.lstrip("p"))
    if not match:
        return None
    return int(match.group(1))


def parse_sfdisk_dump(output: str, device_path: str) -> tuple[list[PartitionEntry], int]:
    """Parse ``sfdisk -d`` output into entries and the sector size."""
    sector_size = DEFAULT_SECTOR_SIZE
    entries: list[PartitionEntry] = []
    for line in output.splitlines():
        line = line.strip()
        if line.startswith("sector-size:"):
            match = re.search(r"sector-size:\s*(\d+)", line)
            if match:
                sector_size = int(match.group(1))
            continue
        if ":" not in line or not line.startswith("/dev/"):
            continue
        node, rest = line.split(":", 1)
        start_match = re.search(r"start=\s*(\d+)", rest)
        size_match = re.search(r"size=\s*(\d+)", rest)
        number = _partition_number(node.strip(), device_path)
        if start_match and size_match and number is not None:
            entries.append(
                PartitionEntry(
                    number=number,
                    start=int(start_match.group(1)),
                    size=int(size_match.group(1)),
                )
            )
    return entries, sector_size


def parse_sgdisk_print(output: str) -> list[int]:
    """Partition numbers from the table rows of ``sgdisk -p``."""
    numbers = []
    for line in output.splitlines():
        match = re.match(r"^\s*(\d+)\s+\d+\s+\d+\s", line)
        if match:
            numbers.append(int(match.group(1)))
    return numbers


def detect_kind(device_path: str) -> PartitionTableKind:
    """Probe the partition table type directly from the device.

    Raises:
        UnknownPartitionTable: If blkid reports neither dos nor gpt
    """
    reported = command_output(
        ["blkid", "-p", "-s", "PTTYPE", "-o", "value", device_path]
    ).strip()
    kind = partition_table_kind(reported)
    log.debug(f"Partition table of {device_path}: {reported or 'none'} -> {kind.name}")
    if kind is PartitionTableKind.UNKNOWN:
        raise UnknownPartitionTable(
            device_path,
            reported=reported,
            diagnostics=diagnostic_output(["blkid", "-p", device_path]),
        )
    return kind


def mbr_entries(device_path: str) -> tuple[list[PartitionEntry], int]:
    return parse_sfdisk_dump(command_output(["sfdisk", "-d", device_path]), device_path)


def last_partition_number(device_path: str, kind: PartitionTableKind) -> Optional[int]:
    """Highest partition number currently in the table, or None if empty."""
    if kind is PartitionTableKind.MBR:
        numbers = [entry.number for entry in mbr_entries(device_path)[0]]
    elif kind is PartitionTableKind.GPT:
        numbers = parse_sgdisk_print(command_output(["sgdisk", "-p", device_path]))
    else:
        raise UnknownPartitionTable(device_path)
    return max(numbers) if numbers else None


def last_partition_end(entries: list[PartitionEntry]) -> Optional[int]:
    """Last sector used by any MBR partition (hybrid ISO entries overlap)."""
    if not entries:
        return None
    return max(entry.end for entry in entries)


def table_listing(device_path: str, kind: PartitionTableKind) -> str:
    """Human readable table for error reports."""
    if kind is PartitionTableKind.GPT:
        return diagnostic_output(["sgdisk", "-p", device_path])
    return diagnostic_output(["parted", "-s", device_path, "print"])


def append_partition(
    device_path: str,
    kind: PartitionTableKind,
    size_mb: int = 0,
    type_hint: str = "linux",
    *,
    dry_run: bool = False,
) -> None:
    """Append a partition after the last existing one.

    Args:
        device_path: Whole-disk device (e.g., /dev/sdb)
        kind: Partition table kind from detect_kind()
        size_mb: Partition size in MiB; 0 uses all remaining space
        type_hint: Partition type key from TYPE_CODES
        dry_run: Log the edit instead of performing it

    Raises:
        UnknownPartitionTable: If kind is UNKNOWN
        PartitionCreateFailed: If the table editor fails
    """
    mbr_type, gpt_type = TYPE_CODES[type_hint]
    size_label = f"{size_mb} MiB" if size_mb else "all remaining space"
    log.info(f"Appending {kind.name} partition on {device_path} ({size_label})")

    if kind is PartitionTableKind.MBR:
        entries, sector_size = mbr_entries(device_path)
        last_end = last_partition_end(entries)
        if last_end is None:
            raise PartitionCreateFailed(
                "Could not determine last partition end",
                device=device_path,
                diagnostics=diagnostic_output(["sfdisk", "-l", device_path]),
            )
        start_sector = last_end + 1
        size_field = ""
        if size_mb:
            size_field = str(size_mb * MIB // sector_size)
        script = f"{start_sector},{size_field},{mbr_type}\n"
        command = ["sfdisk", "-q", "--append", "--no-reread", "--force", device_path]
        try:
            run_destructive(command, dry_run=dry_run, input_text=script)
        except (subprocess.CalledProcessError, OSError) as error:
            raise PartitionCreateFailed(
                f"sfdisk could not append a partition to {device_path}: "
                f"{getattr(error, 'stderr', None) or error}",
                device=device_path,
                diagnostics=table_listing(device_path, kind),
            ) from error
    elif kind is PartitionTableKind.GPT:
        end = f"+{size_mb}M" if size_mb else "0"
        command = ["sgdisk", "-q", "-n", f"0:0:{end}", "-t", f"0:{gpt_type}", device_path]
        try:
            # The ISO's backup header sits at the image end, not the disk end
            run_destructive(["sgdisk", "-e", device_path], dry_run=dry_run)
            run_destructive(command, dry_run=dry_run)
        except (subprocess.CalledProcessError, OSError) as error:
            raise PartitionCreateFailed(
                f"sgdisk could not append a partition to {device_path}: "
                f"{getattr(error, 'stderr', None) or error}",
                device=device_path,
                diagnostics=table_listing(device_path, kind),
            ) from error
    else:
        raise UnknownPartitionTable(device_path)


def predicted_partition_path(device_path: str, number: int) -> str:
    """Node name the kernel will use for partition ``number`` of a device."""
    name = os.path.basename(device_path)
    if name[-1:].isdigit() or _P_SEPARATOR_PATTERN.search(name):
        return f"{device_path}p{number}"
    return f"{device_path}{number}"


def resolve_partition_path(device_path: str, number: int) -> str:
    """Existing node for partition ``number``, else the predicted name."""
    for candidate in (f"{device_path}p{number}", f"{device_path}{number}"):
        if is_block_device(candidate):
            return candidate
    return predicted_partition_path(device_path, number)


def wait_for_partition(
    partition_path: str,
    timeout: Optional[float] = None,
    parent_path: Optional[str] = None,
) -> None:
    """Poll once per second until the partition node exists.

    Raises:
        PartitionTimeout: If the node is still missing after ``timeout`` seconds
    """
    if timeout is None:
        timeout = settings.get_float("partition_wait_timeout_seconds")
    deadline = time.monotonic() + timeout
    while True:
        if is_block_device(partition_path):
            log.debug(f"Partition node found: {partition_path}")
            return
        if time.monotonic() >= deadline:
            break
        time.sleep(1)

    listing_target = parent_path or re.sub(r"p?\d+$", "", partition_path)
    listing = diagnostic_output(["lsblk", listing_target])
    log.error(f"Partition {partition_path} did not appear within {timeout:g}s")
    raise PartitionTimeout(partition_path, timeout, diagnostics=listing)


def refresh(device_path: str, settle_seconds: Optional[float] = None) -> None:
    """Flush buffers, ask the kernel to re-read the table and let udev settle."""
    if settle_seconds is None:
        settle_seconds = settings.get_float("settle_seconds")
    run_best_effort(["sync"])
    run_best_effort(["blockdev", "--rereadpt", device_path])
    run_best_effort(["partprobe", device_path])
    if settle_seconds > 0:
        time.sleep(settle_seconds)
