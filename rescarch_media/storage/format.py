"""Filesystem creation for appended partitions.

Only ext4 is needed: the persistent-storage partition is formatted
non-interactively (``-F``, ``-q``) with a fixed label that the live system
looks for at boot.
"""

from __future__ import annotations

import subprocess
from typing import Optional

from rescarch_media.logging import LoggerFactory

from .commands import run_destructive
from .exceptions import FormatFailed

log = LoggerFactory.for_partition()


def build_ext4_command(partition_path: str, label: Optional[str]) -> list[str]:
    command = ["mkfs.ext4", "-q", "-F"]
    if label:
        command.extend(["-L", label])
    command.append(partition_path)
    return command


def format_ext4(partition_path: str, label: Optional[str], *, dry_run: bool = False) -> None:
    """Create an ext4 filesystem on a partition.

    Raises:
        FormatFailed: If mkfs.ext4 fails
    """
    if not partition_path.startswith("/dev/"):
        raise FormatFailed(f"Invalid partition path: {partition_path}", device=partition_path)
    log.info(f"Creating ext4 filesystem on {partition_path} (label {label})")
    try:
        run_destructive(build_ext4_command(partition_path, label), dry_run=dry_run)
    except (subprocess.CalledProcessError, OSError) as error:
        stderr = getattr(error, "stderr", None) or str(error)
        log.error(f"Format command failed on {partition_path}: {stderr.strip()}")
        raise FormatFailed(
            f"Failed to format {partition_path} as ext4",
            device=partition_path,
            diagnostics=stderr.strip(),
        ) from error
