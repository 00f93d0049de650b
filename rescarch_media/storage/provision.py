"""Appending and filling the extra partitions after the live image.

Each request goes through the same sequence:

    refresh -> detect table kind -> predict number -> append -> refresh
    -> verify number -> resolve node -> wait for node -> payload -> sync

The offline repository partition is always appended before the persistent
one, so a persistent request of "all remaining space" cannot starve it.
A failure aborts the remaining requests. Partitions already created are left
in place.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Optional

from rescarch_media.config import settings
from rescarch_media.domain.models import (
    OfflineRepoImage,
    PartitionFilesystem,
    PartitionRecord,
    PartitionRequest,
    PartitionRole,
    TargetDevice,
)
from rescarch_media.logging import LoggerFactory

from . import partition_table
from .commands import sync
from .exceptions import PartitionNumberMismatch
from .format import format_ext4
from .iso import write_payload

if TYPE_CHECKING:
    from rescarch_media.ui.console import ProgressContext

log = LoggerFactory.for_partition()

SUBSTEPS_PER_REQUEST = 5

FILESYSTEMS = {
    PartitionRole.OFFLINE_REPO: PartitionFilesystem.EROFS_PAYLOAD,
    PartitionRole.PERSISTENT: PartitionFilesystem.EXT4,
}


class PartitionProvisioner:
    """Append partitions to a freshly written device and fill them."""

    def __init__(
        self,
        device: TargetDevice,
        *,
        offline_image: Optional[OfflineRepoImage] = None,
        dry_run: bool = False,
        progress: Optional["ProgressContext"] = None,
    ):
        self.device = device
        self.offline_image = offline_image
        self.dry_run = dry_run
        self.progress = progress

    def _substep(self, name: str) -> None:
        if self.progress is not None:
            self.progress.substep(name)

    def _info(self, message: str) -> None:
        log.info(message)
        if self.progress is not None:
            self.progress.info(message)

    def provision_all(self, requests: list[PartitionRequest]) -> list[PartitionRecord]:
        ordered = sorted(requests, key=lambda request: list(PartitionRole).index(request.role))
        return [self.provision(request) for request in ordered]

    def provision(self, request: PartitionRequest) -> PartitionRecord:
        """Append one partition and write its payload.

        Raises:
            UnknownPartitionTable: If the table is neither MBR nor GPT
            PartitionCreateFailed: If the table editor fails
            PartitionNumberMismatch: If the new partition got another number
            PartitionTimeout: If the partition node never appears
            WriteFailed: If the offline payload cannot be written
            FormatFailed: If mkfs.ext4 fails
        """
        device_path = self.device.path
        with log.contextualize(role=request.role.value, device=device_path):
            self._substep("Refreshing partition table")
            partition_table.refresh(device_path)
            kind = partition_table.detect_kind(device_path)
            self._info(f"Detected partition table: {kind.name}")

            self._substep("Creating partition")
            last = partition_table.last_partition_number(device_path, kind)
            predicted = (last or 0) + 1
            log.debug(f"Last partition on {device_path}: {last}, predicting {predicted}")
            partition_table.append_partition(
                device_path, kind, request.size_mb, dry_run=self.dry_run
            )

            self._substep("Waiting for partition")
            partition_table.refresh(device_path)
            if not self.dry_run:
                self._verify_number(device_path, kind, predicted)
            partition_path = partition_table.resolve_partition_path(device_path, predicted)
            self._info(f"Partition: {partition_path}")
            if not self.dry_run:
                partition_table.wait_for_partition(partition_path, parent_path=device_path)

            self._substep(self._payload_label(request.role))
            self._write_payload(request.role, partition_path)

            self._substep("Syncing")
            sync()

        record = PartitionRecord(
            number=predicted,
            device_path=partition_path,
            role=request.role,
            filesystem=FILESYSTEMS[request.role],
        )
        log.info(f"Provisioned {request.role.value} partition {partition_path}")
        return record

    def _verify_number(self, device_path: str, kind, predicted: int) -> None:
        actual = partition_table.last_partition_number(device_path, kind)
        if actual != predicted:
            raise PartitionNumberMismatch(
                device_path,
                predicted,
                actual,
                diagnostics=partition_table.table_listing(device_path, kind),
            )

    @staticmethod
    def _payload_label(role: PartitionRole) -> str:
        if role is PartitionRole.OFFLINE_REPO:
            return "Writing offline package image"
        return "Creating ext4 filesystem"

    def _write_payload(self, role: PartitionRole, partition_path: str) -> None:
        if role is PartitionRole.OFFLINE_REPO:
            if self.offline_image is None:
                raise ValueError("Offline repository partition requested without an image")
            callback = None
            if self.progress is not None:
                callback = self.progress.copy_progress(self.offline_image.size_bytes)
            write_payload(
                Path(self.offline_image.path),
                partition_path,
                dry_run=self.dry_run,
                progress_callback=callback,
            )
        else:
            label = settings.PERSISTENT_LABEL
            format_ext4(partition_path, label, dry_run=self.dry_run)
