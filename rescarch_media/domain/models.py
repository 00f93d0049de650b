"""Domain model for writing RescArch media.

Type-safe objects shared by the inspection, validation, partitioning and
workflow layers instead of raw lsblk dicts.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

MIB = 1024 * 1024


# ==============================================================================
# Target Device Domain
# ==============================================================================


class PartitionTableKind(Enum):
    """Partition table format of a device."""

    MBR = "dos"
    GPT = "gpt"
    UNKNOWN = "unknown"


class DeviceKind(Enum):
    """Family of block device, derived from the kernel name."""

    NVME = "nvme"
    MMC = "mmc"
    SATA_SAS = "sata-sas"
    IDE = "ide"
    VIRTUAL = "virtual"
    XEN_VIRTUAL = "xen-virtual"
    OPTICAL = "optical"
    NETWORK_BLOCK = "network-block"
    CEPH_RBD = "ceph-rbd"
    LOOP = "loop"
    RAM = "ram"
    OTHER = "other"


@dataclass(frozen=True)
class TargetDevice:
    """A whole-disk block device selected as write target.

    Resolved once during validation. The workflow keeps using this object
    after the wipe; it is never looked up again by name.
    """

    path: str  # e.g., "/dev/sdb"
    name: str  # e.g., "sdb"
    size_bytes: int
    transport: str | None = None  # e.g., "usb", "sata", "nvme"
    rotational: bool = False
    removable: bool = False
    kind: DeviceKind = DeviceKind.OTHER
    category: str = "Block Device"
    vendor: str | None = None
    model: str | None = None
    partition_table_kind: PartitionTableKind = PartitionTableKind.UNKNOWN

    @property
    def hardware(self) -> str:
        """Vendor and model joined for display, or an empty string."""
        return " ".join(part.strip() for part in (self.vendor, self.model) if part)

    @property
    def description(self) -> str:
        """Category plus an SSD hint for generic and virtual disks."""
        if not self.rotational and self.kind in (DeviceKind.OTHER, DeviceKind.VIRTUAL):
            return f"{self.category} (SSD)"
        return self.category


# ==============================================================================
# Image Domain
# ==============================================================================


@dataclass(frozen=True)
class SourceImage:
    """The ISO image to write."""

    path: Path
    size_bytes: int
    volume_label: str = "RESCARCH"


@dataclass(frozen=True)
class OfflineRepoImage:
    """A pre-built EROFS image holding the offline package repository."""

    path: Path
    size_bytes: int

    def partition_size_mb(self, overhead_mb: int) -> int:
        """Partition size for this payload: whole MiB plus fixed overhead."""
        return self.size_bytes // MIB + overhead_mb


# ==============================================================================
# Partition Domain
# ==============================================================================


class PartitionRole(Enum):
    """What an appended partition is for. Declaration order is append order."""

    OFFLINE_REPO = "offline-repo"
    PERSISTENT = "persistent"


class PartitionFilesystem(Enum):
    EROFS_PAYLOAD = "erofs"
    EXT4 = "ext4"


@dataclass(frozen=True)
class PartitionRequest:
    """Request to append one partition. size_mb == 0 means all remaining space."""

    role: PartitionRole
    size_mb: int = 0


@dataclass(frozen=True)
class PartitionRecord:
    """A partition that exists on the device and has a visible node."""

    number: int
    device_path: str
    role: PartitionRole
    filesystem: PartitionFilesystem


# ==============================================================================
# Cleanup Domain
# ==============================================================================


class CleanupKind(Enum):
    MOUNT = "mount"
    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class CleanupEntry:
    """A transient resource owned by the current run."""

    kind: CleanupKind
    path: str


# ==============================================================================
# Write Plan / Stages
# ==============================================================================


class WriteStage(Enum):
    """Stages of a write run. Order of declaration is the only legal order."""

    UNVALIDATED = "unvalidated"
    VALIDATED = "validated"
    WIPED = "wiped"
    IMAGE_WRITTEN = "image-written"
    OFFLINE_PROVISIONED = "offline-provisioned"
    PERSISTENT_PROVISIONED = "persistent-provisioned"
    COMPLETE = "complete"

    @property
    def index(self) -> int:
        return list(WriteStage).index(self)


@dataclass(frozen=True)
class WritePlan:
    """Everything the user asked for, after argument parsing."""

    iso_path: Path
    device_path: str
    offline_image_path: Path | None = None
    # Built inline before validation when no pre-built image is given
    offline_packages: tuple[str, ...] = ()
    pacman_cache: Path | None = None
    create_persistent: bool = False
    persistent_size_bytes: int | None = None  # None: all remaining space
    assume_yes: bool = False
    dry_run: bool = False

    @property
    def create_offline(self) -> bool:
        return self.offline_image_path is not None or bool(self.offline_packages)

    def partition_requests(
        self, offline_image: OfflineRepoImage | None, overhead_mb: int
    ) -> list[PartitionRequest]:
        """Partition requests in append order: offline repository first."""
        requests: list[PartitionRequest] = []
        if offline_image is not None:
            requests.append(
                PartitionRequest(
                    role=PartitionRole.OFFLINE_REPO,
                    size_mb=offline_image.partition_size_mb(overhead_mb),
                )
            )
        if self.create_persistent:
            size_mb = 0
            if self.persistent_size_bytes:
                size_mb = self.persistent_size_bytes // MIB
            requests.append(PartitionRequest(role=PartitionRole.PERSISTENT, size_mb=size_mb))
        return requests

    def required_bytes(
        self,
        source: SourceImage,
        offline_image: OfflineRepoImage | None,
        overhead_mb: int,
    ) -> int:
        """Bytes the device must hold: image, offline payload plus overhead,
        and the persistent partition when it has a concrete size."""
        required = source.size_bytes
        if offline_image is not None:
            required += offline_image.size_bytes + overhead_mb * MIB
        if self.create_persistent and self.persistent_size_bytes:
            required += self.persistent_size_bytes
        return required
