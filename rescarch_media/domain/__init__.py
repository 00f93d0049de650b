"""Domain models for writing RescArch media."""

from __future__ import annotations

from .models import (
    CleanupEntry,
    CleanupKind,
    DeviceKind,
    OfflineRepoImage,
    PartitionFilesystem,
    PartitionRecord,
    PartitionRequest,
    PartitionRole,
    PartitionTableKind,
    SourceImage,
    TargetDevice,
    WritePlan,
    WriteStage,
)


__all__ = [
    "CleanupEntry",
    "CleanupKind",
    "DeviceKind",
    "OfflineRepoImage",
    "PartitionFilesystem",
    "PartitionRecord",
    "PartitionRequest",
    "PartitionRole",
    "PartitionTableKind",
    "SourceImage",
    "TargetDevice",
    "WritePlan",
    "WriteStage",
]
