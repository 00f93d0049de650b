"""Custom exceptions for media writing operations.

This module defines a hierarchy of exceptions so the CLI can tell pre-flight
problems (nothing on the device was touched) apart from failures that happen
after the device has been wiped.

Exception Hierarchy:
    MediaError (base)
        ├── ValidationError
        │   ├── InvalidSizeFormat
        │   ├── DeviceNotFound
        │   ├── NotABlockDevice
        │   ├── DeviceIsPartition
        │   ├── SourceNotFound
        │   ├── SourceNotReadable
        │   ├── SourceTooSmall
        │   ├── UnverifiedSource
        │   ├── InsufficientCapacity
        │   ├── InsufficientPrivilege
        │   └── CacheDirectoryNotFound
        ├── SafetyBlock
        │   ├── SystemDiskBlocked
        │   └── SystemMountBlocked
        ├── ToolMissing
        │   └── MissingDependency
        ├── UserCancelled
        ├── DestructiveOperationFailure
        │   ├── WipeFailed
        │   ├── WriteFailed
        │   ├── UnknownPartitionTable
        │   ├── PartitionCreateFailed
        │   ├── PartitionTimeout
        │   ├── PartitionNumberMismatch
        │   └── FormatFailed
        ├── OfflineRepoError
        │   ├── DependencyResolutionFailed
        │   ├── PackageNotFound
        │   ├── MissingSignature
        │   └── RepoBuildFailed
        └── InvalidStageTransition

Usage:
    from rescarch_media.storage.exceptions import SystemDiskBlocked

    if inspector.is_system_disk(device):
        raise SystemDiskBlocked(device.path)
"""

from __future__ import annotations


class MediaError(Exception):
    """Base exception for all media writing operations."""

    diagnostics: str = ""


class ValidationError(MediaError):
    """Pre-flight check failed; the target device has not been touched."""


class InvalidSizeFormat(ValidationError):
    """Size string does not match the NUMBER[KMGT] grammar."""

    def __init__(self, value: str):
        self.value = value
        super().__init__(
            f"Invalid size format: {value!r} (use format like 1G, 500M, 2T)"
        )


class DeviceNotFound(ValidationError):
    """Device path does not exist."""

    def __init__(self, device_path: str):
        self.device_path = device_path
        super().__init__(f"Device does not exist: {device_path}")


class NotABlockDevice(ValidationError):
    """Path exists but is not a block device."""

    def __init__(self, device_path: str):
        self.device_path = device_path
        super().__init__(f"Invalid block device: {device_path} is not a block device")


class DeviceIsPartition(ValidationError):
    """A partition was given where a whole disk is required."""

    def __init__(self, device_path: str, parent: str | None):
        self.device_path = device_path
        self.parent = parent
        message = f"Target appears to be a partition, not a disk: {device_path}"
        if parent:
            message += f" (parent device: /dev/{parent})"
        super().__init__(message + ". Please use the whole disk device instead")


class SourceNotFound(ValidationError):
    """Input image file is missing."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"File not found: {path}")


class SourceNotReadable(ValidationError):
    """Input image file exists but cannot be read."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"File is not readable: {path}")


class SourceTooSmall(ValidationError):
    """Input image is below the minimum plausible size."""

    def __init__(self, path: str, size_bytes: int, minimum_bytes: int):
        self.path = path
        self.size_bytes = size_bytes
        self.minimum_bytes = minimum_bytes
        super().__init__(
            f"{path} seems too small ({size_bytes} bytes < {minimum_bytes} bytes). "
            "Is this a valid image?"
        )


class UnverifiedSource(ValidationError):
    """ISO does not carry any RescArch marker. Callers may prompt to override."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Could not verify this is a RescArch ISO: {path}")


class InsufficientCapacity(ValidationError):
    """Device is too small for the image plus requested partitions."""

    def __init__(self, device_path: str, required_bytes: int, available_bytes: int):
        self.device_path = device_path
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes
        self.shortage_bytes = required_bytes - available_bytes
        super().__init__(
            f"Not enough space on {device_path}: required {required_bytes} bytes, "
            f"available {available_bytes} bytes, short by {self.shortage_bytes} bytes"
        )


class InsufficientPrivilege(ValidationError):
    """Process is not running as root."""

    def __init__(self):
        super().__init__("This command must be run as root")


class CacheDirectoryNotFound(ValidationError):
    """Package cache directory does not exist."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Pacman cache directory not found: {path}")


class SafetyBlock(MediaError):
    """Fatal safety refusal. These are never overridable, not even with --yes."""


class SystemDiskBlocked(SafetyBlock):
    """Target device backs the root filesystem."""

    def __init__(self, device_path: str):
        self.device_path = device_path
        super().__init__(
            f"BLOCKED: {device_path} contains the root filesystem. "
            "Refusing to write to system disk"
        )


class SystemMountBlocked(SafetyBlock):
    """Target device has a partition mounted on a protected system path."""

    def __init__(self, device_path: str, mounts: list[tuple[str, str]]):
        self.device_path = device_path
        self.mounts = mounts
        mounts_str = ", ".join(f"{name} on {mountpoint}" for name, mountpoint in mounts)
        super().__init__(
            f"BLOCKED: {device_path} contains mounted system directories ({mounts_str})"
        )


class ToolMissing(MediaError):
    """Base exception for missing external utilities."""


class MissingDependency(ToolMissing):
    """A required external utility is not installed."""

    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(f"Required tool '{tool}' is not installed")


class UserCancelled(MediaError):
    """User declined a confirmation prompt."""

    def __init__(self, message: str = "Operation cancelled."):
        super().__init__(message)


class DestructiveOperationFailure(MediaError):
    """Failure after the device was modified.

    No rollback is attempted; the device may be left in an inconsistent state
    that needs manual recovery or a fresh run from validation.
    """

    def __init__(self, message: str, device: str | None = None, diagnostics: str = ""):
        self.device = device
        self.diagnostics = diagnostics
        super().__init__(message)


class WipeFailed(DestructiveOperationFailure):
    """Could not clear signatures from the device."""


class WriteFailed(DestructiveOperationFailure):
    """Raw copy onto the device or a partition failed."""


class UnknownPartitionTable(DestructiveOperationFailure):
    """Partition table kind is neither MBR nor GPT."""

    def __init__(self, device: str, reported: str = "", diagnostics: str = ""):
        self.reported = reported
        super().__init__(
            f"Could not determine partition table type of {device}"
            + (f" (reported: {reported})" if reported else ""),
            device=device,
            diagnostics=diagnostics,
        )


class PartitionCreateFailed(DestructiveOperationFailure):
    """Partition editor refused to append a partition."""


class PartitionTimeout(DestructiveOperationFailure):
    """Partition node did not appear in time."""

    def __init__(self, partition_path: str, timeout: float, diagnostics: str = ""):
        self.partition_path = partition_path
        self.timeout = timeout
        super().__init__(
            f"Partition {partition_path} was not created (waited {timeout:g}s)",
            device=partition_path,
            diagnostics=diagnostics,
        )


class PartitionNumberMismatch(DestructiveOperationFailure):
    """Table listing after append disagrees with the predicted partition number."""

    def __init__(self, device: str, predicted: int, actual: int | None, diagnostics: str = ""):
        self.predicted = predicted
        self.actual = actual
        super().__init__(
            f"Expected new partition {predicted} on {device}, "
            f"but the table now ends at {actual}",
            device=device,
            diagnostics=diagnostics,
        )


class FormatFailed(DestructiveOperationFailure):
    """Filesystem creation failed."""


class OfflineRepoError(MediaError):
    """Base exception for offline repository generation."""

    def __init__(self, message: str, diagnostics: str = ""):
        self.diagnostics = diagnostics
        super().__init__(message)


class DependencyResolutionFailed(OfflineRepoError):
    """pactree produced an empty dependency closure."""

    def __init__(self, packages: list[str], diagnostics: str = ""):
        self.packages = packages
        super().__init__(
            "Failed to resolve package dependencies for: " + ", ".join(packages),
            diagnostics=diagnostics,
        )


class PackageNotFound(OfflineRepoError):
    """Resolved package file is missing from the cache."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Package not found: {path}")


class MissingSignature(OfflineRepoError):
    """Resolved package has no detached signature."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(
            f"Signature not found: {path}. "
            "Package signatures are required for offline repository"
        )


class RepoBuildFailed(OfflineRepoError):
    """An external tool failed while building the repository image."""


class InvalidStageTransition(MediaError):
    """Write workflow was asked to move backwards or skip ahead illegally."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move from stage {current} to {requested}")
