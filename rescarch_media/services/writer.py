"""Write workflow: validate, wipe, write the ISO, append partitions.

``MediaWriter`` moves through ``WriteStage`` strictly forward:

    UNVALIDATED -> VALIDATED -> WIPED -> IMAGE_WRITTEN
        -> [OFFLINE_PROVISIONED] -> [PERSISTENT_PROVISIONED] -> COMPLETE

Optional stages may be skipped; going back or repeating a stage raises
``InvalidStageTransition``. Nothing is rolled back on failure: once the wipe
has started the device has to be written again from the start.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Callable, Optional

from rescarch_media.config import settings
from rescarch_media.domain.models import (
    OfflineRepoImage,
    PartitionRecord,
    PartitionRole,
    SourceImage,
    TargetDevice,
    WritePlan,
    WriteStage,
)
from rescarch_media.logging import LoggerFactory
from rescarch_media.storage import devices, iso, validation
from rescarch_media.storage.cleanup import CleanupRegistry
from rescarch_media.storage.device_kinds import class_for_kind
from rescarch_media.storage.exceptions import (
    InvalidStageTransition,
    UnverifiedSource,
    UserCancelled,
    WipeFailed,
)
from rescarch_media.storage.offline_repo import TOTAL_STEPS as OFFLINE_BUILD_STEPS
from rescarch_media.storage.offline_repo import OfflineRepoBuilder
from rescarch_media.storage.provision import SUBSTEPS_PER_REQUEST, PartitionProvisioner
from rescarch_media.storage.sizes import format_iec
from rescarch_media.ui.console import Prompt, ProgressContext, confirm_yes_no, console_prompt

SUMMARY_RULE = "=" * 40

ROLE_STEPS = {
    PartitionRole.OFFLINE_REPO: ("Creating offline package partition", WriteStage.OFFLINE_PROVISIONED),
    PartitionRole.PERSISTENT: (
        "Creating persistent storage partition",
        WriteStage.PERSISTENT_PROVISIONED,
    ),
}


class MediaWriter:
    """Drive one write run from validation to completion."""

    def __init__(
        self,
        registry: CleanupRegistry,
        *,
        progress: Optional[ProgressContext] = None,
        prompt: Prompt = console_prompt,
        sleep: Callable[[float], None] = time.sleep,
        job_id: Optional[str] = None,
    ):
        self.registry = registry
        self.progress = progress or ProgressContext()
        self.prompt = prompt
        self.sleep = sleep
        self.log = LoggerFactory.for_write(job_id)
        self.stage = WriteStage.UNVALIDATED
        self.source: Optional[SourceImage] = None
        self.device: Optional[TargetDevice] = None
        self.offline_image: Optional[OfflineRepoImage] = None
        self.records: list[PartitionRecord] = []

    def advance(self, stage: WriteStage) -> None:
        """Move to a later stage. Raises InvalidStageTransition otherwise."""
        if stage.index <= self.stage.index:
            raise InvalidStageTransition(self.stage.value, stage.value)
        self.log.debug(f"Stage {self.stage.value} -> {stage.value}")
        self.stage = stage

    @staticmethod
    def total_steps(plan: WritePlan) -> int:
        steps = 3
        if plan.offline_packages and plan.offline_image_path is None:
            steps += OFFLINE_BUILD_STEPS
        if plan.create_offline:
            steps += 1
        if plan.create_persistent:
            steps += 1
        return steps

    def run(self, plan: WritePlan) -> list[PartitionRecord]:
        """Execute the plan.

        Returns:
            Records of the appended partitions, offline repository first

        Raises:
            MediaError: Any validation, safety or write failure
        """
        self.progress.total_steps = self.total_steps(plan)
        if plan.dry_run:
            self.progress.warning("Dry run: device-modifying commands will only be logged")

        if plan.offline_packages and plan.offline_image_path is None:
            self.offline_image = self._build_offline_image(plan)

        available_after = self._validate(plan)
        self._print_summary(plan, available_after)
        self._confirm(plan)
        self.advance(WriteStage.VALIDATED)

        self._wipe(plan)
        self.advance(WriteStage.WIPED)

        self._write_iso(plan)
        self.advance(WriteStage.IMAGE_WRITTEN)

        overhead_mb = settings.OFFLINE_OVERHEAD_MB
        provisioner = PartitionProvisioner(
            self.device,
            offline_image=self.offline_image,
            dry_run=plan.dry_run,
            progress=self.progress,
        )
        for request in plan.partition_requests(self.offline_image, overhead_mb):
            step_name, stage = ROLE_STEPS[request.role]
            self.progress.begin_step(step_name, SUBSTEPS_PER_REQUEST)
            record = provisioner.provision(request)
            self.records.append(record)
            self.progress.success(f"Partition {record.device_path} ready")
            self.advance(stage)

        self.advance(WriteStage.COMPLETE)
        self._print_completion(plan)
        return list(self.records)

    def _build_offline_image(self, plan: WritePlan) -> OfflineRepoImage:
        validation.check_privileges()
        validation.check_required_tools(validation.OFFLINE_TOOLS)
        output_dir = Path(self.registry.make_temp_dir(prefix="rescarch-offline-image-"))
        builder = OfflineRepoBuilder(
            self.registry, cache_dir=plan.pacman_cache, progress=self.progress
        )
        return builder.build(list(plan.offline_packages), output_dir / "rescarch-offline.erofs")

    def _validate(self, plan: WritePlan) -> int:
        progress = self.progress
        progress.begin_step("Validation and system checks", 6)

        progress.substep("Checking privileges and required tools")
        validation.check_privileges()
        validation.check_required_tools(validation.WRITE_TOOLS)

        progress.substep("Validating ISO file")
        source = validation.validate_source(plan.iso_path)
        progress.info(f"ISO: {source.path} ({format_iec(source.size_bytes)})")
        self._verify_source(source, plan.assume_yes)
        source = SourceImage(
            path=source.path,
            size_bytes=source.size_bytes,
            volume_label=iso.get_iso_label(source.path),
        )
        self.source = source

        progress.substep("Validating offline repository image")
        if plan.offline_image_path is not None:
            self.offline_image = validation.validate_offline_image(plan.offline_image_path)
        if self.offline_image is not None:
            progress.info(
                f"Offline image: {self.offline_image.path} "
                f"({format_iec(self.offline_image.size_bytes)})"
            )
        else:
            progress.info("No offline repository requested")

        progress.substep("Validating target device")
        device = validation.validate_device(plan.device_path)
        self.device = device
        mounts = devices.mounted_partitions(device)
        if mounts:
            progress.warning(
                "Mounted partitions will be unmounted: "
                + ", ".join(f"{name} on {mountpoint}" for name, mountpoint in mounts)
            )

        progress.substep("Gathering device information")
        progress.info(
            f"Device: {device.path} ({format_iec(device.size_bytes)}) - {device.description}"
        )
        if device.hardware:
            progress.info(f"Hardware: {device.hardware}")
        if device.transport and device.transport != "Unknown":
            progress.info(f"Transport: {device.transport}")

        progress.substep("Checking available space")
        available_after = validation.validate_capacity(plan, source, device, self.offline_image)
        progress.success("All validation checks passed")
        return available_after

    def _verify_source(self, source: SourceImage, assume_yes: bool) -> None:
        try:
            markers = iso.verify_source_markers(source.path, self.registry)
        except UnverifiedSource:
            self.progress.warning("Could not verify this is a RescArch ISO")
            if assume_yes:
                self.log.warning(f"Unverified source {source.path} accepted by --yes")
                return
            if not confirm_yes_no(self.prompt, "Continue anyway? (y/N): "):
                raise UserCancelled()
            return
        self.progress.info(f"RescArch markers found: {markers}")

    def summary_lines(self, plan: WritePlan, available_after: int) -> list[str]:
        source = self.source
        device = self.device
        lines = [
            SUMMARY_RULE,
            ":: ISO Information",
            f"File: {source.path}",
            f"Label: {source.volume_label}",
            f"Size: {format_iec(source.size_bytes)}",
        ]
        if self.offline_image is not None:
            lines += [
                "",
                ":: Offline Repository",
                f"File: {self.offline_image.path}",
                f"Size: {format_iec(self.offline_image.size_bytes)}",
            ]
        lines += ["", ":: Target Device", f"Device: {device.path}", f"Type: {device.description}"]
        if device.hardware:
            lines.append(f"Hardware: {device.hardware}")
        lines.append(f"Size: {format_iec(device.size_bytes)}")
        if device.transport and device.transport != "Unknown":
            lines.append(f"Transport: {device.transport}")
        lines += class_for_kind(device.kind).extra_info(device.name)

        lines += ["", ":: Configuration"]
        lines.append(f"Offline packages: {'YES' if plan.create_offline else 'NO'}")
        if not plan.create_persistent:
            lines.append("Persistent storage: NO")
        elif plan.persistent_size_bytes:
            lines.append(f"Persistent storage: YES ({format_iec(plan.persistent_size_bytes)})")
        else:
            lines.append(f"Persistent storage: YES (~{format_iec(available_after)})")
        if plan.dry_run:
            lines.append("Dry run: YES")
        lines.append(SUMMARY_RULE)
        return lines

    def _print_summary(self, plan: WritePlan, available_after: int) -> None:
        self.progress.plain()
        for line in self.summary_lines(plan, available_after):
            self.progress.plain(line)
        self.progress.plain()

    def _confirm(self, plan: WritePlan) -> None:
        validation.confirm_removable(
            self.device, self.prompt, plan.assume_yes, warn=self.progress.warning
        )
        validation.confirm_destruction(
            self.device,
            self.prompt,
            plan.assume_yes,
            warn=self.progress.warning,
            sleep=self.sleep,
        )

    def _wipe(self, plan: WritePlan) -> None:
        device = self.device
        self.progress.begin_step(f"Wiping device {device.path}", 2)
        self.progress.substep("Unmounting all partitions")
        self.progress.info(f"Unmounting {device.path}*")
        if not plan.dry_run and not devices.unmount_device(device):
            raise WipeFailed(f"Failed to unmount partitions of {device.path}", device=device.path)
        self.progress.substep("Wiping filesystem signatures and refreshing partition table")
        iso.wipe_device(device, dry_run=plan.dry_run)
        self.progress.success(f"Device {device.path} wiped")

    def _write_iso(self, plan: WritePlan) -> None:
        source = self.source
        self.progress.begin_step("Writing ISO", 2)
        self.progress.substep(f"Writing {source.volume_label} to {self.device.path}")
        iso.write_image(
            source,
            self.device,
            dry_run=plan.dry_run,
            progress_callback=self.progress.copy_progress(source.size_bytes),
        )
        self.progress.substep("Syncing")
        self.progress.success("ISO written successfully")

    def _print_completion(self, plan: WritePlan) -> None:
        prefix = "[dry-run] " if plan.dry_run else ""
        self.progress.plain()
        self.progress.success(f"{prefix}RescArch written to {self.device.path}")
        for record in self.records:
            label = (
                settings.OFFLINE_LABEL
                if record.role is PartitionRole.OFFLINE_REPO
                else settings.PERSISTENT_LABEL
            )
            self.progress.plain(
                f"  {record.device_path}: {record.role.value} "
                f"({record.filesystem.value}, label {label})"
            )
        self.log.info(
            f"Write complete on {self.device.path} with {len(self.records)} extra partition(s)"
        )
