"""Tests for services/writer.py - the write workflow."""

import io
from pathlib import Path
from unittest.mock import Mock

import pytest

from rescarch_media.domain.models import (
    PartitionFilesystem,
    PartitionRecord,
    PartitionRole,
    WritePlan,
    WriteStage,
)
from rescarch_media.services import writer as writer_module
from rescarch_media.services.writer import MediaWriter
from rescarch_media.storage import devices, iso, validation
from rescarch_media.storage.exceptions import (
    InvalidStageTransition,
    SystemMountBlocked,
    UnverifiedSource,
    UserCancelled,
    WipeFailed,
)
from rescarch_media.ui.console import ProgressContext


@pytest.fixture
def output():
    return io.StringIO()


@pytest.fixture
def progress(output):
    return ProgressContext(stream=output, error_stream=output, color=False)


@pytest.fixture
def workflow(mocker, usb_target, source_image):
    """Patch every device-touching call the workflow makes."""
    mocks = Mock()
    mocks.check_privileges = mocker.patch.object(validation, "check_privileges")
    mocks.check_tools = mocker.patch.object(validation, "check_required_tools")
    mocks.validate_source = mocker.patch.object(
        validation, "validate_source", return_value=source_image
    )
    mocks.markers = mocker.patch.object(iso, "verify_source_markers", return_value=3)
    mocks.label = mocker.patch.object(iso, "get_iso_label", return_value="RESCARCH_202401")
    mocks.resolve = mocker.patch.object(devices, "resolve", return_value=usb_target)
    mocker.patch.object(devices, "is_system_disk", return_value=False)
    mocks.system_mounts = mocker.patch.object(
        devices, "mounted_system_paths", return_value=[]
    )
    mocks.mounts = mocker.patch.object(devices, "mounted_partitions", return_value=[])
    mocks.unmount = mocker.patch.object(devices, "unmount_device", return_value=True)
    mocks.wipe = mocker.patch.object(iso, "wipe_device")
    mocks.write = mocker.patch.object(iso, "write_image")

    def provision(request):
        number = 3 + len(mocks.provisioner.return_value.provision.call_args_list) - 1
        filesystem = (
            PartitionFilesystem.EROFS_PAYLOAD
            if request.role is PartitionRole.OFFLINE_REPO
            else PartitionFilesystem.EXT4
        )
        return PartitionRecord(number, f"/dev/sdb{number}", request.role, filesystem)

    mocks.provisioner = mocker.patch.object(writer_module, "PartitionProvisioner")
    mocks.provisioner.return_value.provision.side_effect = provision
    return mocks


def make_plan(iso_file, **kwargs):
    return WritePlan(iso_path=iso_file, device_path="/dev/sdb", **kwargs)


class TestStageTransitions:
    """Tests for MediaWriter.advance()."""

    def test_forward(self, registry):
        media_writer = MediaWriter(registry)
        media_writer.advance(WriteStage.VALIDATED)
        media_writer.advance(WriteStage.WIPED)
        assert media_writer.stage is WriteStage.WIPED

    def test_optional_stages_can_be_skipped(self, registry):
        media_writer = MediaWriter(registry)
        media_writer.stage = WriteStage.IMAGE_WRITTEN
        media_writer.advance(WriteStage.COMPLETE)
        assert media_writer.stage is WriteStage.COMPLETE

    def test_backwards_rejected(self, registry):
        media_writer = MediaWriter(registry)
        media_writer.stage = WriteStage.WIPED
        with pytest.raises(InvalidStageTransition) as exc_info:
            media_writer.advance(WriteStage.VALIDATED)
        assert exc_info.value.current == "wiped"
        assert exc_info.value.requested == "validated"

    def test_repeat_rejected(self, registry):
        media_writer = MediaWriter(registry)
        media_writer.advance(WriteStage.VALIDATED)
        with pytest.raises(InvalidStageTransition):
            media_writer.advance(WriteStage.VALIDATED)


class TestTotalSteps:
    def test_iso_only(self, iso_file):
        assert MediaWriter.total_steps(make_plan(iso_file)) == 3

    def test_with_partitions(self, iso_file, offline_image_file):
        plan = make_plan(
            iso_file, offline_image_path=offline_image_file, create_persistent=True
        )
        assert MediaWriter.total_steps(plan) == 5

    def test_inline_build(self, iso_file):
        plan = make_plan(iso_file, offline_packages=("base",))
        assert MediaWriter.total_steps(plan) == 3 + 6 + 1


class TestRun:
    """Tests for MediaWriter.run()."""

    def test_iso_only(self, registry, workflow, progress, iso_file, usb_target):
        prompt = Mock(return_value="YES")
        media_writer = MediaWriter(registry, progress=progress, prompt=prompt)

        records = media_writer.run(make_plan(iso_file))

        assert records == []
        assert media_writer.stage is WriteStage.COMPLETE
        workflow.wipe.assert_called_once_with(usb_target, dry_run=False)
        workflow.write.assert_called_once()
        workflow.provisioner.return_value.provision.assert_not_called()
        prompt.assert_called_once_with("Type 'YES' in capitals to proceed: ")

    def test_offline_then_persistent(
        self, registry, workflow, progress, iso_file, offline_image_file, offline_image, mocker
    ):
        mocker.patch.object(validation, "validate_offline_image", return_value=offline_image)
        media_writer = MediaWriter(registry, progress=progress, prompt=Mock(return_value="YES"))
        plan = make_plan(
            iso_file, offline_image_path=offline_image_file, create_persistent=True
        )

        records = media_writer.run(plan)

        assert [(r.number, r.role) for r in records] == [
            (3, PartitionRole.OFFLINE_REPO),
            (4, PartitionRole.PERSISTENT),
        ]
        requests = [
            c.args[0] for c in workflow.provisioner.return_value.provision.call_args_list
        ]
        assert requests[0].size_mb == 3 + 10
        assert requests[1].size_mb == 0
        assert media_writer.stage is WriteStage.COMPLETE

    def test_order_of_destructive_calls(self, registry, workflow, progress, iso_file):
        calls = Mock()
        calls.attach_mock(workflow.wipe, "wipe")
        calls.attach_mock(workflow.write, "write")
        calls.attach_mock(workflow.provisioner.return_value.provision, "provision")

        MediaWriter(registry, progress=progress, prompt=Mock(return_value="YES")).run(
            make_plan(iso_file, create_persistent=True)
        )

        assert [c[0] for c in calls.mock_calls] == ["wipe", "write", "provision"]

    def test_home_mount_blocks_even_with_yes(self, registry, workflow, progress, iso_file):
        workflow.system_mounts.return_value = [("sdb2", "/home")]
        media_writer = MediaWriter(registry, progress=progress, prompt=Mock())

        with pytest.raises(SystemMountBlocked):
            media_writer.run(make_plan(iso_file, assume_yes=True))

        workflow.wipe.assert_not_called()
        workflow.write.assert_not_called()
        assert media_writer.stage is WriteStage.UNVALIDATED

    def test_declined_confirmation(self, registry, workflow, progress, iso_file):
        media_writer = MediaWriter(registry, progress=progress, prompt=Mock(return_value="yes"))

        with pytest.raises(UserCancelled):
            media_writer.run(make_plan(iso_file))

        workflow.wipe.assert_not_called()

    def test_yes_counts_down(self, registry, workflow, progress, iso_file, fast_settings):
        fast_settings["countdown_seconds"] = 3
        prompt = Mock()
        sleep = Mock()

        MediaWriter(registry, progress=progress, prompt=prompt, sleep=sleep).run(
            make_plan(iso_file, assume_yes=True)
        )

        prompt.assert_not_called()
        sleep.assert_called_once_with(3)

    def test_unmount_failure(self, registry, workflow, progress, iso_file):
        workflow.unmount.return_value = False
        media_writer = MediaWriter(registry, progress=progress, prompt=Mock(return_value="YES"))

        with pytest.raises(WipeFailed):
            media_writer.run(make_plan(iso_file))

        workflow.wipe.assert_not_called()
        assert media_writer.stage is WriteStage.VALIDATED

    def test_dry_run(self, registry, workflow, progress, output, iso_file, usb_target):
        MediaWriter(registry, progress=progress, prompt=Mock(return_value="YES")).run(
            make_plan(iso_file, create_persistent=True, dry_run=True)
        )

        workflow.unmount.assert_not_called()
        workflow.wipe.assert_called_once_with(usb_target, dry_run=True)
        assert workflow.write.call_args.kwargs["dry_run"] is True
        assert workflow.provisioner.call_args.kwargs["dry_run"] is True
        assert "Dry run" in output.getvalue()
        assert "[dry-run] RescArch written to /dev/sdb" in output.getvalue()

    def test_mounted_partitions_warned(self, registry, workflow, progress, output, iso_file):
        workflow.mounts.return_value = [("sdb1", "/run/media/user/RESCARCH_202401")]

        MediaWriter(registry, progress=progress, prompt=Mock(return_value="YES")).run(
            make_plan(iso_file)
        )

        assert "sdb1 on /run/media/user/RESCARCH_202401" in output.getvalue()

    def test_inline_offline_build(self, registry, workflow, progress, iso_file, offline_image, mocker):
        builder = mocker.patch.object(writer_module, "OfflineRepoBuilder")
        builder.return_value.build.return_value = offline_image
        plan = make_plan(iso_file, offline_packages=("base", "linux"), pacman_cache=Path("/c"))

        records = MediaWriter(
            registry, progress=progress, prompt=Mock(return_value="YES")
        ).run(plan)

        build_args = builder.return_value.build.call_args.args
        assert build_args[0] == ["base", "linux"]
        assert build_args[1].name == "rescarch-offline.erofs"
        assert builder.call_args.kwargs["cache_dir"] == Path("/c")
        assert [r.role for r in records] == [PartitionRole.OFFLINE_REPO]


class TestUnverifiedSource:
    def test_prompt_accepted(self, registry, workflow, progress, iso_file):
        workflow.markers.side_effect = UnverifiedSource(str(iso_file))
        prompt = Mock(side_effect=["y", "YES"])

        MediaWriter(registry, progress=progress, prompt=prompt).run(make_plan(iso_file))

        assert prompt.call_args_list[0].args[0] == "Continue anyway? (y/N): "

    def test_prompt_declined(self, registry, workflow, progress, iso_file):
        workflow.markers.side_effect = UnverifiedSource(str(iso_file))

        with pytest.raises(UserCancelled):
            MediaWriter(registry, progress=progress, prompt=Mock(return_value="n")).run(
                make_plan(iso_file)
            )
        workflow.wipe.assert_not_called()

    def test_yes_accepts(self, registry, workflow, progress, output, iso_file):
        workflow.markers.side_effect = UnverifiedSource(str(iso_file))
        prompt = Mock()

        MediaWriter(registry, progress=progress, prompt=prompt, sleep=Mock()).run(
            make_plan(iso_file, assume_yes=True)
        )

        prompt.assert_not_called()
        assert "Could not verify this is a RescArch ISO" in output.getvalue()


class TestSummary:
    def test_summary_lines(self, registry, source_image, usb_target, iso_file):
        media_writer = MediaWriter(registry)
        media_writer.source = source_image
        media_writer.device = usb_target

        lines = media_writer.summary_lines(
            make_plan(iso_file, create_persistent=True), 8 * 1024**3
        )

        assert lines[0] == lines[-1] == "=" * 40
        assert f"File: {source_image.path}" in lines
        assert "Device: /dev/sdb" in lines
        assert "Hardware: SanDisk Ultra Fit" in lines
        assert "Offline packages: NO" in lines
        assert "Persistent storage: YES (~8.0GiB)" in lines

    def test_fixed_persistent_size(self, registry, source_image, usb_target, iso_file):
        media_writer = MediaWriter(registry)
        media_writer.source = source_image
        media_writer.device = usb_target

        lines = media_writer.summary_lines(
            make_plan(iso_file, create_persistent=True, persistent_size_bytes=4 * 1024**3),
            0,
        )

        assert "Persistent storage: YES (4.0GiB)" in lines
