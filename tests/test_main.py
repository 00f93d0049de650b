"""Tests for the rescarch-write and rescarch-gen-offline-repo entry points."""

from pathlib import Path

import pytest

from rescarch_media import main
from rescarch_media.domain.models import OfflineRepoImage
from rescarch_media.storage.exceptions import (
    PartitionTimeout,
    SystemDiskBlocked,
    UserCancelled,
    ValidationError,
)
GIB = 1024**3


@pytest.fixture(autouse=True)
def no_log_setup(mocker):
    return mocker.patch.object(main, "setup_logging")


@pytest.fixture
def media_writer(mocker):
    writer_class = mocker.patch.object(main, "MediaWriter")
    writer_class.return_value.run.return_value = []
    return writer_class


def parse(*argv):
    return main.plan_from_args(main.build_write_parser().parse_args(list(argv)))


# ==============================================================================
# Argument Parsing
# ==============================================================================


class TestWriteArguments:
    """Tests for rescarch-write argument handling."""

    def test_iso_only(self):
        plan = parse("-i", "r.iso", "-d", "/dev/sdb")
        assert plan.iso_path == Path("r.iso")
        assert plan.device_path == "/dev/sdb"
        assert not plan.create_persistent
        assert not plan.create_offline

    def test_persistent_without_size(self):
        plan = parse("-i", "r.iso", "-d", "/dev/sdb", "-p")
        assert plan.create_persistent
        assert plan.persistent_size_bytes is None

    def test_persistent_without_size_before_other_flag(self):
        plan = parse("-i", "r.iso", "-p", "-d", "/dev/sdb")
        assert plan.create_persistent
        assert plan.persistent_size_bytes is None
        assert plan.device_path == "/dev/sdb"

    def test_persistent_with_size(self):
        plan = parse("-i", "r.iso", "-d", "/dev/sdb", "-p", "8G", "-y", "--dry-run")
        assert plan.persistent_size_bytes == 8 * GIB
        assert plan.assume_yes
        assert plan.dry_run

    @pytest.mark.parametrize("size", ["0", "500K", "1048575"])
    def test_persistent_size_under_one_mib_rejected(self, size):
        """Test sizes that would round down to "all remaining space" are refused."""
        with pytest.raises(ValidationError, match="at least 1M"):
            parse("-i", "r.iso", "-d", "/dev/sdb", "-p", size)

    def test_persistent_size_of_one_mib(self):
        plan = parse("-i", "r.iso", "-d", "/dev/sdb", "-p", "1M")
        assert plan.partition_requests(None, 10)[0].size_mb == 1

    def test_offline_image_path(self):
        plan = parse("-i", "r.iso", "-d", "/dev/sdb", "-o", "offline.erofs")
        assert plan.offline_image_path == Path("offline.erofs")
        assert plan.offline_packages == ()

    def test_offline_package_list(self):
        plan = parse(
            "-i", "r.iso", "-d", "/dev/sdb", "-o", "base,linux", "--pacman-cache", "/c"
        )
        assert plan.offline_image_path is None
        assert plan.offline_packages == ("base", "linux")
        assert plan.pacman_cache == Path("/c")
        assert plan.create_offline

    def test_existing_file_is_image(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "packages").write_bytes(b"x")
        assert main.is_image_argument("packages")
        assert not main.is_image_argument("base")

    def test_missing_required(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main.build_write_parser().parse_args(["-i", "r.iso"])
        assert exc_info.value.code == main.EXIT_FAILURE
        assert "Use -h or --help" in capsys.readouterr().err


# ==============================================================================
# Exit Codes
# ==============================================================================


class TestWriteMain:
    """Tests for write_main() exit codes."""

    def test_success(self, media_writer):
        assert main.write_main(["-i", "r.iso", "-d", "/dev/sdb"]) == main.EXIT_SUCCESS
        plan = media_writer.return_value.run.call_args.args[0]
        assert plan.device_path == "/dev/sdb"

    def test_debug_flag(self, media_writer, no_log_setup):
        main.write_main(["-i", "r.iso", "-d", "/dev/sdb", "--debug"])
        no_log_setup.assert_called_once_with(debug=True)

    def test_invalid_size(self, media_writer, capsys):
        code = main.write_main(["-i", "r.iso", "-d", "/dev/sdb", "-p", "4X"])

        assert code == main.EXIT_FAILURE
        assert "Invalid size format" in capsys.readouterr().err
        media_writer.assert_not_called()

    def test_tiny_persistent_size(self, media_writer, capsys):
        code = main.write_main(["-i", "r.iso", "-d", "/dev/sdb", "-p", "500K"])

        assert code == main.EXIT_FAILURE
        assert "at least 1M" in capsys.readouterr().err
        media_writer.assert_not_called()

    def test_safety_block(self, media_writer, capsys):
        media_writer.return_value.run.side_effect = SystemDiskBlocked("/dev/nvme0n1")

        code = main.write_main(["-i", "r.iso", "-d", "/dev/nvme0n1", "-y"])

        assert code == main.EXIT_FAILURE
        assert "BLOCKED" in capsys.readouterr().err

    def test_diagnostics_printed(self, media_writer, capsys):
        media_writer.return_value.run.side_effect = PartitionTimeout(
            "/dev/sdb3", 15, diagnostics="Device     Start\n/dev/sdb1  0"
        )

        assert main.write_main(["-i", "r.iso", "-d", "/dev/sdb"]) == main.EXIT_FAILURE
        err = capsys.readouterr().err
        assert "ERROR: Partition /dev/sdb3 was not created" in err
        assert "/dev/sdb1  0" in err

    def test_cancelled(self, media_writer, capsys):
        media_writer.return_value.run.side_effect = UserCancelled()

        assert main.write_main(["-i", "r.iso", "-d", "/dev/sdb"]) == main.EXIT_CANCELLED
        assert "Operation cancelled." in capsys.readouterr().out

    def test_interrupted(self, media_writer):
        media_writer.return_value.run.side_effect = KeyboardInterrupt

        assert main.write_main(["-i", "r.iso", "-d", "/dev/sdb"]) == main.EXIT_INTERRUPTED

    def test_cleanup_runs_on_interrupt(self, media_writer, tmp_path):
        leftover = tmp_path / "partial.erofs"

        def run(plan):
            leftover.write_bytes(b"x")
            registry = media_writer.call_args.args[0]
            registry.register_file(leftover)
            raise KeyboardInterrupt

        media_writer.return_value.run.side_effect = run

        assert main.write_main(["-i", "r.iso", "-d", "/dev/sdb"]) == main.EXIT_INTERRUPTED
        assert not leftover.exists()


class TestGenOfflineRepoMain:
    """Tests for gen_offline_repo_main()."""

    @pytest.fixture
    def builder(self, mocker, tmp_path):
        mocker.patch.object(main.validation, "check_privileges")
        mocker.patch.object(main.validation, "check_required_tools")
        builder_class = mocker.patch.object(main.offline_repo, "OfflineRepoBuilder")
        builder_class.return_value.cache_dir = tmp_path
        builder_class.return_value.package_count = 42
        builder_class.return_value.build.side_effect = lambda packages, output: OfflineRepoImage(
            path=output, size_bytes=300 * 1024 * 1024
        )
        return builder_class

    def test_success(self, builder, tmp_path, capsys):
        output = tmp_path / "offline.erofs"

        code = main.gen_offline_repo_main(["-p", "base, linux", "-o", str(output)])

        assert code == main.EXIT_SUCCESS
        builder.return_value.build.assert_called_once_with(["base", "linux"], output)
        out = capsys.readouterr().out
        assert "Packages: 42" in out
        assert "Required partition size: ~310MB" in out
        assert f"-o {output}" in out

    def test_empty_package_list(self, builder):
        assert main.gen_offline_repo_main(["-p", " , "]) == main.EXIT_FAILURE
        builder.return_value.build.assert_not_called()

    def test_missing_cache(self, builder, tmp_path, capsys):
        builder.return_value.cache_dir = tmp_path / "missing"

        code = main.gen_offline_repo_main(["-p", "base", "-o", str(tmp_path / "o.erofs")])

        assert code == main.EXIT_FAILURE
        assert "Pacman cache directory not found" in capsys.readouterr().err

    def test_overwrite_declined(self, builder, mocker, tmp_path):
        output = tmp_path / "offline.erofs"
        output.write_bytes(b"old")
        mocker.patch.object(main, "console_prompt", return_value="n")

        code = main.gen_offline_repo_main(["-p", "base", "-o", str(output)])

        assert code == main.EXIT_CANCELLED
        assert output.read_bytes() == b"old"
        builder.return_value.build.assert_not_called()
