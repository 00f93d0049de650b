import argparse
import sys
from pathlib import Path

from rescarch_media.config import settings
from rescarch_media.domain.models import MIB, WritePlan
from rescarch_media.logging import operation_context, setup_logging
from rescarch_media.services.writer import MediaWriter
from rescarch_media.storage import offline_repo, validation
from rescarch_media.storage.cleanup import CleanupRegistry, termination_signals_interrupt
from rescarch_media.storage.exceptions import (
    CacheDirectoryNotFound,
    MediaError,
    UserCancelled,
    ValidationError,
)
from rescarch_media.storage.sizes import format_iec, parse_size
from rescarch_media.ui.console import ProgressContext, console_prompt

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 2
EXIT_INTERRUPTED = 130

WRITE_EPILOG = """\
examples:
  rescarch-write -i rescarch.iso -d /dev/sdb
  rescarch-write -i rescarch.iso -d /dev/sdb -p
  rescarch-write -i rescarch.iso -d /dev/sdb -p 8G -o rescarch-offline.erofs
  rescarch-write -i rescarch.iso -d /dev/sdb -o base,linux,linux-firmware

Partitions are appended after the ISO: the offline package partition
(label RA_PACKAGES) first, then persistent storage (ext4, label RA_DATA).
"""

OFFLINE_EPILOG = """\
examples:
  rescarch-gen-offline-repo -p base,linux,linux-firmware -o offline.erofs
  rescarch-gen-offline-repo -p base,linux --pacman-cache /mnt/cache

All dependencies are resolved and included. Package signatures are
required. Pass the image to rescarch-write with -o.
"""


class ArgumentParser(argparse.ArgumentParser):
    """Usage errors exit with 1; exit code 2 means the user cancelled."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_FAILURE, f"ERROR: {message}\nUse -h or --help for usage information\n")


def build_write_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="rescarch-write",
        description="Burns a RescArch ISO image to a block device.",
        epilog=WRITE_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-i", "--iso", required=True, help="Path to the RescArch ISO file")
    parser.add_argument(
        "-d", "--device", required=True, help="Target whole-disk device (e.g., /dev/sdb)"
    )
    parser.add_argument(
        "-p",
        "--persistent",
        nargs="?",
        const="",
        default=None,
        metavar="SIZE",
        help="Create persistent storage partition (ext4). "
        "SIZE like 4G or 500M; default uses all remaining space",
    )
    parser.add_argument(
        "-o",
        "--offline",
        metavar="PATH|PACKAGES",
        help="Offline repository EROFS image, or a comma separated package list "
        "to build one first",
    )
    parser.add_argument(
        "--pacman-cache",
        type=Path,
        default=None,
        help="Pacman cache directory when building the offline repository inline",
    )
    parser.add_argument("-y", "--yes", action="store_true", help="Skip confirmations")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log device-modifying commands instead of running them",
    )
    parser.add_argument("--debug", action="store_true", help="Enable verbose debug output")
    return parser


def build_offline_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="rescarch-gen-offline-repo",
        description="Creates an EROFS image containing packages for offline "
        "RescArch installation.",
        epilog=OFFLINE_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-p", "--packages", required=True, help="Comma separated package list (e.g., base,linux)"
    )
    parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=None,
        help="Output path for the EROFS image (default: rescarch-offline.erofs)",
    )
    parser.add_argument(
        "--pacman-cache",
        type=Path,
        default=None,
        help="Pacman cache directory (default: /var/cache/pacman/pkg)",
    )
    parser.add_argument("--debug", action="store_true", help="Enable verbose debug output")
    return parser


def is_image_argument(value: str) -> bool:
    """An -o value names an image file unless it reads as a package list."""
    return Path(value).exists() or "/" in value or value.endswith(".erofs")


def plan_from_args(args) -> WritePlan:
    """Turn parsed write arguments into a WritePlan.

    Raises:
        InvalidSizeFormat: If the persistent size is malformed
        ValidationError: If the persistent size is under 1M or the offline
            package list is empty
    """
    persistent_size = None
    if args.persistent:
        persistent_size = parse_size(args.persistent)
        # A zero MB partition request means "all remaining space"
        if persistent_size < MIB:
            raise ValidationError(
                f"Persistent size must be at least 1M: {args.persistent}"
            )

    offline_image_path = None
    offline_packages: tuple = ()
    if args.offline is not None:
        if is_image_argument(args.offline):
            offline_image_path = Path(args.offline)
        else:
            offline_packages = tuple(offline_repo.parse_package_list(args.offline))
            if not offline_packages:
                raise ValidationError("Offline package list is empty")

    return WritePlan(
        iso_path=Path(args.iso),
        device_path=args.device,
        offline_image_path=offline_image_path,
        offline_packages=offline_packages,
        pacman_cache=args.pacman_cache,
        create_persistent=args.persistent is not None,
        persistent_size_bytes=persistent_size,
        assume_yes=args.yes,
        dry_run=args.dry_run,
    )


def report_error(progress: ProgressContext, error: MediaError) -> int:
    progress.error(str(error))
    diagnostics = getattr(error, "diagnostics", "")
    if diagnostics:
        print(diagnostics.rstrip(), file=progress.error_stream)
    return EXIT_FAILURE


def run_guarded(progress: ProgressContext, operation, name: str, **details) -> int:
    """Run ``operation(registry)`` and map its outcome to an exit code.

    The registry unwinds on every exit path, including Ctrl+C and SIGTERM.
    """
    registry = CleanupRegistry(on_message=progress.cleanup_message)
    try:
        with termination_signals_interrupt(), registry, operation_context(name, **details):
            operation(registry)
    except KeyboardInterrupt:
        progress.plain()
        progress.error("Interrupted")
        return EXIT_INTERRUPTED
    except UserCancelled as error:
        progress.plain(str(error))
        return EXIT_CANCELLED
    except MediaError as error:
        return report_error(progress, error)
    return EXIT_SUCCESS


def write_main(argv=None) -> int:
    parser = build_write_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug)
    progress = ProgressContext()

    try:
        plan = plan_from_args(args)
    except MediaError as error:
        return report_error(progress, error)

    def operation(registry: CleanupRegistry) -> None:
        MediaWriter(registry, progress=progress).run(plan)

    return run_guarded(
        progress, operation, "write", iso=str(plan.iso_path), device=plan.device_path
    )


def gen_offline_repo_main(argv=None) -> int:
    parser = build_offline_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug)
    progress = ProgressContext(total_steps=offline_repo.TOTAL_STEPS)

    packages = offline_repo.parse_package_list(args.packages)
    output = args.output or offline_repo.default_output()
    cache_dir = args.pacman_cache or Path(settings.get_setting("pacman_cache"))

    def operation(registry: CleanupRegistry) -> None:
        if not packages:
            raise ValidationError("Package list is required. Use -p or --packages")
        validation.check_privileges()
        validation.check_required_tools(validation.OFFLINE_TOOLS)
        builder = offline_repo.OfflineRepoBuilder(
            registry, cache_dir=cache_dir, progress=progress
        )
        if not builder.cache_dir.is_dir():
            raise CacheDirectoryNotFound(str(builder.cache_dir))
        offline_repo.confirm_overwrite(output, console_prompt)
        image = builder.build(packages, output)
        overhead_mb = settings.OFFLINE_OVERHEAD_MB

        progress.info(f"Image size: {format_iec(image.size_bytes)}")
        progress.info(f"Required partition size: ~{image.partition_size_mb(overhead_mb)}MB")
        progress.plain()
        progress.plain("=" * 40)
        progress.plain(":: Offline Repository Created")
        progress.plain(f"Packages: {builder.package_count}")
        progress.plain(f"Total size: {format_iec(image.size_bytes)}")
        progress.plain(f"Output file: {image.path}")
        progress.plain()
        progress.plain(":: Usage")
        progress.plain("Pass this image to rescarch-write:")
        progress.plain(f"  sudo rescarch-write -i rescarch.iso -d /dev/sdX -o {image.path}")
        progress.plain("=" * 40)

    return run_guarded(progress, operation, "offline-repo", packages=",".join(packages))


if __name__ == "__main__":
    sys.exit(write_main())
