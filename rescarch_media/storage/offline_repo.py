"""Offline package repository image builder.

Resolves a package list with its full dependency closure from the sync
databases, downloads everything into the pacman cache, stages the packages
and signatures with a repository database and packs the result into an
EROFS image labelled for the live system to find.

Pipeline:
    pacman -Sy -> pactree -slu (per package) -> pacman -Sw -> pacman -Sp
    -> copy pkg + sig -> repo-add -> repositories.conf -> mkfs.erofs

The staging directory is registered with the run's CleanupRegistry and is
always removed. The output image is registered while it is being built so an
interrupted build never leaves a truncated image behind.
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from rescarch_media.config import settings
from rescarch_media.domain.models import OfflineRepoImage
from rescarch_media.logging import LoggerFactory
from rescarch_media.ui.console import Prompt, confirm_yes_no

from .cleanup import CleanupRegistry
from .commands import run_command
from .exceptions import (
    CacheDirectoryNotFound,
    DependencyResolutionFailed,
    MissingSignature,
    PackageNotFound,
    RepoBuildFailed,
    UserCancelled,
)

if TYPE_CHECKING:
    from rescarch_media.ui.console import ProgressContext

log = LoggerFactory.for_offline_repo()

TOTAL_STEPS = 6
PACKAGE_MARKER = ".pkg.tar"


def parse_package_list(text: str) -> list[str]:
    """Split a comma separated package list, dropping blanks and duplicates."""
    names = (name.strip() for name in text.replace(" ", ",").split(","))
    return list(dict.fromkeys(name for name in names if name))


def confirm_overwrite(output: Path, prompt: Prompt) -> None:
    """Ask before replacing an existing output image, then remove it.

    Raises:
        UserCancelled: If the user declines
    """
    if not output.exists():
        return
    log.warning(f"Output file already exists: {output}")
    if not confirm_yes_no(prompt, f"Output file already exists: {output}\nOverwrite? (y/N): "):
        raise UserCancelled()
    output.unlink()


def repositories_conf(repo_name: str, server: str) -> str:
    return f"[{repo_name}]\nServer = {server}\n"


class OfflineRepoBuilder:
    """Build an EROFS offline repository image from a package list."""

    def __init__(
        self,
        registry: CleanupRegistry,
        *,
        cache_dir=None,
        progress: Optional["ProgressContext"] = None,
    ):
        self.registry = registry
        self.cache_dir = Path(cache_dir or settings.get_setting("pacman_cache"))
        self.progress = progress
        self.repo_name = settings.get_setting("offline_repo_name", "rescarch-offline")
        self.server = settings.get_setting(
            "offline_repo_server", "file:///var/rescarch/packages"
        )
        self.label = settings.OFFLINE_LABEL
        self.package_count = 0

    def _step(self, name: str, total_substeps: int) -> None:
        if self.progress is not None:
            self.progress.begin_step(name, total_substeps)

    def _substep(self, name: str) -> None:
        if self.progress is not None:
            self.progress.substep(name)

    def _info(self, message: str) -> None:
        log.info(message)
        if self.progress is not None:
            self.progress.info(message)

    def _success(self, message: str) -> None:
        log.info(message)
        if self.progress is not None:
            self.progress.success(message)

    def build(self, packages: list[str], output) -> OfflineRepoImage:
        """Build the image at ``output``.

        Raises:
            CacheDirectoryNotFound: The pacman cache directory is missing
            DependencyResolutionFailed: No package could be resolved
            PackageNotFound: A resolved package is not in the cache
            MissingSignature: A package has no detached signature
            RepoBuildFailed: pacman, repo-add or mkfs.erofs failed
        """
        output = Path(output)
        if not self.cache_dir.is_dir():
            raise CacheDirectoryNotFound(str(self.cache_dir))

        self._step("Preparing temporary directory", 1)
        self._substep("Creating temporary package directory")
        staging = Path(self.registry.make_temp_dir(prefix="rescarch-offline-"))
        self._info(f"Working directory: {staging}")

        self._step("Resolving dependencies", 3)
        self._substep("Updating package database")
        self._run(["pacman", "-Sy", "--quiet"], "Failed to update package database")
        self._substep("Analyzing package dependencies")
        self._info(f"Base packages: {','.join(packages)}")
        closure = self.resolve_dependencies(packages)
        self._substep("Removing duplicate packages")
        self._success(f"Resolved {len(closure)} packages (including dependencies)")

        self._step("Downloading packages", 1)
        self._substep(f"Downloading {len(closure)} packages to cache")
        self._run(
            ["pacman", "-Sw", "--noconfirm", "--quiet", "--cachedir", str(self.cache_dir)]
            + closure,
            "Failed to download packages",
        )
        self._success("All packages downloaded successfully")

        self._step("Copying packages from cache", 2)
        self._substep("Getting package filenames")
        filenames = self.package_filenames(closure)
        self._substep(f"Copying {len(filenames)} package files and signatures")
        self._info(f"Source: {self.cache_dir}")
        copied = self.stage_packages(filenames, staging)
        self.package_count = len(copied)
        self._success(f"Copied {len(copied)} packages with signatures")

        self._step("Creating package database", 2)
        self._substep("Building repository database")
        database = staging / f"{self.repo_name}.db.tar.gz"
        self._run(
            ["repo-add", "-q", str(database)] + [str(path) for path in copied],
            "Failed to create package database",
        )
        self._substep("Creating repository configuration file")
        (staging / "repositories.conf").write_text(
            repositories_conf(self.repo_name, self.server), encoding="utf-8"
        )
        self._success("Package database created successfully")

        self._step("Creating EROFS image", 3)
        self._substep("Setting permissions on package files")
        self._run(["chown", "-R", "root:root", str(staging)], "Failed to set ownership")
        self._run(["chmod", "-R", "755", str(staging)], "Failed to set permissions")
        self._substep("Building EROFS filesystem")
        self.registry.register_file(output)
        self._run(
            [
                "mkfs.erofs",
                "--quiet",
                "-L",
                self.label,
                "--all-root",
                "-T0",
                str(output),
                str(staging),
            ],
            "Failed to create EROFS image",
        )
        self._substep("Calculating image size")
        size_bytes = output.stat().st_size if output.exists() else 0
        if size_bytes == 0:
            raise RepoBuildFailed("Failed to determine EROFS image size")
        self.registry.unregister_file(output)
        image = OfflineRepoImage(path=output, size_bytes=size_bytes)
        self._success(f"EROFS image created: {output}")
        return image

    def _run(self, command: list[str], message: str) -> subprocess.CompletedProcess:
        try:
            return run_command(command)
        except (subprocess.CalledProcessError, OSError) as error:
            stderr = getattr(error, "stderr", None) or str(error)
            raise RepoBuildFailed(message, diagnostics=stderr.strip()) from error

    def resolve_dependencies(self, packages: list[str]) -> list[str]:
        """Dependency closure of every package, first occurrence order."""
        closure: list[str] = []
        for package in packages:
            self._info(f"Resolving dependencies for: {package}")
            result = run_command(["pactree", "-slu", package], check=False)
            if result.returncode != 0:
                log.warning(f"pactree failed for {package}: {(result.stderr or '').strip()}")
            closure.extend(line.strip() for line in result.stdout.splitlines() if line.strip())
        closure = list(dict.fromkeys(closure))
        if not closure:
            raise DependencyResolutionFailed(
                packages, diagnostics=f"Check if packages exist: pacman -Ss {' '.join(packages)}"
            )
        return closure

    def package_filenames(self, closure: list[str]) -> list[str]:
        result = self._run(
            ["pacman", "-Sp", "--print-format", "%f"] + closure,
            "Failed to get package filenames",
        )
        names = (line.strip() for line in result.stdout.splitlines())
        return list(dict.fromkeys(name for name in names if PACKAGE_MARKER in name))

    def stage_packages(self, filenames: list[str], staging: Path) -> list[Path]:
        """Copy packages and their signatures into the staging directory.

        Returns:
            Staged package paths (signatures excluded)
        """
        staged: list[Path] = []
        for filename in filenames:
            package_file = self.cache_dir / filename
            signature_file = self.cache_dir / f"{filename}.sig"
            if not package_file.is_file():
                raise PackageNotFound(str(package_file))
            if not signature_file.is_file():
                raise MissingSignature(str(signature_file))
            shutil.copy2(package_file, staging / filename)
            shutil.copy2(signature_file, staging / signature_file.name)
            staged.append(staging / filename)
        if not staged:
            raise RepoBuildFailed("No packages were copied")
        log.debug(f"Staged {len(staged)} packages in {staging}")
        return staged


def default_output() -> Path:
    return Path(settings.get_setting("offline_output", "rescarch-offline.erofs"))
