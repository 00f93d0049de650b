"""Tracking of transient resources created during a run.

Mounts, temporary files and temporary directories are registered when they
are created and removed on every exit path: success, error, Ctrl+C or
SIGTERM. Ownership can be handed back with ``unregister_*`` when a resource
is intentionally kept (for example an output file moved into place).

Unwind order:
    1. Mounts, newest first
    2. Files, in registration order
    3. Directories, newest first

Usage:
    with CleanupRegistry() as registry:
        staging = registry.make_temp_dir()
        ...
"""

from __future__ import annotations

import os
import shutil
import signal
import subprocess
import tempfile
from contextlib import contextmanager
from typing import Callable, Generator, Optional

from rescarch_media.domain.models import CleanupEntry, CleanupKind
from rescarch_media.logging import LoggerFactory

from .commands import run_command

log = LoggerFactory.for_system()


class CleanupRegistry:
    """Registry of resources to remove when the run ends."""

    def __init__(self, on_message: Optional[Callable[[str], None]] = None):
        self._entries: list[CleanupEntry] = []
        self._in_progress = False
        self._on_message = on_message

    def __enter__(self) -> "CleanupRegistry":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup(show_messages=exc_type is not None)

    @property
    def entries(self) -> list[CleanupEntry]:
        return list(self._entries)

    def _register(self, kind: CleanupKind, path: str) -> None:
        entry = CleanupEntry(kind=kind, path=str(path))
        if entry not in self._entries:
            self._entries.append(entry)
            log.debug(f"Registered {kind.value} for cleanup: {path}")

    def _unregister(self, kind: CleanupKind, path: str) -> None:
        entry = CleanupEntry(kind=kind, path=str(path))
        self._entries = [existing for existing in self._entries if existing != entry]

    def register_mount(self, path) -> None:
        self._register(CleanupKind.MOUNT, path)

    def register_file(self, path) -> None:
        self._register(CleanupKind.FILE, path)

    def register_dir(self, path) -> None:
        self._register(CleanupKind.DIRECTORY, path)

    def unregister_mount(self, path) -> None:
        self._unregister(CleanupKind.MOUNT, path)

    def unregister_file(self, path) -> None:
        self._unregister(CleanupKind.FILE, path)

    def unregister_dir(self, path) -> None:
        self._unregister(CleanupKind.DIRECTORY, path)

    def make_temp_dir(self, prefix: str = "rescarch-") -> str:
        """Create a temporary directory that is removed at cleanup."""
        path = tempfile.mkdtemp(prefix=prefix)
        self.register_dir(path)
        return path

    def _announce(self, message: str, show_messages: bool) -> None:
        log.debug(message)
        if show_messages and self._on_message:
            self._on_message(message)

    def cleanup(self, show_messages: bool = True) -> None:
        """Remove every registered resource.

        Safe to call more than once; a call made while cleanup is already
        running (for example from a signal handler) returns immediately.
        """
        if self._in_progress or not self._entries:
            return
        self._in_progress = True
        try:
            entries = list(self._entries)
            if show_messages and self._on_message:
                self._on_message("Cleanup")

            mounts = [e for e in entries if e.kind is CleanupKind.MOUNT]
            files = [e for e in entries if e.kind is CleanupKind.FILE]
            directories = [e for e in entries if e.kind is CleanupKind.DIRECTORY]

            for entry in reversed(mounts):
                if os.path.ismount(entry.path):
                    self._announce(f"Unmounting: {entry.path}", show_messages)
                    _unmount(entry.path)
                self._entries.remove(entry)

            for entry in files:
                if os.path.isfile(entry.path) or os.path.islink(entry.path):
                    self._announce(f"Removing file: {entry.path}", show_messages)
                    try:
                        os.remove(entry.path)
                    except OSError as error:
                        log.warning(f"Could not remove {entry.path}: {error}")
                self._entries.remove(entry)

            for entry in reversed(directories):
                if os.path.isdir(entry.path):
                    self._announce(f"Removing directory: {entry.path}", show_messages)
                    shutil.rmtree(entry.path, ignore_errors=True)
                self._entries.remove(entry)
        finally:
            self._in_progress = False


def _unmount(mountpoint: str) -> None:
    for command in (["umount", mountpoint], ["umount", "-l", mountpoint]):
        try:
            run_command(command)
            return
        except (subprocess.CalledProcessError, OSError) as error:
            log.debug(f"{' '.join(command)} failed: {error}")
    log.warning(f"Could not unmount {mountpoint}")


def _raise_interrupt(signum, frame) -> None:
    raise KeyboardInterrupt(f"Received signal {signum}")


@contextmanager
def termination_signals_interrupt() -> Generator[None, None, None]:
    """Turn SIGTERM into KeyboardInterrupt so the registry unwinds on kill too."""
    previous = signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)
