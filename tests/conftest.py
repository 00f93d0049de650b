"""
Pytest configuration and shared fixtures for rescarch-media tests.

This module provides common fixtures and utilities used across all test modules.
"""

import json
import subprocess
from pathlib import Path
from typing import Any, Dict
from unittest.mock import Mock

import pytest

from rescarch_media.config import settings
from rescarch_media.domain.models import (
    DeviceKind,
    OfflineRepoImage,
    PartitionTableKind,
    SourceImage,
    TargetDevice,
)
from rescarch_media.storage.cleanup import CleanupRegistry


# ==============================================================================
# Settings
# ==============================================================================


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    """Keep settle delays, countdowns and partition polls out of the test run."""
    monkeypatch.setattr(settings.settings_store, "values", dict(settings.DEFAULT_SETTINGS))
    monkeypatch.setitem(settings.settings_store.values, "settle_seconds", 0)
    monkeypatch.setitem(settings.settings_store.values, "countdown_seconds", 0)
    monkeypatch.setitem(settings.settings_store.values, "partition_wait_timeout_seconds", 0)
    return settings.settings_store.values


@pytest.fixture
def temp_settings_file(tmp_path) -> Path:
    """Fixture providing a temporary settings file path."""
    return tmp_path / "settings.json"


# ==============================================================================
# Device Mock Fixtures
# ==============================================================================


@pytest.fixture
def mock_usb_device() -> Dict[str, Any]:
    """
    Fixture providing a USB stick as returned by ``lsblk -J -b``.

    The stick still carries an old live image mounted under /run/media.
    """
    return {
        "name": "sdb",
        "type": "disk",
        "size": 15518924800,
        "model": "Ultra Fit",
        "vendor": "SanDisk ",
        "tran": "usb",
        "rm": True,
        "rota": False,
        "pttype": "dos",
        "pkname": None,
        "mountpoint": None,
        "children": [
            {
                "name": "sdb1",
                "type": "part",
                "mountpoint": "/run/media/user/RESCARCH_202401",
            },
            {"name": "sdb2", "type": "part", "mountpoint": None},
        ],
    }


@pytest.fixture
def mock_system_disk() -> Dict[str, Any]:
    """Fixture providing the internal disk holding the running system."""
    return {
        "name": "nvme0n1",
        "type": "disk",
        "size": 512110190592,
        "model": "Samsung SSD 980",
        "vendor": None,
        "tran": "nvme",
        "rm": "0",
        "rota": "0",
        "pttype": "gpt",
        "pkname": None,
        "children": [
            {"name": "nvme0n1p1", "type": "part", "mountpoint": "/boot"},
            {"name": "nvme0n1p2", "type": "part", "mountpoints": ["/", "/home"]},
        ],
    }


@pytest.fixture
def lsblk_json_output():
    """Render lsblk rows the way ``lsblk -J`` prints them."""

    def render(*rows: Dict[str, Any]) -> str:
        return json.dumps({"blockdevices": list(rows)})

    return render


@pytest.fixture
def usb_target() -> TargetDevice:
    """A 16 GB removable USB stick with an MBR table."""
    return TargetDevice(
        path="/dev/sdb",
        name="sdb",
        size_bytes=16 * 1024**3,
        transport="usb",
        rotational=False,
        removable=True,
        kind=DeviceKind.SATA_SAS,
        category="USB/Removable Drive",
        vendor="SanDisk",
        model="Ultra Fit",
        partition_table_kind=PartitionTableKind.MBR,
    )


@pytest.fixture
def internal_target() -> TargetDevice:
    """A non-removable SATA SSD."""
    return TargetDevice(
        path="/dev/sda",
        name="sda",
        size_bytes=256 * 1024**3,
        transport="sata",
        rotational=False,
        removable=False,
        kind=DeviceKind.SATA_SAS,
        category="SATA/SAS SSD",
        model="CT250MX500",
        partition_table_kind=PartitionTableKind.GPT,
    )


# ==============================================================================
# Image Fixtures
# ==============================================================================


@pytest.fixture
def iso_file(tmp_path) -> Path:
    """A 2 MiB file standing in for a RescArch ISO."""
    path = tmp_path / "rescarch.iso"
    path.write_bytes(b"\x00" * 1024 * 1024 + b"RESCARCH" * (128 * 1024))
    return path


@pytest.fixture
def source_image(iso_file) -> SourceImage:
    return SourceImage(path=iso_file, size_bytes=iso_file.stat().st_size)


@pytest.fixture
def offline_image_file(tmp_path) -> Path:
    path = tmp_path / "rescarch-offline.erofs"
    path.write_bytes(b"\xe2\xe1\xf5\xe0" + b"\x00" * (3 * 1024 * 1024 - 4))
    return path


@pytest.fixture
def offline_image(offline_image_file) -> OfflineRepoImage:
    return OfflineRepoImage(
        path=offline_image_file, size_bytes=offline_image_file.stat().st_size
    )


@pytest.fixture
def mock_iso_tree(tmp_path) -> Path:
    """Fixture creating the directory layout of a mounted RescArch ISO."""
    root = tmp_path / "iso"
    (root / "loader" / "entries").mkdir(parents=True)
    (root / "loader" / "entries" / "01-archiso-x86_64-linux.conf").write_text(
        "title    RescArch (x86_64, UEFI)\nlinux    /arch/boot/x86_64/vmlinuz-linux\n"
    )
    (root / "syslinux").mkdir()
    (root / "syslinux" / "syslinux.cfg").write_text("MENU TITLE RescArch Live\n")
    (root / "rescarch").mkdir()
    return root


# ==============================================================================
# Command Fixtures
# ==============================================================================


@pytest.fixture
def mock_subprocess_success(mocker) -> Mock:
    """
    Fixture that mocks subprocess.run to always succeed.

    Returns:
        Mock object for subprocess.run
    """
    mock = mocker.patch("subprocess.run")
    mock.return_value = subprocess.CompletedProcess(
        args=[], returncode=0, stdout="Success", stderr=""
    )
    return mock


@pytest.fixture
def mock_subprocess_failure(mocker) -> Mock:
    """Fixture that mocks subprocess.run to always fail with CalledProcessError."""
    mock = mocker.patch("subprocess.run")

    def raise_error(*args, **kwargs):
        raise subprocess.CalledProcessError(
            returncode=1, cmd=args[0] if args else [], stderr="Command failed"
        )

    mock.side_effect = raise_error
    return mock


@pytest.fixture
def registry() -> CleanupRegistry:
    """A cleanup registry that is always unwound after the test."""
    with CleanupRegistry() as reg:
        yield reg
