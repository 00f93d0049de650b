"""Settings storage for application configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "RESCARCH_MEDIA_SETTINGS_PATH",
        Path.home() / ".config" / "rescarch-media" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_SETTLE_SECONDS = 3.0
DEFAULT_PARTITION_WAIT_TIMEOUT = 15
DEFAULT_COUNTDOWN_SECONDS = 3
# Fixed: the live system finds its partitions by these labels
PERSISTENT_LABEL = "RA_DATA"
OFFLINE_LABEL = "RA_PACKAGES"
OFFLINE_OVERHEAD_MB = 10

DEFAULT_SETTINGS: dict[str, Any] = {
    "settle_seconds": DEFAULT_SETTLE_SECONDS,
    "partition_wait_timeout_seconds": DEFAULT_PARTITION_WAIT_TIMEOUT,
    "countdown_seconds": DEFAULT_COUNTDOWN_SECONDS,
    "pacman_cache": "/var/cache/pacman/pkg",
    "offline_output": "rescarch-offline.erofs",
    "offline_repo_name": "rescarch-offline",
    "offline_repo_server": "file:///var/rescarch/packages",
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def get_float(key: str) -> float:
    return float(get_setting(key, DEFAULT_SETTINGS.get(key, 0)))


def get_int(key: str) -> int:
    return int(get_setting(key, DEFAULT_SETTINGS.get(key, 0)))


load_settings()
