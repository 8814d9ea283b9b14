"""Settings storage for paths and tunables of both pipelines."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "BTRFS_MIGRATE_SETTINGS_PATH",
        "/etc/btrfs-migrate/settings.json",
    )
)

DEFAULT_OLD_MOUNT = "/mnt/old"
DEFAULT_NEW_MOUNT = "/mnt/new"

DEFAULT_SETTINGS: dict[str, Any] = {
    "old_mount": DEFAULT_OLD_MOUNT,
    "new_mount": DEFAULT_NEW_MOUNT,
    "bootloader_config": "EFI/syslinux/syslinux.cfg",
    "boot_partition_index": 1,
    "swap_partition_index": 2,
    "host_packages": ["btrfs-progs"],
    "chroot_packages": ["btrfs-progs"],
    "checkpoint_path": "/var/lib/btrfs-migrate/checkpoints.jsonl",
    "snapshots_dir": "/.snapshots",
    "boot_dir": "/boot",
    "btrfs_top_level": "/btrfs",
    "mirrorlist_path": "/etc/pacman.d/mirrorlist",
    "package_log_path": "/var/log/pacman.log",
    "update_log_path": "/tmp/pacman_update_log",
    "balance_usage_threshold": 5,
    "recent_update_window_minutes": 4,
    "reboot_delay_seconds": 3,
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


def get_int(key: str, default: int = 0) -> int:
    value = get_setting(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def get_path(key: str) -> Path:
    return Path(get_setting(key, DEFAULT_SETTINGS.get(key, "")))


def get_list(key: str) -> list[str]:
    value = get_setting(key, DEFAULT_SETTINGS.get(key, []))
    if isinstance(value, str):
        return value.split()
    return [str(item) for item in value or []]


load_settings()
