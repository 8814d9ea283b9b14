"""Maintenance Orchestrator: rotate snapshots, update, balance, offer a reboot."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from btrfs_migrate.config import settings
from btrfs_migrate.domain import SnapshotSet
from btrfs_migrate.logging import LoggerFactory, operation_context
from btrfs_migrate.storage import filesystem, validation
from btrfs_migrate.storage.exceptions import UpdateFailedError
from btrfs_migrate.storage.mount import mount_fstype

from . import snapshots, updates


@dataclass
class MaintenanceResult:
    recent_events: list[str] = field(default_factory=list)
    rebooted: bool = False


def _balance_top_level() -> None:
    top_level = settings.get_path("btrfs_top_level")
    fstype = mount_fstype(str(top_level))
    if fstype != "btrfs":
        raise UpdateFailedError(
            "balance", f"{top_level} is not a mounted btrfs filesystem (found {fstype or 'nothing'})"
        )
    filesystem.balance(top_level, settings.get_int("balance_usage_threshold", 5))


def run_maintenance(
    *,
    reboot: bool = True,
    prompt: Callable[[str], str] = input,
    sleep: Callable[[float], None] = time.sleep,
    geteuid: Optional[Callable[[], int]] = None,
) -> MaintenanceResult:
    """Run one maintenance cycle. Raises a MigrationError on the first failure."""
    validation.check_privileges(geteuid)
    log = LoggerFactory.for_maintenance()
    result = MaintenanceResult()

    snapshot_set = SnapshotSet(
        snapshots_dir=str(settings.get_path("snapshots_dir")),
        boot_dir=str(settings.get_path("boot_dir")),
    )

    with operation_context("snapshot_filesystem", source="maintain"):
        snapshots.rotate_snapshots(snapshot_set)

    with operation_context("update_system", source="maintain"):
        updates.refresh_mirrorlist(settings.get_path("mirrorlist_path"))
        updates.upgrade_system(settings.get_path("update_log_path"))

    with operation_context("balance_filesystem", source="maintain"):
        _balance_top_level()

    with operation_context("check_recent_updates", source="maintain"):
        result.recent_events = updates.find_recent_package_events(
            settings.get_path("package_log_path"),
            window_minutes=settings.get_int("recent_update_window_minutes", 4),
        )

    if not result.recent_events:
        log.info("No updates were installed.")
        return result

    for line in result.recent_events:
        log.info(line)
    if reboot:
        result.rebooted = updates.prompt_reboot(
            prompt=prompt,
            sleep=sleep,
            delay=settings.get_int("reboot_delay_seconds", 3),
        )
    return result
