"""Migration Orchestrator: converts an ext4 root partition to Btrfs in place.

The pipeline is a fixed, strictly sequential list of steps. Each step reads
and extends one ``MigrationState`` object; nothing is kept in module globals
and nothing from an earlier run is reused. A failing step raises, the
pipeline stops immediately and nothing is rolled back. Every transition is
appended to the checkpoint journal so the operator can see the last
completed step.

Step order:
    prepare_mount_points       create the old/new mount points
    check_free_space           source must be < 50% used
    install_host_tools         pacman -Sy host packages
    resolve_geometry           disk, index, sectors -> MigrationPlan
    check_source_filesystem    e2fsck before any resize
    shrink_filesystem          resize2fs to half the partition size
    rewrite_partition_table    recreate the entry at the same start sector
    verify_shrunk_filesystem   e2fsck after the resize
    create_target_partition    new entry from shrunk end + 1 to disk end
    format_target              mkfs.btrfs, type read back with blkid
    create_subvolumes          @, @home, @pkg, @snapshots
    mount_target_tree          new tree, /btrfs, old root, /boot
    copy_root_tree             rsync -aAXH old -> new
    update_bootloader          root=UUID + rootflags
    write_fstab                full fstab of the new root
    update_initramfs           btrfs hook, chroot install, mkinitcpio -P
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from btrfs_migrate.config import settings
from btrfs_migrate.domain import FilesystemHandle, MigrationPlan, Partition, PartitionRole
from btrfs_migrate.logging import LoggerFactory, operation_context
from btrfs_migrate.storage import filesystem, partition_table, validation
from btrfs_migrate.storage.commands import run_checked_command
from btrfs_migrate.storage.devices import (
    get_filesystem_uuid,
    partition_path,
    read_block_device,
    resolve_partition,
)
from btrfs_migrate.storage.exceptions import (
    PostResizeCorruptionError,
    StepFailedError,
    UUIDResolutionFailedError,
)
from btrfs_migrate.storage.mount import ensure_directory

from . import boot, data
from .checkpoint import COMPLETED, FAILED, STARTED, CheckpointJournal

SOURCE_FSTYPE = "ext4"


@dataclass
class MigrationState:
    """Everything one migration run has learned so far."""

    root_partition: str
    old_mount: Path
    new_mount: Path
    bootloader_config: str
    boot_index: int
    swap_index: int
    host_packages: list[str]
    chroot_packages: list[str]
    plan: Optional[MigrationPlan] = None
    shrunk: Optional[Partition] = None
    target: Optional[Partition] = None
    boot_device: Optional[str] = None
    swap_device: Optional[str] = None
    new_uuid: Optional[str] = None
    new_filesystem: Optional[FilesystemHandle] = None

    @classmethod
    def from_settings(cls, root_partition: str) -> MigrationState:
        return cls(
            root_partition=root_partition,
            old_mount=settings.get_path("old_mount"),
            new_mount=settings.get_path("new_mount"),
            bootloader_config=str(settings.get_setting("bootloader_config")),
            boot_index=settings.get_int("boot_partition_index", 1),
            swap_index=settings.get_int("swap_partition_index", 2),
            host_packages=settings.get_list("host_packages"),
            chroot_packages=settings.get_list("chroot_packages"),
        )

    @property
    def disk_path(self) -> str:
        return self.require_plan().device.path

    def require_plan(self) -> MigrationPlan:
        if self.plan is None:
            raise StepFailedError("pipeline", "geometry has not been resolved")
        return self.plan

    def require_shrunk(self) -> Partition:
        if self.shrunk is None:
            raise StepFailedError("pipeline", "source partition has not been shrunk")
        return self.shrunk

    def require_target(self) -> Partition:
        if self.target is None:
            raise StepFailedError("pipeline", "target partition has not been created")
        return self.target


StepResult = Optional[dict[str, Any]]


# ==============================================================================
# Steps
# ==============================================================================


def prepare_mount_points(state: MigrationState) -> StepResult:
    ensure_directory(state.old_mount)
    ensure_directory(state.new_mount)
    return {"old_mount": str(state.old_mount), "new_mount": str(state.new_mount)}


def check_free_space(state: MigrationState) -> StepResult:
    used = validation.check_free_space(state.root_partition, str(state.old_mount))
    return {"used_percent": used}


def install_host_tools(state: MigrationState) -> StepResult:
    if state.host_packages:
        run_checked_command(
            ["pacman", "-Sy", "--noconfirm", *state.host_packages],
            step="install host tools",
        )
    return {"packages": state.host_packages}


def resolve_geometry(state: MigrationState) -> StepResult:
    source = resolve_partition(state.root_partition)
    if source.fstype and source.fstype != SOURCE_FSTYPE:
        raise StepFailedError(
            "resolve geometry",
            f"{source.path} carries {source.fstype}, expected {SOURCE_FSTYPE}",
        )
    device = read_block_device(source.disk_path)
    state.plan = MigrationPlan.for_source(device, source)
    plan = state.plan
    return {
        "disk": device.path,
        "index": source.index,
        "start_sector": source.start_sector,
        "end_sector": source.end_sector,
        "size_bytes": source.size_bytes,
        "target_size_gib": plan.target_size_gib,
    }


def check_source_filesystem(state: MigrationState) -> StepResult:
    return {"e2fsck_exit": filesystem.check_filesystem(state.require_plan().source.path)}


def shrink_filesystem(state: MigrationState) -> StepResult:
    plan = state.require_plan()
    filesystem.shrink_filesystem(plan.source.path, plan.target_size_gib)
    return {"size_gib": plan.target_size_gib}


def rewrite_partition_table(state: MigrationState) -> StepResult:
    plan = state.require_plan()
    shrunk = partition_table.rewrite_partition(
        state.disk_path, plan.source.index, plan.target_size_gib
    )
    state.shrunk = shrunk.with_role(PartitionRole.ROOT)
    return {"start_sector": shrunk.start_sector, "end_sector": shrunk.end_sector}


def verify_shrunk_filesystem(state: MigrationState) -> StepResult:
    returncode = filesystem.check_filesystem(
        state.require_shrunk().path, error_class=PostResizeCorruptionError
    )
    return {"e2fsck_exit": returncode}


def create_target_partition(state: MigrationState) -> StepResult:
    plan = state.require_plan()
    state.target = partition_table.create_trailing_partition(
        state.disk_path, state.require_shrunk(), plan.target_index
    )
    return {
        "path": state.target.path,
        "start_sector": state.target.start_sector,
        "end_sector": state.target.end_sector,
    }


def format_target(state: MigrationState) -> StepResult:
    filesystem.format_btrfs(state.require_target().path)
    return {"path": state.require_target().path}


def create_subvolumes(state: MigrationState) -> StepResult:
    created = filesystem.create_subvolumes(
        state.require_target().path, state.new_mount, state.require_plan().subvolumes
    )
    return {"subvolumes": created}


def mount_target_tree(state: MigrationState) -> StepResult:
    state.boot_device = partition_path(state.disk_path, state.boot_index)
    state.swap_device = partition_path(state.disk_path, state.swap_index)
    mounted = data.assemble_mounts(
        state.require_target().path,
        state.require_shrunk().path,
        state.boot_device,
        state.new_mount,
        state.old_mount,
        state.require_plan().subvolumes,
    )
    return {"mounted": mounted}


def copy_root_tree(state: MigrationState) -> StepResult:
    data.copy_root_tree(state.old_mount, state.new_mount)
    return None


def update_bootloader(state: MigrationState) -> StepResult:
    config_path = state.new_mount / "boot" / state.bootloader_config
    state.new_uuid = filesystem.get_btrfs_uuid(state.require_target().path)
    boot.rewrite_bootloader_config(config_path, state.new_uuid)
    state.new_filesystem = FilesystemHandle(
        partition=state.require_target(),
        fstype="btrfs",
        uuid=state.new_uuid,
        mountpoint=str(state.new_mount),
    )
    return {"uuid": state.new_uuid, "config": str(config_path)}


def _require_uuid(device: Optional[str]) -> str:
    if device is None:
        raise StepFailedError("pipeline", "boot and swap partitions have not been resolved")
    value = get_filesystem_uuid(device)
    if not value:
        raise UUIDResolutionFailedError(device)
    return value


def write_fstab(state: MigrationState) -> StepResult:
    if state.new_uuid is None:
        state.new_uuid = filesystem.get_btrfs_uuid(state.require_target().path)
    boot_uuid = _require_uuid(state.boot_device)
    swap_uuid = _require_uuid(state.swap_device)
    content = boot.render_fstab(
        state.new_uuid, boot_uuid, swap_uuid, state.require_plan().subvolumes
    )
    path = boot.write_fstab(state.new_mount, content)
    return {"path": str(path), "boot_uuid": boot_uuid, "swap_uuid": swap_uuid}


def update_initramfs(state: MigrationState) -> StepResult:
    changed = boot.enable_initramfs_hook(state.new_mount / "etc" / "mkinitcpio.conf")
    boot.install_chroot_packages(state.new_mount, state.chroot_packages)
    boot.regenerate_initramfs(state.new_mount)
    return {"hook_added": changed}


STEPS: tuple[tuple[str, Callable[[MigrationState], StepResult]], ...] = (
    ("prepare_mount_points", prepare_mount_points),
    ("check_free_space", check_free_space),
    ("install_host_tools", install_host_tools),
    ("resolve_geometry", resolve_geometry),
    ("check_source_filesystem", check_source_filesystem),
    ("shrink_filesystem", shrink_filesystem),
    ("rewrite_partition_table", rewrite_partition_table),
    ("verify_shrunk_filesystem", verify_shrunk_filesystem),
    ("create_target_partition", create_target_partition),
    ("format_target", format_target),
    ("create_subvolumes", create_subvolumes),
    ("mount_target_tree", mount_target_tree),
    ("copy_root_tree", copy_root_tree),
    ("update_bootloader", update_bootloader),
    ("write_fstab", write_fstab),
    ("update_initramfs", update_initramfs),
)


# ==============================================================================
# Pipeline
# ==============================================================================


def new_journal(root_partition: str) -> CheckpointJournal:
    return CheckpointJournal(
        settings.get_path("checkpoint_path"),
        run_id=f"migrate-{uuid.uuid4().hex[:8]}",
        device=root_partition,
    )


class MigrationPipeline:
    """Runs the migration steps in order against one root partition."""

    def __init__(
        self,
        root_partition: str,
        journal: Optional[CheckpointJournal] = None,
        *,
        geteuid: Optional[Callable[[], int]] = None,
    ):
        self.state = MigrationState.from_settings(root_partition)
        self.journal = journal or new_journal(root_partition)
        self.geteuid = geteuid
        self.log = LoggerFactory.for_migration(self.journal.run_id)

    def run(self) -> MigrationState:
        # Checked before the journal is touched: it lives in a root-owned path.
        validation.check_privileges(self.geteuid)
        self.log.info(f"Starting migration of {self.state.root_partition} to Btrfs")

        for name, step in STEPS:
            self._run_step(name, step)

        self.log.success(
            f"Migration complete: {self.state.root_partition} -> "
            f"{self.state.require_target().path} (UUID {self.state.new_uuid})"
        )
        return self.state

    def _run_step(self, name: str, step: Callable[[MigrationState], StepResult]) -> None:
        self.journal.record(name, STARTED)
        try:
            with operation_context(name, device=self.state.root_partition):
                try:
                    details = step(self.state) or {}
                except (OSError, UnicodeError) as error:
                    raise StepFailedError(name, f"{type(error).__name__}: {error}") from error
        except Exception as error:
            self.journal.record(name, FAILED, error=str(error), error_type=type(error).__name__)
            raise
        self.journal.record(name, COMPLETED, **details)


def run_migration(
    root_partition: str,
    journal: Optional[CheckpointJournal] = None,
    *,
    geteuid: Optional[Callable[[], int]] = None,
) -> MigrationState:
    """Convert ``root_partition`` to Btrfs. Raises a MigrationError on failure."""
    return MigrationPipeline(root_partition, journal, geteuid=geteuid).run()
