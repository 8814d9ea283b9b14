"""Domain models for btrfs-migrate.

Type-safe descriptions of storage state derived from the live system.
"""

from .models import (
    BTRFS_MOUNT_OPTIONS,
    GIB,
    MAX_USED_PERCENT,
    ROOT_SUBVOLUME,
    SHRINK_RATIO_PERCENT,
    SUBVOLUMES,
    TOP_LEVEL_MOUNT_PATH,
    BlockDevice,
    FilesystemHandle,
    MigrationPlan,
    Partition,
    PartitionRole,
    SnapshotEntry,
    SnapshotRole,
    SnapshotSet,
    Subvolume,
    compute_target_size_gib,
    root_flags,
    top_level_fstab_options,
    top_level_mount_options,
)

__all__ = [
    "BTRFS_MOUNT_OPTIONS",
    "GIB",
    "MAX_USED_PERCENT",
    "ROOT_SUBVOLUME",
    "SHRINK_RATIO_PERCENT",
    "SUBVOLUMES",
    "TOP_LEVEL_MOUNT_PATH",
    "BlockDevice",
    "FilesystemHandle",
    "MigrationPlan",
    "Partition",
    "PartitionRole",
    "SnapshotEntry",
    "SnapshotRole",
    "SnapshotSet",
    "Subvolume",
    "compute_target_size_gib",
    "root_flags",
    "top_level_fstab_options",
    "top_level_mount_options",
]
