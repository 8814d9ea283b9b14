"""Domain model for the migration and maintenance pipelines.

Every object here is derived fresh from the live system on each run; none
of them is persisted, and geometry recorded by an earlier run is never
reused.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath

GIB = 1024**3

# Halving policy: the source filesystem and partition are shrunk to half of
# the partition's byte size. Fixed, not configurable.
SHRINK_RATIO_PERCENT = 50
# The source filesystem must use strictly less than this share of its space.
MAX_USED_PERCENT = 50

# Shared by subvolume mounts, fstab entries and bootloader rootflags.
BTRFS_MOUNT_OPTIONS: tuple[str, ...] = ("noatime", "compress=lzo", "space_cache=v2", "ssd")
TOP_LEVEL_SUBVOLUME_ID = 5


# ==============================================================================
# Storage Domain
# ==============================================================================


class PartitionRole(Enum):
    """Role assigned to a partition by the orchestrator, never stored on disk."""

    BOOT = "boot"
    SWAP = "swap"
    ROOT = "root"
    TARGET = "target"


@dataclass(frozen=True)
class Partition:
    """One entry of a disk's partition table."""

    path: str  # e.g., "/dev/mmcblk0p3"
    disk_path: str  # e.g., "/dev/mmcblk0"
    index: int  # 1-based, matches table numbering
    start_sector: int
    end_sector: int
    sector_size: int = 512
    fstype: str | None = None
    uuid: str | None = None
    role: PartitionRole | None = None

    @property
    def sectors(self) -> int:
        return self.end_sector - self.start_sector + 1

    @property
    def size_bytes(self) -> int:
        return self.sectors * self.sector_size

    @property
    def size_gib(self) -> float:
        return self.size_bytes / GIB

    def with_role(self, role: PartitionRole) -> Partition:
        return Partition(
            path=self.path,
            disk_path=self.disk_path,
            index=self.index,
            start_sector=self.start_sector,
            end_sector=self.end_sector,
            sector_size=self.sector_size,
            fstype=self.fstype,
            uuid=self.uuid,
            role=role,
        )


@dataclass(frozen=True)
class BlockDevice:
    """A whole disk and its partition table entries in table order."""

    path: str
    size_bytes: int
    sector_size: int = 512
    total_sectors: int = 0
    label_type: str = "gpt"
    partitions: tuple[Partition, ...] = ()

    def partition_by_index(self, index: int) -> Partition | None:
        for partition in self.partitions:
            if partition.index == index:
                return partition
        return None

    @property
    def used_indexes(self) -> set[int]:
        return {partition.index for partition in self.partitions}


@dataclass(frozen=True)
class FilesystemHandle:
    """A partition known to carry a filesystem."""

    partition: Partition
    fstype: str
    uuid: str
    mountpoint: str | None = None

    @property
    def is_mounted(self) -> bool:
        return self.mountpoint is not None


@dataclass(frozen=True)
class Subvolume:
    """A named Btrfs subvolume and where it is mounted in the new tree."""

    name: str  # e.g., "@home"
    mount_path: str  # e.g., "/home"

    @property
    def subvol_option(self) -> str:
        return f"subvol={self.name}"

    def mount_options(self) -> str:
        return ",".join((*BTRFS_MOUNT_OPTIONS, self.subvol_option))

    def fstab_options(self) -> str:
        return ",".join(("rw", *BTRFS_MOUNT_OPTIONS, self.subvol_option))

    def relative_mount_path(self) -> str:
        return str(PurePosixPath(self.mount_path).relative_to("/"))


ROOT_SUBVOLUME = Subvolume("@", "/")
SUBVOLUMES: tuple[Subvolume, ...] = (
    ROOT_SUBVOLUME,
    Subvolume("@home", "/home"),
    Subvolume("@pkg", "/var/cache/pacman/pkg"),
    Subvolume("@snapshots", "/.snapshots"),
)
TOP_LEVEL_MOUNT_PATH = "/btrfs"


def top_level_mount_options() -> str:
    return ",".join((*BTRFS_MOUNT_OPTIONS, f"subvolid={TOP_LEVEL_SUBVOLUME_ID}"))


def top_level_fstab_options() -> str:
    return ",".join(("rw", *BTRFS_MOUNT_OPTIONS, f"subvolid={TOP_LEVEL_SUBVOLUME_ID}"))


def root_flags() -> str:
    """Kernel rootflags for booting the root subvolume."""
    return ",".join((ROOT_SUBVOLUME.subvol_option, *BTRFS_MOUNT_OPTIONS))


def compute_target_size_gib(size_bytes: int) -> int:
    """Half of ``size_bytes`` in whole GiB, rounded down.

    Rounding down keeps the result at or below the exact halving point.
    """
    return int(size_bytes * SHRINK_RATIO_PERCENT // 100 // GIB)


@dataclass
class MigrationPlan:
    """Transient plan owned by one migration run."""

    device: BlockDevice
    source: Partition
    target_size_gib: int
    target_index: int
    subvolumes: tuple[Subvolume, ...] = SUBVOLUMES

    @classmethod
    def for_source(cls, device: BlockDevice, source: Partition) -> MigrationPlan:
        return cls(
            device=device,
            source=source.with_role(PartitionRole.ROOT),
            target_size_gib=compute_target_size_gib(source.size_bytes),
            target_index=source.index + 1,
        )


# ==============================================================================
# Snapshot Domain
# ==============================================================================


class SnapshotRole(Enum):
    """Rollback roles. STAGED is the live root the system runs from."""

    PREVIOUS = "OLDSTABLE"
    CURRENT = "STABLE"
    STAGED = "TESTING"

    @property
    def kernel_suffix(self) -> str:
        if self is SnapshotRole.STAGED:
            return ""
        return f"-{self.value.lower()}"


@dataclass(frozen=True)
class SnapshotEntry:
    """A role bound to a subvolume path and its kernel/initramfs pair."""

    role: SnapshotRole
    subvolume_path: str
    kernel_path: str
    initramfs_path: str


@dataclass
class SnapshotSet:
    """The three rollback roles of one system."""

    snapshots_dir: str
    boot_dir: str
    live_root: str = "/"
    kernel_name: str = "linux"
    entries: dict[SnapshotRole, SnapshotEntry] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.entries:
            self.entries = {role: self._entry(role) for role in SnapshotRole}

    def _entry(self, role: SnapshotRole) -> SnapshotEntry:
        if role is SnapshotRole.STAGED:
            subvolume = self.live_root
        else:
            subvolume = str(PurePosixPath(self.snapshots_dir) / role.value)
        suffix = role.kernel_suffix
        boot = PurePosixPath(self.boot_dir)
        return SnapshotEntry(
            role=role,
            subvolume_path=subvolume,
            kernel_path=str(boot / f"vmlinuz-{self.kernel_name}{suffix}"),
            initramfs_path=str(boot / f"initramfs-{self.kernel_name}{suffix}.img"),
        )

    def __getitem__(self, role: SnapshotRole) -> SnapshotEntry:
        return self.entries[role]

    @property
    def staging_path(self) -> str:
        """Where the next CURRENT is snapshotted before it takes the role name."""
        return str(PurePosixPath(self.snapshots_dir) / f"{SnapshotRole.CURRENT.value}.new")
