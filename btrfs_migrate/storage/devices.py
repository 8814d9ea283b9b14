"""Block device and partition geometry resolution.

Translates a partition path into its backing disk, partition number, sector
geometry, size and filesystem type by querying lsblk and fdisk. Everything
is read fresh on each call; callers must re-resolve after any table write
(and after ``reprobe()``) instead of reusing earlier results.

Operations:
    - resolve_partition(): partition path -> Partition (the resolver contract)
    - read_block_device(): disk path -> BlockDevice with all table entries
    - find_partition_by_start(): locate a table entry by its start sector
    - partition_path(): build a partition node name from disk + index
    - reprobe(): make the kernel reread a modified partition table

Naming:
    Partition numbers are a numeric suffix of the disk name, preceded by a
    ``p`` when the disk name ends in a digit (``/dev/sda3``,
    ``/dev/mmcblk0p3``, ``/dev/nvme0n1p3``).

Example:
    >>> from btrfs_migrate.storage.devices import resolve_partition
    >>> root = resolve_partition("/dev/mmcblk0p3")
    >>> print(root.disk_path, root.index, root.start_sector)
    /dev/mmcblk0 3 1050624
"""
from __future__ import annotations

import shutil
from pathlib import Path
from typing import Optional

from btrfs_migrate.domain import BlockDevice, Partition
from btrfs_migrate.logging import LoggerFactory

from .commands import run_checked_command, run_command
from .exceptions import GeometryUnresolvedError, StepFailedError
from .parsers import (
    PartitionTableListing,
    TableEntry,
    parse_blkid_value,
    parse_fdisk_listing,
    parse_lsblk_device,
    partition_index,
)

log = LoggerFactory.for_storage()

LSBLK_COLUMNS = "NAME,PATH,PKNAME,SIZE,TYPE,FSTYPE,UUID,MOUNTPOINT"


def _is_block_device(path: str) -> bool:
    return Path(path).is_block_device()


def partition_path(disk_path: str, index: int) -> str:
    separator = "p" if disk_path[-1:].isdigit() else ""
    return f"{disk_path}{separator}{index}"


def query_lsblk(device: str) -> dict:
    try:
        output = run_checked_command(
            ["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS, device], step="lsblk"
        )
    except StepFailedError as error:
        raise GeometryUnresolvedError(device, error.message) from error
    return parse_lsblk_device(output, device)


def read_partition_table(disk_path: str) -> PartitionTableListing:
    try:
        output = run_checked_command(["fdisk", "-l", disk_path], step="fdisk -l")
    except StepFailedError as error:
        raise GeometryUnresolvedError(disk_path, error.message) from error
    return parse_fdisk_listing(output, disk_path)


def _disk_path_from_record(partition: str, record: dict) -> str:
    if record.get("type") != "part":
        raise GeometryUnresolvedError(
            partition, f"not a partition (type {record.get('type')!r})"
        )
    parent = (record.get("pkname") or "").strip()
    if not parent:
        raise GeometryUnresolvedError(partition, "lsblk reported no parent disk")
    disk_path = f"/dev/{parent}"
    if not _is_block_device(disk_path):
        raise GeometryUnresolvedError(partition, f"{disk_path} is not a block device")
    return disk_path


def _partition_from_entry(
    entry: TableEntry,
    listing: PartitionTableListing,
    *,
    fstype: Optional[str] = None,
    uuid: Optional[str] = None,
) -> Partition:
    disk_name = Path(listing.disk).name
    index = partition_index(Path(entry.device).name, disk_name)
    return Partition(
        path=entry.device,
        disk_path=listing.disk,
        index=index,
        start_sector=entry.start,
        end_sector=entry.end,
        sector_size=listing.sector_size,
        fstype=fstype,
        uuid=uuid,
    )


def resolve_partition(path: str) -> Partition:
    """Resolve a partition path into its geometry.

    The entry is matched by device path in the table listing, never by
    position, so a table whose last row is not the newest partition still
    resolves correctly.

    Raises:
        GeometryUnresolvedError: if the disk is not a block device or no
            table entry matches ``path``
    """
    record = query_lsblk(path)
    disk_path = _disk_path_from_record(path, record)
    canonical = record.get("path") or path
    listing = read_partition_table(disk_path)
    entry = listing.entry_for(canonical)
    if entry is None:
        raise GeometryUnresolvedError(path, f"no entry in the partition table of {disk_path}")
    partition = _partition_from_entry(
        entry,
        listing,
        fstype=record.get("fstype") or None,
        uuid=record.get("uuid") or None,
    )
    log.debug(
        f"Resolved {partition.path}: disk={partition.disk_path} index={partition.index} "
        f"start={partition.start_sector} end={partition.end_sector} "
        f"size={partition.size_bytes} fstype={partition.fstype}"
    )
    return partition


def read_block_device(disk_path: str) -> BlockDevice:
    listing = read_partition_table(disk_path)
    partitions = tuple(_partition_from_entry(entry, listing) for entry in listing.entries)
    return BlockDevice(
        path=disk_path,
        size_bytes=listing.size_bytes,
        sector_size=listing.sector_size,
        total_sectors=listing.total_sectors,
        label_type=listing.label_type,
        partitions=partitions,
    )


def find_partition_by_start(disk_path: str, start_sector: int) -> Partition:
    """Return the table entry that begins at ``start_sector``."""
    listing = read_partition_table(disk_path)
    entry = listing.entry_starting_at(start_sector)
    if entry is None:
        raise GeometryUnresolvedError(
            disk_path, f"no partition starts at sector {start_sector}"
        )
    partition = _partition_from_entry(entry, listing)
    if not _is_block_device(partition.path):
        raise GeometryUnresolvedError(partition.path, "partition node does not exist")
    return partition


def get_filesystem_uuid(device: str) -> Optional[str]:
    result = run_command(["blkid", "-s", "UUID", "-o", "value", device], check=False)
    if result.returncode != 0:
        return None
    return parse_blkid_value(result.stdout or "")


def reprobe(disk_path: str) -> None:
    """Force the kernel to reread the partition table of ``disk_path``."""
    log.debug(f"Re-probing partition table of {disk_path}")
    try:
        run_checked_command(["partprobe", disk_path], step="partprobe")
    except StepFailedError as error:
        raise StepFailedError(
            "re-probe",
            f"Failed to reload partition table of {disk_path}: {error.message}. "
            "Try rebooting before proceeding.",
        ) from error
    if shutil.which("udevadm"):
        run_command(["udevadm", "settle", "--timeout=10"], check=False)
