"""Partition table edits through fdisk's line-oriented command protocol.

Two edits are supported, both strictly sequential and never retried:

- rewrite_partition(): delete a partition entry and recreate it at the same
  start sector with a smaller size (the filesystem inside must already have
  been shrunk to fit)
- create_trailing_partition(): add a new entry from the sector after a given
  partition to the end of the disk

fdisk runs with ``--wipe-partitions never`` so recreating an entry over an
existing filesystem never wipes its signature. The answers fed to fdisk
depend on the label type: DOS asks for primary/extended first and skips the
number prompt when only one primary slot is left.

After each write the kernel's view is refreshed with ``reprobe()`` and the
result is read back from the table and compared against what was requested.
"""
from __future__ import annotations

from btrfs_migrate.domain import GIB, BlockDevice, Partition, PartitionRole
from btrfs_migrate.logging import LoggerFactory

from .commands import run_checked_command
from .devices import find_partition_by_start, read_block_device, reprobe
from .exceptions import GeometryUnresolvedError, StepFailedError

log = LoggerFactory.for_storage()

DOS_PRIMARY_SLOTS = frozenset({1, 2, 3, 4})
LINUX_TYPE_CODES = {"gpt": "linux", "dos": "83"}


def linux_type_code(label_type: str) -> str:
    try:
        return LINUX_TYPE_CODES[label_type]
    except KeyError:
        raise StepFailedError(
            "partition table", f"unsupported disklabel type {label_type!r}"
        ) from None


def _new_partition_answers(label_type: str, index: int, used: set[int]) -> list[str]:
    if label_type == "dos":
        answers = ["n", "p"]
        free = DOS_PRIMARY_SLOTS - used
        if index not in free:
            raise StepFailedError("partition table", f"no free primary slot {index}")
        if len(free) > 1:
            answers.append(str(index))
        return answers
    return ["n", str(index)]


def _select_answers(command: str, index: int, count: int) -> list[str]:
    # fdisk selects the only partition without asking for its number
    if count > 1:
        return [command, str(index)]
    return [command]


def build_rewrite_script(device: BlockDevice, partition: Partition, end_sector: int) -> str:
    """fdisk input that recreates ``partition`` ending at ``end_sector``."""
    type_code = linux_type_code(device.label_type)
    used = set(device.used_indexes)
    lines = _select_answers("d", partition.index, len(used))
    used.discard(partition.index)
    lines += _new_partition_answers(device.label_type, partition.index, used)
    lines += [str(partition.start_sector), str(end_sector)]
    used.add(partition.index)
    lines += _select_answers("t", partition.index, len(used))
    lines += [type_code, "w"]
    return "\n".join(lines) + "\n"


def build_create_script(device: BlockDevice, index: int, start_sector: int) -> str:
    """fdisk input that adds partition ``index`` from ``start_sector`` to the disk end."""
    type_code = linux_type_code(device.label_type)
    used = set(device.used_indexes)
    lines = _new_partition_answers(device.label_type, index, used)
    # empty answer accepts fdisk's default last sector: end of the disk
    lines += [str(start_sector), ""]
    used.add(index)
    lines += _select_answers("t", index, len(used))
    lines += [type_code, "w"]
    return "\n".join(lines) + "\n"


def _run_fdisk(disk_path: str, script: str, step: str) -> None:
    log.debug(f"fdisk script for {disk_path}: {script.splitlines()}")
    run_checked_command(
        ["fdisk", "--wipe-partitions", "never", disk_path],
        step=step,
        input_text=script,
    )


def rewrite_partition(disk_path: str, index: int, size_gib: int) -> Partition:
    """Shrink partition ``index`` of ``disk_path`` to ``size_gib`` GiB in place.

    The start sector is read from the table before the entry is deleted and
    the entry is recreated at exactly that sector.

    Returns:
        The re-read, shrunk partition

    Raises:
        GeometryUnresolvedError: If the entry is missing before or after the edit
        StepFailedError: If fdisk or the re-probe fails
    """
    device = read_block_device(disk_path)
    partition = device.partition_by_index(index)
    if partition is None:
        raise GeometryUnresolvedError(disk_path, f"partition {index} not in table")

    size_sectors = size_gib * GIB // device.sector_size
    if size_sectors < 1:
        raise StepFailedError("partition table rewrite", f"target size of partition {index} is 0")
    end_sector = partition.start_sector + size_sectors - 1
    if end_sector > partition.end_sector:
        raise StepFailedError(
            "partition table rewrite",
            f"new end sector {end_sector} is beyond current end {partition.end_sector}",
        )

    log.info(
        f"Resizing {partition.path}: start {partition.start_sector}, "
        f"end {partition.end_sector} -> {end_sector} ({size_gib}G)"
    )
    _run_fdisk(disk_path, build_rewrite_script(device, partition, end_sector), "partition table rewrite")
    reprobe(disk_path)

    shrunk = find_partition_by_start(disk_path, partition.start_sector)
    if shrunk.index != index or shrunk.end_sector != end_sector:
        raise GeometryUnresolvedError(
            disk_path,
            f"table reads partition {shrunk.index} ending at {shrunk.end_sector}, "
            f"expected partition {index} ending at {end_sector}",
        )
    log.info("Partition resizing completed.")
    return shrunk


def create_trailing_partition(disk_path: str, after: Partition, index: int) -> Partition:
    """Create partition ``index`` spanning from ``after``'s end to the end of the disk.

    Returns:
        The re-read new partition, tagged with the TARGET role

    Raises:
        GeometryUnresolvedError: If the space after ``after`` is not free or the
            new entry cannot be found after writing
        StepFailedError: If fdisk or the re-probe fails
    """
    device = read_block_device(disk_path)
    current = device.partition_by_index(after.index)
    if current is None or current.end_sector != after.end_sector:
        raise GeometryUnresolvedError(
            disk_path, f"partition {after.index} no longer ends at {after.end_sector}"
        )
    if index in device.used_indexes:
        raise GeometryUnresolvedError(disk_path, f"partition {index} already exists")

    start_sector = current.end_sector + 1
    if start_sector >= device.total_sectors:
        raise GeometryUnresolvedError(disk_path, f"no space after sector {current.end_sector}")
    for other in device.partitions:
        if other.start_sector <= start_sector <= other.end_sector:
            raise GeometryUnresolvedError(
                disk_path, f"sector {start_sector} is already used by {other.path}"
            )

    log.info(
        f"Creating new partition {index} starting at sector {start_sector} "
        "and using all available space."
    )
    _run_fdisk(disk_path, build_create_script(device, index, start_sector), "create partition")
    reprobe(disk_path)

    created = find_partition_by_start(disk_path, start_sector)
    if created.index != index or created.start_sector <= current.end_sector:
        raise GeometryUnresolvedError(
            disk_path,
            f"table reads partition {created.index} at {created.start_sector}, expected {index}",
        )
    log.info(f"New partition {created.path} created ({created.size_gib:.1f} GiB).")
    return created.with_role(PartitionRole.TARGET)
