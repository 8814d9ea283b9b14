"""Parsers for the text output of block-device and filesystem tools.

Each external tool's output is parsed here, and only here, into typed
results. A parser that cannot find what it is looking for raises instead of
guessing: these values feed destructive partition edits.

Supported Outputs:
    lsblk -J        JSON device listing
    fdisk -l DISK   partition table listing (GPT and DOS labels)
    df --output=pcent
    btrfs filesystem show
    blkid -s TAG -o value
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from .exceptions import (
    GeometryUnresolvedError,
    UsageQueryFailedError,
    UUIDResolutionFailedError,
)

_DISK_HEADER = re.compile(r"^Disk\s+(\S+):.*?(\d+)\s+bytes,\s+(\d+)\s+sectors")
_UNITS = re.compile(r"^Units:\s+sectors of\s+\d+\s+\*\s+\d+\s+=\s+(\d+)\s+bytes")
_LABEL = re.compile(r"^Disklabel type:\s+(\S+)")
_BTRFS_UUID = re.compile(r"uuid:\s*([0-9a-fA-F]{8}(?:-[0-9a-fA-F]{4}){3}-[0-9a-fA-F]{12})")
_PERCENT = re.compile(r"^(\d{1,3})%$")


@dataclass(frozen=True)
class TableEntry:
    """One row of an ``fdisk -l`` listing."""

    device: str
    start: int
    end: int
    sectors: int
    boot: bool = False


@dataclass(frozen=True)
class PartitionTableListing:
    """Parsed ``fdisk -l`` output for one disk."""

    disk: str
    size_bytes: int
    total_sectors: int
    sector_size: int
    label_type: str
    entries: tuple[TableEntry, ...] = field(default_factory=tuple)

    def entry_for(self, device: str) -> Optional[TableEntry]:
        for entry in self.entries:
            if entry.device == device:
                return entry
        return None

    def entry_starting_at(self, start: int) -> Optional[TableEntry]:
        for entry in self.entries:
            if entry.start == start:
                return entry
        return None


def parse_lsblk_device(output: str, device: str) -> dict[str, Any]:
    """Return the first device record of ``lsblk -J`` output."""
    try:
        data = json.loads(output)
    except json.JSONDecodeError as error:
        raise GeometryUnresolvedError(device, f"invalid lsblk output: {error}") from error
    devices = data.get("blockdevices") or []
    if not devices:
        raise GeometryUnresolvedError(device, "lsblk returned no device")
    record = devices[0]
    if not isinstance(record, dict):
        raise GeometryUnresolvedError(device, "unexpected lsblk record")
    return record


def _parse_table_row(line: str) -> Optional[TableEntry]:
    parts = line.split()
    if len(parts) < 4:
        return None
    device = parts[0]
    boot = False
    numbers = parts[1:]
    if numbers and numbers[0] == "*":
        boot = True
        numbers = numbers[1:]
    if len(numbers) < 3 or not all(value.isdigit() for value in numbers[:3]):
        return None
    start, end, sectors = (int(value) for value in numbers[:3])
    return TableEntry(device=device, start=start, end=end, sectors=sectors, boot=boot)


def parse_fdisk_listing(output: str, disk: str) -> PartitionTableListing:
    """Parse ``fdisk -l DISK`` output.

    Raises:
        GeometryUnresolvedError: if the disk header, sector size or a
            partition row cannot be parsed
    """
    size_bytes = None
    total_sectors = None
    sector_size = None
    label_type = None
    entries: list[TableEntry] = []

    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        header = _DISK_HEADER.match(line)
        if header and size_bytes is None:
            if header.group(1) != disk:
                raise GeometryUnresolvedError(
                    disk, f"fdisk listed {header.group(1)} instead"
                )
            size_bytes = int(header.group(2))
            total_sectors = int(header.group(3))
            continue
        units = _UNITS.match(line)
        if units:
            sector_size = int(units.group(1))
            continue
        label = _LABEL.match(line)
        if label:
            label_type = label.group(1)
            continue
        if line.startswith("/dev/"):
            entry = _parse_table_row(line)
            if entry is None:
                raise GeometryUnresolvedError(disk, f"unparseable table row: {line!r}")
            entries.append(entry)

    if size_bytes is None or total_sectors is None:
        raise GeometryUnresolvedError(disk, "fdisk output has no disk header")
    if sector_size is None:
        raise GeometryUnresolvedError(disk, "fdisk output has no sector size")
    if label_type is None:
        raise GeometryUnresolvedError(disk, "fdisk output has no disklabel type")

    return PartitionTableListing(
        disk=disk,
        size_bytes=size_bytes,
        total_sectors=total_sectors,
        sector_size=sector_size,
        label_type=label_type,
        entries=tuple(entries),
    )


def parse_df_percent(output: str, device: str) -> int:
    """Parse ``df --output=pcent`` into an integer percentage."""
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if not lines:
        raise UsageQueryFailedError(device, output)
    match = _PERCENT.match(lines[-1])
    if not match:
        raise UsageQueryFailedError(device, lines[-1])
    return int(match.group(1))


def parse_btrfs_show_uuid(output: str, device: str) -> str:
    """Extract the filesystem UUID from ``btrfs filesystem show``."""
    match = _BTRFS_UUID.search(output)
    if not match:
        raise UUIDResolutionFailedError(device, output)
    return match.group(1).lower()


def parse_blkid_value(output: str) -> Optional[str]:
    """Return the single value printed by ``blkid -o value``, if any."""
    value = output.strip()
    if not value:
        return None
    return value.splitlines()[0].strip() or None


def partition_index(partition_name: str, disk_name: str) -> int:
    """Extract the 1-based partition number from a partition device name.

    The name must be the disk name followed by the number, with a ``p``
    separator when the disk name itself ends in a digit (``mmcblk0p3``,
    ``nvme0n1p2``) and none otherwise (``sda3``).

    Raises:
        GeometryUnresolvedError: if the partition is not named after its disk
    """
    if not partition_name.startswith(disk_name):
        raise GeometryUnresolvedError(
            partition_name, f"partition is not named after disk {disk_name}"
        )
    suffix = partition_name[len(disk_name):]
    if disk_name[-1:].isdigit():
        if not suffix.startswith("p"):
            raise GeometryUnresolvedError(
                partition_name, f"expected 'p' separator after {disk_name}"
            )
        suffix = suffix[1:]
    if not suffix.isdigit() or int(suffix) < 1:
        raise GeometryUnresolvedError(
            partition_name, f"no partition number after {disk_name}"
        )
    return int(suffix)
