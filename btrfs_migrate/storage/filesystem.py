"""Filesystem checks, resizing, formatting and Btrfs subvolume operations.

Tools:
    e2fsck          consistency check of the ext4 source (preen mode)
    resize2fs       shrink the ext4 source to the planned size
    mkfs.btrfs      create the target filesystem (overwrites old signatures)
    blkid           read back the filesystem type after formatting
    btrfs           subvolumes, snapshots, UUID lookup, balance

Every operation either completes and verifies its effect or raises; no
operation is retried.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, Optional, Type

from btrfs_migrate.domain import Subvolume
from btrfs_migrate.logging import LoggerFactory

from .commands import run_checked_command, run_command
from .exceptions import (
    FilesystemInconsistentError,
    FormatFailedError,
    FormatVerificationFailedError,
    SnapshotRotationError,
    StepFailedError,
    SubvolumeCreateFailedError,
    UpdateFailedError,
    UUIDResolutionFailedError,
)
from .mount import ensure_directory, mount, unmount
from .parsers import parse_blkid_value, parse_btrfs_show_uuid

log = LoggerFactory.for_storage()

# e2fsck exit codes below 4 mean "clean" or "errors corrected".
E2FSCK_UNCORRECTED = 4


def check_filesystem(
    device: str,
    error_class: Type[FilesystemInconsistentError] = FilesystemInconsistentError,
) -> int:
    """Run a forced consistency check of ``device``.

    Returns:
        The e2fsck exit code (0, 1 or 2)

    Raises:
        error_class: If e2fsck reports uncorrected errors or cannot run
    """
    log.info(f"Checking filesystem on {device}...")
    try:
        result = run_command(["e2fsck", "-f", "-p", device], check=False)
    except FileNotFoundError as error:
        raise error_class(device, 127, "e2fsck not found") from error
    if result.returncode >= E2FSCK_UNCORRECTED:
        output = (result.stderr or result.stdout or "").strip()
        raise error_class(device, result.returncode, output)
    if result.returncode:
        log.warning(f"e2fsck corrected errors on {device} (exit code {result.returncode})")
    return result.returncode


def shrink_filesystem(device: str, size_gib: int) -> None:
    """Shrink the ext4 filesystem on ``device`` to ``size_gib`` GiB."""
    if size_gib < 1:
        raise StepFailedError("shrink filesystem", f"target size of {device} rounds to 0 GiB")
    log.info(f"Resizing {device} filesystem to {size_gib}G")
    run_checked_command(["resize2fs", device, f"{size_gib}G"], step="shrink filesystem")


def probe_filesystem_type(device: str) -> Optional[str]:
    result = run_command(["blkid", "-s", "TYPE", "-o", "value", device], check=False)
    if result.returncode != 0:
        return None
    return parse_blkid_value(result.stdout or "")


def format_btrfs(device: str) -> None:
    """Create a fresh Btrfs filesystem on ``device`` and verify it by probing.

    Raises:
        FormatFailedError: If mkfs.btrfs fails
        FormatVerificationFailedError: If the probed type is not btrfs
    """
    log.info(f"Formatting {device} as Btrfs...")
    try:
        result = run_command(["mkfs.btrfs", "-f", device], check=False)
    except FileNotFoundError as error:
        raise FormatFailedError(device, "mkfs.btrfs not found") from error
    if result.returncode != 0:
        message = (result.stderr or result.stdout or "").strip() or f"exit code {result.returncode}"
        raise FormatFailedError(device, message)

    fstype = probe_filesystem_type(device)
    if fstype != "btrfs":
        raise FormatVerificationFailedError(device, "btrfs", fstype)
    log.info(f"Btrfs filesystem successfully created on {device}.")


def create_subvolume(path: Path, name: str) -> None:
    # btrfs refuses existing targets too; checking first names the real cause.
    if os.path.lexists(path):
        raise SubvolumeCreateFailedError(name, f"{path} already exists")
    try:
        result = run_command(["btrfs", "subvolume", "create", str(path)], check=False)
    except FileNotFoundError as error:
        raise SubvolumeCreateFailedError(name, "btrfs command not found") from error
    if result.returncode != 0:
        message = (result.stderr or result.stdout or "").strip() or f"exit code {result.returncode}"
        raise SubvolumeCreateFailedError(name, message)


def create_subvolumes(device: str, mount_root, subvolumes: Iterable[Subvolume]) -> list[str]:
    """Mount ``device`` at ``mount_root``, create ``subvolumes`` in order, unmount.

    A failure leaves the filesystem mounted with whatever subvolumes were
    already created, for inspection.
    """
    ensure_directory(mount_root)
    mount(device, mount_root)
    created = []
    for subvolume in subvolumes:
        log.info(f"Creating subvolume: {subvolume.name}")
        create_subvolume(Path(mount_root) / subvolume.name, subvolume.name)
        created.append(subvolume.name)
    unmount(mount_root)
    log.info("Btrfs subvolumes created successfully.")
    return created


def get_btrfs_uuid(device: str) -> str:
    try:
        result = run_command(["btrfs", "filesystem", "show", device], check=False)
    except FileNotFoundError as error:
        raise UUIDResolutionFailedError(device, "btrfs command not found") from error
    if result.returncode != 0:
        raise UUIDResolutionFailedError(device, (result.stderr or "").strip())
    return parse_btrfs_show_uuid(result.stdout or "", device)


def snapshot_subvolume(source, destination) -> None:
    try:
        run_checked_command(
            ["btrfs", "subvolume", "snapshot", str(source), str(destination)],
            step="snapshot",
        )
    except StepFailedError as error:
        raise SnapshotRotationError(error.message) from error


def delete_subvolume(path) -> None:
    try:
        run_checked_command(["btrfs", "subvolume", "delete", str(path)], step="delete snapshot")
    except StepFailedError as error:
        raise SnapshotRotationError(error.message) from error


def balance(mountpoint, usage_threshold: int) -> None:
    """Reclaim data block groups that are at most ``usage_threshold`` percent used."""
    try:
        run_checked_command(
            ["btrfs", "balance", "start", f"-dusage={usage_threshold}", str(mountpoint)],
            step="balance",
        )
    except StepFailedError as error:
        raise UpdateFailedError("balance", error.message) from error
