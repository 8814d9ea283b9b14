"""Mount assembly of the new Btrfs tree and the copy of the old root into it."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

from btrfs_migrate.domain import (
    ROOT_SUBVOLUME,
    SUBVOLUMES,
    TOP_LEVEL_MOUNT_PATH,
    Subvolume,
    top_level_mount_options,
)
from btrfs_migrate.logging import LoggerFactory
from btrfs_migrate.storage.commands import stream_command
from btrfs_migrate.storage.exceptions import CopyFailedError, StepFailedError
from btrfs_migrate.storage.mount import ensure_directory, mount

log = LoggerFactory.for_migration()


def _under(root, absolute: str) -> Path:
    return Path(root) / absolute.lstrip("/")


def assemble_mounts(
    target_device: str,
    source_device: str,
    boot_device: str,
    new_root,
    old_root,
    subvolumes: Iterable[Subvolume] = SUBVOLUMES,
) -> list[str]:
    """Mount the new tree, the top-level view, the old root and /boot.

    Order: root subvolume at ``new_root``; the other subvolumes below it;
    subvolume id 5 at ``/btrfs``; the old root at ``old_root``; the boot
    partition at ``new_root/boot``. Every directory is created right before
    something is mounted on it.

    Returns:
        Mountpoints in the order they were mounted
    """
    mounted = []

    ensure_directory(new_root)
    mount(target_device, new_root, ROOT_SUBVOLUME.mount_options())
    mounted.append(str(new_root))

    for subvolume in subvolumes:
        if subvolume == ROOT_SUBVOLUME:
            continue
        path = ensure_directory(_under(new_root, subvolume.mount_path))
        mount(target_device, path, subvolume.mount_options())
        mounted.append(str(path))

    top_level = ensure_directory(_under(new_root, TOP_LEVEL_MOUNT_PATH))
    mount(target_device, top_level, top_level_mount_options())
    mounted.append(str(top_level))

    ensure_directory(old_root)
    mount(source_device, old_root)
    mounted.append(str(old_root))

    boot = ensure_directory(_under(new_root, "/boot"))
    mount(boot_device, boot)
    mounted.append(str(boot))

    log.info("All partitions and subvolumes successfully mounted.")
    return mounted


def copy_root_tree(old_root, new_root) -> None:
    """Archive-copy ``old_root`` onto ``new_root`` keeping owners, ACLs and xattrs.

    Raises:
        CopyFailedError: On any rsync failure; both trees stay mounted
    """
    source = f"{str(old_root).rstrip('/')}/"
    destination = f"{str(new_root).rstrip('/')}/"
    log.info(f"Copying filesystem from {source} to {destination}...")
    try:
        returncode = stream_command(
            ["rsync", "-aAXH", "--numeric-ids", "--info=progress2", source, destination],
            step="copy",
        )
    except StepFailedError as error:
        raise CopyFailedError(source, destination, error.message) from error
    if returncode != 0:
        raise CopyFailedError(source, destination, f"rsync exit code {returncode}")
    log.info("Filesystem successfully copied.")
