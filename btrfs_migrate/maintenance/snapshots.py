"""Rotation of the OLDSTABLE / STABLE / TESTING rollback snapshots.

TESTING is the live root. STABLE and OLDSTABLE are read-write snapshots
under the snapshots directory, each with a matching kernel and initramfs
copy in /boot and an fstab that names its own subvolume.

A cycle snapshots the live root before anything is deleted:

    1. snapshot /            -> STABLE.new
    2. delete OLDSTABLE                       (only while STABLE exists)
    3. rename STABLE         -> OLDSTABLE    (fstab: STABLE -> OLDSTABLE,
                                              kernel/initramfs -stable -> -oldstable)
    4. promote STABLE.new    -> STABLE       (fstab: TESTING -> STABLE,
                                              kernel/initramfs live -> -stable, rename)

An interruption at any point leaves at least one named fallback on disk.
A STABLE.new found at the start of a cycle is stale when STABLE exists and
is deleted; without STABLE it is the newest complete snapshot and is
promoted before the cycle continues.
"""

from __future__ import annotations

import os
import re
import shutil
from pathlib import Path

from btrfs_migrate.domain import SnapshotRole, SnapshotSet
from btrfs_migrate.logging import LoggerFactory
from btrfs_migrate.storage.exceptions import SnapshotRotationError
from btrfs_migrate.storage.filesystem import delete_subvolume, snapshot_subvolume

log = LoggerFactory.for_maintenance()


def retarget_fstab(fstab_path: Path, old_role: SnapshotRole, new_role: SnapshotRole) -> int:
    """Replace whole-word ``old_role`` names with ``new_role`` in a snapshot's fstab.

    ``STABLE`` inside ``OLDSTABLE`` is not touched.

    Returns:
        Number of replacements
    """
    fstab_path = Path(fstab_path)
    if not fstab_path.is_file():
        raise SnapshotRotationError(f"fstab not found: {fstab_path}")
    pattern = re.compile(rf"\b{re.escape(old_role.value)}\b")
    text = fstab_path.read_text(encoding="utf-8")
    updated, count = pattern.subn(new_role.value, text)
    if count:
        fstab_path.write_text(updated, encoding="utf-8")
    log.debug(f"{fstab_path}: {count} x {old_role.value} -> {new_role.value}")
    return count


def _fstab_of(subvolume_path: str) -> Path:
    return Path(subvolume_path) / "etc" / "fstab"


def _copy_image(source: str, destination: str) -> None:
    try:
        shutil.copy2(source, destination)
    except OSError as error:
        raise SnapshotRotationError(f"cannot copy {source} to {destination}: {error}") from error


def _rename(source: str, destination: str) -> None:
    try:
        os.rename(source, destination)
    except OSError as error:
        raise SnapshotRotationError(f"cannot rename {source} to {destination}: {error}") from error


def copy_boot_images(snapshot_set: SnapshotSet, source: SnapshotRole, target: SnapshotRole) -> None:
    """Duplicate the kernel and initramfs of ``source`` under ``target``'s names."""
    src = snapshot_set[source]
    dst = snapshot_set[target]
    _copy_image(src.kernel_path, dst.kernel_path)
    _copy_image(src.initramfs_path, dst.initramfs_path)


def _has_boot_images(snapshot_set: SnapshotSet, role: SnapshotRole) -> bool:
    entry = snapshot_set[role]
    return os.path.exists(entry.kernel_path) and os.path.exists(entry.initramfs_path)


def promote_staging(snapshot_set: SnapshotSet) -> None:
    """Give the staged snapshot the CURRENT name, fstab and boot images.

    The live kernel and initramfs are copied to the ``-stable`` names before
    the rename.
    """
    staging = snapshot_set.staging_path
    current = snapshot_set[SnapshotRole.CURRENT]
    retarget_fstab(_fstab_of(staging), SnapshotRole.STAGED, SnapshotRole.CURRENT)
    copy_boot_images(snapshot_set, SnapshotRole.STAGED, SnapshotRole.CURRENT)
    _rename(staging, current.subvolume_path)


def rotate_snapshots(snapshot_set: SnapshotSet) -> None:
    """Run one rotation cycle over ``snapshot_set``.

    Raises:
        SnapshotRotationError: If any snapshot, delete, rename or copy fails
    """
    previous = snapshot_set[SnapshotRole.PREVIOUS]
    current = snapshot_set[SnapshotRole.CURRENT]
    staged = snapshot_set[SnapshotRole.STAGED]
    staging = snapshot_set.staging_path

    if os.path.lexists(staging):
        if os.path.lexists(current.subvolume_path):
            log.warning(f"Removing leftover {staging} from an interrupted rotation")
            delete_subvolume(staging)
        else:
            log.warning(f"Promoting leftover {staging} to {current.subvolume_path}")
            promote_staging(snapshot_set)

    log.info(f"Snapshotting {staged.subvolume_path} to {staging}")
    snapshot_subvolume(staged.subvolume_path, staging)

    if os.path.lexists(current.subvolume_path):
        if os.path.lexists(previous.subvolume_path):
            log.info(f"Deleting {previous.subvolume_path}")
            delete_subvolume(previous.subvolume_path)
        if _has_boot_images(snapshot_set, SnapshotRole.CURRENT):
            copy_boot_images(snapshot_set, SnapshotRole.CURRENT, SnapshotRole.PREVIOUS)
        else:
            log.warning("No -stable kernel/initramfs pair to carry over to -oldstable")
        _rename(current.subvolume_path, previous.subvolume_path)
        retarget_fstab(
            _fstab_of(previous.subvolume_path), SnapshotRole.CURRENT, SnapshotRole.PREVIOUS
        )
    else:
        log.warning(f"{current.subvolume_path} does not exist; keeping OLDSTABLE as it is")

    promote_staging(snapshot_set)
    log.info("Snapshot rotation complete.")
