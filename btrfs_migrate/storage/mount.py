"""Mount and unmount helpers backed by /proc/mounts.

Mount state is always read from the kernel's mount table instead of being
tracked in memory, so a check that mounts something can restore the exact
state it found.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from btrfs_migrate.logging import LoggerFactory

from .commands import run_command
from .exceptions import MountFailedError

log = LoggerFactory.for_storage()

PROC_MOUNTS = Path("/proc/mounts")


def _read_mount_table() -> list[tuple[str, str, str]]:
    entries = []
    try:
        with open(PROC_MOUNTS, "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 2:
                    # /proc/mounts escapes spaces in paths as \040
                    mountpoint = parts[1].replace("\\040", " ")
                    entries.append((parts[0], mountpoint, parts[2]))
    except FileNotFoundError:
        return []
    return entries


def find_mountpoint(device: str) -> Optional[str]:
    """Return the first mountpoint of ``device``, or None if it is not mounted."""
    for source, mountpoint, _fstype in _read_mount_table():
        if source == device:
            return mountpoint
    return None


def mount_fstype(mountpoint: str) -> Optional[str]:
    target = os.path.normpath(str(mountpoint))
    for _source, path, fstype in _read_mount_table():
        if path == target:
            return fstype
    return None


def ensure_directory(path) -> Path:
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def mount(device: str, target, options: Optional[str] = None) -> None:
    """Mount ``device`` at ``target`` with an optional ``-o`` option string."""
    command = ["mount"]
    if options:
        command.extend(["-o", options])
    command.extend([device, str(target)])
    try:
        result = run_command(command, check=False)
    except FileNotFoundError as error:
        raise MountFailedError(device, str(target), "mount command not found") from error
    if result.returncode != 0:
        message = (result.stderr or result.stdout or "").strip() or f"exit code {result.returncode}"
        raise MountFailedError(device, str(target), message)
    log.debug(f"Mounted {device} at {target}" + (f" ({options})" if options else ""))


def unmount(target) -> None:
    try:
        result = run_command(["umount", str(target)], check=False)
    except FileNotFoundError as error:
        raise MountFailedError(str(target), str(target), "umount command not found", unmount=True) from error
    if result.returncode != 0:
        message = (result.stderr or result.stdout or "").strip() or f"exit code {result.returncode}"
        raise MountFailedError(str(target), str(target), message, unmount=True)
    log.debug(f"Unmounted {target}")


@contextmanager
def temporary_mount(device: str, scratch) -> Iterator[str]:
    """Yield a mountpoint for ``device``, mounting it at ``scratch`` if needed.

    When this context performed the mount it always unmounts on exit, also
    when the body raises. An already-mounted device is left mounted.
    """
    existing = find_mountpoint(device)
    if existing is not None:
        log.debug(f"{device} already mounted at {existing}")
        yield existing
        return

    log.info(f"Partition {device} is not mounted. Temporarily mounting to {scratch}...")
    ensure_directory(scratch)
    mount(device, scratch)
    try:
        yield str(scratch)
    finally:
        log.info(f"Unmounting from {scratch}...")
        unmount(scratch)
