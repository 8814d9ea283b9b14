"""Precondition checks run before any device is modified.

All validation functions raise specific exceptions from the exceptions
module rather than returning boolean values.

Example:
    from btrfs_migrate.storage.validation import check_free_space

    try:
        used = check_free_space("/dev/sda3", "/mnt/old")
    except InsufficientFreeSpaceError:
        # Free up space first
        ...
"""

import os
from typing import Callable, Optional

from btrfs_migrate.domain import MAX_USED_PERCENT
from btrfs_migrate.logging import LoggerFactory

from .commands import run_command
from .exceptions import PermissionDeniedError, UsageQueryFailedError, InsufficientFreeSpaceError
from .mount import temporary_mount
from .parsers import parse_df_percent

log = LoggerFactory.for_storage()


def check_privileges(geteuid: Optional[Callable[[], int]] = None) -> None:
    """Require effective super-user identity.

    Raises:
        PermissionDeniedError: If the effective uid is not 0
    """
    euid = (geteuid or os.geteuid)()
    if euid != 0:
        raise PermissionDeniedError(euid)


def query_used_percent(device: str, mountpoint: str) -> int:
    result = run_command(["df", "--output=pcent", mountpoint], check=False)
    if result.returncode != 0:
        raise UsageQueryFailedError(device, (result.stderr or "").strip())
    return parse_df_percent(result.stdout or "", device)


def check_free_space(
    device: str,
    scratch_mount: str,
    threshold: int = MAX_USED_PERCENT,
) -> int:
    """Require ``device``'s filesystem to use strictly less than ``threshold`` percent.

    The filesystem is mounted at ``scratch_mount`` only if it is not mounted
    already, and unmounted again before this returns or raises.

    Returns:
        The used percentage

    Raises:
        InsufficientFreeSpaceError: If usage is at or above the threshold
        UsageQueryFailedError: If usage cannot be read
    """
    log.info(f"Checking free space on {device}...")
    with temporary_mount(device, scratch_mount) as mountpoint:
        used_percent = query_used_percent(device, mountpoint)

    if used_percent >= threshold:
        raise InsufficientFreeSpaceError(device, used_percent, threshold)

    log.info(f"Sufficient free space available ({used_percent}% used).")
    return used_percent
