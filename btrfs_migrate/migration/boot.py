"""Boot integration of the new root: bootloader entry, fstab and initramfs.

- rewrite_bootloader_config(): point the ``root=/dev/disk/by-uuid/...``
  reference at the new filesystem and add Btrfs rootflags
- render_fstab() / write_fstab(): regenerate the whole mount table
- enable_initramfs_hook(): add the btrfs hook to mkinitcpio.conf once
- install_chroot_packages() / regenerate_initramfs(): run pacman and
  mkinitcpio inside the new root with arch-chroot
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable

from btrfs_migrate.domain import (
    SUBVOLUMES,
    TOP_LEVEL_MOUNT_PATH,
    Subvolume,
    root_flags,
    top_level_fstab_options,
)
from btrfs_migrate.logging import LoggerFactory
from btrfs_migrate.storage.commands import run_checked_command
from btrfs_migrate.storage.exceptions import (
    BootConfigNotFoundError,
    InitramfsError,
    StepFailedError,
)

log = LoggerFactory.for_migration()

ROOT_REFERENCE = re.compile(r"root=/dev/disk/by-uuid/[0-9a-fA-F-]*(?:\s+rootflags=\S+)?")
HOOKS_LINE = re.compile(r"^(?P<prefix>\s*HOOKS=\()(?P<hooks>[^)]*)\)", re.MULTILINE)

BOOT_MOUNT_OPTIONS = (
    "rw,relatime,fmask=0022,dmask=0022,codepage=437,iocharset=ascii,"
    "shortname=mixed,utf8,errors=remount-ro"
)


def rewrite_bootloader_config(config_path: Path, new_uuid: str) -> int:
    """Replace every by-uuid root reference in ``config_path``.

    Returns:
        Number of references rewritten

    Raises:
        BootConfigNotFoundError: If ``config_path`` does not exist
        StepFailedError: If the file contains no root reference
    """
    config_path = Path(config_path)
    if not config_path.is_file():
        raise BootConfigNotFoundError(str(config_path))
    replacement = f"root=/dev/disk/by-uuid/{new_uuid} rootflags={root_flags()}"
    text = config_path.read_text(encoding="utf-8")
    updated, count = ROOT_REFERENCE.subn(replacement, text)
    if count == 0:
        raise StepFailedError(
            "bootloader", f"no root=/dev/disk/by-uuid/ reference in {config_path}"
        )
    config_path.write_text(updated, encoding="utf-8")
    log.info(f"Bootloader updated successfully with new UUID: {new_uuid} and btrfs rootflags")
    return count


def _fstab_line(device: str, mountpoint: str, fstype: str, options: str, passno: int) -> str:
    return f"{device:<45} {mountpoint:<22} {fstype:<6} {options:<60} 0 {passno}"


def render_fstab(
    new_uuid: str,
    boot_uuid: str,
    swap_uuid: str,
    subvolumes: Iterable[Subvolume] = SUBVOLUMES,
) -> str:
    """Render the complete fstab of the new root."""
    device = f"UUID={new_uuid}"
    lines = [
        _fstab_line(device, subvolume.mount_path, "btrfs", subvolume.fstab_options(), 0)
        for subvolume in subvolumes
    ]
    lines.append(_fstab_line(device, TOP_LEVEL_MOUNT_PATH, "btrfs", top_level_fstab_options(), 0))
    lines.append("")
    lines.append(_fstab_line(f"UUID={boot_uuid}", "/boot", "vfat", BOOT_MOUNT_OPTIONS, 2))
    lines.append(_fstab_line(f"UUID={swap_uuid}", "none", "swap", "defaults", 0))
    return "\n".join(lines) + "\n"


def write_fstab(new_root, content: str) -> Path:
    fstab = Path(new_root) / "etc" / "fstab"
    fstab.parent.mkdir(parents=True, exist_ok=True)
    fstab.write_text(content, encoding="utf-8")
    log.info("fstab updated successfully.")
    return fstab


def enable_initramfs_hook(config_path: Path, hook: str = "btrfs") -> bool:
    """Put ``hook`` first in the HOOKS array unless it is already listed.

    Returns:
        True if the file was changed, False if the hook was already present
    """
    config_path = Path(config_path)
    if not config_path.is_file():
        raise InitramfsError(f"mkinitcpio.conf not found: {config_path}")
    text = config_path.read_text(encoding="utf-8")
    match = HOOKS_LINE.search(text)
    if match is None:
        raise InitramfsError(f"no HOOKS=( line in {config_path}")
    hooks = match.group("hooks").split()
    if hook in hooks:
        log.info(f"{config_path.name} already lists the {hook} hook")
        return False
    new_line = f"{match.group('prefix')}{' '.join([hook, *hooks])})"
    config_path.write_text(text[: match.start()] + new_line + text[match.end():], encoding="utf-8")
    log.info(f"{config_path.name} updated successfully.")
    return True


def _chroot(new_root, *command: str, step: str) -> str:
    try:
        return run_checked_command(["arch-chroot", str(new_root), *command], step=step)
    except StepFailedError as error:
        raise InitramfsError(error.message) from error


def install_chroot_packages(new_root, packages: Iterable[str]) -> None:
    packages = list(packages)
    if not packages:
        return
    log.info(f"Installing {' '.join(packages)} inside chroot...")
    _chroot(new_root, "pacman", "-Sy", "--noconfirm", *packages, step="chroot install")


def regenerate_initramfs(new_root) -> None:
    log.info("Regenerating initramfs...")
    _chroot(new_root, "mkinitcpio", "-P", step="mkinitcpio")
    log.info("Initramfs regenerated successfully.")
