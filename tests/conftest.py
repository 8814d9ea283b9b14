"""
Pytest configuration and shared fixtures for btrfs-migrate tests.

This module provides canned tool output and a fake system that answers the
external commands of the migration pipeline, so the whole pipeline can run
against temporary directories without touching a real disk.
"""

import io
import json
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from btrfs_migrate.config import settings
from btrfs_migrate.domain import GIB


SECTOR = 512
GIB_SECTORS = GIB // SECTOR

DISK = "/dev/mmcblk0"
BOOT_UUID = "6A3B-91C2"
SWAP_UUID = "0f4a7d1e-3c55-4a3e-9c1e-2b7d8f5a6c01"
ROOT_UUID = "9d1f6c2a-8e3b-4f47-a1d5-7c0e2b4a9f13"
BTRFS_UUID = "3e5c8a1f-2b7d-4c9e-8f06-1a4d7b2c5e90"

# 512 MiB boot, 4 GiB swap, 100 GiB root, a little slack at the end
BOOT_START, BOOT_END = 2048, 1050623
SWAP_START, SWAP_END = 1050624, 1050624 + 4 * GIB_SECTORS - 1
ROOT_START = SWAP_END + 1
ROOT_END = ROOT_START + 100 * GIB_SECTORS - 1
TOTAL_SECTORS = ROOT_END + 1 + 2048
GPT_BACKUP_SECTORS = 34


# ==============================================================================
# Settings Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch) -> Dict[str, Any]:
    """Point every setting that names a path at the test's temporary directory."""
    monkeypatch.setattr(settings, "SETTINGS_PATH", tmp_path / "etc" / "settings.json")
    values = dict(settings.DEFAULT_SETTINGS)
    values.update(
        {
            "old_mount": str(tmp_path / "mnt" / "old"),
            "new_mount": str(tmp_path / "mnt" / "new"),
            "checkpoint_path": str(tmp_path / "state" / "checkpoints.jsonl"),
            "update_log_path": str(tmp_path / "pacman_update_log"),
        }
    )
    monkeypatch.setattr(settings.settings_store, "values", values)
    return values


@pytest.fixture
def temp_settings_file(tmp_path) -> Path:
    """Settings file location inside the temporary directory."""
    return tmp_path / "etc" / "settings.json"


# ==============================================================================
# Canned Tool Output
# ==============================================================================


def render_fdisk_listing(
    disk: str,
    partitions: Dict[int, tuple],
    total_sectors: int = TOTAL_SECTORS,
    label: str = "gpt",
) -> str:
    separator = "p" if disk[-1].isdigit() else ""
    size_bytes = total_sectors * SECTOR
    lines = [
        f"Disk {disk}: {size_bytes / GIB:.1f} GiB, {size_bytes} bytes, {total_sectors} sectors",
        "Units: sectors of 1 * 512 = 512 bytes",
        "Sector size (logical/physical): 512 bytes / 512 bytes",
        "I/O size (minimum/optimal): 512 bytes / 512 bytes",
        f"Disklabel type: {label}",
        "Disk identifier: 5E0B3C1A-7D2F-4B8E-9A61-0C3D5F7E9B24",
        "",
        "Device            Start       End   Sectors  Size Type",
    ]
    for index in sorted(partitions):
        start, end = partitions[index]
        lines.append(
            f"{disk}{separator}{index} {start:>10} {end:>10} {end - start + 1:>10}  1G Linux filesystem"
        )
    return "\n".join(lines) + "\n"


@pytest.fixture
def fdisk_listing() -> str:
    """``fdisk -l /dev/mmcblk0`` for a boot/swap/root GPT layout."""
    return render_fdisk_listing(
        DISK,
        {1: (BOOT_START, BOOT_END), 2: (SWAP_START, SWAP_END), 3: (ROOT_START, ROOT_END)},
    )


@pytest.fixture
def dos_fdisk_listing() -> str:
    """``fdisk -l /dev/sda`` for a DOS label with a boot flag."""
    return """Disk /dev/sda: 15 GiB, 16106127360 bytes, 31457280 sectors
Disk model: Flash Disk
Units: sectors of 1 * 512 = 512 bytes
Sector size (logical/physical): 512 bytes / 512 bytes
I/O size (minimum/optimal): 512 bytes / 512 bytes
Disklabel type: dos
Disk identifier: 0x9f3c2a11

Device     Boot   Start      End  Sectors  Size Id Type
/dev/sda1  *       2048  1050623  1048576  512M  c W95 FAT32 (LBA)
/dev/sda2       1050624  9439231  8388608    4G 82 Linux swap / Solaris
/dev/sda3       9439232 31457279 22018048 10.5G 83 Linux
"""


def lsblk_json(device: str, disk_name: str = "mmcblk0", fstype="ext4", uuid=ROOT_UUID, type_="part") -> str:
    return json.dumps(
        {
            "blockdevices": [
                {
                    "name": Path(device).name,
                    "path": device,
                    "pkname": disk_name if type_ == "part" else None,
                    "size": 100 * GIB,
                    "type": type_,
                    "fstype": fstype,
                    "uuid": uuid,
                    "mountpoint": None,
                }
            ]
        }
    )


@pytest.fixture
def lsblk_root_partition() -> str:
    return lsblk_json(f"{DISK}p3")


@pytest.fixture
def btrfs_show_output() -> str:
    return f"""Label: none  uuid: {BTRFS_UUID}
\tTotal devices 1 FS bytes used 144.00KiB
\tdevid    1 size 50.00GiB used 8.02MiB path {DISK}p4
"""


@pytest.fixture
def completed():
    """Factory for ``subprocess.CompletedProcess`` results."""

    def make(returncode: int = 0, stdout: str = "", stderr: str = "", args=None):
        return subprocess.CompletedProcess(args or [], returncode, stdout, stderr)

    return make


# ==============================================================================
# Fake System
# ==============================================================================


@dataclass
class FakeFilesystem:
    fstype: Optional[str]
    uuid: Optional[str]


class FakePopen:
    """Stand-in for ``subprocess.Popen`` fed by the fake system."""

    def __init__(self, system: "FakeSystem", argv, **kwargs):
        result = system.handle(list(argv))
        self.args = argv
        self.returncode = result.returncode
        self.stdout = io.StringIO(result.stdout)

    def wait(self):
        return self.returncode

    def poll(self):
        return self.returncode


class FakeSystem:
    """Answers the external commands of both pipelines.

    Partition geometry, filesystem signatures, mounts and usage live in
    memory; the mount table is mirrored into a file that stands in for
    /proc/mounts. rsync copies between the real temporary directories and
    ``btrfs subvolume create`` creates real directories.
    """

    def __init__(self, tmp_path: Path, used_percent: int = 30):
        self.disk = DISK
        self.total_sectors = TOTAL_SECTORS
        self.partitions: Dict[int, tuple] = {
            1: (BOOT_START, BOOT_END),
            2: (SWAP_START, SWAP_END),
            3: (ROOT_START, ROOT_END),
        }
        self.filesystems: Dict[str, FakeFilesystem] = {
            f"{DISK}p1": FakeFilesystem("vfat", BOOT_UUID),
            f"{DISK}p2": FakeFilesystem("swap", SWAP_UUID),
            f"{DISK}p3": FakeFilesystem("ext4", ROOT_UUID),
        }
        self.used_percent = used_percent
        self.mounts: List[tuple] = []
        self.commands: List[List[str]] = []
        self.fail: Dict[str, subprocess.CompletedProcess] = {}
        self.proc_mounts = tmp_path / "proc_mounts"
        self._write_proc_mounts()

    # -- helpers -------------------------------------------------------------

    def node(self, index: int) -> str:
        return f"{self.disk}p{index}"

    def nodes(self) -> set:
        return {self.disk} | {self.node(index) for index in self.partitions}

    def ran(self, *prefix: str) -> List[List[str]]:
        return [command for command in self.commands if command[: len(prefix)] == list(prefix)]

    def mounted_targets(self) -> List[str]:
        return [target for _source, target, _fstype in self.mounts]

    def _write_proc_mounts(self) -> None:
        self.proc_mounts.write_text(
            "".join(f"{source} {target} {fstype} rw 0 0\n" for source, target, fstype in self.mounts)
        )

    def _ok(self, argv, stdout: str = "") -> subprocess.CompletedProcess:
        return subprocess.CompletedProcess(argv, 0, stdout, "")

    def _error(self, argv, stderr: str, returncode: int = 1) -> subprocess.CompletedProcess:
        return subprocess.CompletedProcess(argv, returncode, "", stderr)

    # -- dispatch ------------------------------------------------------------

    def run(self, argv, check=False, text=True, capture_output=True, input=None):
        return self.handle(list(argv), input)

    def popen(self, argv, **kwargs):
        return FakePopen(self, argv, **kwargs)

    def handle(self, argv: List[str], input_text: Optional[str] = None) -> subprocess.CompletedProcess:
        self.commands.append(argv)
        if argv[0] in self.fail:
            return self.fail[argv[0]]
        handler = getattr(self, f"_cmd_{argv[0].replace('.', '_').replace('-', '_')}", None)
        if handler is None:
            return self._ok(argv)
        return handler(argv, input_text)

    def _cmd_lsblk(self, argv, _input):
        device = argv[-1]
        if device not in self.nodes():
            return self._error(argv, f"lsblk: {device}: not a block device", 32)
        fs = self.filesystems.get(device, FakeFilesystem(None, None))
        type_ = "disk" if device == self.disk else "part"
        return self._ok(argv, lsblk_json(device, Path(self.disk).name, fs.fstype, fs.uuid, type_))

    def _cmd_fdisk(self, argv, input_text):
        if argv[1] == "-l":
            return self._ok(argv, render_fdisk_listing(self.disk, self.partitions, self.total_sectors))
        self._apply_fdisk_script(input_text or "")
        return self._ok(argv, "The partition table has been altered.\n")

    def _apply_fdisk_script(self, script: str) -> None:
        answers = iter(script.split("\n"))
        for command in answers:
            if command == "d":
                del self.partitions[int(next(answers))]
            elif command == "n":
                index = int(next(answers))
                start = int(next(answers))
                last = next(answers)
                end = int(last) if last else self.total_sectors - GPT_BACKUP_SECTORS
                self.partitions[index] = (start, end)
            elif command == "t":
                next(answers)
                next(answers)
            elif command == "w":
                break

    def _cmd_df(self, argv, _input):
        return self._ok(argv, f"Use%\n {self.used_percent}%\n")

    def _cmd_mount(self, argv, _input):
        device, target = argv[-2], argv[-1]
        fs = self.filesystems.get(device, FakeFilesystem("ext4", None))
        self.mounts.append((device, str(Path(target)), fs.fstype or "auto"))
        self._write_proc_mounts()
        return self._ok(argv)

    def _cmd_umount(self, argv, _input):
        target = str(Path(argv[-1]))
        for entry in reversed(self.mounts):
            if entry[1] == target:
                self.mounts.remove(entry)
                self._write_proc_mounts()
                return self._ok(argv)
        return self._error(argv, f"umount: {target}: not mounted.", 32)

    def _cmd_mkfs_btrfs(self, argv, _input):
        self.filesystems[argv[-1]] = FakeFilesystem("btrfs", BTRFS_UUID)
        return self._ok(argv, "btrfs-progs v6.8\n")

    def _cmd_blkid(self, argv, _input):
        tag, device = argv[2], argv[-1]
        fs = self.filesystems.get(device)
        value = None
        if fs is not None:
            value = fs.fstype if tag == "TYPE" else fs.uuid
        if not value:
            return self._error(argv, "", 2)
        return self._ok(argv, f"{value}\n")

    def _cmd_btrfs(self, argv, _input):
        if argv[1:3] == ["subvolume", "create"]:
            Path(argv[3]).mkdir(parents=True)
            return self._ok(argv, f"Create subvolume '{argv[3]}'\n")
        if argv[1:3] == ["filesystem", "show"]:
            fs = self.filesystems.get(argv[3])
            if fs is None or fs.fstype != "btrfs":
                return self._error(argv, f"ERROR: not a valid btrfs filesystem: {argv[3]}")
            return self._ok(argv, f"Label: none  uuid: {fs.uuid}\n\tTotal devices 1\n")
        return self._ok(argv)

    def _cmd_rsync(self, argv, _input):
        source, destination = argv[-2], argv[-1]
        shutil.copytree(source, destination, dirs_exist_ok=True, symlinks=True)
        return self._ok(argv, "sent 1,024 bytes  received 64 bytes\n")


@pytest.fixture
def fake_system(tmp_path, monkeypatch) -> FakeSystem:
    """A fake host with a 100 GiB ext4 root on /dev/mmcblk0p3 at 30% usage."""
    system = FakeSystem(tmp_path)
    monkeypatch.setattr("btrfs_migrate.storage.commands.subprocess.run", system.run)
    monkeypatch.setattr("btrfs_migrate.storage.commands.subprocess.Popen", system.popen)
    monkeypatch.setattr("btrfs_migrate.storage.mount.PROC_MOUNTS", system.proc_mounts)
    monkeypatch.setattr(
        "btrfs_migrate.storage.devices._is_block_device", lambda path: path in system.nodes()
    )
    monkeypatch.setattr("btrfs_migrate.storage.devices.shutil.which", lambda name: None)
    return system


@pytest.fixture
def old_root(isolated_settings) -> Path:
    """Contents of the source root filesystem as seen at the old mount point."""
    root = Path(isolated_settings["old_mount"])
    (root / "etc").mkdir(parents=True)
    (root / "etc" / "mkinitcpio.conf").write_text(
        "MODULES=()\nBINARIES=()\nFILES=()\n"
        "HOOKS=(base udev autodetect modconf block filesystems keyboard fsck)\n"
    )
    (root / "etc" / "hostname").write_text("alarm\n")
    (root / "home" / "alarm").mkdir(parents=True)
    (root / "home" / "alarm" / ".bashrc").write_text("alias ll='ls -l'\n")
    return root


@pytest.fixture
def syslinux_config(isolated_settings) -> Path:
    """syslinux.cfg on the boot partition as seen under the new root."""
    config = Path(isolated_settings["new_mount"]) / "boot" / "EFI" / "syslinux" / "syslinux.cfg"
    config.parent.mkdir(parents=True)
    config.write_text(
        "DEFAULT arch\n"
        "LABEL arch\n"
        "    LINUX ../../vmlinuz-linux\n"
        f"    APPEND root=/dev/disk/by-uuid/{ROOT_UUID} rw\n"
        "    INITRD ../../initramfs-linux.img\n"
    )
    return config
