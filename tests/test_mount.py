"""Tests for storage/mount.py - mount table reads and mount helpers."""

from unittest.mock import Mock, patch

import pytest

from btrfs_migrate.storage import mount
from btrfs_migrate.storage.exceptions import MountFailedError


@pytest.fixture
def proc_mounts(tmp_path, monkeypatch):
    path = tmp_path / "mounts"
    path.write_text(
        "/dev/mmcblk0p3 / ext4 rw,relatime 0 0\n"
        "/dev/mmcblk0p1 /boot vfat rw 0 0\n"
        "/dev/sda1 /media/usb\\040stick vfat rw 0 0\n"
        "/dev/mmcblk0p4 /btrfs btrfs rw,subvolid=5 0 0\n"
    )
    monkeypatch.setattr(mount, "PROC_MOUNTS", path)
    return path


class TestMountTable:
    """Tests for reads of the kernel mount table."""

    def test_find_mountpoint(self, proc_mounts):
        assert mount.find_mountpoint("/dev/mmcblk0p1") == "/boot"
        assert mount.find_mountpoint("/dev/mmcblk0p2") is None

    def test_escaped_spaces(self, proc_mounts):
        assert mount.find_mountpoint("/dev/sda1") == "/media/usb stick"

    def test_mount_fstype_normalizes(self, proc_mounts):
        assert mount.mount_fstype("/boot/") == "vfat"

    def test_mount_fstype(self, proc_mounts):
        assert mount.mount_fstype("/btrfs") == "btrfs"
        assert mount.mount_fstype("/nowhere") is None

    def test_missing_table(self, tmp_path, monkeypatch):
        monkeypatch.setattr(mount, "PROC_MOUNTS", tmp_path / "absent")
        assert mount.find_mountpoint("/dev/sda1") is None


class TestMountCommands:
    """Tests for mount() and unmount()."""

    @patch("btrfs_migrate.storage.mount.run_command")
    def test_mount_with_options(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="", stderr="")

        mount.mount("/dev/mmcblk0p4", "/mnt/new", "noatime,subvol=@")

        mock_run.assert_called_once_with(
            ["mount", "-o", "noatime,subvol=@", "/dev/mmcblk0p4", "/mnt/new"], check=False
        )

    @patch("btrfs_migrate.storage.mount.run_command")
    def test_mount_without_options(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="", stderr="")
        mount.mount("/dev/mmcblk0p1", "/mnt/new/boot")
        mock_run.assert_called_once_with(["mount", "/dev/mmcblk0p1", "/mnt/new/boot"], check=False)

    @patch("btrfs_migrate.storage.mount.run_command")
    def test_mount_failure(self, mock_run):
        mock_run.return_value = Mock(returncode=32, stdout="", stderr="mount: wrong fs type")

        with pytest.raises(MountFailedError) as exc_info:
            mount.mount("/dev/mmcblk0p4", "/mnt/new")

        assert exc_info.value.step == "mount"
        assert "wrong fs type" in str(exc_info.value)

    @patch("btrfs_migrate.storage.mount.run_command")
    def test_unmount_failure(self, mock_run):
        mock_run.return_value = Mock(returncode=32, stdout="", stderr="target is busy")

        with pytest.raises(MountFailedError) as exc_info:
            mount.unmount("/mnt/old")

        assert exc_info.value.step == "unmount"

    @patch("btrfs_migrate.storage.mount.run_command", side_effect=FileNotFoundError)
    def test_mount_command_missing(self, _mock_run):
        with pytest.raises(MountFailedError):
            mount.mount("/dev/sda1", "/mnt/old")


class TestTemporaryMount:
    """Tests for temporary_mount()."""

    def test_mounts_and_unmounts(self, fake_system, tmp_path):
        scratch = tmp_path / "scratch"
        with mount.temporary_mount("/dev/mmcblk0p3", scratch) as mountpoint:
            assert mountpoint == str(scratch)
            assert mount.find_mountpoint("/dev/mmcblk0p3") == str(scratch)
        assert fake_system.mounts == []

    def test_unmounts_when_body_raises(self, fake_system, tmp_path):
        scratch = tmp_path / "scratch"
        with pytest.raises(RuntimeError):
            with mount.temporary_mount("/dev/mmcblk0p3", scratch):
                raise RuntimeError("boom")
        assert fake_system.mounts == []

    def test_existing_mount_left_alone(self, fake_system, tmp_path):
        mount.mount("/dev/mmcblk0p3", tmp_path / "already")
        with mount.temporary_mount("/dev/mmcblk0p3", tmp_path / "scratch") as mountpoint:
            assert mountpoint == str(tmp_path / "already")
        assert fake_system.mounted_targets() == [str(tmp_path / "already")]
        assert not fake_system.ran("umount")
