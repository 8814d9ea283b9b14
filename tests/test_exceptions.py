"""Tests for storage/exceptions.py."""

import pytest

from btrfs_migrate.storage import exceptions


class TestHierarchy:
    """Every pipeline failure is catchable as MigrationError."""

    @pytest.mark.parametrize(
        "error",
        [
            exceptions.InvalidArgumentsError("btrfs-migrate: bad"),
            exceptions.PermissionDeniedError(1000),
            exceptions.GeometryUnresolvedError("/dev/sda3", "no entry"),
            exceptions.InsufficientFreeSpaceError("/dev/sda3", 60, 50),
            exceptions.UsageQueryFailedError("/dev/sda3"),
            exceptions.PostResizeCorruptionError("/dev/sda3", 4),
            exceptions.MountFailedError("/dev/sda4", "/mnt/new", "busy"),
            exceptions.InitramfsError("mkinitcpio -P failed"),
            exceptions.SnapshotRotationError("cannot delete"),
            exceptions.UpdateFailedError("balance", "no space"),
            exceptions.FormatVerificationFailedError("/dev/sda4", "btrfs", None),
            exceptions.SubvolumeCreateFailedError("@home", "exists"),
            exceptions.CopyFailedError("/mnt/old", "/mnt/new", "exit code 23"),
            exceptions.BootConfigNotFoundError("/mnt/new/boot/syslinux.cfg"),
            exceptions.UUIDResolutionFailedError("/dev/sda1"),
        ],
    )
    def test_is_migration_error(self, error):
        assert isinstance(error, exceptions.MigrationError)

    def test_post_resize_is_inconsistency(self):
        error = exceptions.PostResizeCorruptionError("/dev/sda3", 8, "Bad magic number")
        assert isinstance(error, exceptions.FilesystemInconsistentError)
        assert "after resize" in str(error)
        assert "no new partition was created" in str(error)


class TestMessages:
    """Exception messages name the device and the cause."""

    def test_free_space(self):
        error = exceptions.InsufficientFreeSpaceError("/dev/sda3", 60, 50)
        assert str(error) == (
            "Not enough free space on /dev/sda3: 60% used, must be below 50%. "
            "Free up space before proceeding."
        )

    def test_usage_query_includes_output(self):
        error = exceptions.UsageQueryFailedError("/dev/sda3", "Use%")
        assert "'Use%'" in str(error)

    def test_step_failed(self):
        error = exceptions.StepFailedError("shrink filesystem", "resize2fs failed")
        assert str(error) == "shrink filesystem: resize2fs failed"
        assert error.step == "shrink filesystem"

    def test_unmount_wording(self):
        error = exceptions.MountFailedError("/mnt/old", "/mnt/old", "busy", unmount=True)
        assert error.step == "unmount"

    def test_format_verification(self):
        error = exceptions.FormatVerificationFailedError("/dev/sda4", "btrfs", None)
        assert "probed type is unknown, expected btrfs" in str(error)
        assert isinstance(error, exceptions.FormatFailedError)

    def test_permission(self):
        assert "must be run as root" in str(exceptions.PermissionDeniedError(1000))
