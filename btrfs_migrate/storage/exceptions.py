"""Custom exceptions for migration and maintenance operations.

Every fatal condition of either pipeline is one of these exceptions. The
CLI reports the message in red and exits 1; nothing is rolled back.

Exception Hierarchy:
    MigrationError (base)
        ├── InvalidArgumentsError
        ├── PermissionDeniedError
        ├── GeometryUnresolvedError
        ├── InsufficientFreeSpaceError
        ├── UsageQueryFailedError
        ├── FilesystemInconsistentError
        │   └── PostResizeCorruptionError
        ├── StepFailedError
        │   ├── MountFailedError
        │   ├── InitramfsError
        │   ├── SnapshotRotationError
        │   └── UpdateFailedError
        ├── FormatFailedError
        │   └── FormatVerificationFailedError
        ├── SubvolumeCreateFailedError
        ├── CopyFailedError
        ├── BootConfigNotFoundError
        └── UUIDResolutionFailedError

Usage:
    from btrfs_migrate.storage.exceptions import GeometryUnresolvedError

    if start_sector is None:
        raise GeometryUnresolvedError(partition, "start sector not listed")
"""


class MigrationError(Exception):
    """Base exception for all pipeline failures."""



class InvalidArgumentsError(MigrationError):
    """Command line arguments were rejected before any device was touched."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class PermissionDeniedError(MigrationError):
    """The process is not running with super-user identity."""

    def __init__(self, euid: int):
        self.euid = euid
        super().__init__(f"This command must be run as root (effective uid {euid})")


class GeometryUnresolvedError(MigrationError):
    """A device, partition entry or sector value could not be determined."""

    def __init__(self, device: str, reason: str):
        self.device = device
        self.reason = reason
        super().__init__(f"Cannot resolve geometry of {device}: {reason}")


class InsufficientFreeSpaceError(MigrationError):
    """The source filesystem uses too much of its capacity to be halved."""

    def __init__(self, device: str, used_percent: int, threshold: int):
        self.device = device
        self.used_percent = used_percent
        self.threshold = threshold
        super().__init__(
            f"Not enough free space on {device}: {used_percent}% used, "
            f"must be below {threshold}%. Free up space before proceeding."
        )


class UsageQueryFailedError(MigrationError):
    """Filesystem usage could not be read or parsed."""

    def __init__(self, device: str, output: str = ""):
        self.device = device
        self.output = output
        msg = f"Failed to retrieve disk usage percentage for {device}"
        if output:
            msg += f" (got {output!r})"
        super().__init__(msg)


class FilesystemInconsistentError(MigrationError):
    """The consistency check reported uncorrected errors."""

    def __init__(self, device: str, returncode: int, output: str = ""):
        self.device = device
        self.returncode = returncode
        self.output = output
        super().__init__(self._describe())

    def _describe(self) -> str:
        return (
            f"Filesystem check failed on {self.device} "
            f"(e2fsck exit code {self.returncode})"
        )


class PostResizeCorruptionError(FilesystemInconsistentError):
    """The consistency check failed after the filesystem and partition were shrunk."""

    def _describe(self) -> str:
        return (
            f"Filesystem on {self.device} is inconsistent after resize "
            f"(e2fsck exit code {self.returncode}); no new partition was created"
        )


class StepFailedError(MigrationError):
    """Generic failure of a named destructive step."""

    def __init__(self, step: str, message: str):
        self.step = step
        self.message = message
        super().__init__(f"{step}: {message}")


class MountFailedError(StepFailedError):
    """A mount or unmount command failed."""

    def __init__(self, source: str, target: str, message: str, *, unmount: bool = False):
        self.source = source
        self.target = target
        verb = "unmount" if unmount else "mount"
        super().__init__(verb, f"{source} -> {target}: {message}")


class InitramfsError(StepFailedError):
    """Initramfs configuration or regeneration failed inside the new root."""

    def __init__(self, message: str):
        super().__init__(
            "initramfs",
            f"{message}. The new root is not bootable until this is fixed "
            "manually or the step is rerun after a reboot.",
        )


class SnapshotRotationError(StepFailedError):
    """A snapshot could not be created, deleted or renamed."""

    def __init__(self, message: str):
        super().__init__("snapshot rotation", message)


class UpdateFailedError(StepFailedError):
    """Mirror refresh, package upgrade or balance failed."""


class FormatFailedError(MigrationError):
    """Creating the new filesystem failed."""

    def __init__(self, device: str, message: str):
        self.device = device
        self.message = message
        super().__init__(f"Failed to format {device} as btrfs: {message}")


class FormatVerificationFailedError(FormatFailedError):
    """The probed filesystem type does not match after formatting."""

    def __init__(self, device: str, expected: str, actual: str | None):
        self.expected = expected
        self.actual = actual
        super().__init__(
            device, f"probed type is {actual or 'unknown'}, expected {expected}"
        )


class SubvolumeCreateFailedError(MigrationError):
    """A named subvolume could not be created."""

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Failed to create subvolume {name}: {reason}")


class CopyFailedError(MigrationError):
    """Copying the old root tree onto the new filesystem failed."""

    def __init__(self, source: str, destination: str, message: str):
        self.source = source
        self.destination = destination
        self.message = message
        super().__init__(
            f"Filesystem copy {source} -> {destination} failed: {message}. "
            "Both trees are left mounted for inspection."
        )


class BootConfigNotFoundError(MigrationError):
    """The bootloader configuration file is missing under the new boot mount."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Bootloader configuration file not found: {path}")


class UUIDResolutionFailedError(MigrationError):
    """A filesystem UUID could not be read."""

    def __init__(self, device: str, output: str = ""):
        self.device = device
        self.output = output
        super().__init__(f"Failed to retrieve UUID for {device}")
