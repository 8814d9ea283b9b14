"""Command line entry points: ``btrfs-migrate`` and ``btrfs-maintain``.

Both exit 0 on success and 1 on any failure, including rejected arguments.
"""

import argparse
import sys
from pathlib import Path

from btrfs_migrate.logging import LoggerFactory, setup_logging
from btrfs_migrate.maintenance.orchestrator import run_maintenance
from btrfs_migrate.migration.orchestrator import new_journal, run_migration
from btrfs_migrate.storage.exceptions import InvalidArgumentsError, MigrationError


class ArgumentParser(argparse.ArgumentParser):
    """argparse parser that raises instead of exiting with status 2."""

    def error(self, message):
        self.print_usage(sys.stderr)
        raise InvalidArgumentsError(f"{self.prog}: {message}")


def build_migrate_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="btrfs-migrate",
        description="Convert an ext4 root partition to Btrfs in place",
    )
    parser.add_argument(
        "--root-partition",
        required=True,
        metavar="DEVICE",
        help="Root partition to convert, e.g. /dev/mmcblk0p3",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    return parser


def build_maintain_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="btrfs-maintain",
        description="Rotate Btrfs snapshots, update the system and balance",
    )
    parser.add_argument(
        "--no-reboot", action="store_true", help="Never prompt for a reboot after updates"
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    return parser


def _parse(parser: ArgumentParser, argv):
    try:
        return parser.parse_args(argv)
    except InvalidArgumentsError as error:
        print(error.message, file=sys.stderr)
        return None


def main(argv=None) -> int:
    args = _parse(build_migrate_parser(), argv)
    if args is None:
        return 1

    setup_logging(debug=args.debug, log_dir=args.log_dir)
    log = LoggerFactory.for_system()
    journal = new_journal(args.root_partition)

    try:
        run_migration(args.root_partition, journal)
    except MigrationError as error:
        log.error(str(error))
        last = journal.last_completed()
        log.error(f"Last completed step: {last or 'none'} (journal {journal.path}, run {journal.run_id})")
        return 1
    except KeyboardInterrupt:
        log.error("Interrupted")
        log.error(f"Last completed step: {journal.last_completed() or 'none'}")
        return 1
    except Exception as error:
        log.error(f"Unexpected error: {type(error).__name__}: {error}")
        log.error(f"Last completed step: {journal.last_completed() or 'none'}")
        return 1
    return 0


def maintain_main(argv=None) -> int:
    args = _parse(build_maintain_parser(), argv)
    if args is None:
        return 1

    setup_logging(debug=args.debug, log_dir=args.log_dir)
    log = LoggerFactory.for_system()

    try:
        run_maintenance(reboot=not args.no_reboot)
    except MigrationError as error:
        log.error(str(error))
        return 1
    except KeyboardInterrupt:
        log.error("Interrupted")
        return 1
    except Exception as error:
        log.error(f"Unexpected error: {type(error).__name__}: {error}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
