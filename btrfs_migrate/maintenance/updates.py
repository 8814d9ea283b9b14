"""Mirror refresh, system upgrade, and detection of freshly installed packages."""

from __future__ import annotations

import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

from btrfs_migrate.logging import LoggerFactory
from btrfs_migrate.storage.commands import run_checked_command, stream_command
from btrfs_migrate.storage.exceptions import StepFailedError, UpdateFailedError

log = LoggerFactory.for_maintenance()

PACKAGE_EVENT_WORDS = ("installed", "upgraded")
LOG_TIMESTAMP_FORMAT = "[%Y-%m-%dT%H:%M"


def refresh_mirrorlist(mirrorlist_path: Path) -> None:
    command = [
        "reflector", "--verbose",
        "-l", "5",
        "-p", "https",
        "--sort", "rate",
        "--save", str(mirrorlist_path),
    ]
    log.info("Refreshing mirror list...")
    try:
        run_checked_command(command, step="refresh mirrors")
    except StepFailedError as error:
        raise UpdateFailedError("refresh mirrors", error.message) from error


def upgrade_system(log_file: Path) -> None:
    """Run a full non-interactive upgrade, teeing its output to ``log_file``."""
    log.info("Updating system...")
    returncode = stream_command(
        ["pacman", "-Syu", "--noconfirm"], step="system upgrade", log_file=Path(log_file)
    )
    if returncode != 0:
        raise UpdateFailedError(
            "system upgrade", f"pacman exited with code {returncode}, see {log_file}"
        )


def recent_timestamps(now: datetime, window_minutes: int) -> list[str]:
    """Minute-resolution log prefixes for the last ``window_minutes`` minutes, oldest first."""
    return [
        (now - timedelta(minutes=offset)).strftime(LOG_TIMESTAMP_FORMAT)
        for offset in range(window_minutes - 1, -1, -1)
    ]


def find_recent_package_events(
    log_path: Path,
    now: Optional[datetime] = None,
    window_minutes: int = 4,
) -> list[str]:
    """Return package log lines of the last minutes that install or upgrade something."""
    log_path = Path(log_path)
    if not log_path.is_file():
        log.warning(f"Package log {log_path} not found")
        return []
    prefixes = recent_timestamps(now or datetime.now(), window_minutes)
    events = []
    with open(log_path, "r", encoding="utf-8", errors="replace") as handle:
        for line in handle:
            if not any(prefix in line for prefix in prefixes):
                continue
            if any(word in line for word in PACKAGE_EVENT_WORDS):
                events.append(line.rstrip("\n"))
    return events


def prompt_reboot(
    prompt: Callable[[str], str] = input,
    sleep: Callable[[float], None] = time.sleep,
    delay: float = 3,
) -> bool:
    """Ask the operator for a reboot and reboot on ``y``.

    Returns:
        True if a reboot was issued
    """
    try:
        answer = prompt("New updates have been installed. Do you want to reboot? (y/n) ")
    except EOFError:
        log.warning("No answer on stdin; not rebooting")
        return False
    if answer.strip().lower() != "y":
        log.info("Reboot skipped.")
        return False
    log.info(f"Rebooting in {delay} seconds...")
    sleep(delay)
    run_checked_command(["reboot"], step="reboot")
    return True
