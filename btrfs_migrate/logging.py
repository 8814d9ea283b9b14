from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "BTRFS_MIGRATE_LOG_DIR",
        Path.home() / ".local" / "state" / "btrfs-migrate" / "logs",
    )
)


def _should_log_command_output(record) -> bool:
    """Keep raw tool output off the console unless it is a warning or worse."""
    tags = record["extra"].get("tags", [])
    if "output" in tags:
        return record["level"].no >= logger.level("WARNING").no
    return True


def setup_logging(
    *,
    debug: bool = False,
    log_dir: Path | None = None,
    console: bool = True,
) -> Logger:
    """
    Setup console and file logging for a pipeline run.

    Logging Tiers:
    - ERROR: fatal pipeline failures (printed red, process exits 1)
    - SUCCESS/INFO: step progress and completed steps
    - DEBUG: every external command, its output and return code, including
      the line-by-line output of streamed tools

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        log_dir: Custom log directory (defaults to ~/.local/state/btrfs-migrate/logs)
        console: Attach the colored stderr sink
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    console_level = "DEBUG" if debug else "INFO"

    # SINK 1: Console (stderr) - colored status lines
    if console:
        logger.add(
            sys.stderr,
            level=console_level,
            backtrace=False,
            diagnose=False,
            filter=_should_log_command_output,
            colorize=True,
            format=(
                "<green>{time:HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{extra[source]: <12}</cyan> | "
                "<level>{message}</level>"
            ),
        )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <12} | "
            "{extra[job_id]: <24} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - every command line and its output
    if debug:
        logger.add(
            log_dir / "debug.log",
            level="DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <12} | "
                "{extra[job_id]: <24} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        serialize=True,
        format="{message}",
    )

    return logger


@contextmanager
def operation_context(operation: str, *, source: str = "migrate", **details):
    """
    Context manager for one pipeline step with automatic timing.

    Logs step start, completion and failure with duration tracking, then
    re-raises the failure unchanged.

    Example:
        with operation_context("shrink_filesystem", device="/dev/sda3") as log:
            log.debug("Running resize2fs")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"
    label = operation.replace("_", " ")

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=source, job_id=job_id, tags=[operation])

        log.info(f"{label.capitalize()}...", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{label.capitalize()} done", duration_seconds=round(duration, 2)
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{label.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.
    """

    @staticmethod
    def for_migration(job_id: str | None = None) -> Logger:
        """Logger for the ext4 to Btrfs migration pipeline."""
        if job_id is None:
            job_id = f"migrate-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="migrate", tags=["migrate", "storage"])

    @staticmethod
    def for_maintenance(job_id: str | None = None) -> Logger:
        """Logger for snapshot rotation and system updates."""
        if job_id is None:
            job_id = f"maintain-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="maintain", tags=["maintain"])

    @staticmethod
    def for_storage() -> Logger:
        """Logger for device, partition and filesystem primitives."""
        return logger.bind(source="storage", tags=["storage"])

    @staticmethod
    def for_command() -> Logger:
        """Logger for external command output."""
        return logger.bind(source="command", tags=["command", "output"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, shutdown, config)."""
        return logger.bind(source="system", tags=["system"])
