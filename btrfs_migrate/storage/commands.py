"""External command execution with logging and checked failure.

All tools (fdisk, resize2fs, mkfs.btrfs, rsync, pacman, ...) are invoked
through these helpers so every command line, its output and its return code
end up in the debug log. Nothing here retries and nothing has a timeout: a
hung tool stalls the pipeline until it returns.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional, Sequence

from btrfs_migrate.logging import LoggerFactory

from .exceptions import StepFailedError

log = LoggerFactory.for_storage()
output_log = LoggerFactory.for_command()


def _format_command(command: Sequence[str]) -> str:
    return " ".join(str(part) for part in command)


def run_command(
    command: Sequence[str],
    check: bool = True,
    input_text: Optional[str] = None,
    log_output: bool = True,
) -> subprocess.CompletedProcess:
    log.debug(f"Running command: {_format_command(command)}")
    try:
        result = subprocess.run(
            list(command),
            check=check,
            text=True,
            capture_output=True,
            input=input_text,
        )
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {_format_command(command)}")
        if error.stdout:
            output_log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            output_log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        output_log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        output_log.debug(f"stderr: {result.stderr.strip()}")
    log.debug(f"Command completed with return code {result.returncode}")
    return result


def run_checked_command(
    command: Sequence[str],
    step: str,
    input_text: Optional[str] = None,
) -> str:
    """Run a command and raise StepFailedError naming ``step`` if it fails."""
    try:
        result = run_command(command, check=False, input_text=input_text)
    except FileNotFoundError as error:
        raise StepFailedError(step, f"command not found: {command[0]}") from error
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        stdout = (result.stdout or "").strip()
        message = stderr or stdout or f"exit code {result.returncode}"
        raise StepFailedError(step, f"{_format_command(command)} failed: {message}")
    return result.stdout or ""


def stream_command(
    command: Sequence[str],
    step: str,
    log_file: Optional[Path] = None,
) -> int:
    """Run a long command, streaming its combined output line by line.

    Output goes to the debug log and, when ``log_file`` is given, is teed into
    it. Returns the exit code; a missing executable or an unwritable
    ``log_file`` raises StepFailedError. The child is killed if reading its
    output is interrupted.
    """
    try:
        handle = log_file.open("w", encoding="utf-8") if log_file else None
    except OSError as error:
        raise StepFailedError(step, f"cannot open {log_file}: {error}") from error

    log.debug(f"Starting command: {_format_command(command)}")
    try:
        try:
            process = subprocess.Popen(
                list(command),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except FileNotFoundError as error:
            raise StepFailedError(step, f"command not found: {command[0]}") from error

        try:
            if process.stdout is not None:
                for line in process.stdout:
                    output_log.debug(line.rstrip())
                    if handle:
                        handle.write(line)
            returncode = process.wait()
        finally:
            if process.poll() is None:
                log.warning(f"Killing unfinished command: {_format_command(command)}")
                process.kill()
                process.wait()
    finally:
        if handle:
            handle.close()
    log.debug(f"Command completed with return code {returncode}")
    return returncode
