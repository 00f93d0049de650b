"""External command execution with logging and progress tracking.

Every tool invocation in the project goes through this module so command
lines and their output land in the debug log, and so dry runs can skip the
commands that modify a device.
"""

from __future__ import annotations

import os
import re
import select
import shutil
import subprocess
import time
from typing import Callable, Optional, Sequence

from rescarch_media.logging import LoggerFactory

log = LoggerFactory.for_commands()

ProgressCallback = Callable[[int, Optional[float]], None]

_BYTES_PATTERN = re.compile(r"(\d+)\s+bytes")
_RATE_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*([kMG]?B)/s")
_RATE_MULTIPLIERS = {"B": 1, "kB": 1000, "MB": 1000**2, "GB": 1000**3}


def format_command(command: Sequence[str]) -> str:
    return " ".join(str(part) for part in command)


def run_command(
    command: Sequence[str],
    check: bool = True,
    log_output: bool = True,
    input_text: str | None = None,
) -> subprocess.CompletedProcess:
    """Run a command capturing its output.

    Raises:
        subprocess.CalledProcessError: If check is set and the command fails
        FileNotFoundError: If the executable does not exist
    """
    command = [str(part) for part in command]
    log.debug(f"Running command: {format_command(command)}")
    try:
        result = subprocess.run(
            command,
            check=check,
            text=True,
            capture_output=True,
            input=input_text,
        )
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {format_command(command)}")
        if error.stdout:
            log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    log.debug(f"Command completed with return code {result.returncode}")
    return result


def run_destructive(
    command: Sequence[str],
    *,
    dry_run: bool = False,
    input_text: str | None = None,
) -> subprocess.CompletedProcess:
    """Run a command that modifies a device, or only log it on a dry run."""
    if dry_run:
        log.info(f"[dry-run] Would run: {format_command(command)}")
        if input_text:
            log.info(f"[dry-run] With input: {input_text.strip()}")
        return subprocess.CompletedProcess(list(command), 0, stdout="", stderr="")
    return run_command(command, input_text=input_text)


def run_best_effort(command: Sequence[str]) -> bool:
    """Run a command whose failure is tolerated. Returns True on success."""
    try:
        run_command(command, log_output=False)
    except (subprocess.CalledProcessError, OSError) as error:
        log.debug(f"Best-effort command failed ({command[0]}): {error}")
        return False
    return True


def command_output(command: Sequence[str]) -> str:
    """Return stdout of a command, or an empty string if it fails."""
    try:
        return run_command(command, log_output=False).stdout
    except (subprocess.CalledProcessError, OSError) as error:
        log.debug(f"Command failed ({command[0]}): {error}")
        return ""


def diagnostic_output(command: Sequence[str]) -> str:
    """Capture a listing for error reports, whatever the exit status."""
    try:
        result = run_command(command, check=False, log_output=False)
    except OSError as error:
        return f"{command[0]}: {error}"
    return (result.stdout or "") + (result.stderr or "")


def is_available(tool: str) -> bool:
    return shutil.which(tool) is not None


def sync() -> None:
    run_best_effort(["sync"])


def _parse_dd_progress(line: str) -> tuple[int | None, float | None]:
    bytes_match = _BYTES_PATTERN.search(line)
    if not bytes_match:
        return None, None
    rate = None
    rate_match = _RATE_PATTERN.search(line)
    if rate_match:
        rate = float(rate_match.group(1)) * _RATE_MULTIPLIERS[rate_match.group(2)]
    return int(bytes_match.group(1)), rate


def run_streaming_copy(
    command: Sequence[str],
    *,
    progress_callback: ProgressCallback | None = None,
    refresh_interval: float = 1.0,
) -> subprocess.CompletedProcess:
    """Run a dd-style copy, reporting ``status=progress`` updates.

    dd rewrites its progress line with carriage returns, so stderr is read in
    raw chunks and split on both CR and LF.

    Raises:
        subprocess.CalledProcessError: If the copy exits non-zero
    """
    command = [str(part) for part in command]
    log.debug(f"Running command: {format_command(command)}")
    process = subprocess.Popen(
        command,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )
    stderr_chunks: list[bytes] = []
    pending = ""
    last_report = 0.0
    try:
        while True:
            ready, _, _ = select.select([process.stderr], [], [], refresh_interval)
            chunk = b""
            if ready:
                chunk = os.read(process.stderr.fileno(), 4096)
            if chunk:
                stderr_chunks.append(chunk)
                pending += chunk.decode("utf-8", errors="replace")
                *lines, pending = re.split(r"[\r\n]", pending)
                for line in lines:
                    copied, rate = _parse_dd_progress(line)
                    if copied is None:
                        continue
                    now = time.monotonic()
                    if progress_callback and now - last_report >= refresh_interval:
                        progress_callback(copied, rate)
                        last_report = now
            elif ready or process.poll() is not None:
                # EOF on stderr, or the process is gone
                break
    except BaseException:
        # Never leave the copy writing after we exit
        log.warning(f"Stopping {command[0]} (pid {process.pid})")
        process.kill()
        process.wait()
        raise
    stdout_data = process.stdout.read() if process.stdout else b""
    process.wait()
    stderr_output = b"".join(stderr_chunks).decode("utf-8", errors="replace")
    if stderr_output:
        log.debug(f"stderr: {stderr_output.strip()}")
    if process.returncode != 0:
        raise subprocess.CalledProcessError(
            process.returncode,
            command,
            output=stdout_data.decode("utf-8", errors="replace"),
            stderr=stderr_output,
        )
    return subprocess.CompletedProcess(
        command,
        process.returncode,
        stdout=stdout_data.decode("utf-8", errors="replace"),
        stderr=stderr_output,
    )
