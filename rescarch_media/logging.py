from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "RESCARCH_MEDIA_LOG_DIR",
        Path.home() / ".local" / "state" / "rescarch-media" / "logs",
    )
)


def _should_log_command_output(record) -> bool:
    """Keep raw tool stdout/stderr out of the console unless debugging."""
    tags = record["extra"].get("tags", [])
    if "command-output" in tags:
        return record["level"].no >= logger.level("WARNING").no
    return True


def setup_logging(
    *,
    debug: bool = False,
    log_dir: Path | None = None,
    file_logging: bool = True,
) -> Logger:
    """
    Setup logging sinks for the command line tools.

    The progress display owns stdout, so the console sink on stderr only shows
    warnings unless --debug is given.

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging on the console and debug.log
        log_dir: Custom log directory (defaults to ~/.local/state/rescarch-media/logs)
        file_logging: Disable to log to the console only
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    console_level = "DEBUG" if debug else "WARNING"

    # SINK 1: Console (stderr)
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=None if debug else _should_log_command_output,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <12}</cyan> | "
            "{message}"
        ),
    )

    if not file_logging:
        return logger

    log_dir = log_dir or DEFAULT_LOG_DIR
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        logger.warning(f"File logging disabled, cannot create {log_dir}: {error}")
        return logger

    # SINK 2: Operations Log (INFO+)
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
            "{extra[job_id]: <15} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log (DEBUG+ when debug=True)
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
                "{extra[job_id]: <15} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Structured JSON Log (INFO+)
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


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["partition", "storage"])
        source: Source component (e.g., "write", "offline-repo")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Logs operation start, completion and failure with duration.

    Example:
        with operation_context("write", iso="rescarch.iso", device="/dev/sdb") as log:
            log.debug("Unmounting device")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed", duration_seconds=round(duration, 2)
            )
        except BaseException as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
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
    def for_write(job_id: str | None = None, **details) -> Logger:
        """Logger for the image write workflow."""
        if job_id is None:
            job_id = f"write-{uuid.uuid4().hex[:8]}"
        return logger.bind(
            job_id=job_id, source="write", tags=["write", "storage"], **details
        )

    @staticmethod
    def for_partition() -> Logger:
        """Logger for partition table edits and provisioning."""
        return logger.bind(source="partition", tags=["partition", "storage"])

    @staticmethod
    def for_device() -> Logger:
        """Logger for block device inspection."""
        return logger.bind(source="device", tags=["device", "hardware"])

    @staticmethod
    def for_offline_repo(job_id: str | None = None) -> Logger:
        """Logger for offline repository generation."""
        if job_id is None:
            job_id = f"offline-{uuid.uuid4().hex[:8]}"
        return logger.bind(
            job_id=job_id, source="offline-repo", tags=["offline-repo", "pacman"]
        )

    @staticmethod
    def for_commands() -> Logger:
        """Logger for raw external command output."""
        return logger.bind(source="command", tags=["command-output"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, cleanup, signals)."""
        return logger.bind(source="system", tags=["system"])
