"""Structured JSON logging for the upload queue.

Provides audit-friendly logging with contextual fields for queue events,
upload attempts and state changes. Payload bytes are never logged.

Usage:
    from uploadqueue.logging import setup_logging, get_logger

    setup_logging("INFO")
    log = get_logger("uploadqueue.sync")
    log.info("job_enqueued", extra={"job_id": "abc", "payload_size": 50000})
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from functools import lru_cache
from logging.handlers import RotatingFileHandler
from pathlib import Path

from pythonjsonlogger import jsonlogger

from uploadqueue import __version__

# Identifier of this queue instance, added to every record when set
_queue_id: str | None = None


class QueueJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that adds queue context to all log records."""

    def add_fields(
        self,
        log_record: dict,
        record: logging.LogRecord,
        message_dict: dict,
    ) -> None:
        """Add standard fields to every log record."""
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = self.formatTime(record)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["version"] = __version__
        if _queue_id:
            log_record["queue_id"] = _queue_id

        if "message" not in log_record and record.getMessage():
            log_record["message"] = record.getMessage()

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        """Format time as ISO 8601."""
        dt = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return dt.isoformat()


def setup_logging(
    level: str = "INFO",
    log_file: Path | None = None,
    queue_id: str | None = None,
    max_bytes: int = 10_000_000,  # 10MB
    backup_count: int = 5,
) -> None:
    """Configure root logger with JSON formatting.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path for rotating file handler
        queue_id: Identifier for this queue instance (usually the namespace)
        max_bytes: Max size per log file for rotation
        backup_count: Number of backup files to keep
    """
    global _queue_id
    if queue_id:
        _queue_id = queue_id

    formatter = QueueJsonFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # JSON to stderr so stdout stays free for CLI output
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_file = Path(log_file).expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


@lru_cache(maxsize=32)
def get_logger(name: str) -> logging.Logger:
    """Get a named logger.

    Args:
        name: Logger name (e.g., 'uploadqueue.store', 'uploadqueue.sync')

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


# --- Audit Event Functions ---


def log_job_enqueued(
    logger: logging.Logger,
    job_id: str,
    payload_size: int,
    replaced: bool = False,
) -> None:
    """Log a job accepted into the queue.

    Args:
        logger: Logger instance
        job_id: Job identifier
        payload_size: Size of the stored payload in bytes
        replaced: Whether an existing record with the same id was replaced
    """
    logger.info(
        "Job enqueued",
        extra={
            "event": "job_enqueued",
            "job_id": job_id,
            "payload_size": payload_size,
            "replaced": replaced,
        },
    )


def log_state_change(
    logger: logging.Logger,
    job_id: str,
    old_state: str,
    new_state: str,
    trigger: str | None = None,
) -> None:
    """Log a job state transition.

    Args:
        logger: Logger instance
        job_id: Job identifier
        old_state: Previous state
        new_state: New state
        trigger: What triggered the change
    """
    extra = {
        "event": "state_change",
        "job_id": job_id,
        "old_state": old_state,
        "new_state": new_state,
    }
    if trigger:
        extra["trigger"] = trigger
    logger.debug("State changed", extra=extra)


def log_upload_success(
    logger: logging.Logger,
    job_id: str,
    remote_id: str | None,
    duration_ms: float,
) -> None:
    """Log a successful upload.

    Args:
        logger: Logger instance
        job_id: Job identifier
        remote_id: Identifier the sink assigned to the payload
        duration_ms: Time from submit to terminal callback in milliseconds
    """
    logger.info(
        "Upload successful",
        extra={
            "event": "upload_success",
            "job_id": job_id,
            "remote_id": remote_id,
            "duration_ms": duration_ms,
        },
    )


def log_upload_failed(
    logger: logging.Logger,
    job_id: str,
    error: str,
    retry_in: float | None = None,
) -> None:
    """Log a failed upload.

    Args:
        logger: Logger instance
        job_id: Job identifier
        error: Error message (no payload data)
        retry_in: Seconds until the queue is re-driven, if scheduled
    """
    logger.warning(
        "Upload failed",
        extra={
            "event": "upload_failed",
            "job_id": job_id,
            "error": error,
            "retry_in": retry_in,
        },
    )


def log_job_removed(
    logger: logging.Logger,
    job_id: str,
    payload_deleted: bool,
) -> None:
    """Log a job removed from the queue.

    Args:
        logger: Logger instance
        job_id: Job identifier
        payload_deleted: Whether the payload blob was deleted too
    """
    logger.info(
        "Job removed",
        extra={
            "event": "job_removed",
            "job_id": job_id,
            "payload_deleted": payload_deleted,
        },
    )
