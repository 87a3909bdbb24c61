"""Logging configuration for tuneloop.

Provides structured logging with:
- JSON output for log aggregation
- Contextual fields (job id, update number, category)
- Log rotation
- Console and file outputs

Usage:
    from tuneloop.logging_config import get_logger

    logger = get_logger(__name__)
    logger.info("Job created")

    with LogContext(job_id=job.id, category="scam_detection"):
        logger.info("Training started")
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path


class JSONFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    @staticmethod
    def _utc_isoformat() -> str:
        return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self._utc_isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Fields attached by LogContext
        context = getattr(record, "context", None)
        if context:
            log_data.update(context)

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(log_data, default=str)


def setup_logging(
    name: str = "tuneloop",
    level: int = logging.INFO,
    log_dir: Path | None = None,
    enable_json: bool = True,
    enable_console: bool = True,
    enable_rotation: bool = True,
) -> logging.Logger:
    """Set up logging for the pipeline process.

    Args:
        name: Logger name
        level: Logging level
        log_dir: Directory for log files (default: ~/.context/logs/tuneloop)
        enable_json: Also write a JSON log file
        enable_console: Log to stdout
        enable_rotation: Write a rotating plain-text log file

    Returns:
        Configured logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.handlers.clear()

    if log_dir is None:
        log_dir = Path("~/.context/logs/tuneloop").expanduser()
    if enable_rotation or enable_json:
        log_dir.mkdir(parents=True, exist_ok=True)

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s - %(message)s",
                datefmt="%H:%M:%S",
            )
        )
        logger.addHandler(console_handler)

    if enable_rotation:
        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / f"{name}.log",
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s:%(funcName)s:%(lineno)d - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(file_handler)

    if enable_json:
        json_handler = logging.handlers.RotatingFileHandler(
            log_dir / f"{name}.json.log",
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
        )
        json_handler.setLevel(logging.DEBUG)
        json_handler.setFormatter(JSONFormatter())
        logger.addHandler(json_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the tuneloop namespace."""
    if name == "tuneloop" or name.startswith("tuneloop."):
        return logging.getLogger(name)
    return logging.getLogger(f"tuneloop.{name}")


class LogContext:
    """Context manager for adding contextual fields to log records.

    Usage:
        with LogContext(job_id="job_123", category="scam_detection"):
            logger.info("Training started")
            # Records emitted in this block carry job_id and category
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self.old_factory = None

    def __enter__(self) -> LogContext:
        old_factory = logging.getLogRecordFactory()
        context = self.context

        def record_factory(*args, **kwargs):
            record = old_factory(*args, **kwargs)
            merged = dict(getattr(record, "context", None) or {})
            merged.update(context)
            record.context = merged
            return record

        logging.setLogRecordFactory(record_factory)
        self.old_factory = old_factory
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        logging.setLogRecordFactory(self.old_factory)


__all__ = [
    "setup_logging",
    "get_logger",
    "LogContext",
    "JSONFormatter",
]
