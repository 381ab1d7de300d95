"""
Logging configuration for Atomizer Link

Two rotating files under ~/.atomizer/logs (everything, errors only) plus the
console. Call setup_logger() once at startup; modules just use
logging.getLogger(__name__).
"""

import logging
import sys
import time
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional

FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CONSOLE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# Third-party loggers that are noisy below WARNING
QUIET_LOGGERS = ("PyQt6", "bleak", "asyncio")

MB = 1024 * 1024


def default_log_dir() -> Path:
    """Directory holding the rotating log files."""
    return Path.home() / ".atomizer" / "logs"


def _rotating_handler(path: Path, level: int, max_bytes: int, backup_count: int,
                      formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count,
                                  encoding='utf-8')
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logger(log_level=logging.INFO, max_size_mb: int = 10, backup_count: int = 5,
                 log_dir: Optional[Path] = None):
    """
    Setup application logger with rotating file handlers.

    Args:
        log_level: Logging level (default: INFO)
        max_size_mb: Maximum main log size in MB before rotation (default: 10)
        backup_count: Number of rotated main logs to keep (default: 5)
        log_dir: Override for the log directory (default: ~/.atomizer/logs)
    """
    log_dir = log_dir or default_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "atomizer.log"

    file_formatter = logging.Formatter(FILE_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    # Re-initialization replaces, never stacks, handlers
    root_logger.handlers.clear()

    root_logger.addHandler(_rotating_handler(
        log_file, log_level, max_size_mb * MB, backup_count, file_formatter))
    root_logger.addHandler(_rotating_handler(
        log_dir / "atomizer_errors.log", logging.ERROR, 5 * MB, 3, file_formatter))

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    root_logger.addHandler(console_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    removed = _cleanup_old_logs(log_dir, days=30)
    if removed:
        logger.debug(f"Removed {removed} old log file(s)")
    logger.info(f"Logger initialized. Log file: {log_file}")


def _cleanup_old_logs(log_dir: Path, days: int = 30) -> int:
    """Remove log files older than specified days. Returns the count removed."""
    cutoff_time = time.time() - (days * 24 * 60 * 60)
    removed = 0
    for log_file in log_dir.glob("*.log*"):
        try:
            if log_file.stat().st_mtime < cutoff_time:
                log_file.unlink()
                removed += 1
        except OSError as e:
            logging.getLogger(__name__).debug(f"Could not remove {log_file}: {e}")
    return removed
