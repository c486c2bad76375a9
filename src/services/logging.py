"""
Logging - Daemon logging configuration and disk persistence.

Provides:
- Python logging configuration with console (stderr) and optional file output
- Log persistence to daily files: daemon-YYYY-MM-DD.log
- Automatic cleanup of old log files

stdout is never used: in native messaging mode it carries protocol frames.
"""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional
import logging
import sys

from utils import get_logs_dir

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
LOG_PREFIX = "daemon-"


def get_log_file_path(date: Optional[datetime] = None, logs_dir: Optional[Path] = None) -> Path:
    """Get the log file path for a specific date (defaults to today)."""
    if date is None:
        date = datetime.now()
    if logs_dir is None:
        logs_dir = get_logs_dir()
    filename = f"{LOG_PREFIX}{date.strftime('%Y-%m-%d')}.log"
    return logs_dir / filename


def configure_logging(level: int | str = logging.INFO, logs_dir: Optional[Path] = None,
                      retention_days: int = 0) -> Optional[Path]:
    """
    Configure Python logging for the daemon.

    Sets up a root logger with stderr console output and, when
    retention_days > 0, a file handler on today's log file.

    Args:
        level: Logging level (default: INFO)
        logs_dir: Directory for log files (default: app logs dir)
        retention_days: If 0, don't save to disk

    Returns:
        Path of the log file in use, or None
    """
    root_logger = logging.getLogger()

    # Only configure if not already configured
    if root_logger.handlers:
        return None

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    root_logger.setLevel(level)

    # Console handler with simple format
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt='%H:%M:%S'))
    root_logger.addHandler(console_handler)

    if retention_days <= 0:
        return None

    logs_dir = Path(logs_dir) if logs_dir is not None else get_logs_dir()
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = get_log_file_path(logs_dir=logs_dir)
    file_handler = logging.FileHandler(log_path, encoding='utf-8')
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
    root_logger.addHandler(file_handler)

    deleted = cleanup_old_logs(retention_days, logs_dir)
    if deleted:
        logging.getLogger(__name__).info(f"Removed {deleted} old log files")
    return log_path


def cleanup_old_logs(retention_days: int, logs_dir: Optional[Path] = None) -> int:
    """
    Delete log files older than retention_days.

    Args:
        retention_days: Delete files older than this (0 = delete all)
        logs_dir: Directory holding the log files

    Returns:
        Number of files deleted
    """
    if retention_days < 0:
        return 0

    if logs_dir is None:
        logs_dir = get_logs_dir()
    if not logs_dir.exists():
        return 0

    today = datetime.now().replace(hour=0, minute=0, second=0, microsecond=0)
    cutoff_date = today - timedelta(days=retention_days)
    deleted_count = 0

    for file_path in logs_dir.glob(f"{LOG_PREFIX}*.log"):
        # Parse date from filename
        try:
            file_date = datetime.strptime(file_path.stem[len(LOG_PREFIX):], "%Y-%m-%d")
        except ValueError:
            # Skip files that don't match expected format
            continue

        if file_date < cutoff_date:
            try:
                file_path.unlink()
                deleted_count += 1
            except OSError as e:
                logging.getLogger(__name__).warning(f"Could not delete {file_path.name}: {e}")

    return deleted_count
