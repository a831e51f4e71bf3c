# src/logging/handlers.py - v2
"""File rotation handlers for log files.

LOG_ROTATION accepts either a size ("10MB", "512KB") for size-based rotation
or an interval ("12h", "1d") for time-based rotation. LOG_RETENTION is the
number of rotated files kept in both cases.
"""

from __future__ import annotations

import logging
import re
from logging.handlers import RotatingFileHandler, TimedRotatingFileHandler
from pathlib import Path

_SIZE_RE = re.compile(r"^(\d+)\s*(B|KB|MB|GB)$", re.IGNORECASE)
_INTERVAL_RE = re.compile(r"^(\d+)\s*(m|h|d)$", re.IGNORECASE)

_SIZE_MULTIPLIERS = {"B": 1, "KB": 1024, "MB": 1024**2, "GB": 1024**3}
_INTERVAL_UNITS = {"m": "M", "h": "H", "d": "D"}


def parse_size(size_str: str) -> int:
    """Parse size string like '10MB' into bytes.

    Supported suffixes: B, KB, MB, GB (case-insensitive).
    """
    match = _SIZE_RE.match(size_str.strip())
    if not match:
        raise ValueError(f"Invalid size format: {size_str!r}. Use e.g. '10MB'.")
    return int(match.group(1)) * _SIZE_MULTIPLIERS[match.group(2).upper()]


def create_rotating_handler(
    log_file: str | Path,
    rotation: str = "10MB",
    retention: int = 30,
) -> logging.Handler:
    """Create a size- or time-rotating file handler.

    Args:
        log_file: Path to log file; parent directories are created.
        rotation: Max size ("10MB") or rotation interval ("1d").
        retention: Number of backup files to keep.

    Raises:
        ValueError: If ``rotation`` is neither a size nor an interval.
    """
    path = Path(log_file).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    interval = _INTERVAL_RE.match(rotation.strip())
    if interval:
        return TimedRotatingFileHandler(
            filename=str(path),
            when=_INTERVAL_UNITS[interval.group(2).lower()],
            interval=int(interval.group(1)),
            backupCount=retention,
            encoding="utf-8",
        )

    return RotatingFileHandler(
        filename=str(path),
        maxBytes=parse_size(rotation),
        backupCount=retention,
        encoding="utf-8",
    )
