"""Rotating logger setup for the Disk Swap service."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from diskswap import config

# Log every HTTP request at INFO (Supervisor polling, sandbox proxy)
NOISY_LOGGERS = ("httpx", "httpcore")


def setup_logger(
    name: str = "diskswap",
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 3,
    level: Optional[int] = None,
) -> logging.Logger:
    """Configure the service's root logger.

    Services log through child loggers (``diskswap.pipeline``,
    ``diskswap.sandbox``...) which propagate to the handlers set up here:
    a rotating file under the add-on's data directory and stdout, which is
    what the add-on log viewer shows.

    Args:
        name: Logger name
        log_file: Path to log file, defaults to ``config.LOG_FILE``
        max_bytes: Max size before rotation
        backup_count: Number of rotated files to keep
        level: Logging level, defaults to ``config.LOG_LEVEL``
            (``DISKSWAP_LOG_LEVEL``)

    Returns:
        Configured logger instance
    """
    log_path = Path(log_file) if log_file is not None else config.LOG_FILE
    level = config.LOG_LEVEL if level is None else level
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Avoid duplicate handlers if already configured
    if logger.handlers:
        return logger

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )

    file_handler = RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    stdout_handler = logging.StreamHandler(sys.stdout)
    for handler in (file_handler, stdout_handler):
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    if level > logging.DEBUG:
        for noisy in NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(logging.WARNING)

    return logger
