"""
Logging setup for pixelops.

Library modules only call get_logger(__name__); handlers are installed by the
application (the command line calls setup_logging once at start).

Usage:
    from pixelops.utils.logging import get_logger, setup_logging

    logger = get_logger(__name__)

    setup_logging(level="DEBUG", log_file="/path/to/run.log")
    logger.debug(f"Reading {request}")
"""

import logging
import sys
import time
from pathlib import Path
from typing import Optional, Union

DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name on a terminal."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname)
        if color is None:
            return super().format(record)
        # Records are shared between handlers; color a copy only
        record = logging.makeLogRecord(record.__dict__)
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


def get_logger(name: str) -> logging.Logger:
    """Logger for a module (typically called with __name__)."""
    return logging.getLogger(name)


def setup_logging(level: Union[str, int] = "INFO",
                  log_file: Optional[Union[str, Path]] = None) -> logging.Logger:
    """
    Configure the root logger, replacing any handlers it already has.

    Args:
        level: Level name (DEBUG, INFO, WARNING, ERROR, CRITICAL) or number
        log_file: Optional file to append records to, in addition to stdout

    Returns:
        Root logger instance
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    if sys.stdout.isatty():
        console_handler.setFormatter(ColoredFormatter(DEFAULT_FORMAT))
    else:
        console_handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
    root_logger.addHandler(console_handler)

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, mode='a')
        file_handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
        root_logger.addHandler(file_handler)
        root_logger.debug(f"Logging to file: {log_path}")

    return root_logger


def log_parameters(logger: logging.Logger, params: dict, title: str = "Parameters") -> None:
    """Log a block of parameters, summarizing long lists."""
    logger.info('=' * 50)
    logger.info(title)
    logger.info('=' * 50)
    for key, value in params.items():
        if isinstance(value, (list, tuple)) and len(value) > 5:
            logger.info(f"  {key}: [{len(value)} items]")
        else:
            logger.info(f"  {key}: {value}")
    logger.info('=' * 50)


class ProcessingTimer:
    """
    Context manager logging the start, end and duration of an operation.

    Failures are logged and re-raised.
    """

    def __init__(self, logger: logging.Logger, operation: str):
        self.logger = logger
        self.operation = operation
        self.start_time: Optional[float] = None
        self.duration: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.info(f"Starting: {self.operation}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.perf_counter() - self.start_time
        if exc_type is not None:
            self.logger.error(f"Failed: {self.operation} after {self.duration:.2f}s - {exc_val}")
        else:
            self.logger.info(f"Completed: {self.operation} in {self.duration:.2f}s")
        return False
