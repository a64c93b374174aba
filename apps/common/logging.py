"""
Logging configuration for the API, the Celery worker and the CLI.
"""

import logging
import sys
from typing import Optional, Union

DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# Top-level loggers that our modules log under (logging.getLogger(__name__)).
PACKAGE_LOGGERS = ("medpack", "apps", "services")


def _level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return value


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_file: Optional[str] = None,
    format_string: Optional[str] = None,
) -> None:
    """
    Configure the package loggers.

    Args:
        level: Logging level name or number (default: INFO)
        log_file: Optional file path for log output
        format_string: Custom format string
    """
    lvl = _level(level)
    formatter = logging.Formatter(format_string or DEFAULT_FORMAT)

    handlers = []
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    for name in PACKAGE_LOGGERS:
        logger = logging.getLogger(name)
        logger.setLevel(lvl)
        # Re-running setup replaces handlers instead of duplicating output.
        logger.handlers = list(handlers)
        logger.propagate = False


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"medpack.{name}")
