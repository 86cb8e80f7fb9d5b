"""
Logging configuration.

Library modules only call ``logger.*``; sinks are installed here, once,
by the entry point.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

from loguru import logger


CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{line} | {message}"


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    console: bool = True,
):
    """
    Install the fgseg log sinks.

    Args:
        log_level: Console level (the file sink always records DEBUG)
        log_file: Optional rotating log file
        console: Log to stderr
    """
    logger.remove()

    if console:
        logger.add(sys.stderr, level=log_level.upper(), format=CONSOLE_FORMAT, colorize=True)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level="DEBUG",
            format=FILE_FORMAT,
            rotation="10 MB",
            retention="7 days",
            enqueue=True,
        )

    # ultralytics logs through the stdlib during export
    logging.getLogger("ultralytics").setLevel(logging.WARNING)
