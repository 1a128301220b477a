"""
Logging setup.

Configures the loguru logger once per process: a stderr sink, an optional rotating
file sink and optional JSON-serialized records for log shippers.
"""
from __future__ import annotations

import sys

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def setup_logging(level: str = "INFO", log_file: str | None = None, json: bool = False) -> None:
    """Replace loguru's default handler with the pipeline's sinks."""
    logger.remove()
    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT, serialize=json, backtrace=False, diagnose=False)
    if log_file:
        logger.add(
            log_file,
            rotation="1 day",
            retention="7 days",
            level=level,
            encoding="utf-8",
            serialize=json,
            enqueue=True,
        )
