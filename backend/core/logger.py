"""
Docgen Logging System
=====================
Centralized logging with Loguru.

Features:
- Colored console output
- Optional rotating file sink (500 MB, 10 days retention)
- PyPDF2 / reportlab stdlib logging routed through Loguru
- Per-module names via get_logger(__name__)
"""

from __future__ import annotations
import sys
import logging
from pathlib import Path
from typing import Optional

from loguru import logger

from .config import Settings, get_settings

LOG_FILE_NAME = "docgen.log"

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[name]}:{function}:{line} | {message}"

# Third-party libraries that log through the standard library.
INTERCEPTED_LOGGERS = ("PyPDF2", "reportlab")


class InterceptHandler(logging.Handler):
    """Forward standard library records to Loguru, keeping the caller's frame."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back  # type: ignore
            depth += 1

        logger.bind(name=record.name).opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def setup_logger(
    level: str = "INFO",
    console: bool = True,
    file: bool = False,
    log_dir: Optional[Path] = None,
    rotation: str = "500 MB",
    retention: str = "10 days",
) -> None:
    """
    Configure the centralized logging system.

    Args:
        level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        console: Enable colored console output
        file: Enable file logging
        log_dir: Directory for docgen.log (default: ./logs)
        rotation: File rotation size
        retention: Log file retention period
    """
    logger.remove()

    if console:
        logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level, colorize=True, backtrace=True, diagnose=False)

    log_file: Optional[Path] = None
    if file:
        log_file = Path(log_dir or "logs") / LOG_FILE_NAME
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_file),
            format=FILE_FORMAT,
            level=level,
            rotation=rotation,
            retention=retention,
            compression="zip",
            backtrace=True,
            diagnose=False,
            enqueue=True,  # Thread-safe
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for logger_name in INTERCEPTED_LOGGERS:
        logging.getLogger(logger_name).handlers = [InterceptHandler()]

    logger.debug(f"Docgen logger initialized (level={level}, file={log_file or 'off'})")


def configure_from_settings(settings: Optional[Settings] = None) -> None:
    """Apply DOCGEN_LOG_* settings."""
    settings = settings or get_settings()
    setup_logger(
        level=settings.log_level,
        console=True,
        file=settings.log_to_file,
        log_dir=settings.log_dir,
    )


def get_logger(name: str = "docgen"):
    """
    Get a named logger instance.

    Usage:
        from core.logger import get_logger
        log = get_logger(__name__)
        log.info("Rendering started")
    """
    return logger.bind(name=name)


logger.configure(extra={"name": "docgen"})
configure_from_settings()
