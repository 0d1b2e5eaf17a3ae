"""Loguru setup shared by the CLI and embedding applications."""

import sys
from pathlib import Path

from loguru import logger

from sprintflow.core.config import Settings, get_settings

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)


def configure_logging(settings: Settings | None = None) -> None:
    """Configure loguru based on settings.

    Replaces the default handler with a colourised stderr sink and, when
    ``log_to_file`` is set, a daily rotating file under ``logs/``.
    """
    settings = settings or get_settings()
    level = "DEBUG" if settings.debug else settings.log_level

    logger.remove()  # Remove default handler

    if settings.log_to_file:
        logs_dir = Path("logs")
        logs_dir.mkdir(exist_ok=True)
        logger.add(
            "logs/sprintflow_{time:YYYY-MM-DD}.log",
            rotation="1 day",
            retention="7 days",
            level=level,
            format=LOG_FORMAT,
        )

    logger.add(
        sys.stderr,
        level=level,
        format=LOG_FORMAT,
        colorize=True,
    )
