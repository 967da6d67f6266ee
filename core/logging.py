"""
Logging configuration.

Configures loguru sinks for services, the settlement scheduler and the API.
"""

import sys
from typing import Optional

from loguru import logger

from .config import Settings, get_settings


def setup_logging(settings: Optional[Settings] = None, log_file: Optional[str] = None) -> None:
    """Replace the default sink with one honoring the configured level."""
    settings = settings or get_settings()

    logger.remove()
    logger.add(
        sys.stderr,
        level=settings.log_level,
        serialize=settings.log_json,
        backtrace=False,
        diagnose=False,
    )

    if log_file:
        logger.add(
            log_file,
            rotation="1 day",
            retention="7 days",
            level=settings.log_level,
            encoding="utf-8",
            serialize=settings.log_json,
        )

    logger.debug(f"Logging configured at level {settings.log_level}")
