"""
Loguru sink configuration.
"""

import sys

from loguru import logger

from .config import Settings


def configure_logging(settings: Settings) -> None:
    """
    Configure loguru sinks from settings.

    Replaces the default stderr sink; JSON output is used when
    `log_format` is "json" so request context survives into log shipping.
    """
    logger.remove()
    serialize = settings.log_format.lower() == "json"

    logger.add(sys.stderr, level=settings.log_level.upper(), serialize=serialize, backtrace=settings.debug, diagnose=settings.debug)

    if settings.log_file:
        logger.add(
            settings.log_file,
            level=settings.log_level.upper(),
            serialize=serialize,
            rotation="10 MB",
            retention=5,
            enqueue=True,
        )

    logger.info(f"Logging configured: level={settings.log_level}, format={settings.log_format}, file={settings.log_file}")
