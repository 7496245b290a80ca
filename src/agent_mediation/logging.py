"""Loguru sink configuration."""

import sys
from typing import Optional

from loguru import logger

from .config import Config

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> | <level>{message}</level>"
)


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """
    Replace loguru's default sink with the mediation sinks.

    Args:
        level: Console log level (defaults to Config.MEDIATION_LOG_LEVEL)
        log_file: Optional rotating file sink (defaults to Config.MEDIATION_LOG_FILE)
    """
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=(level or Config.MEDIATION_LOG_LEVEL).upper())

    log_file = log_file if log_file is not None else Config.MEDIATION_LOG_FILE
    if log_file:
        logger.add(
            log_file,
            rotation="10 MB",
            retention="7 days",
            compression="zip",
            level="DEBUG",
        )
