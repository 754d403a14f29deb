"""
Logging setup for the lockvault command line.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

from lockvault.utils.config import get_log_level

ROOT_LOGGER = "lockvault"


def configure_logger(name: str = ROOT_LOGGER, level: Optional[str] = None) -> logging.Logger:
    """
    Configure and return the namespaced logger used by every lockvault module.

    Args:
        name: Logger namespace; module loggers live below it.
        level: Logging level expressed as a string. Defaults to LOCKVAULT_LOG_LEVEL or INFO.
    Returns:
        Logger with a single stderr handler attached.
    """
    logger = logging.getLogger(name)
    logger.setLevel((level or get_log_level()).upper())
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(fmt="%(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.propagate = False
    return logger
