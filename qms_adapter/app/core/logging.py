"""Loguru sink configuration for the adapter process."""
from __future__ import annotations

import sys

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level> {extra}"
)

# Level names accepted on the command line, including the logrus-style aliases.
LEVEL_ALIASES = {
    "trace": "TRACE",
    "debug": "DEBUG",
    "info": "INFO",
    "success": "SUCCESS",
    "warn": "WARNING",
    "warning": "WARNING",
    "error": "ERROR",
    "fatal": "CRITICAL",
    "panic": "CRITICAL",
    "critical": "CRITICAL",
}


def normalize_level(level: str) -> str:
    """Map a user-supplied level name onto a loguru level name."""
    try:
        return LEVEL_ALIASES[level.strip().lower()]
    except KeyError:
        raise ValueError(
            f"unsupported log level {level!r}; expected one of {sorted(LEVEL_ALIASES)}"
        ) from None


def configure_logging(level: str = "INFO", *, json: bool = False) -> None:
    """Replace loguru's default sink with a single stderr sink at `level`."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=normalize_level(level),
        format=LOG_FORMAT,
        serialize=json,
        backtrace=False,
        diagnose=False,
    )
