"""Configure loguru output for the server and CLI."""

from __future__ import annotations

import sys

from loguru import logger

_LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan> | "
    "{message}"
)


def configure_logging(level: str = "INFO") -> None:
    """Reset loguru sinks to a single stderr sink at *level*."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=_LOG_FORMAT)


def truncate(text: str | None, limit: int) -> str | None:
    """Clip *text* to *limit* characters, marking the cut."""
    if text is None or len(text) <= limit:
        return text
    return text[:limit] + "...[truncated]"
