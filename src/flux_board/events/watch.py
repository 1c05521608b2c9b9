"""Notify live viewers when another writer changes the board store file."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

from loguru import logger

from ..constants import DEFAULT_WATCH_SECONDS
from .live import LiveHub


def _file_signature(path: Path) -> Optional[tuple[int, int, int]]:
    try:
        stat = path.stat()
    except OSError:
        return None
    return stat.st_mtime_ns, stat.st_size, stat.st_ino


async def watch_store_file(
    path: Path,
    hub: LiveHub,
    *,
    poll_seconds: float = DEFAULT_WATCH_SECONDS,
) -> None:
    """Poll *path* and call ``hub.notify()`` whenever it changes.

    Catches writes made by other processes sharing the board, such as the
    CLI.  Writes from this process trigger it too, which at most adds one
    extra ``data-changed``.  Runs until cancelled.
    """
    last = _file_signature(path)
    while True:
        await asyncio.sleep(poll_seconds)
        current = _file_signature(path)
        if current == last:
            continue
        last = current
        logger.debug("Board store {} changed on disk", path)
        hub.notify()
