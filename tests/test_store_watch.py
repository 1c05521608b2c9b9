"""Tests for the store file watcher (events/watch.py)."""

from __future__ import annotations

import asyncio
from contextlib import suppress
from pathlib import Path

from flux_board.board.engine import BoardEngine
from flux_board.board.store import BoardStore
from flux_board.events.live import LiveHub
from flux_board.events.watch import watch_store_file


def test_external_write_notifies_hub(tmp_path: Path) -> None:
    path = tmp_path / ".flux" / "flux.json"
    writer = BoardStore.open(path)
    BoardEngine(writer).create_project("Seed")

    async def _run() -> None:
        hub = LiveHub(coalesce_ms=10)
        consumer = hub.subscribe()
        assert (await consumer.get(timeout=1))["event"] == "connected"

        watcher = asyncio.create_task(watch_store_file(path, hub, poll_seconds=0.02))
        try:
            # Nothing changed yet.
            assert await consumer.get(timeout=0.15) is None

            await asyncio.to_thread(BoardEngine(writer).create_project, "From another process")
            message = await consumer.get(timeout=2)
            assert message is not None
            assert message["event"] == "data-changed"
        finally:
            watcher.cancel()
            with suppress(asyncio.CancelledError):
                await watcher
            hub.close()

    try:
        asyncio.run(_run())
    finally:
        writer.close()


def test_missing_file_appearing_notifies_hub(tmp_path: Path) -> None:
    path = tmp_path / "board.json"

    async def _run() -> None:
        hub = LiveHub(coalesce_ms=10)
        consumer = hub.subscribe()
        await consumer.get(timeout=1)

        watcher = asyncio.create_task(watch_store_file(path, hub, poll_seconds=0.02))
        try:
            await asyncio.sleep(0.05)
            path.write_text("{}")
            message = await consumer.get(timeout=2)
            assert message is not None
            assert message["event"] == "data-changed"
        finally:
            watcher.cancel()
            with suppress(asyncio.CancelledError):
                await watcher
            hub.close()

    asyncio.run(_run())
