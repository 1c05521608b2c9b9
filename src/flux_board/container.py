from __future__ import annotations

from pathlib import Path
from typing import Optional

import httpx

from .board.engine import BoardEngine
from .board.store import BoardStore
from .config import BoardSettings, load_settings
from .events.dispatcher import EventDispatcher
from .events.live import LiveHub
from .webhooks.delivery import DeliveryRecorder, Sleep, WebhookWorker


class BoardContainer:
    """Wire store, live hub, webhook worker, dispatcher and engine for one board."""

    def __init__(
        self,
        project_dir: Path,
        settings: Optional[BoardSettings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Sleep] = None,
    ) -> None:
        self.project_dir = project_dir.resolve()
        self.settings = settings or load_settings(self.project_dir)
        self.settings.state_dir.mkdir(parents=True, exist_ok=True)
        self.settings.storage_path.parent.mkdir(parents=True, exist_ok=True)

        self.store = BoardStore.open(self.settings.storage_path)
        self.hub = LiveHub(
            coalesce_ms=self.settings.coalesce_ms,
            heartbeat_seconds=self.settings.heartbeat_seconds,
            queue_size=self.settings.queue_size,
        )
        self.recorder = DeliveryRecorder(self.store, history_limit=self.settings.history_limit)
        self.worker = WebhookWorker(
            self.recorder,
            timeout=self.settings.delivery_timeout,
            retry_delays=self.settings.retry_delays,
            transport=transport,
            sleep=sleep,
        )
        self.dispatcher = EventDispatcher(self.store, self.hub, self.worker)
        self.engine = BoardEngine(self.store, emit=self.dispatcher.emit)

    def close(self) -> None:
        self.worker.stop()
        self.hub.close()
        self.store.close()
