"""Turn domain events into live notifications and webhook delivery jobs."""

from __future__ import annotations

import concurrent.futures
from typing import Any, Optional

from loguru import logger

from ..board.model import Delivery, Webhook, now_iso
from ..board.store import BoardStore
from ..constants import EVENT_NAMES, WILDCARD_EVENT
from ..errors import NotFoundError
from ..webhooks.delivery import WebhookWorker
from .live import LiveHub


def build_envelope(
    event: str,
    webhook_id: str,
    payload: dict[str, Any],
    previous: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    data = dict(payload)
    if previous is not None:
        data["previous"] = dict(previous)
    return {"event": event, "timestamp": now_iso(), "webhook_id": webhook_id, "data": data}


def subscribes_to(webhook: Webhook, event: str) -> bool:
    return webhook.enabled and (event in webhook.events or WILDCARD_EVENT in webhook.events)


class EventDispatcher:
    """Fan a committed mutation out to live viewers and webhook subscribers.

    ``emit`` returns as soon as jobs are handed to the worker; delivery is
    never awaited.  Webhook configuration is snapshotted at dispatch time.
    """

    def __init__(self, store: BoardStore, hub: Optional[LiveHub], worker: WebhookWorker) -> None:
        self.store = store
        self.hub = hub
        self.worker = worker

    def emit(self, event: str, payload: dict[str, Any], previous: Optional[dict[str, Any]] = None) -> int:
        """Notify live consumers and submit one job per matching webhook.

        Returns the number of delivery jobs submitted.
        """
        if event not in EVENT_NAMES:
            raise ValueError(f"Unknown event name: {event!r}")
        if self.hub is not None:
            self.hub.notify()

        webhooks = [w for w in self.store.read_snapshot().webhooks if subscribes_to(w, event)]
        jobs: list[concurrent.futures.Future] = []
        for webhook in webhooks:
            envelope = build_envelope(event, webhook.id, payload, previous)
            jobs.append(self.worker.submit(webhook, envelope))
        if jobs:
            logger.debug("Dispatched {} to {} webhook(s)", event, len(jobs))
        return len(jobs)

    def test_delivery(self, webhook_id: str) -> Delivery:
        """Send one ``webhook.test`` attempt to *webhook_id* and return its record."""
        webhook = next((w for w in self.store.read_snapshot().webhooks if w.id == webhook_id), None)
        if webhook is None:
            raise NotFoundError("webhook", webhook_id)
        logger.info("Sending test delivery to webhook {}", webhook_id)
        return self.worker.run_test(webhook)
