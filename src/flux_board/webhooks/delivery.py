"""Webhook delivery worker.

Every dispatched job becomes one *delivery sequence*: a first attempt plus up
to ``len(retry_delays)`` retries, all recorded on a single :class:`Delivery`
row that stays ``pending`` until the sequence ends.  Sequences run as
independent coroutines on the worker's own event loop thread, so a slow
endpoint never blocks mutations, other deliveries, or request handling.

Wire format (per attempt)::

    POST <webhook.url>
    Content-Type: application/json
    User-Agent: Flux-Webhook/1.0
    X-Flux-Event: task.updated
    X-Flux-Delivery: dlv-1a2b3c4d
    X-Flux-Timestamp: 2024-05-01T12:00:00+00:00
    X-Flux-Signature: sha256=<hex>        # only when a secret is set

    {"event":"task.updated","timestamp":"...","webhook_id":"wh-...","data":{...}}
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx
from loguru import logger

from ..board.model import Delivery, DeliveryOutcome, Webhook, now_iso
from ..board.store import BoardStore
from ..constants import (
    DEFAULT_DELIVERY_TIMEOUT,
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_RETRY_DELAYS,
    DELIVERY_LEASE_GRACE,
    MAX_RETRIES,
    RESPONSE_BODY_LIMIT,
    TEST_EVENT,
    WEBHOOK_USER_AGENT,
)
from ..errors import DeliveryError
from ..logging_utils import truncate
from .signing import compute_signature

Sleep = Callable[[float], Awaitable[Any]]


def encode_body(envelope: dict[str, Any]) -> bytes:
    """Compact JSON body; the signature is computed over exactly these bytes."""
    return json.dumps(envelope, separators=(",", ":")).encode("utf-8")


def build_headers(
    secret: Optional[str],
    event: str,
    delivery_id: str,
    body: bytes,
    timestamp: Optional[str] = None,
) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "User-Agent": WEBHOOK_USER_AGENT,
        "X-Flux-Event": event,
        "X-Flux-Delivery": delivery_id,
        "X-Flux-Timestamp": timestamp or now_iso(),
    }
    if secret:
        headers["X-Flux-Signature"] = compute_signature(secret, body)
    return headers


def _touched_before(delivery: Delivery, cutoff: datetime) -> bool:
    try:
        touched = datetime.fromisoformat(delivery.updated_at)
    except ValueError:
        return True
    if touched.tzinfo is None:
        touched = touched.replace(tzinfo=timezone.utc)
    return touched <= cutoff


class DeliveryRecorder:
    """Persist delivery records through the board store.

    A record is only ever written by the sequence that created it and is
    immutable once terminal.  Terminal records beyond *history_limit* per
    webhook are pruned oldest-first; pending records are never pruned.
    """

    def __init__(self, store: BoardStore, history_limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self.store = store
        self.history_limit = history_limit

    def create(self, delivery: Delivery) -> Delivery:
        with self.store.transaction() as tx:
            tx.deliveries.add(Delivery.from_dict(delivery.to_dict()))
        return delivery

    def save(self, delivery: Delivery) -> bool:
        """Copy attempt state onto the stored record.

        Returns False when the record is gone (its webhook was deleted
        mid-sequence) or already terminal; the sequence still runs to
        completion.
        """
        with self.store.transaction() as tx:
            stored = tx.deliveries.get(delivery.id)
            if stored is None:
                return False
            if stored.is_terminal:
                logger.warning("Delivery {} is already {}; not updating it", stored.id, stored.outcome.value)
                return False
            stored.attempts = delivery.attempts
            stored.status_code = delivery.status_code
            stored.response_body = delivery.response_body
            stored.error = delivery.error
            stored.outcome = delivery.outcome
            stored.updated_at = delivery.updated_at
            stored.completed_at = delivery.completed_at
            tx.mark_dirty()
            if stored.is_terminal:
                self._prune(tx, stored.webhook_id)
        return True

    def mark_interrupted(self, stale_after: float = 0.0) -> int:
        """Fail pending records untouched for more than *stale_after* seconds.

        A live sequence saves its record after every attempt, so a record
        idle for longer than the longest retry gap belongs to a process that
        is gone.  Fresher records may still be owned by another process
        sharing the store and are left alone.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=stale_after)
        count = 0
        with self.store.transaction() as tx:
            for delivery in tx.deliveries.filter(lambda d: not d.is_terminal and _touched_before(d, cutoff)):
                delivery.outcome = DeliveryOutcome.FAILED
                delivery.error = "interrupted"
                delivery.updated_at = delivery.completed_at = now_iso()
                count += 1
            if count:
                tx.mark_dirty()
        if count:
            logger.warning("Marked {} interrupted webhook deliveries as failed", count)
        return count

    def _prune(self, tx: Any, webhook_id: str) -> None:
        terminal = tx.deliveries.filter(lambda d: d.webhook_id == webhook_id and d.is_terminal)
        excess = len(terminal) - self.history_limit
        if excess <= 0:
            return
        terminal.sort(key=lambda d: d.created_at)
        doomed = {d.id for d in terminal[:excess]}
        tx.deliveries.remove_where(lambda d: d.id in doomed)


class WebhookWorker:
    """Run delivery sequences on a dedicated background event loop.

    Parameters
    ----------
    recorder:
        Persists each sequence's Delivery record.
    timeout:
        Per-request network timeout in seconds.
    retry_delays:
        Seconds to wait before each retry; attempts = ``len(retry_delays) + 1``.
        Only the first three delays are used.
    transport:
        Optional ``httpx`` transport (tests pass ``httpx.MockTransport``).
    sleep:
        Delay primitive used between attempts; defaults to ``asyncio.sleep``.
    """

    def __init__(
        self,
        recorder: DeliveryRecorder,
        *,
        timeout: float = DEFAULT_DELIVERY_TIMEOUT,
        retry_delays: tuple[float, ...] = DEFAULT_RETRY_DELAYS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Sleep] = None,
    ) -> None:
        self.recorder = recorder
        self.timeout = timeout
        self.retry_delays = tuple(retry_delays)[:MAX_RETRIES]
        self._transport = transport
        self._sleep: Sleep = sleep or asyncio.sleep
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._inflight: set[concurrent.futures.Future] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def lease_seconds(self) -> float:
        """Longest time a live sequence leaves its pending record untouched, plus grace."""
        return max(self.retry_delays, default=0.0) + self.timeout + DELIVERY_LEASE_GRACE

    def start(self) -> None:
        """Start the loop thread (idempotent) and fail abandoned pending records.

        Records another process is still working on stay untouched; see
        :meth:`DeliveryRecorder.mark_interrupted`.
        """
        with self._lock:
            if self.running:
                return
            self.recorder.mark_interrupted(stale_after=self.lease_seconds)
            loop = asyncio.new_event_loop()
            ready = threading.Event()
            thread = threading.Thread(
                target=self._run_loop, args=(loop, ready), name="flux-webhooks", daemon=True
            )
            thread.start()
            ready.wait()
            self._loop = loop
            self._thread = thread
        logger.debug("Webhook worker started")

    @staticmethod
    def _run_loop(loop: asyncio.AbstractEventLoop, ready: threading.Event) -> None:
        asyncio.set_event_loop(loop)
        loop.call_soon(ready.set)
        try:
            loop.run_forever()
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the loop thread, cancelling sequences still in flight.

        Cancelled sequences stay ``pending`` until a later start finds them
        past their lease and fails them as interrupted.
        """
        with self._lock:
            loop, thread = self._loop, self._thread
            self._loop = self._thread = None
            inflight = list(self._inflight)
            self._inflight.clear()
        if loop is None or thread is None:
            return
        try:
            asyncio.run_coroutine_threadsafe(self._cancel_all(), loop).result(timeout)
        except concurrent.futures.TimeoutError:
            logger.warning("Timed out cancelling webhook deliveries")
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout)
        if inflight:
            logger.info("Webhook worker stopped with {} sequences in flight", len(inflight))

    @staticmethod
    async def _cancel_all() -> None:
        current = asyncio.current_task()
        tasks = [t for t in asyncio.all_tasks() if t is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted sequence finished; False on timeout."""
        with self._lock:
            inflight = list(self._inflight)
        if not inflight:
            return True
        _, not_done = concurrent.futures.wait(inflight, timeout=timeout)
        return not not_done

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, webhook: Webhook, envelope: dict[str, Any]) -> concurrent.futures.Future:
        """Schedule a delivery sequence; never waits for it."""
        return self._schedule(self.deliver(webhook, envelope))

    def run_test(self, webhook: Webhook) -> Delivery:
        """Perform a single test attempt and wait for its record."""
        future = self._schedule(self.test(webhook))
        return future.result(timeout=self.timeout + 5.0)

    def _schedule(self, coro: Awaitable[Delivery]) -> concurrent.futures.Future:
        self.start()
        with self._lock:
            loop = self._loop
            if loop is None:
                raise RuntimeError("Webhook worker loop is not running")
            future = asyncio.run_coroutine_threadsafe(coro, loop)
            self._inflight.add(future)
        future.add_done_callback(self._on_done)
        return future

    def _on_done(self, future: concurrent.futures.Future) -> None:
        with self._lock:
            self._inflight.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Webhook delivery sequence crashed: {}", exc)

    # ------------------------------------------------------------------
    # Delivery sequences
    # ------------------------------------------------------------------

    async def test(self, webhook: Webhook) -> Delivery:
        """One attempt against *webhook* regardless of its subscribed events."""
        envelope = {
            "event": TEST_EVENT,
            "timestamp": now_iso(),
            "webhook_id": webhook.id,
            "data": {"message": "Test delivery from Flux", "webhook_id": webhook.id, "url": webhook.url},
        }
        return await self.deliver(webhook, envelope, retry=False)

    async def deliver(self, webhook: Webhook, envelope: dict[str, Any], *, retry: bool = True) -> Delivery:
        """Run one delivery sequence and return its terminal record."""
        event = str(envelope.get("event", ""))
        body = encode_body(envelope)
        delivery = Delivery(webhook_id=webhook.id, event=event, payload=envelope)
        await asyncio.to_thread(self.recorder.create, delivery)

        delays = self.retry_delays if retry else ()
        max_attempts = len(delays) + 1
        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            for attempt in range(1, max_attempts + 1):
                if attempt > 1:
                    await self._sleep(delays[attempt - 2])
                delivery.attempts = attempt
                try:
                    status_code, text = await self._attempt(client, webhook, delivery.id, event, body)
                except DeliveryError as exc:
                    delivery.status_code = exc.status_code
                    delivery.response_body = truncate(exc.response_body, RESPONSE_BODY_LIMIT)
                    delivery.error = str(exc)
                    logger.debug(
                        "Webhook {} attempt {}/{} for {} failed: {}",
                        webhook.id, attempt, max_attempts, event, exc,
                    )
                else:
                    delivery.status_code = status_code
                    delivery.response_body = truncate(text, RESPONSE_BODY_LIMIT)
                    delivery.error = None
                    delivery.outcome = DeliveryOutcome.SUCCESS
                    logger.debug("Webhook {} attempt {}/{} for {} -> {}", webhook.id, attempt, max_attempts, event, status_code)
                delivery.updated_at = now_iso()
                if delivery.outcome == DeliveryOutcome.SUCCESS or attempt == max_attempts:
                    break
                await asyncio.to_thread(self.recorder.save, delivery)

        if delivery.outcome != DeliveryOutcome.SUCCESS:
            delivery.outcome = DeliveryOutcome.FAILED
        delivery.completed_at = delivery.updated_at
        await asyncio.to_thread(self.recorder.save, delivery)
        if delivery.outcome == DeliveryOutcome.SUCCESS:
            logger.info("Delivered {} to webhook {} after {} attempt(s)", event, webhook.id, delivery.attempts)
        else:
            logger.warning(
                "Delivery {} of {} to webhook {} failed after {} attempt(s): {}",
                delivery.id, event, webhook.id, delivery.attempts, delivery.error,
            )
        return delivery

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        webhook: Webhook,
        delivery_id: str,
        event: str,
        body: bytes,
    ) -> tuple[int, str]:
        headers = build_headers(webhook.secret, event, delivery_id, body)
        try:
            response = await client.post(webhook.url, content=body, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise DeliveryError(f"{type(exc).__name__}: {exc}") from exc
        if not 200 <= response.status_code < 300:
            raise DeliveryError(
                f"HTTP {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
            )
        return response.status_code, response.text
