"""Live-update transports: Server-Sent Events at ``/api/events`` and WebSocket at ``/ws``.

Both carry the same hub messages.  Clients are expected to refetch board
state on ``data-changed``.

WebSocket protocol (client → server)::

    {"action": "ping"}

WebSocket protocol (server → client)::

    {"event": "connected", "data": {"ts": "..."}}
    {"event": "data-changed", "data": {"ts": "..."}}
    {"event": "keep-alive", "data": {"ts": "..."}}
    {"event": "pong", "data": {}}

A consumer the hub drops for falling behind ends its stream: the SSE
response finishes and the WebSocket closes with code 1013, so the client
reconnects and refetches.
"""

from __future__ import annotations

import json
from typing import AsyncIterator, Callable

import anyio
from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse
from loguru import logger

from ..events.live import LiveConsumer, LiveHub, format_sse

_POLL_SECONDS = 1.0
# "Try again later": the client fell too far behind and should reconnect.
_DROPPED_CLOSE_CODE = 1013


def create_stream_router(get_hub: Callable[[], LiveHub]) -> APIRouter:
    router = APIRouter(tags=["live"])

    async def _sse_frames(request: Request, hub: LiveHub, consumer: LiveConsumer) -> AsyncIterator[str]:
        try:
            while True:
                message = await consumer.get(timeout=_POLL_SECONDS)
                if consumer.closed:
                    break
                if message is not None:
                    yield format_sse(message)
                elif await request.is_disconnected():
                    break
        finally:
            hub.unsubscribe(consumer)

    @router.get("/api/events")
    async def event_stream(request: Request) -> StreamingResponse:
        hub = get_hub()
        consumer = hub.subscribe()
        return StreamingResponse(
            _sse_frames(request, hub, consumer),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @router.websocket("/ws")
    async def websocket_stream(websocket: WebSocket) -> None:
        hub = get_hub()
        await websocket.accept()
        consumer = hub.subscribe()

        async def _pump(scope: anyio.CancelScope) -> None:
            try:
                while True:
                    message = await consumer.get()
                    if consumer.closed:
                        logger.debug("Live websocket {} dropped by hub", consumer.id)
                        await websocket.close(code=_DROPPED_CLOSE_CODE)
                        return
                    await websocket.send_text(json.dumps(message))
            except (WebSocketDisconnect, RuntimeError) as exc:
                logger.debug("Live websocket {} send failed: {}", consumer.id, exc)
            finally:
                scope.cancel()

        async def _receive(scope: anyio.CancelScope) -> None:
            try:
                while True:
                    raw = await websocket.receive_text()
                    try:
                        message = json.loads(raw)
                    except json.JSONDecodeError:
                        continue
                    if isinstance(message, dict) and message.get("action") == "ping":
                        await websocket.send_text(json.dumps({"event": "pong", "data": {}}))
            except WebSocketDisconnect:
                pass
            finally:
                scope.cancel()

        try:
            async with anyio.create_task_group() as tg:
                tg.start_soon(_pump, tg.cancel_scope)
                tg.start_soon(_receive, tg.cancel_scope)
        finally:
            hub.unsubscribe(consumer)

    return router
