"""Webhook subscription endpoints, delivery history and test deliveries."""

from __future__ import annotations

import concurrent.futures
from typing import Any, Callable, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, ConfigDict

from ..board.engine import BoardEngine
from ..events.dispatcher import EventDispatcher


class CreateWebhookRequest(BaseModel):
    url: str
    events: list[str]
    secret: Optional[str] = None
    name: Optional[str] = None
    enabled: bool = True


class UpdateWebhookRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    url: Optional[str] = None
    secret: Optional[str] = None
    events: Optional[list[str]] = None
    enabled: Optional[bool] = None


class WebhookResponse(BaseModel):
    webhook: dict[str, Any]


class WebhookListResponse(BaseModel):
    webhooks: list[dict[str, Any]]
    total: int


class DeliveryResponse(BaseModel):
    delivery: dict[str, Any]


class DeliveryListResponse(BaseModel):
    deliveries: list[dict[str, Any]]
    total: int


def create_webhook_router(
    get_engine: Callable[[], BoardEngine],
    get_dispatcher: Callable[[], EventDispatcher],
) -> APIRouter:
    router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

    @router.get("", response_model=WebhookListResponse)
    async def list_webhooks() -> WebhookListResponse:
        data = [w.to_public_dict() for w in get_engine().list_webhooks()]
        return WebhookListResponse(webhooks=data, total=len(data))

    @router.post("", response_model=WebhookResponse, status_code=201)
    async def create_webhook(body: CreateWebhookRequest) -> WebhookResponse:
        webhook = get_engine().create_webhook(**body.model_dump())
        return WebhookResponse(webhook=webhook.to_public_dict())

    @router.get("/{webhook_id}", response_model=WebhookResponse)
    async def get_webhook(webhook_id: str) -> WebhookResponse:
        webhook = get_engine().get_webhook(webhook_id)
        if webhook is None:
            raise HTTPException(status_code=404, detail=f"Webhook {webhook_id} not found")
        return WebhookResponse(webhook=webhook.to_public_dict())

    @router.patch("/{webhook_id}", response_model=WebhookResponse)
    async def update_webhook(webhook_id: str, body: UpdateWebhookRequest) -> WebhookResponse:
        webhook = get_engine().update_webhook(webhook_id, body.model_dump(exclude_unset=True))
        if webhook is None:
            raise HTTPException(status_code=404, detail=f"Webhook {webhook_id} not found")
        return WebhookResponse(webhook=webhook.to_public_dict())

    @router.delete("/{webhook_id}")
    async def delete_webhook(webhook_id: str) -> dict[str, str]:
        if not get_engine().delete_webhook(webhook_id):
            raise HTTPException(status_code=404, detail=f"Webhook {webhook_id} not found")
        return {"status": "deleted"}

    @router.get("/{webhook_id}/deliveries", response_model=DeliveryListResponse)
    async def list_deliveries(
        webhook_id: str,
        limit: int = Query(50, ge=1, le=1000),
    ) -> DeliveryListResponse:
        engine = get_engine()
        if engine.get_webhook(webhook_id) is None:
            raise HTTPException(status_code=404, detail=f"Webhook {webhook_id} not found")
        data = [d.to_dict() for d in engine.list_deliveries(webhook_id, limit=limit)]
        return DeliveryListResponse(deliveries=data, total=len(data))

    # Sync handler: waits on the worker thread for the single test attempt.
    @router.post("/{webhook_id}/test", response_model=DeliveryResponse)
    def test_webhook(webhook_id: str) -> DeliveryResponse:
        try:
            delivery = get_dispatcher().test_delivery(webhook_id)
        except concurrent.futures.TimeoutError:
            raise HTTPException(status_code=504, detail=f"Test delivery to {webhook_id} timed out")
        return DeliveryResponse(delivery=delivery.to_dict())

    return router
