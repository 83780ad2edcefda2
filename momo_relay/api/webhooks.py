"""
Operator endpoints for webhook configuration and the delivery log.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from momo_relay.container import Services, get_services
from momo_relay.domain.delivery_log import DeliveryLogResponse, DeliveryOutcomeResponse, DeliveryStatus
from momo_relay.domain.webhook import (
    WebhookCreate,
    WebhookCreatedResponse,
    WebhookResponse,
    WebhookUpdate,
)
from momo_relay.infrastructure.database import get_session
from momo_relay.usecases.delivery_ledger import DeliveryLogNotFound
from momo_relay.usecases.webhook_service import WebhookConflict, WebhookNotFound, WebhookService

logger = logging.getLogger(__name__)
router = APIRouter()


def _service(session: AsyncSession, services: Services) -> WebhookService:
    return WebhookService(session, allow_insecure=services.settings.allow_insecure_webhooks)


def _raise_for(error: Exception):
    if isinstance(error, WebhookNotFound):
        raise HTTPException(status_code=404, detail=str(error))
    if isinstance(error, WebhookConflict):
        raise HTTPException(status_code=409, detail=str(error))
    if isinstance(error, ValueError):
        raise HTTPException(status_code=422, detail=str(error))
    raise error


@router.get("/webhooks", response_model=List[WebhookResponse])
async def list_webhooks(
    session: AsyncSession = Depends(get_session),
    services: Services = Depends(get_services),
):
    return await _service(session, services).list()


@router.post("/webhooks", response_model=WebhookCreatedResponse, status_code=201)
async def create_webhook(
    data: WebhookCreate,
    session: AsyncSession = Depends(get_session),
    services: Services = Depends(get_services),
):
    """Create a webhook. The signing secret is only returned here."""
    try:
        return await _service(session, services).create(data)
    except (WebhookConflict, ValueError) as e:
        _raise_for(e)


@router.get("/webhooks/{webhook_id}", response_model=WebhookResponse)
async def get_webhook(
    webhook_id: int,
    session: AsyncSession = Depends(get_session),
    services: Services = Depends(get_services),
):
    webhook = await _service(session, services).get(webhook_id)
    if webhook is None:
        raise HTTPException(status_code=404, detail=f"Webhook {webhook_id} not found")
    return webhook


@router.put("/webhooks/{webhook_id}", response_model=WebhookResponse)
async def update_webhook(
    webhook_id: int,
    data: WebhookUpdate,
    session: AsyncSession = Depends(get_session),
    services: Services = Depends(get_services),
):
    try:
        return await _service(session, services).update(webhook_id, data)
    except (WebhookNotFound, ValueError) as e:
        _raise_for(e)


@router.delete("/webhooks/{webhook_id}", status_code=204)
async def delete_webhook(
    webhook_id: int,
    session: AsyncSession = Depends(get_session),
    services: Services = Depends(get_services),
):
    try:
        await _service(session, services).delete(webhook_id)
    except WebhookNotFound as e:
        _raise_for(e)


@router.post("/webhooks/{webhook_id}/test")
async def test_webhook(
    webhook_id: int,
    session: AsyncSession = Depends(get_session),
    services: Services = Depends(get_services),
):
    """Send a signed test payload to a webhook. Nothing is written to the delivery log."""
    webhook = await _service(session, services).get(webhook_id)
    if webhook is None:
        raise HTTPException(status_code=404, detail=f"Webhook {webhook_id} not found")

    result = await services.ledger.client.send_test(webhook)
    return {
        "success": result.delivered,
        "status_code": result.status_code,
        "response_body": result.response_body,
        "error": result.error,
    }


@router.get("/delivery-logs", response_model=List[DeliveryLogResponse])
async def list_delivery_logs(
    status: Optional[DeliveryStatus] = None,
    webhook_id: Optional[int] = None,
    limit: int = 100,
    services: Services = Depends(get_services),
):
    return await services.ledger.list_entries(status=status, webhook_id=webhook_id, limit=limit)


@router.get("/delivery-logs/pending-count")
async def delivery_pending_count(services: Services = Depends(get_services)):
    return {"pending": await services.ledger.pending_count()}


@router.post("/delivery-logs/{entry_id}/retry", response_model=DeliveryOutcomeResponse)
async def retry_delivery(entry_id: int, services: Services = Depends(get_services)):
    try:
        return await services.ledger.retry(entry_id)
    except DeliveryLogNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
