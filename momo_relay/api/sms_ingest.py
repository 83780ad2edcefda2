"""
Inbound SMS endpoint for the device-side forwarder.
"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from momo_relay.container import Services, get_services
from momo_relay.usecases.ingest_gate import Accepted
from momo_relay.utils.time import now_ms

logger = logging.getLogger(__name__)
router = APIRouter()

RETRY_AFTER_SECONDS = 5


class InboundSms(BaseModel):
    """Schema for an SMS forwarded from the device."""
    sender: str = Field(..., max_length=128)
    body: str = ""
    received_at_ms: Optional[int] = None
    phone_number: str = Field("", max_length=64)


def check_ingest_key(expected: str, provided: Optional[str]) -> bool:
    """Constant-time API key check. An empty expected key disables the check."""
    if not expected:
        return True
    return hmac.compare_digest(expected.encode("utf-8"), (provided or "").encode("utf-8"))


@router.post("/sms/inbound")
async def inbound_sms(
    sms: InboundSms,
    x_api_key: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
):
    """
    Accept an SMS from the forwarder.

    The message is filtered and queued; parsing, storage and relay happen in
    the background. Returns 202 when queued, 200 when filtered out and 503
    when the queue is full.
    """
    if not check_ingest_key(services.settings.ingest_api_key, x_api_key):
        logger.warning(f"Rejected inbound SMS with invalid API key (sender {sms.sender})")
        raise HTTPException(status_code=401, detail="Invalid API key")

    received_at_ms = sms.received_at_ms if sms.received_at_ms is not None else now_ms()
    decision = services.gate.accept(sms.sender, sms.body, received_at_ms, sms.phone_number)

    if not isinstance(decision, Accepted):
        return JSONResponse(status_code=200, content={"status": "rejected", "reason": decision.reason})

    if not services.pipeline.submit(decision.message):
        return JSONResponse(
            status_code=503,
            content={"status": "busy", "detail": "Ingest queue is full"},
            headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
        )

    logger.info(f"Queued SMS from {sms.sender}")
    return JSONResponse(status_code=202, content={"status": "accepted"})


@router.get("/health")
async def health_check(services: Services = Depends(get_services)):
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "momo-relay",
        "ingest_queue": services.pipeline.queue.qsize(),
        "workers_running": services.pipeline.running,
    }
