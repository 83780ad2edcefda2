"""
Outbound webhook HTTP delivery.

Builds the canonical signed request for an event and performs a single POST.
Retry policy lives with the delivery ledger, which records every attempt.
"""

import json
import logging
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from momo_relay.config.settings import Settings
from momo_relay.domain.delivery_log import MAX_ERROR_LENGTH, MAX_RESPONSE_BODY_LENGTH, DeliveryEvent
from momo_relay.domain.webhook import WebhookConfig
from momo_relay.infrastructure.signing import sign_hex
from momo_relay.utils.time import now_ms

logger = logging.getLogger(__name__)

USER_AGENT = "momo-relay/1.0"


@dataclass(frozen=True)
class AttemptResult:
    """Result of one HTTP delivery attempt."""
    status_code: Optional[int] = None
    response_body: Optional[str] = None
    error: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300

    @property
    def retryable(self) -> bool:
        # Client errors are permanent; server errors and transport failures are not
        if self.status_code is None:
            return True
        return self.status_code >= 500


def canonical_json(data: Dict) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def build_payload(event: DeliveryEvent, device_id: str) -> str:
    """Serialise an event to the exact body that is signed and sent."""
    return canonical_json({
        "sender": event.sender,
        "message": event.message,
        "timestamp": event.timestamp_ms,
        "deviceId": device_id,
    })


def build_headers(
    config: WebhookConfig,
    body: str,
    idempotency_key: str,
    device_id: str,
    timestamp_ms: Optional[int] = None,
) -> Dict[str, str]:
    """Headers for a delivery, signed with the webhook's current secret."""
    headers = {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        "X-Webhook-Signature": sign_hex(body, config.hmac_secret),
        "X-Webhook-Timestamp": str(timestamp_ms if timestamp_ms is not None else now_ms()),
        "X-Device-Id": device_id,
        "Idempotency-Key": idempotency_key,
    }
    if config.api_key:
        headers["X-Api-Key"] = config.api_key
    return headers


class WebhookClient:
    """Sends signed JSON bodies to webhook endpoints."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.transport = transport

    async def post(self, config: WebhookConfig, body: str, idempotency_key: str) -> AttemptResult:
        """
        POST a body to a webhook once.

        Args:
            config: Target webhook
            body: Canonical JSON payload
            idempotency_key: Stable key for the logical delivery

        Returns:
            AttemptResult; transport errors are captured, never raised
        """
        headers = build_headers(config, body, idempotency_key, self.settings.device_id)

        try:
            async with httpx.AsyncClient(
                timeout=self.settings.webhook_timeout_seconds,
                transport=self.transport,
            ) as client:
                response = await client.post(config.url, content=body.encode("utf-8"), headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"Webhook {config.id} ({config.url}) unreachable: {e!r}")
            return AttemptResult(error=f"{type(e).__name__}: {e}"[:MAX_ERROR_LENGTH])

        result = AttemptResult(
            status_code=response.status_code,
            response_body=response.text[:MAX_RESPONSE_BODY_LENGTH],
            error=None if response.is_success else f"HTTP {response.status_code}",
        )
        if result.delivered:
            logger.info(f"Webhook {config.id} accepted delivery ({response.status_code})")
        else:
            logger.warning(f"Webhook {config.id} returned {response.status_code}")
        return result

    async def send_test(self, config: WebhookConfig) -> AttemptResult:
        """Send a signed connectivity-test payload. Not recorded in the ledger."""
        timestamp = now_ms()
        body = canonical_json({
            "sender": "momo-relay",
            "message": "Webhook connectivity test",
            "timestamp": timestamp,
            "deviceId": self.settings.device_id,
            "test": True,
        })
        return await self.post(config, body, f"{config.id}:test-{timestamp}")
