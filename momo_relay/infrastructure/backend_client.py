"""
HTTP client for uploading transactions to the backend.
"""

import logging
from typing import Dict, List, Optional, Sequence

import httpx

from momo_relay.config.settings import Settings
from momo_relay.domain.transaction import Transaction
from momo_relay.utils.time import ms_to_iso

logger = logging.getLogger(__name__)


class SyncNotConfigured(RuntimeError):
    """Raised when an upload is attempted without a sync endpoint."""


class SyncUploadError(Exception):
    """Raised when the backend rejects an upload or cannot be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def transaction_to_payload(transaction: Transaction) -> Dict:
    """Serialise a stored transaction for the backend."""
    return {
        "local_id": transaction.id,
        "idempotency_key": transaction.idempotency_key,
        "sender": transaction.sender,
        "body": transaction.raw_message,
        "amount_minor_units": transaction.amount_minor_units,
        "currency": transaction.currency_code,
        "direction": transaction.direction.value,
        "provider": transaction.provider_id.value,
        "transaction_id": transaction.transaction_reference,
        "counterparty_phone": transaction.counterparty_phone,
        "balance_minor_units": transaction.balance_minor_units,
        "parsed_by": transaction.parsed_by.value,
        "confidence": transaction.confidence,
        "timestamp": ms_to_iso(transaction.occurred_at_ms or transaction.created_at_ms),
    }


class BackendClient:
    """Uploads transaction batches to the configured sync endpoint."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.settings.sync_endpoint_url)

    async def upload(self, transactions: Sequence[Transaction]) -> Dict[int, str]:
        """
        Upload a batch of transactions.

        Args:
            transactions: Stored transactions to upload

        Returns:
            Mapping of local id to the backend's id for every accepted record

        Raises:
            SyncNotConfigured: If no sync endpoint is set
            SyncUploadError: On a non-2xx response or a transport failure
        """
        if not self.configured:
            raise SyncNotConfigured("sync_endpoint_url is not set")

        body = {
            "device_id": self.settings.device_id,
            "transactions": [transaction_to_payload(t) for t in transactions],
        }
        headers = {"Content-Type": "application/json"}
        if self.settings.sync_api_key:
            headers["X-Api-Key"] = self.settings.sync_api_key

        try:
            async with httpx.AsyncClient(
                timeout=self.settings.sync_timeout_seconds,
                transport=self.transport,
            ) as client:
                response = await client.post(self.settings.sync_endpoint_url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise SyncUploadError(f"Backend unreachable: {e}") from e

        if not response.is_success:
            raise SyncUploadError(
                f"Backend returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise SyncUploadError(f"Backend returned invalid JSON: {e}", status_code=response.status_code) from e

        return self._remote_ids(data)

    @staticmethod
    def _remote_ids(data) -> Dict[int, str]:
        results: List = data.get("results", []) if isinstance(data, dict) else []
        remote_ids = {}
        for item in results:
            if not isinstance(item, dict):
                continue
            local_id, remote_id = item.get("local_id"), item.get("id")
            if local_id is None or remote_id in (None, ""):
                continue
            remote_ids[int(local_id)] = str(remote_id)
        logger.debug(f"Backend accepted {len(remote_ids)} transactions")
        return remote_ids
