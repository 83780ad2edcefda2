"""
Operator endpoints for stored transactions and backend sync.
"""

import logging
from dataclasses import asdict
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from momo_relay.container import Services, get_services
from momo_relay.domain.transaction import TransactionResponse
from momo_relay.usecases.transaction_store import TransactionNotFound

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/transactions", response_model=List[TransactionResponse])
async def list_transactions(limit: int = 50, services: Services = Depends(get_services)):
    """Most recent transactions first."""
    return await services.store.list_recent(limit)


@router.get("/transactions/pending", response_model=List[TransactionResponse])
async def list_pending_transactions(limit: int = 50, services: Services = Depends(get_services)):
    return await services.store.list_pending(limit, max_attempts=services.settings.sync_max_attempts)


@router.get("/transactions/stats")
async def transaction_stats(services: Services = Depends(get_services)):
    return {"sync_states": await services.store.count_by_state()}


@router.get("/transactions/{transaction_id}", response_model=TransactionResponse)
async def get_transaction(transaction_id: int, services: Services = Depends(get_services)):
    transaction = await services.store.get(transaction_id)
    if transaction is None:
        raise HTTPException(status_code=404, detail=f"Transaction {transaction_id} not found")
    return transaction


@router.post("/transactions/{transaction_id}/requeue", response_model=TransactionResponse)
async def requeue_transaction(transaction_id: int, services: Services = Depends(get_services)):
    """Give a FAILED transaction a fresh sync attempt budget and trigger a sync."""
    try:
        transaction = await services.store.requeue(transaction_id)
    except TransactionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    services.sync.enqueue_now()
    return transaction


@router.post("/sync")
async def run_sync(services: Services = Depends(get_services)):
    """Run one sync batch immediately."""
    result = await services.sync.run_once()
    return asdict(result)
