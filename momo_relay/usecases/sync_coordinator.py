"""
Sync coordinator: uploads pending transactions to the backend.

All runs go through one named scheduler job, so triggers replace each other
instead of piling up, and an asyncio lock keeps at most one run in flight.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from momo_relay.config.settings import Settings
from momo_relay.infrastructure.backend_client import BackendClient, SyncUploadError
from momo_relay.usecases.transaction_store import TransactionStore

logger = logging.getLogger(__name__)

SYNC_JOB_ID = "transaction_sync"
SWEEP_JOB_ID = "transaction_sync_sweep"


@dataclass
class SyncResult:
    """Outcome of one sync run."""
    uploaded: int = 0
    failed: int = 0
    skipped: bool = False
    error: Optional[str] = None


class SyncCoordinator:
    """Schedules and runs backend uploads of stored transactions."""

    def __init__(
        self,
        scheduler: BaseScheduler,
        store: TransactionStore,
        uploader: BackendClient,
        settings: Settings,
    ):
        self.scheduler = scheduler
        self.store = store
        self.uploader = uploader
        self.settings = settings
        self._lock = asyncio.Lock()

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt (1-based)."""
        attempt = max(1, attempt)
        delay = self.settings.sync_backoff_initial_seconds * (2 ** (attempt - 1))
        return min(delay, self.settings.sync_backoff_max_seconds)

    def _schedule(self, delay_seconds: float, attempt: int = 1) -> None:
        from momo_relay.infrastructure.scheduler import run_transaction_sync

        run_at = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
        self.scheduler.add_job(
            run_transaction_sync,
            trigger=DateTrigger(run_date=run_at),
            id=SYNC_JOB_ID,
            replace_existing=True,
            kwargs={"attempt": attempt},
        )
        logger.debug(f"Scheduled {SYNC_JOB_ID} (attempt {attempt}) for {run_at}")

    def enqueue_now(self) -> None:
        """Run a sync as soon as possible, replacing any scheduled one."""
        self._schedule(0)

    def on_transaction_appended(self, transaction_id: int) -> None:
        """Debounced trigger after a new transaction is stored."""
        delay = self.settings.sync_debounce_seconds
        job = self.scheduler.get_job(SYNC_JOB_ID)
        if job is not None and job.next_run_time is not None:
            if job.next_run_time <= datetime.now(timezone.utc) + timedelta(seconds=delay):
                # A run is already due soon and will pick this record up
                return
        logger.debug(f"Transaction {transaction_id} queued for sync")
        self._schedule(delay)

    def schedule_retry(self, attempt: int) -> None:
        """Schedule the next run after a failed attempt, with exponential backoff."""
        if attempt >= self.settings.sync_max_attempts:
            logger.warning(
                f"Sync failed {attempt} times in a row; leaving remaining records to the periodic sweep"
            )
            return
        delay = self.backoff_delay(attempt)
        logger.info(f"Sync attempt {attempt} failed, retrying in {delay:.0f}s")
        self._schedule(delay, attempt + 1)

    def schedule_periodic_sweep(self) -> None:
        from momo_relay.infrastructure.scheduler import run_sync_sweep

        self.scheduler.add_job(
            run_sync_sweep,
            trigger=IntervalTrigger(minutes=self.settings.sync_sweep_minutes),
            id=SWEEP_JOB_ID,
            replace_existing=True,
        )
        logger.info(f"Sync sweep every {self.settings.sync_sweep_minutes} minutes")

    async def run_once(self, attempt: int = 1) -> SyncResult:
        """
        Upload one batch of pending transactions.

        Args:
            attempt: Consecutive attempt number, used for the retry backoff

        Returns:
            SyncResult with the per-run counts
        """
        if not self.uploader.configured:
            logger.debug("No sync endpoint configured; skipping sync")
            return SyncResult(skipped=True, error="not configured")

        if self._lock.locked():
            # Collapse concurrent triggers into one follow-up run
            self._schedule(self.settings.sync_debounce_seconds, attempt)
            return SyncResult(skipped=True, error="sync already running")

        async with self._lock:
            batch = await self.store.list_pending(
                limit=self.settings.sync_batch_size,
                max_attempts=self.settings.sync_max_attempts,
            )
            if not batch:
                return SyncResult()

            ids = [t.id for t in batch]
            await self.store.mark_syncing(ids)

            try:
                remote_ids = await self.uploader.upload(batch)
            except SyncUploadError as e:
                logger.warning(f"Sync upload of {len(ids)} transactions failed: {e}")
                for transaction_id in ids:
                    await self.store.mark_failed(transaction_id, str(e))
                self.schedule_retry(attempt)
                return SyncResult(failed=len(ids), error=str(e))

            result = SyncResult()
            for transaction_id in ids:
                remote_id = remote_ids.get(transaction_id)
                if remote_id:
                    await self.store.mark_synced(transaction_id, remote_id)
                    result.uploaded += 1
                else:
                    await self.store.mark_failed(transaction_id, "no remote id")
                    result.failed += 1

        logger.info(f"Sync run complete: {result.uploaded} uploaded, {result.failed} failed")

        if result.failed:
            self.schedule_retry(attempt)
        elif len(ids) >= self.settings.sync_batch_size:
            self.enqueue_now()
        return result
