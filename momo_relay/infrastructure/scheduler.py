"""
APScheduler setup with persistent job store for sync and delivery retries.

Job functions live at module level so the SQLAlchemy job store can persist
them by reference; they resolve their services lazily at run time.
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.triggers.interval import IntervalTrigger

from momo_relay.config.settings import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

DELIVERY_SWEEP_JOB_ID = "webhook_delivery_sweep"

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the scheduler instance."""
    global scheduler

    if scheduler is None:
        # Use SQLite for persistent job storage
        jobstores = {
            'default': SQLAlchemyJobStore(url=settings.jobs_database_url)
        }

        scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            timezone='UTC',
            job_defaults={'coalesce': True, 'max_instances': 1, 'misfire_grace_time': 300}
        )

    return scheduler


async def start_scheduler() -> None:
    """Start the scheduler."""
    sched = get_scheduler()
    if not sched.running:
        sched.start()
        logger.info("Scheduler started")


async def stop_scheduler() -> None:
    """Stop the scheduler gracefully."""
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped")


def schedule_delivery_sweep() -> None:
    """Periodically resume webhook deliveries that have not settled."""
    sched = get_scheduler()
    sched.add_job(
        retry_failed_deliveries,
        trigger=IntervalTrigger(minutes=settings.webhook_sweep_minutes),
        id=DELIVERY_SWEEP_JOB_ID,
        replace_existing=True,
    )
    logger.info(f"Webhook delivery sweep every {settings.webhook_sweep_minutes} minutes")


async def run_transaction_sync(attempt: int = 1) -> None:
    """
    Upload pending transactions to the backend.

    This function is called by the scheduler for the named sync job.
    """
    from momo_relay.container import get_services

    try:
        await get_services().sync.run_once(attempt=attempt)
    except Exception as e:
        logger.exception(f"Error running transaction sync: {e}")


async def run_sync_sweep() -> None:
    """Periodic safety net: re-trigger sync for anything left pending."""
    from momo_relay.container import get_services

    logger.debug("Running sync sweep")
    get_services().sync.enqueue_now()


async def retry_failed_deliveries() -> None:
    """
    Resume unsettled webhook deliveries below the sweep attempt cap.

    Picks up retryable FAILED entries plus PENDING and stale SENT entries left
    behind when the process stopped mid-delivery.
    """
    from momo_relay.container import get_services

    ledger = get_services().ledger

    try:
        entries = await ledger.list_retryable(settings.webhook_sweep_max_attempts)
    except Exception as e:
        logger.exception(f"Error loading retryable deliveries: {e}")
        return

    if entries:
        logger.info(f"Resuming {len(entries)} unsettled webhook deliveries")

    for entry in entries:
        try:
            await ledger.retry(entry.id)
        except Exception as e:
            logger.exception(f"Error retrying delivery {entry.id}: {e}")
