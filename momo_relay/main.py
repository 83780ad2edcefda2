"""
MoMo Relay - Main Application Entry Point

Receives mobile money SMS from a device forwarder, parses them through AI and
regex tiers, stores them durably, syncs them to the backend and relays them
to signed webhooks. Built on FastAPI, SQLite and APScheduler.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from momo_relay.api.sms_ingest import router as sms_router
from momo_relay.api.transactions import router as transactions_router
from momo_relay.api.webhooks import router as webhooks_router
from momo_relay.container import get_services
from momo_relay.infrastructure.database import close_database, init_database
from momo_relay.infrastructure.scheduler import (
    get_scheduler,
    schedule_delivery_sweep,
    start_scheduler,
    stop_scheduler,
)
from momo_relay.config.settings import get_settings
from momo_relay.utils.time import now_ms

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting MoMo Relay...")
    started_at_ms = now_ms()

    # Initialize database
    logger.info("Initializing database...")
    await init_database()
    logger.info("Database initialized")

    # Start scheduler
    logger.info("Starting scheduler...")
    await start_scheduler()

    services = get_services()
    await services.pipeline.start()

    # Resume anything left over from a previous run
    services.sync.schedule_periodic_sweep()
    services.sync.enqueue_now()
    schedule_delivery_sweep()
    relay_recovery = asyncio.create_task(
        services.pipeline.resume_unrelayed(started_at_ms), name="relay-recovery"
    )

    logger.info("Application startup complete!")
    logger.info(f"Device id: {settings.device_id}")
    logger.info(f"Backend sync: {'enabled' if settings.sync_endpoint_url else 'disabled'}")

    yield

    # Shutdown
    logger.info("Shutting down...")
    if not relay_recovery.done():
        relay_recovery.cancel()
    await asyncio.gather(relay_recovery, return_exceptions=True)
    await services.pipeline.stop()
    await stop_scheduler()
    await close_database()
    logger.info("Application shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="MoMo Relay",
    description="Mobile money SMS parsing, sync and webhook relay",
    version="1.0.0",
    lifespan=lifespan
)

# Register routers
app.include_router(sms_router, tags=["SMS"])
app.include_router(webhooks_router, tags=["Webhooks"])
app.include_router(transactions_router, tags=["Transactions"])


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": "MoMo Relay",
        "version": "1.0.0",
        "status": "running",
        "endpoints": {
            "inbound_sms": "/sms/inbound",
            "webhooks": "/webhooks",
            "delivery_logs": "/delivery-logs",
            "transactions": "/transactions",
            "health": "/health"
        }
    }


@app.get("/scheduler/status")
async def scheduler_status():
    """Get scheduler status and pending jobs."""
    scheduler = get_scheduler()

    jobs = []
    for job in scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run": str(job.next_run_time) if job.next_run_time else None
        })

    return {
        "running": scheduler.running,
        "jobs_count": len(jobs),
        "jobs": jobs
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "momo_relay.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug
    )
