"""
Background Email Processor Service
==================================

Runs the delivery worker inside the host application's event loop. The
host starts and stops it from its lifespan hooks.

Every CHECK_INTERVAL_SECONDS it:
- Fans out SCHEDULED campaigns whose time has come
- Runs one delivery tick in a worker thread (the tick blocks on I/O)
- Refreshes the statistics of campaigns still SENDING
"""

import asyncio
import logging
from typing import Optional

from mailqueue.core.config import settings
from mailqueue.services.delivery_worker import DeliveryWorker
from mailqueue.services.email_campaign_service import (
    process_scheduled_campaigns, refresh_active_campaigns,
)
from mailqueue.services.recipients import RecipientResolver

logger = logging.getLogger(__name__)

# Global variables for background task management
background_task: Optional[asyncio.Task] = None
should_stop = False
_worker: Optional[DeliveryWorker] = None

# Log a status line every N idle cycles
STATUS_EVERY_CYCLES = 10


async def run_cycle(worker: DeliveryWorker, resolver: Optional[RecipientResolver] = None) -> int:
    """One processor cycle. Returns the number of entries claimed."""
    store = worker.store
    if resolver is not None:
        started = await asyncio.to_thread(process_scheduled_campaigns, store, resolver)
        if started:
            logger.info(f"Background processor: started {started} scheduled campaigns")

    result = await asyncio.to_thread(worker.run_tick)
    await asyncio.to_thread(refresh_active_campaigns, store)

    if result.claimed:
        logger.info(
            f"Background processor: processed {result.claimed} emails "
            f"({result.sent} sent, {result.retried} retried, {result.failed} failed)"
        )
    return result.claimed


async def background_email_processor(
    worker: DeliveryWorker,
    resolver: Optional[RecipientResolver] = None,
    interval: Optional[int] = None,
):
    """Main background email processor loop."""
    interval = interval or settings.CHECK_INTERVAL_SECONDS

    logger.info(f"Background email processor started (checking every {interval}s)")

    iteration = 0
    while not should_stop:
        try:
            iteration += 1
            processed = await run_cycle(worker, resolver)

            if iteration % STATUS_EVERY_CYCLES == 0 and processed == 0:
                stats = worker.stats
                logger.info(
                    f"Background email processor: running normally "
                    f"(sent={stats.sent}, failed={stats.failed}, healthy={stats.healthy})"
                )

            for _ in range(interval):
                if should_stop:
                    break
                await asyncio.sleep(1)

        except asyncio.CancelledError:
            logger.info("Background email processor cancelled")
            break
        except Exception as e:
            logger.error(f"Unexpected error in background email processor: {e}")
            await asyncio.sleep(interval)

    logger.info("Background email processor stopped")


async def start_background_email_processor(
    worker: DeliveryWorker,
    resolver: Optional[RecipientResolver] = None,
    interval: Optional[int] = None,
):
    """Start the background email processor."""
    global background_task, should_stop, _worker

    if is_background_processor_running():
        logger.warning("Background email processor already running")
        return

    should_stop = False
    _worker = worker
    background_task = asyncio.create_task(background_email_processor(worker, resolver, interval))
    logger.info("Background email processor task created")


async def stop_background_email_processor():
    """Stop the background email processor."""
    global background_task, should_stop, _worker

    if background_task is None:
        logger.info("Background email processor not running")
        return

    logger.info("Stopping background email processor...")
    should_stop = True
    background_task.cancel()

    try:
        await asyncio.wait_for(background_task, timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning("Background email processor did not stop within timeout")
    except asyncio.CancelledError:
        logger.info("Background email processor cancelled successfully")

    if _worker is not None:
        _worker.shutdown()
    background_task = None
    _worker = None
    logger.info("Background email processor stopped")


def is_background_processor_running() -> bool:
    """Check if the background email processor is running."""
    return background_task is not None and not background_task.done()


def get_background_processor_status() -> dict:
    """Get status information about the background processor."""
    if not is_background_processor_running():
        return {
            "running": False,
            "status": "Not started" if background_task is None else "Stopped",
            "worker": None,
        }

    return {
        "running": True,
        "status": "Running",
        "worker": _worker.stats.model_dump() if _worker else None,
    }
