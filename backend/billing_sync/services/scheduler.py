"""
Background Job Scheduler.

WHAT: Configures and manages APScheduler for the periodic subscription sync.

WHY: Webhooks are the primary write path but they get lost (deploys,
provider outages, signature misconfiguration). The cron sync re-reads
every active subscription from its provider and heals missed PayPal
activations, so drift never lives longer than one interval.

HOW: AsyncIOScheduler with an in-memory job store. Each run opens its
own session through session_scope, since there is no request.

Example:
    # In the app lifespan (main.py):
    await start_scheduler()
    try:
        yield
    finally:
        await shutdown_scheduler()
"""

import logging
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.triggers.interval import IntervalTrigger

from billing_sync.core.config import settings
from billing_sync.db.session import session_scope
from billing_sync.services.reconciler import SubscriptionReconciler


logger = logging.getLogger(__name__)

SYNC_JOB_ID = "subscription_sync"

# Global scheduler instance
_scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> Optional[AsyncIOScheduler]:
    """Get the global scheduler instance."""
    return _scheduler


async def run_sync_now() -> Dict[str, Any]:
    """
    Run the cron sync immediately.

    WHAT: The same work the interval job does, outside the schedule.

    WHY: Used by the job itself and by operators after an incident.

    Returns:
        Dict with stripe/paypal/healed result dicts and the cancelled count
    """
    async with session_scope() as db:
        result = await SubscriptionReconciler(db).run_cron_sync()
    logger.info(
        f"Scheduled subscription sync finished: {result.get('cancelled', 0)} cancelled",
        extra={"sync_result": result},
    )
    return result


async def _scheduled_sync() -> None:
    # A failing run must not kill the job; the next interval retries.
    try:
        await run_sync_now()
    except Exception as e:
        logger.error(f"Scheduled subscription sync failed: {e}", exc_info=True)


async def start_scheduler() -> None:
    """
    Start the background job scheduler.

    HOW:
    1. Creates AsyncIOScheduler with memory job store
    2. Registers the subscription sync job
    3. Starts the scheduler

    Note: Called from the app lifespan on startup.
    """
    global _scheduler

    if not settings.SCHEDULER_ENABLED:
        logger.info("Scheduler disabled by configuration")
        return

    if _scheduler is not None and _scheduler.running:
        logger.warning("Scheduler already running")
        return

    _scheduler = AsyncIOScheduler(
        jobstores={"default": MemoryJobStore()},
        executors={"default": AsyncIOExecutor()},
        job_defaults={
            "coalesce": True,  # Combine multiple missed runs into one
            "max_instances": 1,  # Never overlap two syncs
            "misfire_grace_time": 300,
        },
        timezone="UTC",
    )

    _register_sync_job()

    _scheduler.start()
    logger.info(
        f"Scheduler started with subscription sync every {settings.SYNC_INTERVAL_HOURS} hours"
    )


def _register_sync_job() -> None:
    """Register the periodic subscription sync job."""
    if _scheduler is None:
        logger.error("Cannot register job: scheduler not initialized")
        return

    _scheduler.add_job(
        func=_scheduled_sync,
        trigger=IntervalTrigger(hours=settings.SYNC_INTERVAL_HOURS),
        id=SYNC_JOB_ID,
        name="Subscription Sync",
        replace_existing=True,
    )

    logger.info(
        f"Registered subscription sync job (interval: {settings.SYNC_INTERVAL_HOURS}h)"
    )


async def shutdown_scheduler() -> None:
    """
    Shut down the background job scheduler.

    Note: Called from the app lifespan on shutdown.
    """
    global _scheduler

    if _scheduler is None:
        logger.info("Scheduler not running")
        return

    if not _scheduler.running:
        logger.info("Scheduler already stopped")
        _scheduler = None
        return

    logger.info("Shutting down scheduler...")
    _scheduler.shutdown(wait=True)
    _scheduler = None
    logger.info("Scheduler shut down successfully")


def get_scheduler_status() -> dict:
    """
    Get scheduler status information.

    WHY: Exposed on /health so a stopped sync is visible to monitoring.

    Returns:
        Dict with scheduler status and job details
    """
    if _scheduler is None:
        return {
            "running": False,
            "jobs": [],
            "message": "Scheduler not initialized",
        }

    jobs = []
    for job in _scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run_time": str(job.next_run_time) if job.next_run_time else None,
            "trigger": str(job.trigger),
        })

    return {
        "running": _scheduler.running,
        "jobs": jobs,
        "message": "Scheduler is running" if _scheduler.running else "Scheduler is paused",
    }
