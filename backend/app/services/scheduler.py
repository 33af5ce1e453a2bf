"""Scheduler service for ledger jobs using APScheduler."""
import logging
import os
import multiprocessing
from datetime import datetime, timedelta
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.config import settings
from app.database import AsyncSessionLocal
from app.services.hold import mature_earnings
from app.services.idempotency import get_redis_client
from app.services.outbox import deliver_pending_events
from app.services.payouts import release_orphaned_links

logger = logging.getLogger(__name__)

# Initialize scheduler
scheduler = AsyncIOScheduler()


async def acquire_lock(lock_name: str, timeout: int = 300) -> bool:
    """
    Acquire a distributed lock using Redis.

    Args:
        lock_name: Name of the lock
        timeout: Lock timeout in seconds (default: 5 minutes)

    Returns:
        True if lock acquired, False otherwise
    """
    try:
        client = await get_redis_client()
        # SET NX (only if not exists) with expiration
        result = await client.set(f"ledger:lock:{lock_name}", "1", nx=True, ex=timeout)
        return result is not None
    except Exception as e:
        logger.error(f"Failed to acquire lock {lock_name}: {e}")
        return False


async def release_lock(lock_name: str):
    """Release a distributed lock."""
    try:
        client = await get_redis_client()
        await client.delete(f"ledger:lock:{lock_name}")
    except Exception as e:
        logger.error(f"Failed to release lock {lock_name}: {e}")


async def mature_held_earnings():
    """Approve pending earnings whose hold period has elapsed."""
    lock_name = "mature_held_earnings"

    if not await acquire_lock(lock_name):
        logger.info(f"Skipping {lock_name} - another instance is running")
        return

    try:
        logger.info("Running mature_held_earnings job")
        async with AsyncSessionLocal() as session:
            approved = await mature_earnings(session)
            logger.info(f"Matured {approved} earnings")

    except Exception as e:
        logger.error(f"Error in mature_held_earnings: {e}")
    finally:
        await release_lock(lock_name)


async def deliver_ledger_events():
    """Send queued ledger notifications."""
    lock_name = "deliver_ledger_events"

    if not await acquire_lock(lock_name, timeout=120):
        logger.info(f"Skipping {lock_name} - another instance is running")
        return

    try:
        async with AsyncSessionLocal() as session:
            await deliver_pending_events(session)

    except Exception as e:
        logger.error(f"Error in deliver_ledger_events: {e}")
    finally:
        await release_lock(lock_name)


async def reconcile_payout_links():
    """Release earnings still linked to payouts that failed, were cancelled or returned."""
    lock_name = "reconcile_payout_links"

    if not await acquire_lock(lock_name):
        logger.info(f"Skipping {lock_name} - another instance is running")
        return

    try:
        logger.info("Running reconcile_payout_links job")
        async with AsyncSessionLocal() as session:
            released = await release_orphaned_links(session)
            if released:
                logger.warning(f"Reconciled {released} orphaned payout links")

    except Exception as e:
        logger.error(f"Error in reconcile_payout_links: {e}")
    finally:
        await release_lock(lock_name)


# Process names that may own the jobs. A plain `uvicorn main:app` or
# `python main.py` runs as MainProcess. With --workers the workers are
# SpawnProcess-1, SpawnProcess-2, ... and only the first one runs them
SCHEDULER_PROCESSES = ("MainProcess", "SpawnProcess-1")


def should_run_scheduler() -> bool:
    """Whether this process runs the ledger jobs."""
    return settings.RUN_SCHEDULER and multiprocessing.current_process().name in SCHEDULER_PROCESSES


def start_scheduler():
    """Start the APScheduler with all ledger jobs."""
    current_pid = os.getpid()
    current_process_name = multiprocessing.current_process().name

    if not should_run_scheduler():
        logger.info(f"Skipping scheduler on {current_process_name} (PID: {current_pid})")
        return

    if scheduler.running:
        logger.info("Scheduler already running")
        return

    logger.info(f"Starting scheduler on {current_process_name} (PID: {current_pid})...")

    # Job 1: Hold-period sweep
    scheduler.add_job(
        mature_held_earnings,
        trigger=IntervalTrigger(minutes=settings.HOLD_SWEEP_INTERVAL_MINUTES),
        id="mature_held_earnings",
        name="Mature held earnings",
        replace_existing=True
    )

    # Job 2: Outbox delivery every minute (staggered: starts at :00:20)
    scheduler.add_job(
        deliver_ledger_events,
        trigger=IntervalTrigger(minutes=1, start_date=datetime.utcnow() + timedelta(seconds=20)),
        id="deliver_ledger_events",
        name="Deliver ledger events",
        replace_existing=True
    )

    # Job 3: Payout link reconciliation every hour (staggered: starts at :05)
    scheduler.add_job(
        reconcile_payout_links,
        trigger=IntervalTrigger(hours=1, start_date=datetime.utcnow() + timedelta(minutes=5)),
        id="reconcile_payout_links",
        name="Reconcile payout links",
        replace_existing=True
    )

    scheduler.start()
    logger.info(f"Scheduler started with 3 ledger jobs on {current_process_name}")


def stop_scheduler():
    """Stop the APScheduler."""
    current_pid = os.getpid()
    current_process_name = multiprocessing.current_process().name

    if not should_run_scheduler():
        logger.info(f"Skipping scheduler shutdown on {current_process_name} (PID: {current_pid})")
        return

    logger.info(f"Stopping scheduler on {current_process_name} (PID: {current_pid})...")
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler stopped")
    else:
        logger.info("Scheduler was not running")
