"""
Scheduler module: APScheduler setup for background jobs
"""
import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.config import UPGRADE_HOLD_TICK_SECONDS, WAITLIST_EXPIRY_TICK_SECONDS
from app.tasks.waitlist_jobs import job_upgrade_hold_tick, job_expire_waitlist

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler()


def start_scheduler():
    """Register all jobs and start the scheduler."""

    # 1) Expire lapsed offers and hold free rooms for waiting customers
    scheduler.add_job(
        job_upgrade_hold_tick,
        trigger=IntervalTrigger(seconds=UPGRADE_HOLD_TICK_SECONDS),
        id="upgrade_hold_tick",
        name="Upgrade hold tick",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    # 2) Expire waitlist entries whose stay is over
    scheduler.add_job(
        job_expire_waitlist,
        trigger=IntervalTrigger(seconds=WAITLIST_EXPIRY_TICK_SECONDS),
        id="expire_waitlist",
        name="Expire waitlist entries",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.start()
    logger.info("Scheduler started with %d jobs", len(scheduler.get_jobs()))


def stop_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
