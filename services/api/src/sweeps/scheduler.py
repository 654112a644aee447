"""APScheduler setup for the periodic marketplace sweeps."""

from typing import Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from models.operations.auctions import auctions_expire
from models.operations.flash_deals import flash_deals_activate_scheduled, flash_deals_expire
from models.operations.notifications import push_dispatch_pending
from utils import log

logger = log.get_logger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None


async def run_time_sweeps() -> Dict[str, int]:
    """Run every time-driven transition once.

    Each sweep isolates its own per-item failures; a sweep that fails as a
    whole is logged and does not stop the others.
    """
    results: Dict[str, int] = {}
    for name, sweep in (
        ("deals_activated", flash_deals_activate_scheduled),
        ("deals_expired", flash_deals_expire),
        ("auctions_expired", auctions_expire),
    ):
        try:
            results[name] = await sweep()
        except Exception as e:
            logger.error(f"Sweep {name} failed: {e}", exc_info=True)
            results[name] = 0
    return results


async def time_sweep_job():
    results = await run_time_sweeps()
    if any(results.values()):
        logger.info(f"Sweep results: {results}")


async def push_dispatch_job():
    try:
        await push_dispatch_pending()
    except Exception as e:
        logger.error(f"Push dispatch failed: {e}", exc_info=True)


def init_scheduler(interval_seconds: int = 60, push_dispatch_interval_seconds: int = 15) -> AsyncIOScheduler:
    """Start the APScheduler with the sweep and push-dispatch jobs."""
    global _scheduler
    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        time_sweep_job,
        trigger=IntervalTrigger(seconds=interval_seconds),
        id="time_sweeps",
        name="Flash deal activation/expiry and auction expiry",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    _scheduler.add_job(
        push_dispatch_job,
        trigger=IntervalTrigger(seconds=push_dispatch_interval_seconds),
        id="push_dispatch",
        name="Push outbox dispatcher",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    _scheduler.start()
    logger.info(
        f"APScheduler started: sweeps every {interval_seconds}s, "
        f"push dispatch every {push_dispatch_interval_seconds}s"
    )
    return _scheduler


def shutdown_scheduler():
    """Gracefully shut down the scheduler."""
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("APScheduler shut down")
