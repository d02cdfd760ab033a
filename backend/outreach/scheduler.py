"""Optional in-process scheduler for the reply poll and cooldown sweep.

Disabled by default; deployments that call the ``/api/jobs`` routes from an
external cron leave ``ENABLE_SCHEDULER`` off.
"""

import asyncio
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from sqlmodel import Session

from outreach.core.config import settings
from outreach.core.db import engine
from outreach.services.cooldown_ledger import sweep_expired_cooldowns
from outreach.services.inbound_poller import poll_replies

logger = logging.getLogger(__name__)
scheduler = BackgroundScheduler(timezone="UTC")


def run_poll_replies():
    """Scheduler wrapper: the poller is async, jobs run in worker threads."""
    try:
        summary = asyncio.run(poll_replies())
        logger.info("Scheduled reply poll finished", extra=summary.as_dict())
    except Exception as e:
        logger.error("Scheduled reply poll failed", extra={"error": str(e)})


def run_cooldown_sweep():
    with Session(engine) as session:
        try:
            asyncio.run(sweep_expired_cooldowns(session))
        except Exception as e:
            session.rollback()
            logger.error("Scheduled cooldown sweep failed", extra={"error": str(e)})


def start_scheduler():
    if scheduler.running:
        return

    scheduler.add_job(
        run_poll_replies,
        "interval",
        minutes=settings.POLL_INTERVAL_MINUTES,
        id="poll_replies",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.add_job(
        run_cooldown_sweep,
        "interval",
        hours=settings.CLEANUP_INTERVAL_HOURS,
        id="cleanup_cooldowns",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.start()
    logger.info(
        "Background scheduler started",
        extra={
            "poll_interval_minutes": settings.POLL_INTERVAL_MINUTES,
            "cleanup_interval_hours": settings.CLEANUP_INTERVAL_HOURS,
        }
    )


def shutdown_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
