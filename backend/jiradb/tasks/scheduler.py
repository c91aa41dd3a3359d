"""Background scheduler for periodic sync of enabled projects."""

import logging
from datetime import UTC, datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from jiradb.config import Settings
from jiradb.services.sync_service import AlreadyRunningError, SyncOrchestrator

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


async def auto_sync_job(orchestrator: SyncOrchestrator) -> None:
    """Background job that starts a sync of all enabled projects."""
    logger.info("Starting scheduled sync")
    try:
        orchestrator.start_sync()
    except AlreadyRunningError:
        logger.info("Sync already running; skipping scheduled run")


def setup_scheduler(orchestrator: SyncOrchestrator, settings: Settings) -> AsyncIOScheduler | None:
    """Start the scheduler when auto-sync is configured."""
    global scheduler

    if settings.auto_sync_interval_minutes <= 0:
        logger.info("Auto-sync disabled")
        return None
    if not settings.jira_configured:
        logger.warning("Auto-sync requested but Jira is not configured; scheduler not started")
        return None

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        auto_sync_job,
        trigger=IntervalTrigger(minutes=settings.auto_sync_interval_minutes),
        args=[orchestrator],
        next_run_time=datetime.now(UTC) + timedelta(seconds=10),
        id="auto_sync",
        name="Sync enabled Jira projects",
        replace_existing=True,
    )

    scheduler.start()
    logger.info(f"Scheduler started (every {settings.auto_sync_interval_minutes} minutes)")

    return scheduler


def shutdown_scheduler() -> None:
    """Shut down the scheduler gracefully."""
    global scheduler

    if scheduler:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler shut down")
        scheduler = None
