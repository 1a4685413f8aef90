"""MetaSync - Scheduler Jobs.

APScheduler interval jobs: leads every 15 minutes, insights hourly, token
refresh daily. Each also fires once at startup. A tick never overlaps the
previous one and never raises into the scheduler.
"""

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from metasync.core.logging import get_logger

if TYPE_CHECKING:
    from metasync.container import Container

logger = get_logger("scheduler")


async def leads_sync_job(container: "Container"):
    """Incremental leads sync for the configured page."""
    try:
        report = await container.leads_sync.sync()
        if report.aborted:
            logger.warning(f"Scheduled leads sync aborted: {report.error}", extra={"job": "leads_sync"})
        else:
            logger.info(
                f"Scheduled leads sync complete: {report.inserted} inserted, "
                f"{report.updated} updated, cursor advanced: {report.cursor_advanced}",
                extra={"job": "leads_sync"},
            )
    except Exception as e:
        logger.error(f"Scheduled leads sync failed: {e}", extra={"job": "leads_sync"})


async def insights_sync_job(container: "Container"):
    """Last 90 minutes of ad insights for every account."""
    try:
        report = await container.insights_sync.sync()
        logger.info(
            f"Scheduled insights sync complete: {report.total_count} rows, "
            f"{len(report.failed)} accounts failed",
            extra={"job": "insights_sync"},
        )
    except Exception as e:
        logger.error(f"Scheduled insights sync failed: {e}", extra={"job": "insights_sync"})


async def token_refresh_job(container: "Container"):
    """Keep the long-lived access token ahead of expiry."""
    results = await container.token_store.refresh_all()
    for kind, result in results.items():
        if result.success:
            logger.info(f"Token '{kind}': {result.message}", extra={"job": "token_refresh"})
        elif result.expired:
            logger.error(
                f"Token '{kind}' expired; manual re-issue required. {result.error}",
                extra={"job": "token_refresh"},
            )
        else:
            logger.warning(f"Token '{kind}' refresh failed: {result.error}", extra={"job": "token_refresh"})


def start_scheduler(container: "Container") -> Optional[AsyncIOScheduler]:
    """Configure and start the scheduler. Returns ``None`` when disabled."""
    config = container.config
    if not config.scheduler_enabled:
        logger.info("Scheduler disabled via config")
        return None

    scheduler = AsyncIOScheduler(timezone=timezone.utc)
    now = datetime.now(timezone.utc)
    common = {
        "args": [container],
        "replace_existing": True,
        "max_instances": 1,
        "coalesce": True,
        "next_run_time": now,
        "misfire_grace_time": 300,
    }
    credentials = container.credentials

    if credentials.get("page_id"):
        scheduler.add_job(
            leads_sync_job,
            "interval",
            minutes=config.leads_sync_interval_minutes,
            id="leads_sync",
            **common,
        )
        logger.info(f"Leads sync every {config.leads_sync_interval_minutes} minutes")
    else:
        logger.warning("⚠️ META_PAGE_ID not configured; leads sync not scheduled")

    if credentials.get("access"):
        scheduler.add_job(
            insights_sync_job,
            "interval",
            minutes=config.insights_sync_interval_minutes,
            id="insights_sync",
            **common,
        )
        logger.info(f"Insights sync every {config.insights_sync_interval_minutes} minutes")
    else:
        logger.warning("⚠️ META_ACCESS_TOKEN not configured; insights sync not scheduled")

    if credentials.get("app_id") and credentials.get("app_secret"):
        scheduler.add_job(
            token_refresh_job,
            "interval",
            hours=config.token_refresh_interval_hours,
            id="token_refresh",
            **common,
        )
        logger.info(f"Token refresh every {config.token_refresh_interval_hours} hours")
    else:
        logger.warning("⚠️ META_APP_ID / META_APP_SECRET not configured; token refresh not scheduled")

    scheduler.start()
    logger.info("Scheduler started")
    return scheduler


def stop_scheduler(scheduler: Optional[AsyncIOScheduler]):
    """Shutdown the scheduler gracefully."""
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
