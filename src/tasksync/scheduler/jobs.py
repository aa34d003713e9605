"""
APScheduler jobs for background sync.

The periodic pass picks up whatever the local mutation path has queued since
the last run. It is skipped while the remote authority is unreachable, and
while a manually triggered pass holds the run-lock.

The scheduler runs inside the same process as the API (wired in __main__.py).
"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from tasksync.config import get_settings
from tasksync.sync.orchestrator import SyncAlreadyRunningError, build_orchestrator
from tasksync.sync.protocol import BatchProtocolClient, ConnectivityProber

logger = logging.getLogger(__name__)


def build_scheduler(engine) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine to pass to the orchestrator.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _periodic_sync,
        trigger="interval",
        minutes=settings.sync_interval_minutes,
        id="periodic_sync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        kwargs={"engine": engine},
    )

    return scheduler


async def _periodic_sync(engine) -> None:
    """Periodic job: probe the remote authority, then run one pass if it is up."""
    settings = get_settings()

    try:
        async with BatchProtocolClient(
            settings.api_base_url, timeout=settings.request_timeout_seconds
        ) as client:
            prober = ConnectivityProber(client, timeout=settings.health_timeout_seconds)
            if not await prober.probe():
                logger.info("Periodic sync skipped: remote authority offline")
                return

            result = await build_orchestrator(engine, client, settings).run()
            logger.info(
                "Periodic sync done: %d synced, %d failed",
                result.synced_count, result.failed_count,
            )

    except SyncAlreadyRunningError:
        logger.info("Periodic sync skipped: a pass is already running")
    except Exception as exc:
        logger.error("Periodic sync failed: %s", exc)
