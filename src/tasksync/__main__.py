"""
Main entrypoint.

Usage:
    python -m tasksync               # starts the API + periodic sync scheduler
    python -m tasksync sync          # runs one sync pass and prints the result
    uvicorn tasksync.api.main:app --port 3000   # API only, no scheduler
"""
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


async def _run_once() -> int:
    from tasksync.config import get_settings
    from tasksync.db.engine import get_engine
    from tasksync.sync.orchestrator import build_orchestrator
    from tasksync.sync.protocol import BatchProtocolClient, ConnectivityProber

    settings = get_settings()
    engine = get_engine()

    async with BatchProtocolClient(
        settings.api_base_url, timeout=settings.request_timeout_seconds
    ) as client:
        prober = ConnectivityProber(client, timeout=settings.health_timeout_seconds)
        if not await prober.probe():
            logger.error("Remote authority at %s is unreachable.", settings.api_base_url)
            return 1
        result = await build_orchestrator(engine, client, settings).run()

    print(result.model_dump_json(indent=2))
    return 0 if result.success else 2


async def _serve() -> None:
    import uvicorn

    from tasksync.api.main import app
    from tasksync.config import get_settings
    from tasksync.db.engine import get_engine
    from tasksync.scheduler.jobs import build_scheduler

    settings = get_settings()
    engine = get_engine()

    scheduler = build_scheduler(engine)
    scheduler.start()
    logger.info(
        "Scheduler started (sync every %d min against %s)",
        settings.sync_interval_minutes, settings.api_base_url,
    )

    server = uvicorn.Server(uvicorn.Config(app, host=settings.host, port=settings.port))
    try:
        await server.serve()
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: `python -m tasksync sync` or just `python -m tasksync`
    if len(sys.argv) > 1 and sys.argv[1] == "sync":
        sys.exit(asyncio.run(_run_once()))
    else:
        asyncio.run(_serve())
