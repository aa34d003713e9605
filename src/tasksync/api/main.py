"""FastAPI application factory."""
from fastapi import FastAPI

from tasksync.api.routes import sync as sync_routes, tasks


def create_app() -> FastAPI:
    """Build and return the FastAPI app.

    Tables are created lazily by get_engine() on the first request that
    needs the database.
    """
    app = FastAPI(
        title="Task Sync API",
        description="Offline-first task store with batched remote sync",
        version="0.1.0",
    )

    app.include_router(tasks.router, prefix="/api/tasks", tags=["tasks"])
    app.include_router(sync_routes.router, prefix="/api", tags=["sync"])

    return app


# Module-level app instance for uvicorn
app = create_app()
