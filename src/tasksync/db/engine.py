"""SQLModel engine singleton."""
from sqlmodel import SQLModel, create_engine

from tasksync.config import get_settings

_engine = None


def get_engine():
    """Return the module-level engine, creating it (and its tables) on first call.

    Also used as the FastAPI dependency for routes that need the engine.
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine(
            settings.database_url,
            connect_args={"check_same_thread": False},  # SQLite only; safe for FastAPI
        )
        # Import all models so metadata is populated before create_all
        from tasksync.models.task import Task  # noqa
        from tasksync.models.sync import SyncLog, SyncQueueEntry  # noqa
        SQLModel.metadata.create_all(_engine)
    return _engine
