from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./tasksync.db"
    api_base_url: str = "http://localhost:3000/api"  # remote authority base URL
    host: str = "0.0.0.0"
    port: int = 3000

    sync_batch_size: int = 50
    max_retries: int = 3  # failures before a task is escalated to sync_status="error"
    health_timeout_seconds: float = 5.0
    request_timeout_seconds: float = 30.0
    sync_interval_minutes: int = 5
    group_by_record: bool = True

    # Both off by default: failed entries are retried on every pass, forever.
    retry_backoff_seconds: float = 0.0
    retry_backoff_max_seconds: float = 300.0
    dead_letter_after: Optional[int] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
