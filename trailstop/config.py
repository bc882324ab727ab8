"""Application configuration via environment variables."""

from pathlib import Path
from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    database_url: str = "sqlite:///./trailstop.db"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173"]  # Vite dev server

    # Queue path (Celery on Redis)
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: str = ""  # empty -> redis_url
    queue_name: str = "trailing_stops"
    worker_concurrency: int = 10
    tick_interval_seconds: float = 2.0
    tick_max_retries: int = 3
    retry_base_delay_seconds: float = 2.0
    lease_ttl_seconds: float = 10.0

    # Poller path (APScheduler in-process)
    poll_interval_seconds: float = 3.0
    failover_probe_seconds: float = 0.0  # 0 disables live migration back to the queue

    # Per-call timeouts inside a tick
    price_timeout_seconds: float = 5.0
    store_timeout_seconds: float = 5.0
    notify_timeout_seconds: float = 5.0

    # Market data
    hyperliquid_base_url: str = ""  # empty -> SDK mainnet default

    # Telegram
    telegram_bot_token: str = ""
    telegram_chat_ids: list[int] = []

    model_config = {"env_prefix": "TRAIL_", "env_file": ".env"}

    @property
    def broker_url(self) -> str:
        return self.celery_broker_url or self.redis_url


settings = Settings()
