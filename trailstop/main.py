"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from trailstop.config import settings
from trailstop.database import create_db_and_tables
from trailstop.utils.logging import setup_logging
from trailstop.api import positions, system


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    create_db_and_tables()

    # Re-register every live position before accepting requests
    from trailstop.engine.bootstrap import bootstrap, default_poller, default_queue, shutdown
    from trailstop.services.store import PositionStore
    bootstrap(PositionStore(), default_queue, default_poller)

    # Start Telegram bot if configured
    telegram_bot = None
    if settings.telegram_bot_token:
        from trailstop.services.telegram_bot import init_bot
        telegram_bot = init_bot()
        telegram_bot.start()

    yield

    if telegram_bot:
        telegram_bot.stop()
    shutdown()


app = FastAPI(
    title="Trailing Stop Service",
    description="Trailing stop monitoring with a Celery queue path and an in-process fallback",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(positions.router)
app.include_router(system.router)
