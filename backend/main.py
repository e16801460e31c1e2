"""FastAPI application entry point."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.config import settings
from backend.database import create_db_and_tables
from backend.utils.logging import setup_logging
from backend.api import positions, rating, notifications, markets, system


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    create_db_and_tables()

    from backend.engine.scheduler import start_scheduler, stop_scheduler
    from backend.engine.price_listener import get_listener
    start_scheduler()
    listener = get_listener()
    await listener.start()

    # Start Telegram bot if configured
    telegram_bot = None
    if settings.telegram_bot_token:
        from backend.services.telegram_bot import init_bot
        telegram_bot = init_bot(main_loop=asyncio.get_running_loop())
        telegram_bot.start()

    yield

    if telegram_bot:
        telegram_bot.stop()
    await listener.stop()
    stop_scheduler()

    from backend.engine.auto_closer import get_evaluator
    from backend.engine.settlement_executor import get_executor
    await get_evaluator().drain()
    await get_executor().drain()


app = FastAPI(
    title="Deal Settlement Service",
    description="Leveraged deal lifecycle, automatic closing and rating for the trading simulator",
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

# Mount routers
app.include_router(positions.router)
app.include_router(rating.router)
app.include_router(notifications.router)
app.include_router(markets.router)
app.include_router(system.router)
