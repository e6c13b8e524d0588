"""FastAPI application entry point for the Rendezvous engagement API."""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rendezvous.app.config import get_settings
from rendezvous.infra.database import async_session, init_db
from rendezvous.services.reminder_monitor import send_date_reminders
from rendezvous.services.side_effect_dispatcher import SideEffectDispatcher

logger = logging.getLogger(__name__)


async def notification_retry_loop():
    """Redeliver outbox notifications whose backoff has elapsed, then prune settled rows."""
    dispatcher = SideEffectDispatcher()
    while True:
        try:
            async with async_session() as db:
                delivered = await dispatcher.retry_pending(db)
                if delivered:
                    logger.info("Notification retry: delivered %d", delivered)
                await dispatcher.prune_settled(db)
        except Exception as e:
            logger.error("Notification retry error: %s", e)
        await asyncio.sleep(max(30, settings.notification_retry_base_seconds))


async def reminder_monitor_loop():
    """Queue date reminders every monitor interval."""
    dispatcher = SideEffectDispatcher()
    while True:
        try:
            async with async_session() as db:
                queued = await send_date_reminders(db, dispatcher)
                if queued:
                    logger.info("Reminder monitor: queued %d reminders", queued)
        except Exception as e:
            logger.error("Reminder monitor error: %s", e)
        await asyncio.sleep(settings.monitor_interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: initialize database and start background loops."""
    await init_db()

    tasks = [
        asyncio.create_task(notification_retry_loop()),
        asyncio.create_task(reminder_monitor_loop()),
    ]
    yield
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="Rendezvous Engagement API",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS middleware: allow all origins in debug mode
_cors_origins = settings.cors_origins_list
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=("*" not in _cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
from rendezvous.app.routes.engagement import router as engagement_router  # noqa: E402

app.include_router(engagement_router)


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok", "service": "rendezvous"}


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "rendezvous.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
