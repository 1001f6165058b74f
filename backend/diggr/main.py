import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from diggr.config import get_settings
from diggr.database import engine, Base
from diggr.routes import router
from diggr.quota import roll_forward_expired_windows

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# Create all tables on startup (dev convenience - use Alembic for production)
Base.metadata.create_all(bind=engine)

scheduler = AsyncIOScheduler(timezone="UTC")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: tidy up expired usage windows shortly after each month starts
    scheduler.add_job(
        roll_forward_expired_windows,
        trigger=CronTrigger(day=1, hour=0, minute=5, timezone="UTC"),
        id="usage_window_rollover",
        replace_existing=True,
    )
    scheduler.start()
    logger.info("Scheduler started - usage window rollover scheduled for 00:05 UTC on the 1st")
    yield
    # Shutdown
    scheduler.shutdown(wait=False)
    logger.info("Scheduler shut down")


app = FastAPI(
    title="Diggr API",
    version="0.1.0",
    description="AI playlist generation backend for Diggr",
    lifespan=lifespan,
)

# ── CORS ──────────────────────────────────────────────
origins = [o.strip() for o in settings.cors_origins.split(",")]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routes ────────────────────────────────────────────
app.include_router(router)
