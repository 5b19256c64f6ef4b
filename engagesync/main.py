import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from engagesync.core.config import get_settings
from engagesync.core.database import init_db
from engagesync.api import config, sync
from engagesync.services.scheduler import start_scheduler, stop_scheduler

logging.basicConfig(
    level=logging.DEBUG if get_settings().debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown events."""
    # Startup
    await init_db()
    start_scheduler()
    yield
    # Shutdown
    stop_scheduler()


# Create FastAPI application
app = FastAPI(
    title="EngageSync",
    description="Resumable sync of dialer and call-scoring platforms into a workspace database",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(config.router)
app.include_router(sync.router)
