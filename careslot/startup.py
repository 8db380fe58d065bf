"""
Application startup and shutdown lifecycle management.

Handles:
- Booking core construction (ledger, directory, tracker backends)
- Expiry sweeper start/stop
- Graceful shutdown of the ledger pool and HTTP clients
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from careslot.config import get_settings

logger = logging.getLogger(__name__)


async def init_booking_core(app: FastAPI):
    """Build the booking core unless one was injected (tests, embedding)."""
    if getattr(app.state, "booking_core", None) is not None:
        logger.info("Using injected booking core")
        return app.state.booking_core

    from careslot.services.booking_core import create_booking_core

    core = await create_booking_core(get_settings())
    app.state.booking_core = core
    return core


async def init_workers(app: FastAPI, core):
    """Initialize background workers."""
    if not core.settings.SWEEPER_ENABLED:
        logger.info("Expiry sweeper disabled (SWEEPER_ENABLED=false)")
        return

    try:
        core.sweeper.start()
        logger.info("✅ Expiry sweeper started")
    except Exception as e:
        logger.error(f"Failed to start expiry sweeper: {str(e)}")


async def stop_workers(app: FastAPI):
    """Stop background workers and release backend resources."""
    core = getattr(app.state, "booking_core", None)
    if core is None:
        return

    try:
        await core.close()
        logger.info("✅ Booking core closed")
    except Exception as e:
        logger.error(f"Error closing booking core: {str(e)}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle manager."""
    # === STARTUP ===
    logger.info("Starting booking core...")

    core = await init_booking_core(app)
    await init_workers(app, core)

    yield

    # === SHUTDOWN ===
    logger.info("Shutting down services...")
    await stop_workers(app)
    logger.info("Booking core shutdown complete")
