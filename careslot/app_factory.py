"""
FastAPI application factory.

Creates and configures the FastAPI application with:
- Booking routes
- Health and Prometheus metrics endpoints
- CORS middleware
"""
import logging
import os
from typing import Optional

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from careslot.api.booking_routes import router as booking_router
from careslot.observability.metrics import get_metrics
from careslot.startup import lifespan
from careslot.utils.circuit_breaker import get_circuit_stats

logger = logging.getLogger(__name__)


def configure_cors(app: FastAPI):
    """Configure CORS middleware for frontend origins (CORS_ORIGINS, comma separated)."""
    origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )


def configure_system_routes(app: FastAPI):
    """Health check and metrics."""

    @app.get("/health", tags=["health"])
    async def health_check():
        core = getattr(app.state, "booking_core", None)
        return {
            "status": "healthy" if core is not None else "starting",
            "sweeper_running": bool(core and core.sweeper.is_running),
            "circuits": get_circuit_stats(),
        }

    @app.get("/metrics", tags=["health"])
    async def metrics():
        payload, content_type = get_metrics()
        return Response(content=payload, media_type=content_type)


def create_app(booking_core=None, title: Optional[str] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        booking_core: Pre-built BookingCore; when omitted the lifespan builds one from settings

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(
        title=title or "Careslot Booking Core",
        description="""
Concurrent appointment-slot reservation and instant specialist matching.

## Features
- Short-lived holds with TTL, renew and release
- Atomic commit of holds into appointments
- Instant match and connect for immediate care
""",
        version="1.0.0",
        lifespan=lifespan,
        redirect_slashes=False,
    )
    app.state.booking_core = booking_core

    configure_cors(app)
    configure_system_routes(app)
    app.include_router(booking_router)

    return app
