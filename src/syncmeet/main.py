"""
Main application module for the SyncMeet signaling server.

This module sets up the FastAPI application with lifespan management, CORS
for browser clients and the signaling router.
"""

from contextlib import asynccontextmanager
import time
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from syncmeet import __version__
from syncmeet.config import settings
from syncmeet.managers.logging_manager import get_logger
from syncmeet.webrtc import router as signaling_router
from syncmeet.webrtc.hub import SignalingHub, signaling_hub

logger = get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Logs startup and shutdown and cancels pending join-request timers of the
    bound signaling hub on the way out.
    """
    startup_start_time = time.time()
    logger.info(
        "Application startup initiated",
        extra={
            "app_name": settings.APP_NAME,
            "version": __version__,
            "environment": "production" if settings.is_production else "development",
            "debug_mode": settings.DEBUG,
        },
    )
    logger.info(f"Application startup completed in {time.time() - startup_start_time:.3f}s")

    yield

    shutdown_start_time = time.time()
    logger.info("Application shutdown initiated")
    await app.state.signaling_hub.shutdown()
    logger.info(f"Application shutdown completed in {time.time() - shutdown_start_time:.3f}s")


def create_app(hub: Optional[SignalingHub] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        hub: Signaling hub serving this app; the process-wide instance when omitted
    """
    app = FastAPI(
        title="SyncMeet Signaling API",
        description="""
    ## SyncMeet Signaling API

    Coordination server for peer-to-peer meetings. Media never passes through
    the server; it only admits participants and relays negotiation messages.

    ### Features
    - **Host-moderated admission**: the first participant hosts, later ones wait for approval
    - **Host handover**: a departing host is replaced deterministically
    - **Signaling relay**: offer/answer/ICE forwarding and room chat, reactions and raised hands
    """,
        version=__version__,
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Signaling", "description": "WebSocket signaling, ICE configuration and room status"},
            {"name": "System", "description": "System health and monitoring endpoints"},
        ],
    )
    app.state.signaling_hub = hub or signaling_hub
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.include_router(signaling_router)

    @app.get("/", tags=["System"])
    async def root():
        """Liveness check."""
        return {"message": "SyncMeet signaling server is running", "version": __version__}

    return app


app = create_app()


def run() -> None:
    """Entry point of the ``syncmeet-server`` script."""
    uvicorn.run("syncmeet.main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG, log_level="info")


if __name__ == "__main__":
    run()
