"""
Main entry point for the FastAPI application.
Configures lifespan events and mounts routers.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import uvicorn
from fastapi import FastAPI

from relaynode.api.routes import router as api_router
from relaynode.api.routes import ws_router
from relaynode.config.settings import Settings, settings
from relaynode.services.node import NodeService
from relaynode.services.overlay import IOverlay

# Setup Logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# pylint: disable=redefined-outer-name
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application Lifecycle Manager.
    Starts the node's overlay and background loops, stops them on shutdown.
    """
    node: NodeService = app.state.node
    logger.info("Starting relay node...")
    await node.start()

    yield

    logger.info("Shutting down relay node...")
    await node.shutdown()


def create_app(app_settings: Optional[Settings] = None, overlay: Optional[IOverlay] = None) -> FastAPI:
    """Factory to create the app around a freshly built node."""
    app_settings = app_settings or settings

    application = FastAPI(
        title=app_settings.app_name,
        description="Room replication and WebRTC signaling relay",
        version="0.1.0",
        lifespan=lifespan,
    )
    application.state.node = NodeService(app_settings, overlay=overlay)

    # Routers
    application.include_router(api_router, prefix="/api")
    application.include_router(ws_router)

    return application


def run() -> None:
    """Console entry point."""
    uvicorn.run(create_app(), host=settings.host, port=settings.server_port)


if __name__ == "__main__":
    run()
