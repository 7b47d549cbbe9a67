"""FastAPI application factory for the WebSocket bridge.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan starts the dispatcher at startup and closes every
broker connection at shutdown.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request

from clusterbus import __version__
from clusterbus.config import Settings, settings as default_settings
from clusterbus.connection import ClientFactory
from clusterbus.dispatcher import Dispatcher

logger = structlog.get_logger()


def create_app(
    settings: Optional[Settings] = None,
    *,
    client_factory: Optional[ClientFactory] = None,
) -> FastAPI:
    """Build and return the FastAPI application."""
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown lifecycle."""
        logger.info(
            "clusterbus.app_starting",
            version=__version__,
            environment=settings.environment,
            redis_host=settings.redis_host,
            redis_port=settings.redis_port,
            port=settings.port,
        )
        dispatcher = Dispatcher(
            settings.dispatcher_config(),
            client_factory=client_factory,
        ).start()
        app.state.dispatcher = dispatcher

        yield

        logger.info("clusterbus.app_shutdown")
        await dispatcher.close()

    app = FastAPI(
        title="ClusterBus",
        description="Payload-less cluster-wide event signaling over WebSockets",
        version=__version__,
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health_check(request: Request):
        """Report server status and broker connectivity."""
        stats = request.app.state.dispatcher.get_stats()
        status = "healthy" if stats["publisher_connected"] else "degraded"
        return {
            "status": status,
            "server": "ok",
            "version": __version__,
            "attached": stats["attached"],
        }

    from clusterbus.realtime.websocket import router as ws_router
    app.include_router(ws_router)

    return app


# Default app instance (used by uvicorn: clusterbus.main:app)
app = create_app()
