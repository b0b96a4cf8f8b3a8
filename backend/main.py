"""FastAPI application entry point for the Conductor backend.

This module initializes the FastAPI application with its middleware, routers
and the orchestration core. Components are built in one direction:
bridge → SessionController → ExecutionCoordinator. The coordinator receives
the bridge, never the controller.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agents.registry import get_agent_registry
from api import routes
from api import websocket as websocket_api
from api.routes import router
from api.websocket import websocket_router
from bridges import select_bridge
from config import settings
from events import get_event_bus
from execution_coordinator import ExecutionCoordinator
from metrics import MetricsCollector
from models.database import SessionStore
from session_controller import SessionController

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        bridge_mode=settings.bridge_mode,
    )

    event_bus = get_event_bus()
    registry = get_agent_registry()

    session_store: SessionStore | None = None
    try:
        session_store = SessionStore(settings.database_path)
        await session_store.init()
    except Exception as e:
        # Keep the API available even if persistence initialization fails.
        logger.warning("session_store_init_failed", error=str(e))
        session_store = None

    bridge = await select_bridge(settings)
    controller = SessionController(
        bridge,
        event_bus,
        session_store=session_store,
        metrics_collector=MetricsCollector(),
        settings=settings,
    )
    coordinator = ExecutionCoordinator(
        bridge,
        event_bus,
        registry=registry,
        settings=settings,
    )

    routes.set_session_controller(controller)
    routes.set_execution_coordinator(coordinator)
    routes.set_agent_registry(registry)
    websocket_api.set_session_controller(controller)
    websocket_api.set_execution_coordinator(coordinator)

    app.state.session_controller = controller
    app.state.execution_coordinator = coordinator
    app.state.session_store = session_store

    logger.info("application_started", bridge=bridge.kind.value)

    yield

    logger.info("application_shutting_down")
    await coordinator.shutdown()
    await controller.shutdown()
    logger.info("application_shutdown_complete")


app = FastAPI(
    title="Conductor",
    description="Orchestration backend that plans projects and runs them through "
    "a virtual team of AI agents over a native CLI or a remote model API.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

app.include_router(router, tags=["sessions"])
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    return {
        "message": "Conductor API",
        "docs": "/docs",
        "health": "/api/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
