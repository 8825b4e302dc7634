"""FastAPI application entry point for the model comparison backend.

This module initializes the FastAPI application with all middleware,
routers, and event handlers configured.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router
from api.routes import set_run_manager as set_routes_run_manager
from api.websocket import set_run_manager as set_websocket_run_manager
from api.websocket import websocket_router
from comparison.gate import ApprovalGate
from comparison.orchestrator import ComparisonOrchestrator
from comparison.prompts import PromptModificationStore
from comparison.selection import TargetSelectionService
from config import configure_logging, settings
from events import get_event_bus
from models.database import SettingsStore
from pipelines import InvocationPipeline, MockPipeline
from pipelines.litellm_pipeline import LiteLLMPipeline
from pipelines.tools import ToolExecutor
from run_manager import RunManager

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


def build_pipeline(selection: TargetSelectionService) -> InvocationPipeline:
    """Pick the invocation pipeline for the configured mode."""
    if settings.use_mock_llm:
        logger.info("pipeline_selected", pipeline="mock")
        return MockPipeline(chunk_delay=0.02)

    logger.info(
        "pipeline_selected",
        pipeline="litellm",
        tool_workspace_root=settings.tool_workspace_root,
    )
    return LiteLLMPipeline(
        resolve_model=selection.resolve_model,
        tool_executor=ToolExecutor(settings.tool_workspace_root),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Restores saved settings, wires the orchestrator to the event bus and
    cancels outstanding comparisons on shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    # Startup
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        use_mock_llm=settings.use_mock_llm,
    )

    settings_store: SettingsStore | None = None
    try:
        settings_store = SettingsStore(settings.database_path)
        await settings_store.init()
    except Exception as e:
        # Keep the API available even if persistence initialization fails.
        logger.warning("settings_store_init_failed", error=str(e))
        settings_store = None

    selection = TargetSelectionService(settings_store)
    await selection.load()
    prompt_store = PromptModificationStore(settings_store)
    await prompt_store.load()

    orchestrator = ComparisonOrchestrator(
        build_pipeline(selection),
        gate=ApprovalGate(default_timeout=settings.approval_timeout_seconds),
    )
    run_manager = RunManager(
        orchestrator,
        get_event_bus(),
        prompt_store=prompt_store,
        selection=selection,
    )

    # Register run manager with routes
    set_routes_run_manager(run_manager)
    set_websocket_run_manager(run_manager)

    # Store on app.state for access
    app.state.run_manager = run_manager
    app.state.settings_store = settings_store

    logger.info("resources_initialized", selected_targets=selection.selected_targets())
    logger.info("application_started")

    yield

    # Shutdown
    logger.info("application_shutting_down")

    run_manager = app.state.run_manager
    await run_manager.cleanup_all()
    run_manager.orchestrator.dispose()

    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Model Comparison API",
    description="Backend API for sending one chat request to several language "
    "models at once and comparing their streamed answers side by side.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include HTTP routes
app.include_router(router, tags=["comparisons"])

# Include WebSocket routes
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint that points to the API documentation.

    Returns:
        A welcome message with documentation URL.
    """
    return {
        "message": "Model Comparison API",
        "docs": "/docs",
        "health": "/health",
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
