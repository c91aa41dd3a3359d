"""FastAPI application for the jiradb backend."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from jiradb.config import get_settings
from jiradb.routers import health_router, issues_router, projects_router, sync_router
from jiradb.services.jira_client import JiraClient, SourceFetchError
from jiradb.services.project_store import ProjectNotFoundError, ProjectStore
from jiradb.services.sync_service import (
    AlreadyRunningError,
    NoEnabledProjectsError,
    SyncOrchestrator,
)
from jiradb.storage.channels import channel_factory_from_settings
from jiradb.storage.client import StorageClient
from jiradb.storage.protocol import ProxyOperationError, ProxyTransportError
from jiradb.storage.proxy import StorageProxy
from jiradb.tasks.scheduler import setup_scheduler, shutdown_scheduler
from jiradb.websocket import manager as ws_manager
from jiradb.websocket import websocket_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()

# Rate limiter
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"],
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting jiradb backend...")

    # The storage worker itself starts lazily on the first storage call
    proxy = StorageProxy(
        channel_factory_from_settings(settings),
        handshake_attempts=settings.worker_handshake_attempts,
        handshake_interval=settings.worker_handshake_interval_seconds,
        call_timeout=settings.worker_call_timeout_seconds,
    )
    storage = StorageClient(proxy)
    project_store = ProjectStore(settings.project_store_path)
    orchestrator = SyncOrchestrator(
        JiraClient.from_settings(settings),
        storage,
        project_store,
        settings,
        publisher=ws_manager,
    )

    app.state.storage = storage
    app.state.project_store = project_store
    app.state.orchestrator = orchestrator

    if not settings.jira_configured:
        logger.warning("Jira is not configured; set JIRA_ENDPOINT, JIRA_USERNAME and JIRA_API_TOKEN")

    setup_scheduler(orchestrator, settings)

    yield

    # Shutdown
    shutdown_scheduler()
    await orchestrator.shutdown()
    await proxy.close()
    logger.info("jiradb backend shut down")


# Create FastAPI app
app = FastAPI(
    title="jiradb API",
    description="Local, incrementally synced mirror of Jira issues",
    version="0.1.0",
    lifespan=lifespan,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AlreadyRunningError)
async def already_running_handler(request: Request, exc: AlreadyRunningError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(NoEnabledProjectsError)
async def no_enabled_projects_handler(request: Request, exc: NoEnabledProjectsError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ProjectNotFoundError)
async def project_not_found_handler(request: Request, exc: ProjectNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(SourceFetchError)
async def source_fetch_handler(request: Request, exc: SourceFetchError):
    logger.warning(f"Jira request failed: {exc}")
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.exception_handler(ProxyTransportError)
async def storage_unavailable_handler(request: Request, exc: ProxyTransportError):
    logger.error(f"Storage worker unavailable: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": f"Storage unavailable: {exc}"},
    )


@app.exception_handler(ProxyOperationError)
async def storage_operation_handler(request: Request, exc: ProxyOperationError):
    logger.error(f"Storage operation failed: {exc}")
    return JSONResponse(status_code=500, content={"detail": str(exc)})


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# Include routers
app.include_router(health_router)
app.include_router(sync_router, prefix=settings.api_v1_prefix)
app.include_router(projects_router, prefix=settings.api_v1_prefix)
app.include_router(issues_router, prefix=settings.api_v1_prefix)
app.include_router(websocket_router)  # WebSocket at /ws/sync


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "jiradb API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "jiradb.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
