"""Health endpoints."""

from datetime import UTC, datetime
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from jiradb.config import Settings, get_settings
from jiradb.dependencies import get_orchestrator, get_storage
from jiradb.services.sync_service import SyncOrchestrator
from jiradb.storage.client import StorageClient

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: datetime
    jira_configured: bool
    storage_worker: str
    is_syncing: bool


@router.get("/health", response_model=HealthResponse)
async def health_check(
    orchestrator: Annotated[SyncOrchestrator, Depends(get_orchestrator)],
    storage: Annotated[StorageClient, Depends(get_storage)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> HealthResponse:
    """
    Health check endpoint with sync status.

    Reports the storage worker lifecycle state without starting it.
    """
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(UTC),
        jira_configured=settings.jira_configured,
        storage_worker=storage.proxy.state.value,
        is_syncing=orchestrator.is_syncing,
    )


@router.get("/ready")
async def readiness_check() -> dict:
    """Simple readiness probe for container orchestration."""
    return {"status": "ready"}


@router.get("/live")
async def liveness_check() -> dict:
    """Simple liveness probe for container orchestration."""
    return {"status": "alive"}
