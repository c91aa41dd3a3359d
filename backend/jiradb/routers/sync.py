"""API routes controlling sync runs."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from jiradb.dependencies import get_orchestrator, get_storage
from jiradb.schemas.storage import SyncRunOut
from jiradb.schemas.sync import StartSyncResponse, SyncResult, SyncStatus
from jiradb.services.sync_service import SyncOrchestrator
from jiradb.storage.client import StorageClient

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["sync"])


class CancelSyncResponse(BaseModel):
    """Response of a cancel request."""

    cancelled: bool


@router.post("/start", response_model=StartSyncResponse)
async def start_sync(
    orchestrator: Annotated[SyncOrchestrator, Depends(get_orchestrator)],
) -> StartSyncResponse:
    """
    Start syncing all enabled projects in the background.

    Progress is streamed on ``/ws/sync``. Returns 409 if a sync is running.
    """
    return orchestrator.start_sync()


@router.post("/cancel", response_model=CancelSyncResponse)
async def cancel_sync(
    orchestrator: Annotated[SyncOrchestrator, Depends(get_orchestrator)],
) -> CancelSyncResponse:
    """Request cancellation; the run stops at the next batch boundary."""
    return CancelSyncResponse(cancelled=orchestrator.cancel_sync())


@router.get("/status", response_model=SyncStatus)
async def sync_status(
    orchestrator: Annotated[SyncOrchestrator, Depends(get_orchestrator)],
) -> SyncStatus:
    return orchestrator.get_sync_status()


@router.get("/history", response_model=list[SyncRunOut])
async def sync_history(
    storage: Annotated[StorageClient, Depends(get_storage)],
    project: str | None = None,
    limit: int = Query(20, ge=1, le=200),
) -> list[SyncRunOut]:
    """Recent sync runs, newest first."""
    return await storage.get_sync_history(project, limit=limit)


@router.post("/projects/{key}", response_model=SyncResult)
async def sync_project(
    key: str,
    orchestrator: Annotated[SyncOrchestrator, Depends(get_orchestrator)],
) -> SyncResult:
    """Sync one project and wait for the result."""
    return await orchestrator.sync_target(key)
