"""API routes for the project registry."""

from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from jiradb.dependencies import get_orchestrator, get_project_store, get_storage
from jiradb.schemas.sync import ProjectConfig, ProjectStatus
from jiradb.services.project_store import ProjectStore
from jiradb.services.sync_service import SyncOrchestrator
from jiradb.storage.client import StorageClient

router = APIRouter(prefix="/projects", tags=["projects"])


class EnableRequest(BaseModel):
    """Body of an enable/disable request."""

    enabled: bool


@router.get("", response_model=list[ProjectStatus])
async def list_projects(
    orchestrator: Annotated[SyncOrchestrator, Depends(get_orchestrator)],
) -> list[ProjectStatus]:
    """Registered projects with issue counts and checkpoint state."""
    return await orchestrator.get_projects_with_status()


@router.post("/init", response_model=list[ProjectConfig])
async def init_projects(
    orchestrator: Annotated[SyncOrchestrator, Depends(get_orchestrator)],
) -> list[ProjectConfig]:
    """Discover projects in Jira. New projects are registered disabled."""
    return await orchestrator.init_projects()


@router.put("/{key}/enabled", response_model=ProjectConfig)
async def set_project_enabled(
    key: str,
    body: EnableRequest,
    project_store: Annotated[ProjectStore, Depends(get_project_store)],
) -> ProjectConfig:
    return await project_store.set_enabled(key, body.enabled)


@router.get("/{key}/statuses", response_model=list[str])
async def project_statuses(
    key: str,
    storage: Annotated[StorageClient, Depends(get_storage)],
) -> list[str]:
    """Distinct issue statuses seen in a project."""
    return await storage.get_project_statuses(key)
