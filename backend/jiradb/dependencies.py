"""FastAPI dependencies resolving the components wired in the lifespan."""

from fastapi import Request

from jiradb.services.project_store import ProjectStore
from jiradb.services.sync_service import SyncOrchestrator
from jiradb.storage.client import StorageClient


def get_orchestrator(request: Request) -> SyncOrchestrator:
    """Dependency to get the sync orchestrator."""
    return request.app.state.orchestrator


def get_storage(request: Request) -> StorageClient:
    """Dependency to get the storage client."""
    return request.app.state.storage


def get_project_store(request: Request) -> ProjectStore:
    """Dependency to get the project registry."""
    return request.app.state.project_store
