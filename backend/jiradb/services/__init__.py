"""Services for Jira access, project registry and sync orchestration."""

from jiradb.services.jira_client import JiraClient, SourceFetchError
from jiradb.services.project_store import ProjectNotFoundError, ProjectStore
from jiradb.services.sync_service import SyncOrchestrator

__all__ = [
    "JiraClient",
    "ProjectNotFoundError",
    "ProjectStore",
    "SourceFetchError",
    "SyncOrchestrator",
]
