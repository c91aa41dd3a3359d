"""API routers."""

from jiradb.routers.health import router as health_router
from jiradb.routers.issues import router as issues_router
from jiradb.routers.projects import router as projects_router
from jiradb.routers.sync import router as sync_router

__all__ = ["health_router", "issues_router", "projects_router", "sync_router"]
