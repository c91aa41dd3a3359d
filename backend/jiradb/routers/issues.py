"""API routes for browsing mirrored issues."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query

from jiradb.dependencies import get_storage
from jiradb.schemas.storage import ChangeHistoryOut, IssueOut, SearchParams, SearchResult
from jiradb.storage.client import StorageClient

router = APIRouter(prefix="/issues", tags=["issues"])


@router.get("", response_model=SearchResult)
async def search_issues(
    storage: Annotated[StorageClient, Depends(get_storage)],
    q: str | None = Query(None, description="Substring of summary, description or key"),
    project: str | None = None,
    status: str | None = None,
    assignee: str | None = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> SearchResult:
    """Search issues, most recently updated first."""
    params = SearchParams(
        query=q,
        project=project,
        status=status,
        assignee=assignee,
        limit=limit,
        offset=offset,
    )
    return await storage.search_issues(params)


@router.get("/{key}", response_model=IssueOut)
async def get_issue(
    key: str,
    storage: Annotated[StorageClient, Depends(get_storage)],
) -> IssueOut:
    issue = await storage.get_issue(key)
    if issue is None:
        raise HTTPException(status_code=404, detail=f"Issue {key} not found")
    return issue


@router.get("/{key}/history", response_model=list[ChangeHistoryOut])
async def get_issue_history(
    key: str,
    storage: Annotated[StorageClient, Depends(get_storage)],
    field: str | None = Query(None, description="Only changes to this field"),
) -> list[ChangeHistoryOut]:
    """Field changes of an issue, newest first."""
    return await storage.get_issue_history(key, field)
