"""Pydantic schemas for rows returned by the storage worker."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class ProjectOut(BaseModel):
    """Project row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    key: str
    name: str
    project_type: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class IssueOut(BaseModel):
    """Issue row with normalized fields and the raw payload."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    key: str
    project_id: str | None = None
    project_key: str
    summary: str
    description: str | None = None
    status: str | None = None
    status_category: str | None = None
    priority: str | None = None
    issue_type: str | None = None
    assignee_id: str | None = None
    assignee_name: str | None = None
    reporter_id: str | None = None
    reporter_name: str | None = None
    labels: str | None = None  # JSON-encoded list
    components: str | None = None  # JSON-encoded list
    fix_versions: str | None = None  # JSON-encoded list
    created_at: datetime | None = None
    updated_at: datetime
    raw_data: str
    is_deleted: bool = False
    synced_at: datetime | None = None


class ChangeHistoryOut(BaseModel):
    """Change history row (one field change)."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    issue_id: str
    issue_key: str
    history_id: str
    author_account_id: str | None = None
    author_display_name: str | None = None
    field: str
    field_type: str
    from_value: str | None = None
    from_string: str | None = None
    to_value: str | None = None
    to_string: str | None = None
    changed_at: datetime


class SyncRunOut(BaseModel):
    """Sync history row (audit log of runs)."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    project_key: str
    started_at: datetime
    completed_at: datetime | None = None
    status: str
    issues_synced: int = 0
    error_message: str | None = None


class SearchParams(BaseModel):
    """Search filters for the browse interface."""

    query: str | None = None
    project: str | None = None
    status: str | None = None
    assignee: str | None = None
    limit: int = Field(50, ge=1, le=500)
    offset: int = Field(0, ge=0)


class SearchResult(BaseModel):
    """Paginated search response."""

    issues: list[IssueOut]
    total: int


class DatabaseImage(BaseModel):
    """Versioned JSON image of the whole store (persist/restore)."""

    version: int = 1
    exported_at: datetime
    projects: list[ProjectOut] = Field(default_factory=list)
    issues: list[IssueOut] = Field(default_factory=list)
    change_history: list[ChangeHistoryOut] = Field(default_factory=list)
    sync_history: list[SyncRunOut] = Field(default_factory=list)
