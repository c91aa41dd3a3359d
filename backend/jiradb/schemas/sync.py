"""Pydantic schemas for sync targets, checkpoints and run reporting."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, computed_field


class SyncCheckpoint(BaseModel):
    """
    Resume position for an interrupted sync of one project.

    ``updated_since`` is the lower bound of the query the interrupted run was
    paginating, so that ``start_position`` still points into the same
    result set when the run resumes.
    """

    last_processed_updated_at: datetime
    start_position: int = Field(ge=0)
    total_at_checkpoint: int = 0  # Advisory only
    updated_since: datetime | None = None


class ProjectConfig(BaseModel):
    """A syncable project (sync target) tracked in the project store."""

    key: str
    name: str
    enabled: bool = False
    last_synced_at: datetime | None = None
    sync_checkpoint: SyncCheckpoint | None = None


class ProjectStatus(ProjectConfig):
    """Project config enriched with storage-side counts."""

    issue_count: int | None = None
    has_checkpoint: bool = False


class SyncProgress(BaseModel):
    """Progress event emitted at least once per processed batch."""

    project_key: str
    phase: Literal["issues"] = "issues"
    current: int
    total: int  # Advisory; the source is live and may change between pages
    message: str


SyncRunStatus = Literal["completed", "failed", "cancelled"]


class SyncResult(BaseModel):
    """Outcome of one sync run for one project."""

    project_key: str
    status: SyncRunStatus
    items_synced: int = 0
    total_reported: int = 0
    started_at: datetime
    completed_at: datetime
    error_message: str | None = None
    error_type: str | None = None

    @computed_field
    @property
    def success(self) -> bool:
        return self.status == "completed"


class SyncStatus(BaseModel):
    """Snapshot of the orchestrator state."""

    is_syncing: bool
    progress: SyncProgress | None = None


class StartSyncResponse(BaseModel):
    """Response of a start-sync request."""

    started: bool
