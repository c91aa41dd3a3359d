"""Pydantic schemas for Jira payloads, sync state and storage rows."""

from jiradb.schemas.jira import IssuePage, JiraIssue, JiraProject, parse_jira_datetime
from jiradb.schemas.storage import (
    ChangeHistoryOut,
    DatabaseImage,
    IssueOut,
    ProjectOut,
    SearchParams,
    SearchResult,
    SyncRunOut,
)
from jiradb.schemas.sync import (
    ProjectConfig,
    ProjectStatus,
    StartSyncResponse,
    SyncCheckpoint,
    SyncProgress,
    SyncResult,
    SyncStatus,
)

__all__ = [
    "ChangeHistoryOut",
    "DatabaseImage",
    "IssueOut",
    "IssuePage",
    "JiraIssue",
    "JiraProject",
    "ProjectConfig",
    "ProjectOut",
    "ProjectStatus",
    "SearchParams",
    "SearchResult",
    "StartSyncResponse",
    "SyncCheckpoint",
    "SyncProgress",
    "SyncResult",
    "SyncRunOut",
    "SyncStatus",
    "parse_jira_datetime",
]
