"""Typed coordinator-side facade over the storage proxy."""

from datetime import datetime
from typing import Any

from pydantic import TypeAdapter

from jiradb.schemas.jira import JiraIssue, JiraProject
from jiradb.schemas.storage import (
    ChangeHistoryOut,
    IssueOut,
    ProjectOut,
    SearchParams,
    SearchResult,
    SyncRunOut,
)
from jiradb.storage import protocol
from jiradb.storage.proxy import StorageProxy

_datetime_adapter = TypeAdapter(datetime | None)
_projects_adapter = TypeAdapter(list[ProjectOut])
_history_adapter = TypeAdapter(list[ChangeHistoryOut])
_runs_adapter = TypeAdapter(list[SyncRunOut])


class StorageClient:
    """One method per storage action; results come back as schema objects."""

    def __init__(self, proxy: StorageProxy):
        self.proxy = proxy

    async def _call(self, action: str, payload: dict[str, Any] | None = None) -> Any:
        return await self.proxy.call(action, payload)

    async def ping(self) -> bool:
        return await self._call(protocol.PING) == protocol.PONG

    async def init(self) -> None:
        await self._call(protocol.INIT)

    # Projects

    async def upsert_project(self, project: JiraProject) -> None:
        await self._call(protocol.UPSERT_PROJECT, project.model_dump(mode="json", by_alias=True))

    async def get_projects(self) -> list[ProjectOut]:
        return _projects_adapter.validate_python(await self._call(protocol.GET_PROJECTS))

    # Issues

    async def upsert_issue(self, issue: JiraIssue) -> None:
        await self._call(
            protocol.UPSERT_ITEM,
            issue.model_dump(mode="json", by_alias=True, exclude_none=True),
        )

    async def get_issue(self, key: str) -> IssueOut | None:
        data = await self._call(protocol.GET_ISSUE, {"key": key})
        return IssueOut.model_validate(data) if data else None

    async def search_issues(self, params: SearchParams) -> SearchResult:
        data = await self._call(protocol.SEARCH_ISSUES, params.model_dump(mode="json"))
        return SearchResult.model_validate(data)

    async def get_issue_history(self, key: str, field: str | None = None) -> list[ChangeHistoryOut]:
        data = await self._call(protocol.GET_ISSUE_HISTORY, {"key": key, "field": field})
        return _history_adapter.validate_python(data)

    async def get_latest_updated_at(self, project_key: str) -> datetime | None:
        data = await self._call(protocol.GET_LATEST_UPDATED_AT, {"project_key": project_key})
        return _datetime_adapter.validate_python(data)

    async def get_issue_count(self, project_key: str) -> int:
        return await self._call(protocol.GET_COUNT, {"project_key": project_key})

    async def get_project_statuses(self, project_key: str) -> list[str]:
        return await self._call(protocol.GET_PROJECT_STATUSES, {"project_key": project_key})

    # Sync history

    async def start_run(self, project_key: str) -> int:
        return await self._call(protocol.START_RUN, {"project_key": project_key})

    async def update_run_progress(self, run_id: int, issues_synced: int) -> None:
        await self._call(
            protocol.UPDATE_RUN_PROGRESS, {"run_id": run_id, "issues_synced": issues_synced}
        )

    async def complete_run(
        self,
        run_id: int,
        success: bool,
        issues_synced: int,
        error_message: str | None = None,
    ) -> None:
        await self._call(
            protocol.COMPLETE_RUN,
            {
                "run_id": run_id,
                "success": success,
                "issues_synced": issues_synced,
                "error_message": error_message,
            },
        )

    async def get_sync_history(
        self, project_key: str | None = None, limit: int = 20
    ) -> list[SyncRunOut]:
        data = await self._call(
            protocol.GET_SYNC_HISTORY, {"project_key": project_key, "limit": limit}
        )
        return _runs_adapter.validate_python(data)

    async def persist(self) -> None:
        await self._call(protocol.PERSIST)
