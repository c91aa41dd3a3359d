"""Jira Cloud REST API v3 client with restartable issue pagination."""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

import httpx
from pydantic import TypeAdapter, ValidationError

from jiradb.config import Settings
from jiradb.schemas.jira import IssuePage, JiraIssue, JiraProject

logger = logging.getLogger(__name__)

SEARCH_PATH = "/rest/api/3/search/jql"
PROJECTS_PATH = "/rest/api/3/project"
MYSELF_PATH = "/rest/api/3/myself"

_projects_adapter = TypeAdapter(list[JiraProject])

ProgressCallback = Callable[[int, int], None]


class SourceFetchError(Exception):
    """Raised when Jira cannot be reached or answers with an error."""

    pass


class JiraClient:
    """
    Client for the Jira Cloud REST API.

    Features:
    - HTTP basic auth with an API token
    - JQL filtering by project and ``updated`` lower bound
    - Offset pagination exposed as an explicit async iterator

    Failed requests are not retried here; callers decide what to do.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        api_token: str,
        timezone: str = "UTC",
        page_size: int = 100,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth = httpx.BasicAuth(username, api_token)
        self.timezone = ZoneInfo(timezone)
        self.page_size = page_size
        self.timeout = timeout
        self.transport = transport

        self.headers: dict[str, str] = {
            "Accept": "application/json",
        }

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "JiraClient":
        return cls(
            base_url=settings.jira_endpoint,
            username=settings.jira_username,
            api_token=settings.jira_api_token,
            timezone=settings.jira_timezone,
            page_size=settings.page_size,
            timeout=settings.jira_timeout_seconds,
            **kwargs,
        )

    async def _request(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET ``path`` and return the decoded JSON body."""
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, auth=self.auth, transport=self.transport
            ) as client:
                response = await client.get(url, headers=self.headers, params=params)
                response.raise_for_status()
                return response.json()

        except httpx.HTTPStatusError as e:
            if e.response.status_code == 401:
                raise SourceFetchError(
                    "Invalid API credentials. Please check your username and API token."
                ) from e
            raise SourceFetchError(
                f"Jira API error: {e.response.status_code} - {e.response.text[:200]}"
            ) from e
        except httpx.RequestError as e:
            raise SourceFetchError(f"Request to Jira failed: {e}") from e
        except ValueError as e:
            raise SourceFetchError(f"Invalid JSON from Jira: {e}") from e

    def build_jql(self, project_key: str, updated_since: datetime | None = None) -> str:
        """
        JQL for one project ordered by ascending ``updated``.

        Jira interprets JQL dates in the account's timezone at minute
        resolution, so the bound is converted and truncated (never later
        than ``updated_since``).
        """
        jql = f'project = "{project_key}"'
        if updated_since is not None:
            local = updated_since.astimezone(self.timezone)
            jql += f' AND updated >= "{local.strftime("%Y-%m-%d %H:%M")}"'
        return jql + " ORDER BY updated ASC, key ASC"

    async def search_issue_page(
        self,
        project_key: str,
        *,
        updated_since: datetime | None = None,
        start_at: int = 0,
        max_results: int | None = None,
    ) -> IssuePage:
        """Fetch one page of issues (with changelog) for a project."""
        params: dict[str, Any] = {
            "jql": self.build_jql(project_key, updated_since),
            "startAt": start_at,
            "maxResults": max_results or self.page_size,
            "fields": "*navigable",
            "expand": "changelog",
        }

        logger.debug(f"Fetching {project_key} issues: startAt={start_at}, since={updated_since}")
        data = await self._request(SEARCH_PATH, params)
        try:
            return IssuePage.model_validate(data)
        except ValidationError as e:
            raise SourceFetchError(f"Unexpected search response: {e}") from e

    def iter_issue_batches(
        self,
        project_key: str,
        *,
        updated_since: datetime | None = None,
        start_position: int = 0,
        on_progress: ProgressCallback | None = None,
    ) -> "IssueBatchIterator":
        """Batches of issues in ascending ``updated`` order, starting at an offset."""
        return IssueBatchIterator(
            self,
            project_key,
            updated_since=updated_since,
            start_position=start_position,
            page_size=self.page_size,
            on_progress=on_progress,
        )

    async def get_projects(self) -> list[JiraProject]:
        data = await self._request(PROJECTS_PATH)
        try:
            return _projects_adapter.validate_python(data)
        except ValidationError as e:
            raise SourceFetchError(f"Unexpected project list response: {e}") from e

    async def test_connection(self) -> bool:
        try:
            await self._request(MYSELF_PATH)
        except SourceFetchError as e:
            logger.warning(f"Jira connection test failed: {e}")
            return False
        return True


class IssueBatchIterator:
    """
    Lazy, finite sequence of non-empty issue batches.

    Iteration ends only when a page comes back empty; the ``total``
    reported by Jira is advisory since the result set is live.
    ``position`` is the offset of the next page to fetch.
    """

    def __init__(
        self,
        client: JiraClient,
        project_key: str,
        *,
        updated_since: datetime | None = None,
        start_position: int = 0,
        page_size: int = 100,
        on_progress: ProgressCallback | None = None,
    ):
        if start_position < 0:
            raise ValueError("start_position must be non-negative")
        self.client = client
        self.project_key = project_key
        self.updated_since = updated_since
        self.start_position = start_position
        self.page_size = page_size
        self.on_progress = on_progress

        self.position = start_position
        self.total = 0
        self._exhausted = False

    def __aiter__(self) -> "IssueBatchIterator":
        return self

    async def __anext__(self) -> list[JiraIssue]:
        if self._exhausted:
            raise StopAsyncIteration

        page = await self.client.search_issue_page(
            self.project_key,
            updated_since=self.updated_since,
            start_at=self.position,
            max_results=self.page_size,
        )
        self.total = page.total

        if not page.issues:
            self._exhausted = True
            raise StopAsyncIteration

        self.position += len(page.issues)
        if self.on_progress:
            self.on_progress(self.position, self.total)

        return page.issues
