"""Pytest fixtures for jiradb backend tests."""

import asyncio
import queue
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from jiradb.config import Settings
from jiradb.schemas.jira import IssuePage, JiraIssue, JiraProject, parse_jira_datetime
from jiradb.services.jira_client import JiraClient, SourceFetchError
from jiradb.services.project_store import ProjectStore
from jiradb.services.sync_service import SyncOrchestrator
from jiradb.storage import protocol
from jiradb.storage.channels import ThreadWorkerChannel, WorkerChannel
from jiradb.storage.client import StorageClient
from jiradb.storage.proxy import StorageProxy

BASE_TIME = datetime(2024, 1, 18, 10, 0, 0, tzinfo=UTC)


def make_issue(
    number: int,
    updated: datetime,
    project: str = "PROJ",
    summary: str | None = None,
    status: str = "To Do",
    assignee: str = "Ada Lovelace",
    histories: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Issue payload shaped like ``/rest/api/3/search/jql`` output."""
    return {
        "id": str(10000 + number),
        "key": f"{project}-{number}",
        "fields": {
            "summary": summary or f"Issue {number}",
            "description": {
                "type": "doc",
                "version": 1,
                "content": [
                    {
                        "type": "paragraph",
                        "content": [
                            {"type": "text", "text": "Steps to "},
                            {"type": "text", "text": "reproduce"},
                        ],
                    }
                ],
            },
            "status": {"name": status, "statusCategory": {"name": "To Do"}},
            "priority": {"name": "Medium"},
            "issuetype": {"name": "Task"},
            "assignee": {"accountId": "acc-1", "displayName": assignee},
            "reporter": {"accountId": "acc-2", "displayName": "Grace Hopper"},
            "labels": ["backend"],
            "components": [{"name": "api"}],
            "fixVersions": [],
            "project": {"id": "100", "key": project},
            "created": "2024-01-01T09:00:00.000+0000",
            "updated": updated.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "+0000",
        },
        "changelog": {"histories": histories or []},
    }


def make_history(history_id: str, created: datetime, field: str = "status") -> dict[str, Any]:
    return {
        "id": history_id,
        "author": {"accountId": "acc-1", "displayName": "Ada Lovelace"},
        "created": created.strftime("%Y-%m-%dT%H:%M:%S.000+0000"),
        "items": [
            {
                "field": field,
                "fieldtype": "jira",
                "from": "1",
                "fromString": "To Do",
                "to": "3",
                "toString": "In Progress",
            }
        ],
    }


class FakeJiraClient(JiraClient):
    """JiraClient serving in-memory issues with Jira's offset pagination."""

    def __init__(self, page_size: int = 2):
        super().__init__(
            "https://jira.example.com", "user@example.com", "token", page_size=page_size
        )
        self.issues: dict[str, list[dict[str, Any]]] = {}
        self.projects: list[dict[str, Any]] = []
        self.calls: list[dict[str, Any]] = []
        self.fail_from: int | None = None
        self.reported_total: int | None = None
        self.gate: asyncio.Event | None = None

    async def search_issue_page(
        self,
        project_key: str,
        *,
        updated_since: datetime | None = None,
        start_at: int = 0,
        max_results: int | None = None,
    ) -> IssuePage:
        self.calls.append(
            {"project_key": project_key, "updated_since": updated_since, "start_at": start_at}
        )
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_from is not None and start_at >= self.fail_from:
            raise SourceFetchError("Jira API error: 500 - boom")

        matching = [
            issue
            for issue in self.issues.get(project_key, [])
            if updated_since is None
            or parse_jira_datetime(issue["fields"]["updated"]) >= updated_since
        ]
        matching.sort(key=lambda i: (parse_jira_datetime(i["fields"]["updated"]), i["key"]))
        page = matching[start_at : start_at + (max_results or self.page_size)]
        total = self.reported_total if self.reported_total is not None else len(matching)
        return IssuePage(issues=[JiraIssue.model_validate(i) for i in page], total=total)

    async def get_projects(self) -> list[JiraProject]:
        return [JiraProject.model_validate(p) for p in self.projects]


class FakeChannel(WorkerChannel):
    """
    In-memory worker channel.

    Answers PING with PONG and anything else via ``responder``. ``silent``
    makes it ignore every request; ``hang_actions`` are never answered.
    """

    def __init__(
        self,
        responder: Callable[[str, Any], Any] | None = None,
        silent: bool = False,
        fail_start: bool = False,
        hang_actions: tuple[str, ...] = (),
    ):
        self.responder = responder or (lambda action, payload: None)
        self.silent = silent
        self.fail_start = fail_start
        self.hang_actions = hang_actions
        self.started = False
        self.closed = False
        self.alive = False
        self.received: list[dict[str, Any]] = []
        self._responses: queue.Queue = queue.Queue()

    def start(self) -> None:
        if self.fail_start:
            raise OSError("cannot spawn worker")
        self.started = True
        self.alive = True

    def send(self, message: dict[str, Any] | None) -> None:
        if message is None:
            return
        self.received.append(message)
        if self.silent or message["action"] in self.hang_actions:
            return

        response: dict[str, Any] = {"requestId": message["requestId"]}
        if message["action"] == protocol.PING:
            response.update(success=True, data=protocol.PONG, error=None)
        else:
            try:
                data = self.responder(message["action"], message["payload"])
            except Exception as e:
                response.update(success=False, data=None, error=str(e))
            else:
                response.update(success=True, data=data, error=None)
        self._responses.put(response)

    def receive(self, timeout: float) -> dict[str, Any] | None:
        try:
            return self._responses.get(timeout=timeout)
        except queue.Empty:
            return None

    def is_alive(self) -> bool:
        return self.alive

    def die(self) -> None:
        self.alive = False

    def close(self) -> None:
        self.closed = True
        self.alive = False


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Test settings with safe defaults."""
    return Settings(
        _env_file=None,
        jira_endpoint="https://jira.example.com",
        jira_username="user@example.com",
        jira_api_token="token",
        page_size=2,
        storage_database_url=f"sqlite+aiosqlite:///{tmp_path / 'jiradb.sqlite'}",
        storage_snapshot_path=tmp_path / "snapshot.json",
        project_store_path=tmp_path / "projects.json",
        storage_worker_mode="thread",
        debug=True,
    )


@pytest_asyncio.fixture
async def storage_proxy(test_settings: Settings) -> AsyncGenerator[StorageProxy, None]:
    """Proxy to a real storage worker running on a thread."""
    proxy = StorageProxy(
        lambda: ThreadWorkerChannel(
            test_settings.storage_database_url, test_settings.storage_snapshot_path
        ),
        handshake_attempts=100,
        handshake_interval=0.05,
        poll_interval=0.02,
    )
    yield proxy
    await proxy.close()


@pytest.fixture
def storage(storage_proxy: StorageProxy) -> StorageClient:
    return StorageClient(storage_proxy)


@pytest.fixture
def project_store(test_settings: Settings) -> ProjectStore:
    return ProjectStore(test_settings.project_store_path)


@pytest.fixture
def fake_jira() -> FakeJiraClient:
    return FakeJiraClient(page_size=2)


@pytest.fixture
def orchestrator(
    fake_jira: FakeJiraClient,
    storage: StorageClient,
    project_store: ProjectStore,
    test_settings: Settings,
) -> SyncOrchestrator:
    return SyncOrchestrator(fake_jira, storage, project_store, test_settings)


@pytest.fixture
def sample_issues() -> list[dict[str, Any]]:
    """Four issues one minute apart, the first with a status change."""
    return [
        make_issue(
            1,
            BASE_TIME,
            histories=[make_history("5001", BASE_TIME - timedelta(hours=1))],
        ),
        make_issue(2, BASE_TIME + timedelta(minutes=1), status="In Progress"),
        make_issue(3, BASE_TIME + timedelta(minutes=2), summary="Login fails on Safari"),
        make_issue(4, BASE_TIME + timedelta(minutes=3), assignee="Alan Turing"),
    ]


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    """HTTP client for the app; tests override dependencies as needed."""
    from jiradb.main import app

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()
