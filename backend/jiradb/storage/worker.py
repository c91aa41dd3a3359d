"""Storage worker: the only place the storage engine runs."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from jiradb.schemas.storage import SearchParams
from jiradb.storage import protocol
from jiradb.storage.engine import StorageEngine
from jiradb.storage.protocol import ProxyRequest, ProxyResponse

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[Any]]


class StorageDispatcher:
    """
    Maps wire actions onto storage engine operations.

    Every action except PING initializes the engine first. Handler
    failures become ``success=False`` responses; the dispatcher itself
    never raises.
    """

    def __init__(self, engine: StorageEngine):
        self.engine = engine
        self._handlers: dict[str, Handler] = {
            protocol.INIT: self._init,
            protocol.UPSERT_ITEM: self._upsert_item,
            protocol.UPSERT_PROJECT: self._upsert_project,
            protocol.GET_PROJECTS: self._get_projects,
            protocol.GET_ISSUE: self._get_issue,
            protocol.SEARCH_ISSUES: self._search_issues,
            protocol.GET_ISSUE_HISTORY: self._get_issue_history,
            protocol.GET_LATEST_UPDATED_AT: self._get_latest_updated_at,
            protocol.GET_COUNT: self._get_count,
            protocol.GET_PROJECT_STATUSES: self._get_project_statuses,
            protocol.START_RUN: self._start_run,
            protocol.UPDATE_RUN_PROGRESS: self._update_run_progress,
            protocol.COMPLETE_RUN: self._complete_run,
            protocol.GET_SYNC_HISTORY: self._get_sync_history,
            protocol.PERSIST: self._persist,
        }

    async def handle(self, message: dict[str, Any]) -> dict[str, Any]:
        """Process one request envelope and build its response envelope."""
        try:
            request = ProxyRequest.model_validate(message)
        except ValidationError as e:
            request_id = str(message.get("requestId", "")) if isinstance(message, dict) else ""
            return self._reply(request_id, success=False, error=f"Malformed request: {e}")

        try:
            data = await self._dispatch(request.action, request.payload or {})
        except Exception as e:
            logger.exception(f"Storage action {request.action} failed")
            return self._reply(request.request_id, success=False, error=str(e) or type(e).__name__)

        return self._reply(request.request_id, success=True, data=data)

    async def _dispatch(self, action: str, payload: dict[str, Any]) -> Any:
        if action == protocol.PING:
            return protocol.PONG

        await self.engine.init()

        handler = self._handlers.get(action)
        if handler is None:
            raise ValueError(f"Unknown action: {action}")
        return await handler(payload)

    @staticmethod
    def _reply(request_id: str, **kwargs: Any) -> dict[str, Any]:
        response = ProxyResponse(request_id=request_id, **kwargs)
        return response.model_dump(mode="json", by_alias=True)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def _init(self, payload: dict[str, Any]) -> None:
        return None

    async def _upsert_item(self, payload: dict[str, Any]) -> None:
        await self.engine.upsert_issue(payload)

    async def _upsert_project(self, payload: dict[str, Any]) -> None:
        await self.engine.upsert_project(payload)

    async def _get_projects(self, payload: dict[str, Any]) -> Any:
        return await self.engine.get_projects()

    async def _get_issue(self, payload: dict[str, Any]) -> Any:
        return await self.engine.get_issue(payload["key"])

    async def _search_issues(self, payload: dict[str, Any]) -> Any:
        return await self.engine.search_issues(SearchParams.model_validate(payload))

    async def _get_issue_history(self, payload: dict[str, Any]) -> Any:
        return await self.engine.get_issue_history(payload["key"], payload.get("field"))

    async def _get_latest_updated_at(self, payload: dict[str, Any]) -> Any:
        return await self.engine.get_latest_updated_at(payload["project_key"])

    async def _get_count(self, payload: dict[str, Any]) -> int:
        return await self.engine.get_issue_count(payload["project_key"])

    async def _get_project_statuses(self, payload: dict[str, Any]) -> list[str]:
        return await self.engine.get_project_statuses(payload["project_key"])

    async def _start_run(self, payload: dict[str, Any]) -> int:
        return await self.engine.start_run(payload["project_key"])

    async def _update_run_progress(self, payload: dict[str, Any]) -> None:
        await self.engine.update_run_progress(payload["run_id"], payload["issues_synced"])

    async def _complete_run(self, payload: dict[str, Any]) -> None:
        await self.engine.complete_run(
            payload["run_id"],
            success=payload["success"],
            issues_synced=payload["issues_synced"],
            error_message=payload.get("error_message"),
        )

    async def _get_sync_history(self, payload: dict[str, Any]) -> Any:
        return await self.engine.get_sync_history(
            payload.get("project_key"), limit=payload.get("limit", 20)
        )

    async def _persist(self, payload: dict[str, Any]) -> None:
        await self.engine.persist()


async def serve(requests, responses, database_url: str, snapshot_path: Path | None) -> None:
    """
    Answer requests until a ``None`` sentinel arrives.

    ``requests``/``responses`` are queue-like objects with blocking
    ``get``/``put`` (``multiprocessing.Queue`` or ``queue.Queue``).
    Requests are processed strictly one at a time.
    """
    engine = StorageEngine(database_url, snapshot_path)
    dispatcher = StorageDispatcher(engine)
    logger.info("Storage worker started")

    try:
        while True:
            message = await asyncio.to_thread(requests.get)
            if message is None:
                break
            responses.put(await dispatcher.handle(message))
    finally:
        await engine.close()
        logger.info("Storage worker stopped")


def run_worker(requests, responses, database_url: str, snapshot_path: Path | None) -> None:
    """Process/thread entry point for the storage worker."""
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
    asyncio.run(serve(requests, responses, database_url, snapshot_path))
