"""Wire protocol between the coordinator and the storage worker."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# Actions understood by the storage worker
PING = "PING"
INIT = "INIT"
UPSERT_ITEM = "UPSERT_ITEM"
UPSERT_PROJECT = "UPSERT_PROJECT"
GET_PROJECTS = "GET_PROJECTS"
GET_ISSUE = "GET_ISSUE"
SEARCH_ISSUES = "SEARCH_ISSUES"
GET_ISSUE_HISTORY = "GET_ISSUE_HISTORY"
GET_LATEST_UPDATED_AT = "GET_LATEST_UPDATED_AT"
GET_COUNT = "GET_COUNT"
GET_PROJECT_STATUSES = "GET_PROJECT_STATUSES"
START_RUN = "START_RUN"
UPDATE_RUN_PROGRESS = "UPDATE_RUN_PROGRESS"
COMPLETE_RUN = "COMPLETE_RUN"
GET_SYNC_HISTORY = "GET_SYNC_HISTORY"
PERSIST = "PERSIST"

PONG = "PONG"


class ProxyRequest(BaseModel):
    """Request envelope sent to the worker."""

    model_config = ConfigDict(populate_by_name=True)

    target: Literal["storage"] = "storage"
    action: str
    payload: Any = None
    request_id: str = Field(alias="requestId")


class ProxyResponse(BaseModel):
    """Response envelope; exactly one per request."""

    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(alias="requestId")
    success: bool
    data: Any = None
    error: str | None = None


class ProxyError(Exception):
    """Base exception for storage proxy errors."""

    pass


class ProxyTransportError(ProxyError):
    """The request could not be delivered or answered by the worker."""

    pass


class WorkerCreationFailedError(ProxyTransportError):
    """The worker could not be started."""

    pass


class WorkerNotReadyError(ProxyTransportError):
    """The worker started but never answered the readiness handshake."""

    pass


class NoResponseError(ProxyTransportError):
    """The worker went away before answering a request."""

    pass


class ProxyOperationError(ProxyError):
    """The worker answered, but the storage operation failed."""

    pass
