"""WebSocket message schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel

from jiradb.schemas.sync import SyncProgress, SyncResult


class SyncProgressMessage(BaseModel):
    """Server message emitted after every applied batch."""

    type: Literal["sync_progress"] = "sync_progress"
    data: SyncProgress
    timestamp: datetime


class SyncCompleteMessage(BaseModel):
    """Server message with the per-project results of a finished sync."""

    type: Literal["sync_complete"] = "sync_complete"
    data: list[SyncResult]
    timestamp: datetime


class SyncErrorMessage(BaseModel):
    """Server message when a background sync could not run."""

    type: Literal["sync_error"] = "sync_error"
    message: str
    timestamp: datetime


class PingMessage(BaseModel):
    """Ping message for keep-alive."""

    type: Literal["ping"] = "ping"


class PongMessage(BaseModel):
    """Pong response for keep-alive."""

    type: Literal["pong"] = "pong"


class ErrorMessage(BaseModel):
    """Error message from server."""

    type: Literal["error"] = "error"
    message: str
