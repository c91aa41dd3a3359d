"""WebSocket connection manager for broadcasting sync events."""

import asyncio
import logging
from datetime import UTC, datetime

from fastapi import WebSocket
from pydantic import BaseModel

from jiradb.schemas.sync import SyncProgress, SyncResult
from jiradb.websocket.schemas import SyncCompleteMessage, SyncErrorMessage, SyncProgressMessage

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Manages WebSocket connections and broadcasts sync events.

    Delivery is best-effort: a failed send drops that connection and never
    reaches the sync that published the event. Designed for single-instance
    deployment.
    """

    def __init__(self):
        self._connections: dict[WebSocket, datetime] = {}
        self._lock = asyncio.Lock()

    @property
    def connection_count(self) -> int:
        """Number of active connections."""
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        """Accept a new WebSocket connection."""
        await websocket.accept()
        async with self._lock:
            self._connections[websocket] = datetime.now(UTC)
        logger.info(f"WebSocket connected. Total connections: {self.connection_count}")

    async def disconnect(self, websocket: WebSocket) -> None:
        """Remove a disconnected WebSocket."""
        async with self._lock:
            self._connections.pop(websocket, None)
        logger.info(f"WebSocket disconnected. Total connections: {self.connection_count}")

    async def broadcast(self, message: BaseModel) -> None:
        """Send one message to every connected client."""
        async with self._lock:
            if not self._connections:
                return
            websockets = list(self._connections)

        await asyncio.gather(
            *(self._send_safe(ws, message) for ws in websockets), return_exceptions=True
        )
        logger.debug(f"Broadcast {message.__class__.__name__} to {len(websockets)} clients")

    async def _send_safe(self, websocket: WebSocket, message: BaseModel) -> None:
        """Send message to websocket, handling errors gracefully."""
        try:
            await websocket.send_json(message.model_dump(mode="json"))
        except Exception as e:
            logger.warning(f"Failed to send to websocket: {e}")
            await self.disconnect(websocket)

    # Sync event publisher interface

    async def publish_progress(self, progress: SyncProgress) -> None:
        await self.broadcast(SyncProgressMessage(data=progress, timestamp=datetime.now(UTC)))

    async def publish_complete(self, results: list[SyncResult]) -> None:
        await self.broadcast(SyncCompleteMessage(data=results, timestamp=datetime.now(UTC)))

    async def publish_error(self, message: str) -> None:
        await self.broadcast(SyncErrorMessage(message=message, timestamp=datetime.now(UTC)))


# Global singleton instance
manager = ConnectionManager()
