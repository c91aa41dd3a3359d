"""WebSocket module for live sync progress."""

from jiradb.websocket.manager import ConnectionManager, manager
from jiradb.websocket.router import router as websocket_router

__all__ = ["ConnectionManager", "manager", "websocket_router"]
