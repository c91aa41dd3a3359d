"""WebSocket router for live sync progress."""

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from jiradb.websocket.manager import manager
from jiradb.websocket.schemas import ErrorMessage, PongMessage

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/sync")
async def websocket_sync(websocket: WebSocket):
    """
    WebSocket endpoint for sync progress events.

    Message formats:
    Client -> Server:
        {"type": "ping"}

    Server -> Client:
        {"type": "sync_progress", "data": {"project_key": "PROJ", "phase": "issues", "current": 200, "total": 450, "message": "..."}, "timestamp": "..."}
        {"type": "sync_complete", "data": [{"project_key": "PROJ", "status": "completed", ...}], "timestamp": "..."}
        {"type": "sync_error", "message": "...", "timestamp": "..."}
        {"type": "pong"}
        {"type": "error", "message": "..."}
    """
    await manager.connect(websocket)

    try:
        while True:
            raw_message = await websocket.receive_text()

            try:
                data = json.loads(raw_message)
                msg_type = data.get("type") if isinstance(data, dict) else None

                if msg_type == "ping":
                    await websocket.send_json(PongMessage().model_dump())
                else:
                    error = ErrorMessage(message=f"Unknown message type: {msg_type}")
                    await websocket.send_json(error.model_dump())

            except json.JSONDecodeError:
                error = ErrorMessage(message="Invalid JSON")
                await websocket.send_json(error.model_dump())

    except WebSocketDisconnect:
        await manager.disconnect(websocket)
    except Exception as e:
        logger.exception(f"WebSocket error: {e}")
        await manager.disconnect(websocket)
