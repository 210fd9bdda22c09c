"""WebSocket route: bidirectional command and notification channel."""
import asyncio
import json
import logging
import time
from typing import Any, Dict, Set

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from bonsai.api.messages import get_session
from bonsai.services.event_service import create_message
from bonsai.services.session_service import BonsaiSession

logger = logging.getLogger(__name__)

router = APIRouter()


class ConnectionManager:
    """Tracks open WebSocket connections."""

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.add(websocket)

    def disconnect(self, websocket: WebSocket):
        self.active_connections.discard(websocket)

    async def send_personal_message(self, websocket: WebSocket, message: Dict[str, Any]) -> bool:
        """Send a message to one socket; returns False if the socket is gone."""
        try:
            await websocket.send_json(message)
            return True
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug(f"Error sending WebSocket message: {e}")
            return False


# Global connection manager
manager = ConnectionManager()


async def _relay(websocket: WebSocket, queue: asyncio.Queue) -> None:
    """Forward broadcasts to one socket until it stops accepting them."""
    while True:
        message = await queue.get()
        if not await manager.send_personal_message(websocket, message):
            break


@router.websocket("/ws")
async def websocket_channel(websocket: WebSocket, session: BonsaiSession = Depends(get_session)):
    """
    Embedded-panel style channel.

    On connect the greeting sequence is sent, then every broadcast is relayed.
    Each received JSON object is dispatched as a command. ``exportJSON`` is
    answered on this socket only, with
    ``{"command": "exportReady", "filename": ..., "snapshot": {...}}``.
    """
    await manager.connect(websocket)
    queue = session.broadcaster.subscribe()
    pending: Set[asyncio.Task] = set()
    relay_task = None
    logger.info(f"WebSocket connected ({len(manager.active_connections)} open)")

    try:
        for message in session.initial_messages():
            await websocket.send_json(message)
        relay_task = asyncio.create_task(_relay(websocket, queue))

        while True:
            text = await websocket.receive_text()
            try:
                message = json.loads(text)
            except ValueError:
                await manager.send_personal_message(
                    websocket,
                    create_message("loading", text="ERROR!: Invalid JSON message")
                )
                continue

            if isinstance(message, dict) and message.get("command") == "exportJSON":
                snapshot = await session.dispatch(message)
                if snapshot is not None:
                    await manager.send_personal_message(websocket, create_message(
                        "exportReady",
                        filename=f"bonsai-{int(time.time() * 1000)}.json",
                        snapshot=snapshot
                    ))
                continue

            # Long generations must not block reading further commands
            task = asyncio.create_task(session.dispatch(message))
            pending.add(task)
            task.add_done_callback(pending.discard)
    except WebSocketDisconnect:
        logger.info("WebSocket disconnected")
    finally:
        if relay_task is not None:
            relay_task.cancel()
        session.broadcaster.unsubscribe(queue)
        manager.disconnect(websocket)
