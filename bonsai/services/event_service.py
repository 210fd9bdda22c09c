"""Outbound notification fan-out for attached transports."""
import asyncio
import logging
from asyncio import Queue
from typing import Any, Dict, Set

logger = logging.getLogger(__name__)


def create_message(command: str, **fields: Any) -> Dict[str, Any]:
    """
    Create an outbound notification.

    Args:
        command: Notification name (e.g. "renderGraph", "loading")
        **fields: Notification payload

    Returns:
        Message dictionary {"command": ..., **fields}
    """
    return {"command": command, **fields}


class EventBroadcaster:
    """
    Fans out notifications to every subscriber queue.

    Each transport (SSE stream, WebSocket) subscribes once and drains its own
    queue; publishing never blocks on slow consumers.
    """

    def __init__(self):
        self._subscribers: Set[Queue] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Queue:
        """Register a new subscriber and return its queue."""
        queue: Queue = asyncio.Queue()
        self._subscribers.add(queue)
        logger.debug(f"Subscriber added ({len(self._subscribers)} total)")
        return queue

    def unsubscribe(self, queue: Queue) -> None:
        self._subscribers.discard(queue)
        logger.debug(f"Subscriber removed ({len(self._subscribers)} total)")

    async def publish(self, message: Dict[str, Any]) -> None:
        """Deliver a message to every current subscriber."""
        for queue in list(self._subscribers):
            queue.put_nowait(message)
