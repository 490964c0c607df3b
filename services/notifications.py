"""
Session Notification Bus

Topic-based pub/sub built on asyncio queues. The session engine publishes
lifecycle notifications here so the owning application (dashboards,
activity feeds, the /ws/sessions/status WebSocket) can react without reading
the per-session event logs.

Topics:
    session_status  {"session_id", "status", "previous", "message", "at_ms"}
"""

import asyncio
from collections import defaultdict
from typing import Any, DefaultDict, Dict, Set

from core.logging import get_logger

SESSION_STATUS_TOPIC = "session_status"


class NotificationBus:
    """
    Each subscriber gets its own bounded asyncio.Queue. A slow subscriber
    loses notifications instead of blocking the engine.
    """

    def __init__(self, max_queue_size: int = 1000) -> None:
        self._topics: DefaultDict[str, Set[asyncio.Queue]] = defaultdict(set)
        self._max_queue_size = max_queue_size
        self._lock = asyncio.Lock()
        self._logger = get_logger(__name__)
        self.dropped = 0

    async def subscribe(self, topic: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        async with self._lock:
            self._topics[topic].add(queue)
        self._logger.debug(f"Subscriber added to topic '{topic}'. total={len(self._topics[topic])}")
        return queue

    async def unsubscribe(self, topic: str, queue: asyncio.Queue) -> None:
        async with self._lock:
            self._topics.get(topic, set()).discard(queue)
        self._logger.debug(f"Subscriber removed from topic '{topic}'. total={len(self._topics.get(topic, ()))}")

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, ()))

    def publish(self, topic: str, message: Dict[str, Any]) -> int:
        """
        Deliver a message to every subscriber of a topic.

        Returns:
            Number of queues that accepted the message
        """
        delivered = 0
        for queue in list(self._topics.get(topic, ())):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                self.dropped += 1
                self._logger.warning(f"Dropping notification for topic '{topic}' due to full queue")
        return delivered


# Singleton notification bus for the application
bus = NotificationBus()
