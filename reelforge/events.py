import asyncio
import logging
import json
import time
from typing import List, Dict, Any, AsyncIterator

logger = logging.getLogger("events")

# ── Backpressure Settings ──────────────────────────────────────────
MAX_QUEUE_SIZE = 100          # Max events per subscriber queue
MESSAGE_TTL_SECONDS = 30      # Drop messages older than this


class EventManager:
    """Fans pipeline status events out to in-process subscribers."""

    def __init__(self):
        self.clients: List[asyncio.Queue] = []

    def subscribe(self) -> asyncio.Queue:
        queue = asyncio.Queue(maxsize=MAX_QUEUE_SIZE)
        self.clients.append(queue)
        logger.info(f"Subscriber connected. Total subscribers: {len(self.clients)}")
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self.clients:
            self.clients.remove(queue)
        logger.info(f"Subscriber disconnected. Remaining: {len(self.clients)}")

    async def listen(self, queue: asyncio.Queue, timeout: float = 15.0) -> AsyncIterator[Dict[str, Any]]:
        """Yields fresh events from a subscribed queue until the consumer stops iterating."""
        try:
            while True:
                try:
                    data = await asyncio.wait_for(queue.get(), timeout=timeout)
                except asyncio.TimeoutError:
                    continue

                # TTL check: skip stale messages
                ts = data.get("_timestamp", 0)
                if ts and (time.time() - ts) > MESSAGE_TTL_SECONDS:
                    continue

                yield {k: v for k, v in data.items() if k != "_timestamp"}
        finally:
            self.unsubscribe(queue)

    async def broadcast(self, event_type: str, data: Dict[str, Any]):
        """
        Broadcasts an event to all subscribers with backpressure.
        If a subscriber's queue is full, oldest messages are dropped.
        """
        message = {
            "event": event_type,
            "data": json.dumps(data, default=str),
            "_timestamp": time.time()
        }

        if event_type != "progress":
            logger.info(f"Broadcasting {event_type} to {len(self.clients)} subscribers")

        for queue in list(self.clients):
            if queue.full():
                # Drop oldest message to make room (backpressure)
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(message)


# Global Instance
event_manager = EventManager()
