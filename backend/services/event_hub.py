"""
Run Event Hub

Registry of live event-stream subscribers, keyed by run id. The run service
publishes into it; the SSE endpoint subscribes to it. Each subscriber gets
its own queue, so a slow or departed client never blocks a run.
"""

import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from config.settings import settings

logger = logging.getLogger(__name__)

# Queued after the last event of a run; tells a stream to finish
_CLOSED = object()


def format_sse(event_type: str, data: Dict[str, Any]) -> str:
    """One server-sent-events frame."""
    return f"event: {event_type}\ndata: {json.dumps(data, default=str)}\n\n"


SSE_PING = ":\n\n"


class RunEventHub:
    """Subscribers per run id, with explicit subscribe / unsubscribe / publish / close."""

    def __init__(self):
        self._channels: Dict[str, Set[asyncio.Queue]] = {}

    def subscribe(self, run_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._channels.setdefault(run_id, set()).add(queue)
        logger.info(f"[SSE {run_id}] client connected, total: {len(self._channels[run_id])}")
        return queue

    def unsubscribe(self, run_id: str, queue: asyncio.Queue):
        subscribers = self._channels.get(run_id)
        if not subscribers:
            return
        subscribers.discard(queue)
        logger.info(f"[SSE {run_id}] client disconnected, remaining: {len(subscribers)}")
        if not subscribers:
            del self._channels[run_id]

    def publish(self, run_id: str, event_type: str, data: Optional[Dict[str, Any]] = None) -> int:
        """Queue an event for every subscriber of the run. Returns how many received it."""
        subscribers = self._channels.get(run_id)
        if not subscribers:
            return 0
        payload = {"type": event_type, "timestamp": int(time.time() * 1000), **(data or {})}
        for queue in subscribers:
            queue.put_nowait((event_type, payload))
        return len(subscribers)

    def close(self, run_id: str):
        """End every stream of the run once its queued events are delivered."""
        subscribers = self._channels.pop(run_id, set())
        for queue in subscribers:
            queue.put_nowait(_CLOSED)
        if subscribers:
            logger.debug(f"[SSE {run_id}] channel closed ({len(subscribers)} subscriber(s))")

    def channels(self) -> List[str]:
        return list(self._channels.keys())

    def subscriber_count(self, run_id: str) -> int:
        return len(self._channels.get(run_id, ()))

    async def stream(
        self,
        run_id: str,
        ping_seconds: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
    ) -> AsyncIterator[str]:
        """
        SSE frames for one subscriber: a `hello`, then the run's events,
        with keep-alive comments while idle. Ends when the run closes its
        channel or after `timeout_seconds`.
        """
        ping_seconds = ping_seconds or settings.SSE_PING_SECONDS
        timeout_seconds = timeout_seconds or settings.SSE_STREAM_TIMEOUT_SECONDS
        deadline = time.monotonic() + timeout_seconds

        queue = self.subscribe(run_id)
        try:
            yield format_sse("hello", {"runId": run_id, "timestamp": int(time.time() * 1000)})
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.info(f"[SSE {run_id}] stream timed out")
                    break
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=min(ping_seconds, remaining))
                except asyncio.TimeoutError:
                    yield SSE_PING
                    continue
                if item is _CLOSED:
                    break
                event_type, payload = item
                yield format_sse(event_type, payload)
        finally:
            self.unsubscribe(run_id, queue)


# Global hub instance
event_hub = RunEventHub()
