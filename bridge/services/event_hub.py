# bridge/services/event_hub.py
"""
Fan-out of engine log lines and supervisor state changes to control-API
subscribers (the settings UI keeps one SSE connection open).

Each subscriber gets a bounded queue; a subscriber that falls too far behind
is dropped instead of slowing the supervisor down. The last few hundred log
lines are kept so a newly opened UI can show recent history.
"""

import asyncio
import itertools
import json
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from bridge.utils.logger import get_logger

logger = get_logger(__name__)

MAX_SUBSCRIBER_BUFFER = 1000
RECENT_LINES = 500
KEEPALIVE_SECONDS = 15.0


@dataclass
class Subscription:
    id: int
    queue: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=MAX_SUBSCRIBER_BUFFER))
    closed: bool = False


class EventHub:
    def __init__(self, recent_lines: int = RECENT_LINES):
        self._subscribers: dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._seq = itertools.count(1)
        self._recent: deque = deque(maxlen=recent_lines)

    def recent(self, device_id: Optional[str] = None, limit: int = 200) -> list[dict]:
        lines = [e for e in self._recent if device_id is None or e.get("device_id") == device_id]
        return lines[-limit:] if limit else lines

    def subscribe(self) -> Subscription:
        sub = Subscription(id=next(self._ids))
        self._subscribers[sub.id] = sub
        logger.debug(f"[HUB] Subscriber {sub.id} added")
        return sub

    def unsubscribe(self, sub: Subscription):
        sub.closed = True
        self._subscribers.pop(sub.id, None)
        logger.debug(f"[HUB] Subscriber {sub.id} removed")

    def publish(self, event_type: str, payload: dict) -> int:
        event = {
            "event_type": event_type,
            "sequence": next(self._seq),
            "at": datetime.now(timezone.utc).isoformat(),
            **payload,
        }
        if event_type == "log":
            self._recent.append(event)
        delivered = 0
        for sub in list(self._subscribers.values()):
            try:
                sub.queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"[HUB] Subscriber {sub.id} buffer full, disconnecting")
                self.unsubscribe(sub)
        return delivered

    def publish_log(self, device_id: str, line: str) -> int:
        return self.publish("log", {"device_id": device_id, "line": line})

    def publish_state(self, state: dict) -> int:
        return self.publish("state", {"state": state})

    async def events(self, sub: Subscription, keepalive: float = KEEPALIVE_SECONDS) -> AsyncIterator[Optional[dict]]:
        """Yields events for one subscriber; yields None after `keepalive` seconds of silence."""
        while not sub.closed:
            try:
                yield await asyncio.wait_for(sub.queue.get(), timeout=keepalive)
            except asyncio.TimeoutError:
                yield None


def format_sse(event: Optional[dict]) -> str:
    """SSE wire format. None → comment line used as a keep-alive."""
    if event is None:
        return ": keepalive\n\n"
    return f"event: {event['event_type']}\nid: {event['sequence']}\ndata: {json.dumps(event, default=str)}\n\n"


async def sse_stream(hub: EventHub, device_id: Optional[str] = None) -> AsyncIterator[str]:
    sub = hub.subscribe()
    try:
        async for event in hub.events(sub):
            if event is not None and device_id and event.get("device_id") not in (None, device_id):
                continue
            yield format_sse(event)
    finally:
        hub.unsubscribe(sub)
