# bridge/schemas/heartbeat.py
from pydantic import BaseModel
from typing import Optional


class HeartbeatRecord(BaseModel):
    """Liveness snapshot, computed fresh on every tick and never stored."""

    bridge_id: str
    last_seen: str
    stream_connected: bool
    last_event_time: Optional[str] = None
    queue_depth: Optional[int] = None    # None when the queue could not be listed
    ip: str
    host: str
    version: str
