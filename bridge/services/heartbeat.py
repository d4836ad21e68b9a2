# bridge/services/heartbeat.py
"""Periodic liveness report for one device engine."""

import socket
from typing import Optional

from bridge.schemas.access_event import utc_now_iso
from bridge.schemas.heartbeat import HeartbeatRecord
from bridge.services.event_queue import EventQueue
from bridge.services.ingest_client import IngestClient
from bridge.services.stream_ingestor import StreamStatus
from bridge.utils.logger import get_logger

logger = get_logger(__name__)


class HeartbeatReporter:
    def __init__(self, client: IngestClient, queue: EventQueue, status: StreamStatus,
                 bridge_id: str, device_host: str, version: str):
        self.client = client
        self.queue = queue
        self.status = status
        self.bridge_id = bridge_id
        self.device_host = device_host
        self.version = version
        self.last_record: Optional[HeartbeatRecord] = None

    def snapshot(self) -> HeartbeatRecord:
        try:
            depth = self.queue.depth()
        except OSError as e:
            logger.warning(f"[HEARTBEAT] Queue depth unavailable: {e}")
            depth = None
        return HeartbeatRecord(
            bridge_id=self.bridge_id,
            last_seen=utc_now_iso(),
            stream_connected=self.status.connected,
            last_event_time=self.status.last_event_time,
            queue_depth=depth,
            ip=self.device_host,
            host=socket.gethostname(),
            version=self.version,
        )

    async def beat_once(self) -> bool:
        """Send one heartbeat. Never raises; returns whether the server accepted it."""
        try:
            record = self.snapshot()
            self.last_record = record
            res = await self.client.submit_heartbeat(record.model_dump())
        except Exception as e:
            logger.error(f"[HEARTBEAT] fatal: {e}", exc_info=True)
            return False
        if not res.ok:
            logger.error(f"[HEARTBEAT] error: {res.error or 'unknown_error'}")
        return res.ok
