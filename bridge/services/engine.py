# bridge/services/engine.py
"""
Device engine — everything that runs for one device inside its own process.

Composition: stream ingestor → durable queue → live delivery / flusher →
ingestion service, plus the heartbeat and job timers. The engine gets its whole
configuration at construction and shares no state with other devices.
"""

import asyncio
import os
from typing import Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError

from bridge.schemas.access_event import event_serial, local_tz_offset_minutes, utc_now_iso
from bridge.schemas.bridge_config import EngineConfig
from bridge.services.delivery import DeliveryRules, load_start_cutoff
from bridge.services.delivery_journal import DeliveryJournal
from bridge.services.device_client import DeviceClient
from bridge.services.event_queue import EventQueue
from bridge.services.flusher import QueueFlusher
from bridge.services.heartbeat import HeartbeatReporter
from bridge.services.ingest_client import IngestClient
from bridge.services.job_executor import JobExecutor
from bridge.services.job_poller import JobPoller
from bridge.services.scheduler import PeriodicTask
from bridge.services.stream_ingestor import StreamIngestor, StreamStatus
from bridge.utils.logger import get_logger

logger = get_logger(__name__)


class DeviceEngine:
    def __init__(self, config: EngineConfig,
                 ingest_transport: Optional[httpx.AsyncBaseTransport] = None,
                 device_transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        device = config.device

        self.queue = EventQueue(
            config.queue_dir, device.device_id,
            done_dir=config.done_dir if config.archive_delivered else None,
        )
        self.client = IngestClient(
            config.ingest_url, config.ingest_api_key, device.device_id, device.device_key,
            transport=ingest_transport,
        )
        self.device_client = DeviceClient(device.host, device.username, device.password, transport=device_transport)
        self.status = StreamStatus()
        self.rules = DeliveryRules(config.tracked_event_type)
        self.journal: Optional[DeliveryJournal] = None

        self.flusher = QueueFlusher(self.queue, self.rules, self.client, concurrency=config.upload_concurrency)
        self.heartbeat = HeartbeatReporter(
            self.client, self.queue, self.status,
            bridge_id=config.bridge_id, device_host=device.host, version=config.bridge_version,
        )
        self.executor = JobExecutor(self.device_client, self.client)
        self.poller = JobPoller(self.client, self.executor, config.bridge_id, config.job_batch_size)
        self.stream = StreamIngestor(
            device.host, device.username, device.password,
            on_event=self.handle_event,
            reconnect_delay=config.reconnect_delay_seconds,
            status=self.status,
            transport=device_transport,
            label=device.display_name,
        )

        self._timers: list[PeriodicTask] = []
        self._stream_task: Optional[asyncio.Task] = None
        self._live: set[asyncio.Task] = set()

    def prepare(self):
        """Directories, crash leftovers, start cutoff and journal. Runs before any task starts."""
        self.queue.ensure_dirs()
        self.queue.purge_stale_temp()
        self.rules.cutoff = load_start_cutoff(self.config.cutoff_path, self.config.start_mode)
        if self.config.journal_enabled:
            try:
                self.journal = DeliveryJournal(self.config.journal_path, self.config.device.device_id)
            except (SQLAlchemyError, OSError) as e:
                logger.warning(f"[JOURNAL] Disabled for this run: {e}")
                self.journal = None
        self.flusher.journal = self.journal

    async def handle_event(self, payload: dict):
        """Persist first, then try to deliver right away without holding up the stream."""
        path = self.queue.enqueue(payload, received_at=utc_now_iso(), tz_offset_minutes=local_tz_offset_minutes())
        logger.debug(f"[QUEUE] Saved {os.path.basename(path)} (serial={event_serial(payload)})")
        if not self.flusher.claim(path):
            return
        task = asyncio.create_task(self.flusher.deliver_path(path), name=f"deliver-{os.path.basename(path)}")
        self._live.add(task)
        task.add_done_callback(self._live.discard)

    async def start(self):
        self.prepare()
        cfg = self.config
        cutoff = self.rules.cutoff.isoformat() if self.rules.cutoff else "none"
        logger.info(f"🚀 Engine starting for {cfg.device.display_name} ({cfg.device.host})")
        logger.info(f"   device_id={cfg.device.device_id} bridge_id={cfg.bridge_id}")
        logger.info(f"   start_mode={cfg.start_mode} | cutoff={cutoff}")
        logger.info(f"   queue={cfg.queue_dir}")

        self._timers = [
            PeriodicTask("flush", cfg.flush_interval_seconds, self.flusher.flush_once).start(),
            PeriodicTask("heartbeat", cfg.heartbeat_interval_seconds, self.heartbeat.beat_once).start(),
            PeriodicTask("jobs", cfg.job_poll_interval_seconds, self.poller.poll_once).start(),
        ]
        self._stream_task = asyncio.create_task(self.stream.run_forever(), name=f"stream-{cfg.device.device_id}")

    async def stop(self):
        logger.info(f"🛑 Engine stopping for {self.config.device.display_name}")
        if self._stream_task is not None:
            self._stream_task.cancel()
            try:
                await self._stream_task
            except asyncio.CancelledError:
                pass
            self._stream_task = None
        for timer in self._timers:
            await timer.stop()
        self._timers = []
        live = list(self._live)
        for task in live:
            task.cancel()
        await asyncio.gather(*live, return_exceptions=True)
        await self.client.aclose()
        await self.device_client.aclose()
        if self.journal is not None:
            self.journal.close()

    async def run(self, stop_event: asyncio.Event):
        """Start, block until asked to stop, then shut down. Queued items stay on disk."""
        await self.start()
        try:
            await stop_event.wait()
        finally:
            await self.stop()
