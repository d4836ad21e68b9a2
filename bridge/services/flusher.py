# bridge/services/flusher.py
"""
Queue flusher — drains the durable queue to the ingestion service.

One pass takes a snapshot of the queue directory and hands it to a fixed pool
of asyncio workers that share a single cursor, so at most `concurrency`
submissions are in flight. A failed submission leaves the file in place and
pauses that worker briefly; the next pass retries it.

Paths being delivered by the live path are claimed in `busy_paths` and
skipped here, so a file is never submitted twice concurrently by this process.
"""

import asyncio
import os
from dataclasses import dataclass
from typing import Optional

from bridge.services.delivery import DeliveryOutcome, DeliveryRules, deliver
from bridge.services.delivery_journal import DeliveryJournal
from bridge.services.event_queue import CorruptQueueItem, EventQueue
from bridge.services.ingest_client import IngestClient
from bridge.utils.logger import get_logger

logger = get_logger(__name__)

ERROR_BACKOFF_SECONDS = 0.9


@dataclass
class FlushStats:
    listed: int = 0
    accepted: int = 0
    duplicates: int = 0
    skipped: int = 0
    failed: int = 0
    dropped: int = 0      # corrupt or already-gone files

    def count(self, outcome: DeliveryOutcome):
        if outcome is DeliveryOutcome.ACCEPTED:
            self.accepted += 1
        elif outcome is DeliveryOutcome.DUPLICATE:
            self.duplicates += 1
        elif outcome is DeliveryOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1


class QueueFlusher:
    def __init__(self, queue: EventQueue, rules: DeliveryRules, client: IngestClient,
                 concurrency: int = 3, journal: Optional[DeliveryJournal] = None,
                 error_backoff: float = ERROR_BACKOFF_SECONDS):
        self.queue = queue
        self.rules = rules
        self.client = client
        self.concurrency = max(1, int(concurrency))
        self.journal = journal
        self.error_backoff = error_backoff
        self.busy_paths: set[str] = set()
        self._flushing = False

    def claim(self, path: str) -> bool:
        """Mark a path as being delivered. False if someone else already has it."""
        if path in self.busy_paths:
            return False
        self.busy_paths.add(path)
        return True

    async def deliver_path(self, path: str) -> Optional[DeliveryOutcome]:
        """
        Deliver one claimed queue file and settle it. Releases the claim.
        Returns None when the file vanished or was corrupt.
        """
        try:
            try:
                item = self.queue.read(path)
            except FileNotFoundError:
                return None
            except CorruptQueueItem as e:
                logger.warning(f"[FLUSH] Dropping corrupt queue file: {e}")
                self.queue.remove(path)
                return None

            outcome, reason = await deliver(item, self.rules, self.client)
            name = os.path.basename(path)
            if outcome.done:
                self.queue.remove(path)
                if self.journal is not None:
                    self.journal.record(item, outcome.value, reason)
                if outcome is DeliveryOutcome.SKIPPED:
                    logger.debug(f"[FLUSH] Skipped {name} ({reason})")
                elif outcome is DeliveryOutcome.DUPLICATE:
                    logger.info(f"[FLUSH] Duplicate {name} — already on server")
            else:
                logger.error(f"[FLUSH] Ingest error: {reason} — keeping {name} in queue")
            return outcome
        finally:
            self.busy_paths.discard(path)

    async def flush_once(self) -> Optional[FlushStats]:
        """One pass over the current queue snapshot. None if a pass is already running."""
        if self._flushing:
            return None
        self._flushing = True
        stats = FlushStats()
        try:
            try:
                paths = self.queue.list()
            except OSError as e:
                logger.warning(f"[FLUSH] Queue unavailable: {e}")
                return stats
            stats.listed = len(paths)
            if not paths:
                return stats

            logger.info(f"[QUEUE] Pending: {len(paths)} event(s). Uploading...")
            cursor = 0

            async def worker():
                nonlocal cursor
                while cursor < len(paths):
                    path = paths[cursor]
                    cursor += 1
                    if not self.claim(path):
                        continue
                    outcome = await self.deliver_path(path)
                    if outcome is None:
                        stats.dropped += 1
                        continue
                    stats.count(outcome)
                    if outcome is DeliveryOutcome.FAILED:
                        await asyncio.sleep(self.error_backoff)

            workers = min(self.concurrency, len(paths))
            await asyncio.gather(*(worker() for _ in range(workers)))

            if stats.accepted:
                logger.info(f"[FLUSH] Uploaded {stats.accepted} event(s) from queue")
            return stats
        finally:
            self._flushing = False
