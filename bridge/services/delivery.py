# bridge/services/delivery.py
"""
Delivery rules shared by the live path and the flusher.

A queue item is either skipped (not a tracked event, no usable timestamp, or
older than the start cutoff) or submitted to the ingestion service. Skips,
accepts and duplicates all remove the item; only a submit error keeps it.
"""

import json
import os
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from bridge.schemas.access_event import QueueItem, parse_iso
from bridge.services.ingest_client import IngestClient, SubmitStatus
from bridge.utils.logger import get_logger

logger = get_logger(__name__)


class DeliveryOutcome(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def done(self) -> bool:
        """True when the queue item can be removed."""
        return self is not DeliveryOutcome.FAILED


def load_start_cutoff(path: str, start_mode: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Start cutoff for this device.

    "all" → no cutoff. "now" → the first time this device's engine started,
    persisted next to the queue so a restarted engine keeps delivering the
    items its predecessor left behind.
    """
    if start_mode == "all":
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            cutoff = parse_iso(json.load(f).get("cutoff"))
        if cutoff is not None:
            return cutoff
        logger.warning(f"[DELIVERY] Unusable cutoff in {path} — resetting")
    except FileNotFoundError:
        pass
    except (ValueError, AttributeError) as e:
        logger.warning(f"[DELIVERY] Unreadable cutoff file {path}: {e} — resetting")

    cutoff = now or datetime.now(timezone.utc)
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump({"cutoff": cutoff.isoformat()}, f)
    os.replace(tmp, path)
    return cutoff


class DeliveryRules:
    def __init__(self, tracked_event_type: str = "AccessControllerEvent", cutoff: Optional[datetime] = None):
        self.tracked_event_type = tracked_event_type
        self.cutoff = cutoff

    def skip_reason(self, item: QueueItem) -> Optional[str]:
        """Why this item is not worth submitting, or None to submit it."""
        raw = item.raw
        if not isinstance(raw, dict) or raw.get("eventType") != self.tracked_event_type:
            return "untracked_event_type"
        # Received-at wins over the device clock
        if item.saved_at:
            ts = parse_iso(item.saved_at)
        else:
            ts = parse_iso(raw.get("dateTime"))
        if ts is None:
            return "bad_timestamp"
        if self.cutoff is not None and ts < self.cutoff:
            return "before_cutoff"
        return None


async def deliver(item: QueueItem, rules: DeliveryRules, client: IngestClient) -> tuple[DeliveryOutcome, Optional[str]]:
    """Classify and (if needed) submit one item. Returns (outcome, skip reason or error)."""
    reason = rules.skip_reason(item)
    if reason:
        return DeliveryOutcome.SKIPPED, reason
    result = await client.submit_event(item.raw, item.saved_at, item.bridge_tz_offset_minutes)
    if result.status is SubmitStatus.ACCEPTED:
        return DeliveryOutcome.ACCEPTED, None
    if result.status is SubmitStatus.DUPLICATE:
        return DeliveryOutcome.DUPLICATE, None
    return DeliveryOutcome.FAILED, result.error
