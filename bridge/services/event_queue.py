# bridge/services/event_queue.py
"""
Durable per-device event queue — one JSON file per pending event.

Every event is written to disk before any delivery attempt. Files are written
to a .tmp sibling, fsync'd and atomically renamed, so list() never returns a
partially written item. The stream reader (producer) and the flusher
(consumer) share the directory with no locking beyond that guarantee.
"""

import json
import os
import secrets
from datetime import datetime, timezone
from typing import Any, Optional

from bridge.schemas.access_event import QueueItem, event_serial, parse_iso, utc_now_iso, local_tz_offset_minutes
from bridge.schemas.bridge_config import safe_name
from bridge.utils.logger import get_logger

logger = get_logger(__name__)

QUEUE_SUFFIX = ".json"
TEMP_SUFFIX = ".tmp"


class CorruptQueueItem(ValueError):
    """A queue file exists but cannot be read back as a queue record."""


class EventQueue:
    def __init__(self, queue_dir: str, device_id: str, done_dir: Optional[str] = None):
        self.queue_dir = queue_dir
        self.device_id = device_id
        self.done_dir = done_dir    # set → delivered files are archived instead of deleted

    def ensure_dirs(self):
        os.makedirs(self.queue_dir, exist_ok=True)
        if self.done_dir:
            os.makedirs(self.done_dir, exist_ok=True)

    def purge_stale_temp(self) -> int:
        """Delete .tmp leftovers from a crash between write and rename."""
        removed = 0
        for name in os.listdir(self.queue_dir):
            if name.endswith(TEMP_SUFFIX):
                try:
                    os.remove(os.path.join(self.queue_dir, name))
                    removed += 1
                except FileNotFoundError:
                    pass
        if removed:
            logger.warning(f"[QUEUE] Removed {removed} incomplete temp file(s) from {self.queue_dir}")
        return removed

    def file_name_for(self, event: Any) -> str:
        serial = event_serial(event)
        if serial is not None:
            base = f"serial_{serial:012d}"
        else:
            dt = parse_iso(event.get("dateTime")) if isinstance(event, dict) else None
            dt = dt or datetime.now(timezone.utc)
            stamp = dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
            base = f"time_{stamp}_{secrets.token_hex(6)}"
        return safe_name(base) + QUEUE_SUFFIX

    def enqueue(self, event: Any, received_at: Optional[str] = None,
                tz_offset_minutes: Optional[int] = None) -> str:
        """Persist one event. Returns the final path once it is visible to list()."""
        final_path = os.path.join(self.queue_dir, self.file_name_for(event))
        tmp_path = final_path + TEMP_SUFFIX
        record = {
            "saved_at": received_at or utc_now_iso(),
            "device_id": self.device_id,
            "bridge_tz_offset_minutes": (
                tz_offset_minutes if tz_offset_minutes is not None else local_tz_offset_minutes()
            ),
            "raw": event,
        }
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(record, f, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, final_path)
        return final_path

    def list(self) -> list[str]:
        """Sorted snapshot of pending item paths. Raises OSError if the directory is unavailable."""
        with os.scandir(self.queue_dir) as entries:
            names = [e.name for e in entries if e.is_file() and e.name.endswith(QUEUE_SUFFIX)]
        return [os.path.join(self.queue_dir, n) for n in sorted(names)]

    def depth(self) -> int:
        return len(self.list())

    def read(self, path: str) -> QueueItem:
        try:
            with open(path, "r", encoding="utf-8") as f:
                record = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CorruptQueueItem(f"{os.path.basename(path)}: {e}") from e
        if not isinstance(record, dict) or "raw" not in record:
            raise CorruptQueueItem(f"{os.path.basename(path)}: not a queue record")
        offset = record.get("bridge_tz_offset_minutes")
        return QueueItem(
            path=path,
            saved_at=record.get("saved_at"),
            device_id=record.get("device_id"),
            bridge_tz_offset_minutes=offset if isinstance(offset, int) else None,
            raw=record.get("raw"),
        )

    def remove(self, path: str):
        """Delete (or archive) a delivered item. Already-removed items are fine."""
        try:
            if self.done_dir:
                os.replace(path, os.path.join(self.done_dir, os.path.basename(path)))
            else:
                os.remove(path)
        except FileNotFoundError:
            pass
