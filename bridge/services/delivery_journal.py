# bridge/services/delivery_journal.py
"""
Local audit trail of queue items that left the queue.

Journal writes are best-effort: a failing journal is logged and never turns a
successful delivery into a retry.
"""

import os
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from bridge.database import make_engine, make_session_factory, create_tables
from bridge.models.delivered_event import DeliveredEvent
from bridge.schemas.access_event import QueueItem, AccessEvent
from bridge.utils.logger import get_logger

logger = get_logger(__name__)


class DeliveryJournal:
    def __init__(self, db_path: str, device_id: str):
        self.db_path = db_path
        self.device_id = device_id
        self._engine = make_engine(db_path)
        create_tables(self._engine)
        self._sessions = make_session_factory(self._engine)

    def record(self, item: QueueItem, outcome: str, reason: Optional[str] = None):
        event = AccessEvent.from_payload(item.raw) if isinstance(item.raw, dict) else None
        db = self._sessions()
        try:
            db.add(DeliveredEvent(
                device_id=self.device_id,
                file_name=os.path.basename(item.path),
                serial_no=event.serial_no if event else None,
                event_type=event.event_type if event else None,
                employee_no=event.employee_no if event else None,
                event_time=event.date_time if event else None,
                outcome=outcome,
                reason=reason,
                recorded_at=datetime.utcnow(),
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(f"[JOURNAL] Could not record {os.path.basename(item.path)}: {e}")
        finally:
            db.close()

    def recent(self, limit: int = 50, outcome: Optional[str] = None) -> list[dict]:
        db = self._sessions()
        try:
            q = db.query(DeliveredEvent)
            if outcome:
                q = q.filter(DeliveredEvent.outcome == outcome)
            rows = q.order_by(DeliveredEvent.id.desc()).limit(limit).all()
            return [r.to_dict() for r in rows]
        finally:
            db.close()

    def close(self):
        self._engine.dispose()


def read_recent_deliveries(db_path: str, device_id: str, limit: int = 50,
                           outcome: Optional[str] = None) -> list[dict]:
    """Open a device journal just long enough to list recent rows. Missing journal → []."""
    if not os.path.exists(db_path):
        return []
    journal = DeliveryJournal(db_path, device_id)
    try:
        return journal.recent(limit=limit, outcome=outcome)
    finally:
        journal.close()
