# bridge/models/delivered_event.py
"""
Delivered event journal table.
One row per queue item that left the queue: accepted by the ingestion
service, confirmed as a duplicate, or skipped by the delivery rules.
Used for local audit and for answering "did event N reach the server?".
"""

from sqlalchemy import Column, Integer, BigInteger, String, DateTime

from bridge.database import Base


class DeliveredEvent(Base):
    __tablename__ = "delivered_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(String(100), nullable=False, index=True)
    file_name = Column(String(120), nullable=False)
    serial_no = Column(BigInteger, index=True)
    event_type = Column(String(100))
    employee_no = Column(String(64), index=True)
    event_time = Column(String(40))          # device dateTime, kept verbatim
    outcome = Column(String(20), nullable=False, index=True)   # accepted | duplicate | skipped
    reason = Column(String(200))
    recorded_at = Column(DateTime, nullable=False, index=True)

    def __repr__(self):
        return f"<DeliveredEvent {self.id} serial={self.serial_no} outcome={self.outcome}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "device_id": self.device_id,
            "file_name": self.file_name,
            "serial_no": self.serial_no,
            "event_type": self.event_type,
            "employee_no": self.employee_no,
            "event_time": self.event_time,
            "outcome": self.outcome,
            "reason": self.reason,
            "recorded_at": self.recorded_at.isoformat() if self.recorded_at else None,
        }
