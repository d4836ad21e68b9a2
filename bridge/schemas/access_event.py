# bridge/schemas/access_event.py
"""
Access-control events as reported by the device alertStream, and the queue
items that wrap them on disk.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from bridge.utils.json_parser import finite_int, get_nested


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (Z or offset). Naive values are taken as UTC."""
    if not value or not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def local_tz_offset_minutes() -> int:
    offset = datetime.now().astimezone().utcoffset()
    return int(offset.total_seconds() // 60) if offset else 0


@dataclass(frozen=True)
class AccessEvent:
    event_type: str
    date_time: Optional[str]
    serial_no: Optional[int]
    employee_no: Optional[str]
    door_no: Optional[int]
    card_reader_no: Optional[int]
    major_event_type: Optional[int]
    sub_event_type: Optional[int]
    status_value: Optional[int]
    raw: dict = field(repr=False, compare=False)

    @classmethod
    def from_payload(cls, payload: dict) -> "AccessEvent":
        ace = payload.get("AccessControllerEvent")
        if not isinstance(ace, dict):
            ace = {}
        employee = ace.get("employeeNoString")
        return cls(
            event_type=str(payload.get("eventType") or "unknown"),
            date_time=payload.get("dateTime"),
            serial_no=finite_int(ace.get("serialNo")),
            employee_no=str(employee) if employee else None,
            door_no=finite_int(ace.get("doorNo")),
            card_reader_no=finite_int(ace.get("cardReaderNo")),
            major_event_type=finite_int(ace.get("majorEventType")),
            sub_event_type=finite_int(ace.get("subEventType")),
            status_value=finite_int(ace.get("statusValue")),
            raw=payload,
        )

    @property
    def event_time(self) -> Optional[datetime]:
        return parse_iso(self.date_time)


def event_serial(payload: Any) -> Optional[int]:
    return finite_int(get_nested(payload, "AccessControllerEvent", "serialNo"))


@dataclass(frozen=True)
class QueueItem:
    """One pending event as persisted in the device queue directory."""

    path: str
    saved_at: Optional[str]
    device_id: Optional[str]
    bridge_tz_offset_minutes: Optional[int]
    raw: Any
