# bridge/schemas/control.py
"""Request/response models for the control API."""

from pydantic import BaseModel
from typing import Optional


class EnrollRequest(BaseModel):
    enroll_token: str = ""
    host: str = ""
    label: str = ""
    username: str = ""
    password: str = ""
    index: Optional[int] = None     # existing devices[] entry to complete


class EngineStateOut(BaseModel):
    device_id: str
    label: str = ""
    state: str
    pid: Optional[int] = None
    started_at: Optional[str] = None
    restarts: int = 0
    last_exit_code: Optional[int] = None
    restart_pending: bool = False
    host: Optional[str] = None
    ready: Optional[bool] = None
    missing: list[str] = []


class SupervisorStateOut(BaseModel):
    running: int
    total: int
    running_ids: list[str]
    devices: list[EngineStateOut]


class DeliveryOut(BaseModel):
    id: int
    device_id: str
    file_name: str
    serial_no: Optional[int]
    event_type: Optional[str]
    employee_no: Optional[str]
    event_time: Optional[str]
    outcome: str
    reason: Optional[str]
    recorded_at: Optional[str]


class LogLineOut(BaseModel):
    sequence: int
    at: str
    device_id: Optional[str] = None
    line: str
