# bridge/schemas/job.py
"""Remote-issued device configuration jobs and their completion records."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, field_validator


class JobAction(str, Enum):
    UPSERT = "upsert"                              # upsert credential holder
    FINGERPRINT_CAPTURE = "fingerprint_capture"    # capture + apply + store template
    FINGERPRINT_APPLY = "fingerprint_apply"        # apply a stored template
    DELETE_FINGERPRINT = "delete_fingerprint"
    CLEAR_CARD = "clear_card"
    DELETE_USER = "delete_user"


class Job(BaseModel):
    id: Union[str, int]
    action: str = ""
    employee_no: str = ""
    employee_id: Optional[str] = None
    full_name: str = ""
    card_no: str = ""
    payload: dict = Field(default_factory=dict)

    @field_validator("action", "employee_no", "full_name", "card_no", mode="before")
    @classmethod
    def _as_stripped_str(cls, value: Any) -> str:
        return "" if value is None else str(value).strip()

    @field_validator("employee_id", mode="before")
    @classmethod
    def _optional_str(cls, value: Any) -> Optional[str]:
        return None if value is None else str(value)

    @field_validator("payload", mode="before")
    @classmethod
    def _payload_dict(cls, value: Any) -> dict:
        return value if isinstance(value, dict) else {}

    @property
    def parsed_action(self) -> Optional[JobAction]:
        try:
            return JobAction(self.action)
        except ValueError:
            return None

    @property
    def finger_no(self) -> Optional[int]:
        """Finger slot from the payload (default 1). None when not a number."""
        raw = self.payload.get("finger_no") or 1
        try:
            return int(raw)
        except (TypeError, ValueError):
            return None

    @property
    def subject(self) -> str:
        return self.employee_no or self.employee_id or ""


@dataclass
class JobOutcome:
    status: str                      # success | error
    error: Optional[str] = None
    result: dict = field(default_factory=dict)
    retry_in_sec: int = 0

    @classmethod
    def success(cls, **result) -> "JobOutcome":
        return cls(status="success", result=result or {"ok": True})

    @classmethod
    def failure(cls, error: str, detail: Any = None, retry_in_sec: int = 5, **result) -> "JobOutcome":
        if detail is not None:
            result["detail"] = detail
        return cls(status="error", error=error, result=result, retry_in_sec=retry_in_sec)

    @property
    def ok(self) -> bool:
        return self.status == "success"
