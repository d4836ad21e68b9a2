# bridge/schemas/bridge_config.py
"""
Persisted bridge configuration (config.json) and the per-engine configuration
derived from it. The settings UI edits config.json; the bridge only fills in
enrollment credentials and discovered device identity fields.
"""

import os
import re
import socket
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_VERSION = "access-bridge@1.0.0"

# Legacy upper-case keys written by earlier bridge releases
_LEGACY_DEVICE_KEYS = {
    "LABEL": "label",
    "DEVICE_UUID": "device_id",
    "DEVICE_KEY": "device_key",
    "ENROLL_TOKEN": "enroll_token",
    "HIK_IP": "host",
    "HIK_USER": "username",
    "HIK_PASS": "password",
    "HIK_MODEL": "model",
    "HIK_SERIAL": "serial",
    "HIK_MAC": "mac",
    "HIK_TIME_ZONE": "time_zone",
    "HIK_TIME_MODE": "time_mode",
    "HIK_LOCAL_TIME": "local_time",
}

_LEGACY_BRIDGE_KEYS = {
    "SUPABASE_URL": "ingest_url",
    "SUPABASE_ANON_KEY": "ingest_api_key",
    "BRIDGE_ID": "bridge_id",
    "BRIDGE_VERSION": "bridge_version",
    "START_MODE": "start_mode",
    "FLUSH_INTERVAL_MS": "flush_interval_seconds",
    "INSERT_CONCURRENCY": "upload_concurrency",
    "HEARTBEAT_MS": "heartbeat_interval_seconds",
    "RECONNECT_MS": "reconnect_delay_seconds",
    "JOB_POLL_MS": "job_poll_interval_seconds",
    "JOB_LIMIT": "job_batch_size",
    "DEVICES": "devices",
}

_MS_KEYS = {"FLUSH_INTERVAL_MS", "HEARTBEAT_MS", "RECONNECT_MS", "JOB_POLL_MS"}


def safe_name(value: str) -> str:
    """Filesystem-safe name: [A-Za-z0-9._-], max 120 chars."""
    return re.sub(r"[^a-zA-Z0-9._-]+", "_", str(value or ""))[:120]


class DeviceConfig(BaseModel):
    label: str = ""
    device_id: str = ""
    device_key: str = ""
    enroll_token: str = ""
    host: str = ""
    username: str = "admin"
    password: str = ""
    # Discovered identity (filled by the bridge)
    model: str = ""
    serial: str = ""
    mac: str = ""
    time_zone: str = ""
    time_mode: str = ""
    local_time: str = ""

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        out = {}
        for key, value in data.items():
            name = _LEGACY_DEVICE_KEYS.get(str(key).upper(), key)
            out.setdefault(name, "" if value is None else value)
        return out

    @field_validator("*", mode="before")
    @classmethod
    def _as_stripped_str(cls, value: Any) -> Any:
        return str(value).strip() if value is not None else ""

    @field_validator("username")
    @classmethod
    def _default_user(cls, value: str) -> str:
        return value or "admin"

    @property
    def is_ready(self) -> bool:
        return not self.missing_fields()

    def missing_fields(self) -> list[str]:
        return [f for f in ("device_id", "device_key", "host") if not getattr(self, f)]

    @property
    def display_name(self) -> str:
        return self.label or self.device_id or self.host or "device"


class BridgeConfig(BaseModel):
    # ── Ingestion / control service ───────────────────────────────────────
    ingest_url: str = ""
    ingest_api_key: str = ""

    # ── Identity ──────────────────────────────────────────────────────────
    bridge_id: str = Field(default_factory=socket.gethostname)
    bridge_version: str = DEFAULT_VERSION

    # ── Delivery ──────────────────────────────────────────────────────────
    start_mode: Literal["now", "all"] = "now"
    tracked_event_type: str = "AccessControllerEvent"
    archive_delivered: bool = False   # move delivered queue files to done/ instead of deleting
    journal_enabled: bool = True

    # ── Timers (seconds) ──────────────────────────────────────────────────
    reconnect_delay_seconds: float = Field(default=1.5, ge=0)
    flush_interval_seconds: float = Field(default=5.0, gt=0)
    upload_concurrency: int = Field(default=3, ge=1)
    heartbeat_interval_seconds: float = Field(default=15.0, gt=0)
    job_poll_interval_seconds: float = 4.0
    job_batch_size: int = Field(default=5, ge=1)

    devices: list[DeviceConfig] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_layout(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        out: dict[str, Any] = {}
        for key, value in data.items():
            if key in _LEGACY_BRIDGE_KEYS:
                if key in _MS_KEYS:
                    try:
                        value = float(value) / 1000.0
                    except (TypeError, ValueError):
                        continue
                out.setdefault(_LEGACY_BRIDGE_KEYS[key], value)
            elif key not in _LEGACY_DEVICE_KEYS:
                out[key] = value
        # Single-device layout: device fields at the top level
        if not out.get("devices"):
            legacy = {k: data[k] for k in _LEGACY_DEVICE_KEYS if data.get(k)}
            if any(k in legacy for k in ("DEVICE_UUID", "DEVICE_KEY", "HIK_IP", "ENROLL_TOKEN")):
                out["devices"] = [legacy]
        if isinstance(out.get("start_mode"), str):
            out["start_mode"] = "all" if out["start_mode"].strip().lower() == "all" else "now"
        return out

    @field_validator("bridge_id")
    @classmethod
    def _default_bridge_id(cls, value: str) -> str:
        return value.strip() or socket.gethostname()

    @field_validator("job_poll_interval_seconds")
    @classmethod
    def _min_poll_interval(cls, value: float) -> float:
        return max(1.5, value)

    def find_device(self, device_id: str) -> Optional[DeviceConfig]:
        for device in self.devices:
            if device.device_id == device_id:
                return device
        return None


class EngineConfig(BaseModel):
    """Everything one engine needs, passed explicitly at construction."""

    device: DeviceConfig
    bridge_id: str
    bridge_version: str = DEFAULT_VERSION
    ingest_url: str
    ingest_api_key: str
    device_dir: str

    start_mode: Literal["now", "all"] = "now"
    tracked_event_type: str = "AccessControllerEvent"
    archive_delivered: bool = False
    journal_enabled: bool = True

    reconnect_delay_seconds: float = 1.5
    flush_interval_seconds: float = 5.0
    upload_concurrency: int = 3
    heartbeat_interval_seconds: float = 15.0
    job_poll_interval_seconds: float = 4.0
    job_batch_size: int = 5

    @classmethod
    def build(cls, cfg: BridgeConfig, device: DeviceConfig, devices_dir: str) -> "EngineConfig":
        return cls(
            device=device,
            bridge_id=cfg.bridge_id,
            bridge_version=cfg.bridge_version,
            ingest_url=cfg.ingest_url,
            ingest_api_key=cfg.ingest_api_key,
            device_dir=os.path.join(devices_dir, safe_name(device.device_id)),
            start_mode=cfg.start_mode,
            tracked_event_type=cfg.tracked_event_type,
            archive_delivered=cfg.archive_delivered,
            journal_enabled=cfg.journal_enabled,
            reconnect_delay_seconds=cfg.reconnect_delay_seconds,
            flush_interval_seconds=cfg.flush_interval_seconds,
            upload_concurrency=cfg.upload_concurrency,
            heartbeat_interval_seconds=cfg.heartbeat_interval_seconds,
            job_poll_interval_seconds=cfg.job_poll_interval_seconds,
            job_batch_size=cfg.job_batch_size,
        )

    @property
    def queue_dir(self) -> str:
        return os.path.join(self.device_dir, "queue")

    @property
    def done_dir(self) -> str:
        return os.path.join(self.device_dir, "done")

    @property
    def journal_path(self) -> str:
        return os.path.join(self.device_dir, "journal.db")

    @property
    def cutoff_path(self) -> str:
        return os.path.join(self.device_dir, "cutoff.json")
