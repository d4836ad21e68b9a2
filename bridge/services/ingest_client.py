# bridge/services/ingest_client.py
"""
Client for the remote ingestion / control service.

Every call is `POST {ingest_url}/functions/v1/{function}` with a JSON body
that carries the device id and per-device key. The wire schema beyond that is
owned by the remote side; this module only maps answers to ok/error.
Network failures never raise: they come back as an error RpcResult so callers
can leave work in the queue and retry later.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import httpx

from bridge.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 15.0


@dataclass
class RpcResult:
    ok: bool
    data: Optional[dict] = None
    error: Optional[str] = None


class SubmitStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    ERROR = "error"


@dataclass
class SubmitResult:
    status: SubmitStatus
    error: Optional[str] = None


class IngestClient:
    def __init__(self, base_url: str, api_key: str, device_id: str = "", device_key: str = "",
                 timeout: float = DEFAULT_TIMEOUT, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key or ""
        self.device_id = device_id
        self.device_key = device_key
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _credentials(self) -> dict:
        return {"device_id": self.device_id, "device_key": self.device_key}

    async def call(self, function: str, payload: dict) -> RpcResult:
        url = f"{self.base_url}/functions/v1/{function}"
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
        }
        try:
            response = await self._http().post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            return RpcResult(ok=False, error=f"network_error: {e.__class__.__name__}")

        try:
            data = response.json()
        except ValueError:
            data = {"error": "invalid_json"}
        if not isinstance(data, dict):
            data = {"data": data}

        if not response.is_success or data.get("ok") is False:
            return RpcResult(ok=False, data=data, error=data.get("error") or f"http_{response.status_code}")
        return RpcResult(ok=True, data=data)

    # ── Events ────────────────────────────────────────────────────────────

    async def submit_event(self, event: Any, received_at: Optional[str],
                           tz_offset_minutes: Optional[int]) -> SubmitResult:
        res = await self.call("bridgeIngestEvents", {
            **self._credentials(),
            "event": event,
            "received_at": received_at,
            "bridge_tz_offset_minutes": tz_offset_minutes,
        })
        if not res.ok:
            return SubmitResult(SubmitStatus.ERROR, error=res.error or "insert_failed")
        inserted = _as_int(res.data.get("inserted"))
        duplicates = _as_int(res.data.get("duplicates"))
        if inserted == 0 and duplicates > 0:
            return SubmitResult(SubmitStatus.DUPLICATE)
        return SubmitResult(SubmitStatus.ACCEPTED)

    async def submit_heartbeat(self, record: dict) -> RpcResult:
        return await self.call("bridgeHeartbeat", {**self._credentials(), **record})

    # ── Jobs ──────────────────────────────────────────────────────────────

    async def pull_jobs(self, bridge_id: str, limit: int) -> RpcResult:
        return await self.call("bridgePullEmployeeJobs", {
            **self._credentials(), "bridge_id": bridge_id, "limit": limit,
        })

    async def complete_job(self, job_id: Any, status: str, error: Optional[str],
                           result: Optional[dict], retry_in_sec: int = 0) -> RpcResult:
        return await self.call("bridgeCompleteEmployeeJob", {
            **self._credentials(),
            "job_id": job_id,
            "status": status,
            "error": error,
            "result": result,
            "retry_in_sec": retry_in_sec or 0,
        })

    async def store_fingerprint_template(self, employee_no: str, finger_no: int, finger_data: str) -> RpcResult:
        return await self.call("bridgeStoreFingerprintTemplate", {
            **self._credentials(),
            "employee_no": employee_no,
            "finger_no": finger_no,
            "finger_data": finger_data,
        })

    async def fetch_fingerprint_template(self, employee_no: str, finger_no: int) -> RpcResult:
        return await self.call("bridgeGetFingerprintTemplate", {
            **self._credentials(), "employee_no": employee_no, "finger_no": finger_no,
        })

    # ── Device registration ───────────────────────────────────────────────

    async def enroll_device(self, token: str, bridge_id: str, host: str = "", label: str = "") -> RpcResult:
        """Exchange a one-time activation token for a device id + key."""
        return await self.call("bridgeEnrollDevice", {
            "enroll_token": token, "bridge_id": bridge_id, "ip": host, "label": label,
        })

    async def delete_device(self) -> RpcResult:
        return await self.call("bridgeDeleteDevice", self._credentials())

    async def push_device_info(self, info: dict) -> RpcResult:
        return await self.call("bridgeUpdateDeviceInfo", {**self._credentials(), **info})


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0
