# bridge/services/device_client.py
"""
Device management API client — Hikvision ISAPI AccessControl endpoints over
HTTP digest auth.

Firmware versions disagree on response shapes (JSON ResponseStatus, XML
ResponseStatus, per-reader status lists) and on request schemas for some
deletes, so every operation recognises several equivalent "ok" answers and
some operations try an ordered list of request variants. "Already exists" and
"not found" answers on idempotent operations count as success.
"""

import json
from dataclasses import dataclass, field
from typing import Iterator, Optional

import httpx

from bridge.exceptions import DeviceRequestError
from bridge.utils.json_parser import safe_parse_json, get_nested
from bridge.utils.logger import get_logger
from bridge.utils.xml_parser import safe_parse_xml, find_text, xml_tag

logger = get_logger(__name__)

ISAPI_NS = "http://www.isapi.org/ver20/XMLSchema"

USER_RECORD_PATH = "/ISAPI/AccessControl/UserInfo/Record?format=json"
USER_DELETE_PATHS = (
    "/ISAPI/AccessControl/UserInfo/Delete?format=json",
    "/ISAPI/AccessControl/UserInfoDetail/Delete?format=json",
)
CARD_RECORD_PATH = "/ISAPI/AccessControl/CardInfo/Record?format=json"
CARD_DELETE_PATH = "/ISAPI/AccessControl/CardInfo/Delete?format=json"
CARD_SETUP_PATH = "/ISAPI/AccessControl/CardInfo/SetUp?format=json"
FINGER_CAPTURE_PATH = "/ISAPI/AccessControl/CaptureFingerPrint"
FINGER_SETUP_PATH = "/ISAPI/AccessControl/FingerPrint/SetUp?format=json"
FINGER_DELETE_PATHS = (
    "/ISAPI/AccessControl/FingerPrint/Delete?format=json",
    "/ISAPI/AccessControl/FingerPrint/Delete",
)
DEVICE_INFO_PATH = "/ISAPI/System/deviceInfo"
DEVICE_TIME_PATH = "/ISAPI/System/time"

USER_EXISTS = ("deviceuseralreadyexist", "useralreadyexist", "empnoalreadyexist")
CARD_EXISTS = ("cardnoalreadyexist", "cardalreadyexist")
NOT_FOUND = ("notexist", "not exist")
FINGER_NOT_FOUND = NOT_FOUND + ("notfound", "not found", "no record", "no data")

JSON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}
XML_HEADERS = {"Content-Type": "application/xml", "Accept": "application/xml"}

VALID_FROM = "2024-01-01T00:00:00"
VALID_UNTIL = "2036-12-31T23:59:59"


def trim_detail(text: Optional[str], limit: int = 500) -> str:
    t = (text or "").strip()
    return t if len(t) <= limit else t[:limit] + "..."


def is_ok_response(text: Optional[str]) -> bool:
    """True for any of the status shapes firmware uses to say 'done'."""
    data = safe_parse_json(text)
    if isinstance(data, dict):
        try:
            if int(data.get("statusCode")) == 1:
                return True
        except (TypeError, ValueError):
            pass
        if str(data.get("statusString") or "").lower() == "ok":
            return True
        statuses = get_nested(data, "FingerPrintStatus", "StatusList")
        if isinstance(statuses, list):
            for entry in statuses:
                if isinstance(entry, dict) and str(entry.get("cardReaderRecvStatus")) == "1":
                    return True
    code = xml_tag(text or "", "statusCode")
    if code is not None and code.strip() == "1":
        return True
    status = xml_tag(text or "", "statusString")
    return status is not None and status.lower() == "ok"


def has_sentinel(text: Optional[str], sentinels: tuple) -> bool:
    lowered = (text or "").lower()
    return any(s in lowered for s in sentinels)


@dataclass
class DeviceResponse:
    status_code: Optional[int]
    text: str = ""
    transport_error: Optional[str] = None

    @property
    def unreachable(self) -> bool:
        return self.transport_error is not None and not self.text

    @property
    def ok(self) -> bool:
        return is_ok_response(self.text)

    @property
    def detail(self) -> str:
        return trim_detail(self.text or self.transport_error)


@dataclass
class StepResult:
    ok: bool
    error: Optional[str] = None
    detail: Optional[str] = None
    exists: bool = False
    missing: bool = False
    data: dict = field(default_factory=dict)

    @classmethod
    def failed(cls, error: str, response: Optional[DeviceResponse] = None) -> "StepResult":
        return cls(ok=False, error=error, detail=response.detail if response else None)


def _judge(response: DeviceResponse, error: str, tolerated: tuple = (), tolerated_flag: str = "") -> StepResult:
    """Map a device answer to a step result, tolerating idempotency sentinels."""
    if response.unreachable:
        return StepResult.failed(error, response)
    if response.ok:
        return StepResult(ok=True)
    if tolerated and has_sentinel(response.text, tolerated):
        return StepResult(ok=True, **{tolerated_flag: True})
    return StepResult.failed(error, response)


def fingerprint_delete_attempts(employee_no: str, finger_no: int) -> Iterator[tuple[str, str, dict, str]]:
    """
    Ordered (method, path, headers, body) variants for deleting one finger slot.
    Firmware accepts different condition schemas; the first variant answering
    ok wins, so the order here matters.
    """
    emp_obj = [{"employeeNo": employee_no}]
    emp_str = [employee_no]
    conds = [
        {"EmployeeNoList": emp_obj, "fingerPrintIDList": [finger_no]},
        {"EmployeeNoList": emp_obj, "fingerPrintIDList": [{"fingerPrintID": finger_no}]},
        {"EmployeeNoList": emp_obj, "FingerPrintIDList": [{"fingerPrintID": finger_no}]},
        {"EmployeeNoList": emp_str, "fingerPrintIDList": [finger_no]},
        {"employeeNoList": emp_obj, "fingerPrintIDList": [finger_no]},
        {"employeeNoList": emp_obj, "fingerPrintIDList": [{"fingerPrintID": finger_no}]},
        {"employeeNoList": emp_str, "fingerPrintIDList": [finger_no]},
        {"EmployeeNoList": emp_obj, "fingerPrintID": finger_no},
        {"employeeNoList": emp_obj, "fingerPrintID": finger_no},
        # some firmware wants the reader hint
        {"EmployeeNoList": emp_obj, "fingerPrintIDList": [{"fingerPrintID": finger_no, "enableCardReader": [1]}]},
    ]
    for path in FINGER_DELETE_PATHS:
        for method in ("PUT", "POST", "DELETE"):
            for cond in conds:
                yield method, path, JSON_HEADERS, json.dumps({"FingerPrintDeleteCond": cond})

    xml_bodies = [
        f'<FingerPrintDeleteCond version="2.0" xmlns="{ISAPI_NS}"><EmployeeNoList><employeeNo>{employee_no}</employeeNo>'
        f"</EmployeeNoList><fingerPrintIDList><fingerPrintID>{finger_no}</fingerPrintID></fingerPrintIDList></FingerPrintDeleteCond>",
        f'<FingerPrintDeleteCond version="2.0" xmlns="{ISAPI_NS}"><employeeNo>{employee_no}</employeeNo>'
        f"<fingerPrintID>{finger_no}</fingerPrintID></FingerPrintDeleteCond>",
        f"<FingerPrintDeleteCond><EmployeeNoList><employeeNo>{employee_no}</employeeNo></EmployeeNoList>"
        f"<fingerPrintIDList><fingerPrintID>{finger_no}</fingerPrintID></fingerPrintIDList></FingerPrintDeleteCond>",
    ]
    for path in FINGER_DELETE_PATHS:
        for body in xml_bodies:
            yield "POST", path, XML_HEADERS, body


class DeviceClient:
    def __init__(self, host: str, username: str, password: str, timeout: float = 10.0,
                 capture_timeout: float = 60.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.host = host
        self.base_url = f"http://{host}"
        self._auth = httpx.DigestAuth(username, password)
        self._timeout = timeout
        self._capture_timeout = capture_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url, auth=self._auth, timeout=self._timeout, transport=self._transport,
            )
        return self._client

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def request(self, method: str, path: str, body: Optional[str] = None,
                      headers: Optional[dict] = None, timeout: Optional[float] = None) -> DeviceResponse:
        kwargs = {"headers": headers or {}}
        if body is not None:
            kwargs["content"] = body.encode("utf-8")
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            response = await self._http().request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"[DEVICE] {method} {path} failed on {self.host}: {e!r}")
            return DeviceResponse(status_code=None, transport_error=repr(e))
        return DeviceResponse(status_code=response.status_code, text=response.text)

    async def _json(self, method: str, path: str, payload: dict) -> DeviceResponse:
        return await self.request(method, path, json.dumps(payload), JSON_HEADERS)

    # ── Identity ──────────────────────────────────────────────────────────

    async def get_device_info(self) -> dict:
        """Model, serial, MAC and firmware from /ISAPI/System/deviceInfo."""
        response = await self.request("GET", DEVICE_INFO_PATH)
        if response.unreachable or response.status_code != 200:
            raise DeviceRequestError(f"deviceInfo failed on {self.host}: {response.detail or response.status_code}")
        root = safe_parse_xml(response.text)
        if root is not None:
            return {
                "device_name": find_text(root, "deviceName"),
                "model": find_text(root, "model"),
                "serial": find_text(root, "serialNumber"),
                "mac": find_text(root, "macAddress"),
                "firmware": find_text(root, "firmwareVersion"),
            }
        data = get_nested(safe_parse_json(response.text), "DeviceInfo")
        if isinstance(data, dict):
            return {
                "device_name": data.get("deviceName"),
                "model": data.get("model"),
                "serial": data.get("serialNumber"),
                "mac": data.get("macAddress"),
                "firmware": data.get("firmwareVersion"),
            }
        raise DeviceRequestError(f"Unrecognised deviceInfo response from {self.host}")

    async def get_time_info(self) -> dict:
        """Clock mode, local time and time zone from /ISAPI/System/time."""
        response = await self.request("GET", DEVICE_TIME_PATH)
        if response.unreachable or response.status_code != 200:
            raise DeviceRequestError(f"time query failed on {self.host}: {response.detail or response.status_code}")
        return {
            "time_mode": xml_tag(response.text, "timeMode"),
            "local_time": xml_tag(response.text, "localTime"),
            "time_zone": xml_tag(response.text, "timeZone"),
        }

    # ── Users & cards ─────────────────────────────────────────────────────

    async def ensure_user(self, employee_no: str, full_name: str = "") -> StepResult:
        if not employee_no:
            return StepResult.failed("missing_employee_no")
        payload = {
            "UserInfo": {
                "employeeNo": employee_no,
                "name": full_name or "Employee",
                "userType": "normal",
                "Valid": {"enable": True, "beginTime": VALID_FROM, "endTime": VALID_UNTIL},
            }
        }
        response = await self._json("POST", USER_RECORD_PATH, payload)
        return _judge(response, "user_upsert_failed", USER_EXISTS, "exists")

    async def ensure_card(self, employee_no: str, card_no: str) -> StepResult:
        if not card_no:
            return StepResult(ok=True)
        if not employee_no:
            return StepResult.failed("missing_employee_no")
        payload = {"CardInfo": {"employeeNo": employee_no, "cardNo": card_no, "cardType": "normalCard"}}
        response = await self._json("POST", CARD_RECORD_PATH, payload)
        return _judge(response, "card_upsert_failed", CARD_EXISTS, "exists")

    async def delete_card(self, employee_no: str, card_no: str) -> StepResult:
        if not employee_no and not card_no:
            return StepResult(ok=True)
        cond = {}
        if employee_no:
            cond["EmployeeNoList"] = [{"employeeNo": employee_no}]
        if card_no:
            cond["CardNoList"] = [{"cardNo": card_no}]
        response = await self._json("PUT", CARD_DELETE_PATH, {"CardInfoDelCond": cond})
        if not response.ok:
            # Older firmware: CardInfo/SetUp with deleteCard=true
            card = {"deleteCard": True, "cardType": "normalCard"}
            if employee_no:
                card["employeeNo"] = employee_no
            if card_no:
                card["cardNo"] = card_no
            response = await self._json("PUT", CARD_SETUP_PATH, {"CardInfo": card})
        return _judge(response, "card_delete_failed", NOT_FOUND, "missing")

    async def delete_user(self, employee_no: str) -> StepResult:
        if not employee_no:
            return StepResult.failed("missing_employee_no")
        payload = {"UserInfoDelCond": {"EmployeeNoList": [{"employeeNo": employee_no}]}}
        response = None
        for path in USER_DELETE_PATHS:
            response = await self._json("PUT", path, payload)
            if response.ok:
                break
        return _judge(response, "user_delete_failed", NOT_FOUND, "missing")

    # ── Fingerprints ──────────────────────────────────────────────────────

    async def capture_fingerprint(self, finger_no: int) -> StepResult:
        """Ask the reader to capture a finger. Blocks until the user presents it or the device gives up."""
        body = (
            f'<CaptureFingerPrintCond version="2.0" xmlns="{ISAPI_NS}">'
            f"<fingerNo>{finger_no}</fingerNo></CaptureFingerPrintCond>"
        )
        response = await self.request("POST", FINGER_CAPTURE_PATH, body, XML_HEADERS, timeout=self._capture_timeout)
        finger_data = xml_tag(response.text, "fingerData")
        if not finger_data:
            return StepResult.failed("finger_capture_failed", response)
        quality = xml_tag(response.text, "fingerPrintQuality")
        try:
            quality = int(quality) if quality is not None else None
        except ValueError:
            quality = None
        return StepResult(ok=True, data={"finger_data": finger_data, "quality": quality})

    async def apply_fingerprint(self, employee_no: str, finger_no: int, finger_data: str) -> StepResult:
        if not employee_no:
            return StepResult.failed("missing_employee_no")
        payload = {
            "FingerPrintCfg": {
                "employeeNo": employee_no,
                "enableCardReader": [1],
                "fingerPrintID": finger_no,
                "fingerType": "normalFP",
                "fingerData": finger_data,
            }
        }
        response = await self._json("POST", FINGER_SETUP_PATH, payload)
        return _judge(response, "finger_apply_failed")

    async def delete_fingerprint(self, employee_no: str, finger_no: int) -> StepResult:
        if not employee_no:
            return StepResult.failed("missing_employee_no")
        if not isinstance(finger_no, int) or not 1 <= finger_no <= 10:
            return StepResult.failed("invalid_finger_no")

        response = None
        attempts = 0
        for method, path, headers, body in fingerprint_delete_attempts(employee_no, finger_no):
            attempts += 1
            response = await self.request(method, path, body, headers)
            if response.ok:
                logger.info(f"[DEVICE] Fingerprint delete accepted on attempt {attempts} ({method} {path})")
                return StepResult(ok=True)

        # Only the final answer decides "already missing"
        if has_sentinel(response.text, FINGER_NOT_FOUND):
            return StepResult(ok=True, missing=True)
        return StepResult.failed("finger_delete_failed", response)
