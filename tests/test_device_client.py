# tests/test_device_client.py
"""Unit tests for ISAPI answer recognition and the device client."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import json

import httpx
import pytest

from bridge.exceptions import DeviceRequestError
from bridge.services.device_client import (
    DeviceClient, fingerprint_delete_attempts, has_sentinel, is_ok_response, trim_detail,
)

OK_JSON = '{"statusCode": 1, "statusString": "OK"}'
FAIL_JSON = '{"statusCode": 4, "statusString": "Invalid Operation", "subStatusCode": "badParameters"}'

DEVICE_INFO_XML = """<?xml version="1.0" encoding="UTF-8"?>
<DeviceInfo version="2.0" xmlns="http://www.isapi.org/ver20/XMLSchema">
  <deviceName>Front Door</deviceName>
  <model>DS-K1T671M</model>
  <serialNumber>DS-K1T671M20240101AAWRJ00000001</serialNumber>
  <macAddress>a4:14:37:00:00:01</macAddress>
  <firmwareVersion>V3.2.30</firmwareVersion>
</DeviceInfo>"""

TIME_XML = """<Time version="2.0" xmlns="http://www.hikvision.com/ver20/XMLSchema">
  <timeMode>NTP</timeMode><localTime>2026-03-01T11:00:00+03:00</localTime><timeZone>CST-3:00:00</timeZone>
</Time>"""


def _client(handler) -> DeviceClient:
    return DeviceClient("10.0.0.5", "admin", "secret", transport=httpx.MockTransport(handler))


class TestResponseRecognition:

    @pytest.mark.parametrize("text", [
        OK_JSON,
        '{"statusCode": "1"}',
        '{"statusString": "ok"}',
        '{"FingerPrintStatus": {"StatusList": [{"id": 1, "cardReaderRecvStatus": 1}]}}',
        "<ResponseStatus><statusCode>1</statusCode><statusString>OK</statusString></ResponseStatus>",
        '<ResponseStatus xmlns="http://www.isapi.org/ver20/XMLSchema"><statusString>OK</statusString></ResponseStatus>',
    ])
    def test_ok_shapes(self, text):
        assert is_ok_response(text)

    @pytest.mark.parametrize("text", [
        FAIL_JSON,
        '{"FingerPrintStatus": {"StatusList": [{"cardReaderRecvStatus": 2}]}}',
        "<ResponseStatus><statusCode>6</statusCode></ResponseStatus>",
        "",
        None,
        "gateway timeout",
    ])
    def test_failure_shapes(self, text):
        assert not is_ok_response(text)

    def test_sentinels_are_case_insensitive(self):
        assert has_sentinel('{"subStatusCode": "empNoAlreadyExist"}', ("empnoalreadyexist",))
        assert not has_sentinel(None, ("notexist",))

    def test_trim_detail(self):
        assert trim_detail("  short  ") == "short"
        assert trim_detail("x" * 600).endswith("...")
        assert len(trim_detail("x" * 600)) == 503


class TestIdentity:

    @pytest.mark.asyncio
    async def test_device_info_from_xml(self):
        client = _client(lambda request: httpx.Response(200, text=DEVICE_INFO_XML))
        info = await client.get_device_info()
        assert info == {
            "device_name": "Front Door",
            "model": "DS-K1T671M",
            "serial": "DS-K1T671M20240101AAWRJ00000001",
            "mac": "a4:14:37:00:00:01",
            "firmware": "V3.2.30",
        }
        await client.aclose()

    @pytest.mark.asyncio
    async def test_device_info_from_json(self):
        body = json.dumps({"DeviceInfo": {"model": "DS-K1A802", "serialNumber": "SN1"}})
        client = _client(lambda request: httpx.Response(200, text=body))
        info = await client.get_device_info()
        assert info["model"] == "DS-K1A802"
        assert info["serial"] == "SN1"

    @pytest.mark.asyncio
    async def test_device_info_http_error_raises(self):
        client = _client(lambda request: httpx.Response(401, text="Unauthorized"))
        with pytest.raises(DeviceRequestError):
            await client.get_device_info()

    @pytest.mark.asyncio
    async def test_unreachable_device_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)
        with pytest.raises(DeviceRequestError):
            await _client(handler).get_device_info()

    @pytest.mark.asyncio
    async def test_time_info(self):
        client = _client(lambda request: httpx.Response(200, text=TIME_XML))
        assert await client.get_time_info() == {
            "time_mode": "NTP", "local_time": "2026-03-01T11:00:00+03:00", "time_zone": "CST-3:00:00",
        }


class TestFingerprintDeleteAttempts:

    def test_sixty_six_variants_json_first(self):
        attempts = list(fingerprint_delete_attempts("1001", 3))
        assert len(attempts) == 66
        assert all(h["Content-Type"] == "application/json" for _, _, h, _ in attempts[:60])
        assert all(h["Content-Type"] == "application/xml" for _, _, h, _ in attempts[60:])
        assert all(m == "POST" for m, _, _, _ in attempts[60:])

    def test_first_variant_uses_object_list(self):
        method, path, _, body = next(fingerprint_delete_attempts("1001", 3))
        assert (method, path) == ("PUT", "/ISAPI/AccessControl/FingerPrint/Delete?format=json")
        assert json.loads(body) == {
            "FingerPrintDeleteCond": {"EmployeeNoList": [{"employeeNo": "1001"}], "fingerPrintIDList": [3]}
        }


class TestTransportErrors:

    @pytest.mark.asyncio
    async def test_request_never_raises(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)
        response = await _client(handler).request("GET", "/ISAPI/System/deviceInfo")
        assert response.status_code is None
        assert response.unreachable
        assert "ReadTimeout" in response.detail
