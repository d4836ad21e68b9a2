# tests/conftest.py
"""Shared fixtures. Engines under test log to the console only."""

import os
import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
os.environ.setdefault("LOG_TO_FILE", "0")

import json

import pytest

from bridge.services.event_queue import EventQueue


def make_event(serial=None, event_type="AccessControllerEvent", date_time="2026-03-01T08:00:00+00:00",
               employee="1001") -> dict:
    ace = {"employeeNoString": employee, "majorEventType": 5, "subEventType": 75, "doorNo": 1, "cardReaderNo": 1}
    if serial is not None:
        ace["serialNo"] = serial
    return {"eventType": event_type, "dateTime": date_time, "AccessControllerEvent": ace}


def multipart_part(payload, boundary="MIME_boundary", with_length=True, content_type="application/json") -> bytes:
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    head = f"--{boundary}\r\nContent-Type: {content_type}\r\n"
    if with_length:
        head += f"Content-Length: {len(body)}\r\n"
    return (head + "\r\n").encode("ascii") + body + b"\r\n"


@pytest.fixture
def queue(tmp_path):
    q = EventQueue(str(tmp_path / "queue"), "dev-1")
    q.ensure_dirs()
    return q
