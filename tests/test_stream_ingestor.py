# tests/test_stream_ingestor.py
"""Unit tests for the alertStream reader, against an httpx.MockTransport device."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import asyncio

import httpx
import pytest

from bridge.services.stream_ingestor import StreamIngestor, StreamStatus
from conftest import make_event, multipart_part


async def _chunks(data: bytes, size: int = 50):
    for i in range(0, len(data), size):
        yield data[i:i + size]
        await asyncio.sleep(0)


def _ingestor(handler, received, **kwargs) -> StreamIngestor:
    async def on_event(payload):
        received.append(payload)
    return StreamIngestor("10.0.0.5", "admin", "secret", on_event,
                          transport=httpx.MockTransport(handler), **kwargs)


def _stream_response(body: bytes, chunk_size: int = 50) -> httpx.Response:
    return httpx.Response(
        200, headers={"Content-Type": "multipart/mixed; boundary=MIME_boundary"},
        content=_chunks(body, chunk_size),
    )


class TestRunOnce:

    @pytest.mark.asyncio
    async def test_events_arrive_in_order(self):
        body = b"".join(multipart_part(make_event(n)) for n in range(1, 6))
        received = []
        ingestor = _ingestor(lambda request: _stream_response(body, chunk_size=17), received)
        await ingestor.run_once()
        assert [e["AccessControllerEvent"]["serialNo"] for e in received] == [1, 2, 3, 4, 5]
        assert ingestor.status.connections == 1
        assert ingestor.status.last_event_time == "2026-03-01T08:00:00+00:00"

    @pytest.mark.asyncio
    async def test_non_json_parts_are_ignored(self):
        body = (
            multipart_part(make_event(1))
            + multipart_part(b"\xff\xd8\xff\xe0 jpeg bytes", content_type="image/jpeg")
            + multipart_part(make_event(2))
        )
        received = []
        await _ingestor(lambda request: _stream_response(body), received).run_once()
        assert [e["AccessControllerEvent"]["serialNo"] for e in received] == [1, 2]

    @pytest.mark.asyncio
    async def test_last_part_without_length_is_delivered_before_close(self):
        body = multipart_part(make_event(1)) + multipart_part(make_event(2), with_length=False) + b"--MIME_boundary--\r\n"
        received = []
        await _ingestor(lambda request: _stream_response(body), received).run_once()
        assert len(received) == 2

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_stop_the_stream(self):
        body = b"".join(multipart_part(make_event(n)) for n in (1, 2))
        seen = []

        async def on_event(payload):
            seen.append(payload)
            raise RuntimeError("queue full")

        ingestor = StreamIngestor("10.0.0.5", "admin", "secret", on_event,
                                  transport=httpx.MockTransport(lambda request: _stream_response(body)))
        await ingestor.run_once()
        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_non_200_answer_returns_without_events(self):
        received = []
        ingestor = _ingestor(lambda request: httpx.Response(503, text="busy"), received)
        await ingestor.run_once()
        assert received == []
        assert ingestor.status.connected is False
        assert ingestor.status.connections == 0

    @pytest.mark.asyncio
    async def test_requests_the_alert_stream(self):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return _stream_response(b"")

        await _ingestor(handler, []).run_once()
        assert seen == ["http://10.0.0.5/ISAPI/Event/notification/alertStream"]


class TestRunForever:

    @pytest.mark.asyncio
    async def test_reconnects_after_close_and_after_errors(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            if len(attempts) == 2:
                raise httpx.ConnectError("refused", request=request)
            return _stream_response(multipart_part(make_event(len(attempts))))

        received = []
        status = StreamStatus()
        ingestor = _ingestor(handler, received, reconnect_delay=0.01, status=status)
        task = asyncio.create_task(ingestor.run_forever())
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(attempts) >= 3
        assert len(received) >= 2
        assert status.connected is False
        assert ingestor.parser.buffered == 0
