# bridge/services/stream_ingestor.py
"""
Stream ingestor — listens on the device alertStream and hands every JSON
event to the engine, in arrival order.

Endpoint: GET http://{host}/ISAPI/Event/notification/alertStream
Protocol: HTTP multipart stream with digest auth; the device pushes JSON parts
(plus occasional non-JSON parts, which are ignored) for as long as the
connection stays open.

The connection is re-opened after a fixed delay whenever it closes, for any
reason. Parser state never survives a reconnect.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

from bridge.schemas.access_event import parse_iso
from bridge.services.multipart_parser import MultipartStreamParser, StreamPart, decode_json_part
from bridge.utils.logger import get_logger

logger = get_logger(__name__)

STREAM_PATH = "/ISAPI/Event/notification/alertStream"
CHUNK_SIZE = 4096


@dataclass
class StreamStatus:
    connected: bool = False
    last_event_time: Optional[str] = None
    connections: int = 0


class StreamIngestor:
    def __init__(self, host: str, username: str, password: str,
                 on_event: Callable[[dict], Awaitable[None]],
                 reconnect_delay: float = 1.5,
                 status: Optional[StreamStatus] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 label: str = ""):
        self.url = f"http://{host}{STREAM_PATH}"
        self.label = label or host
        self._auth = httpx.DigestAuth(username, password)
        self.on_event = on_event
        self.reconnect_delay = reconnect_delay
        self.status = status or StreamStatus()
        self._transport = transport
        self.parser = MultipartStreamParser()

    async def run_once(self):
        """One connection lifecycle: connect, read until the stream ends, return."""
        self.parser.reset()
        self.status.connected = False
        logger.info(f"📡 Connecting to alertStream: {self.label} ({self.url})")
        timeout = httpx.Timeout(10.0, read=None)
        async with httpx.AsyncClient(auth=self._auth, timeout=timeout, transport=self._transport) as client:
            async with client.stream("GET", self.url) as response:
                if response.status_code != 200:
                    logger.warning(f"⚠️  {self.label} alertStream returned HTTP {response.status_code}")
                    return
                self.status.connections += 1
                async for chunk in response.aiter_bytes(CHUNK_SIZE):
                    parts = self.parser.feed(chunk)
                    if self.parser.boundary is not None and not self.status.connected:
                        self.status.connected = True
                        logger.info(f"✅ {self.label} alertStream connected — listening for events...")
                    for part in parts:
                        await self._dispatch(part)
        logger.warning(f"🔌 {self.label} alertStream closed")

    async def run_forever(self):
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except httpx.ConnectError:
                logger.warning(f"❌ {self.label} — connection refused")
            except httpx.HTTPError as e:
                logger.warning(f"❌ {self.label} — stream error: {e!r}")
            except Exception as e:
                logger.error(f"❌ {self.label} — unexpected error: {e}", exc_info=True)
            finally:
                self.status.connected = False
                self.parser.reset()
            logger.info(f"↻ Reconnecting to {self.label} in {self.reconnect_delay}s")
            await asyncio.sleep(self.reconnect_delay)

    async def _dispatch(self, part: StreamPart):
        if not part.is_json:
            return
        payload = decode_json_part(part)
        if payload is None:
            return
        ts = parse_iso(payload.get("dateTime"))
        if ts is not None:
            self.status.last_event_time = ts.isoformat()
        try:
            await self.on_event(payload)
        except Exception as e:
            logger.error(f"Event handling error from {self.label}: {e}", exc_info=True)
