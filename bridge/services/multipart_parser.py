# bridge/services/multipart_parser.py
"""
Incremental parser for the device alertStream (multipart/mixed over a
long-lived HTTP response).

The boundary token is sniffed from the body itself: firmware does not
reliably announce it in the response headers, so the first `--<token>` line
followed by a part header is taken as the separator.

feed() is re-entered on every chunk. A parsing step (boundary line + header
block + body) is consumed only once it can complete, so a chunk split
anywhere leaves the buffer intact until the rest arrives.
"""

import re
from dataclasses import dataclass
from typing import Optional

from bridge.utils.json_parser import safe_parse_json
from bridge.utils.logger import get_logger

logger = get_logger(__name__)

CRLF = b"\r\n"
HEADER_END = b"\r\n\r\n"
MAX_SNIFF_BYTES = 64 * 1024

_BOUNDARY_RE = re.compile(
    rb"--([^\r\n]+)\r\n(?:content-type|content-length|content-disposition)\s*:",
    re.IGNORECASE,
)


@dataclass
class StreamPart:
    headers: dict
    body: bytes

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "").lower()

    @property
    def is_json(self) -> bool:
        return "json" in self.content_type


def parse_part_headers(block: bytes) -> dict:
    """Header block → {lower-case name: value}."""
    headers = {}
    for line in block.decode("utf-8", errors="replace").split("\r\n"):
        name, sep, value = line.partition(":")
        if sep and name.strip():
            headers[name.strip().lower()] = value.strip()
    return headers


def decode_json_part(part: StreamPart) -> Optional[dict]:
    """Decode a JSON event part. Returns None (and logs) for undecodable bodies."""
    payload = safe_parse_json(part.body.strip())
    if not isinstance(payload, dict):
        logger.warning(f"[STREAM] Dropped undecodable JSON part ({len(part.body)} bytes)")
        return None
    return payload


class MultipartStreamParser:
    def __init__(self):
        self.reset()

    def reset(self):
        """Drop the buffer and forget the boundary (used on every reconnect)."""
        self._buffer = bytearray()
        self.boundary: Optional[bytes] = None

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[StreamPart]:
        """Append a chunk and return every part it completed, in stream order."""
        if chunk:
            self._buffer.extend(chunk)
        parts: list[StreamPart] = []
        while True:
            if self.boundary is None and not self._sniff_boundary():
                return parts
            part, progressed = self._next_part()
            if part is not None:
                parts.append(part)
            if not progressed:
                return parts

    def _sniff_boundary(self) -> bool:
        match = _BOUNDARY_RE.search(self._buffer)
        if match is None:
            if len(self._buffer) > MAX_SNIFF_BYTES:
                logger.warning(f"[STREAM] No multipart boundary in first {len(self._buffer)} bytes — discarding")
                self._buffer.clear()
            return False
        self.boundary = b"--" + match.group(1)
        logger.info(f"[STREAM] Boundary detected: {self.boundary.decode('utf-8', errors='replace')}")
        return True

    def _next_part(self) -> tuple[Optional[StreamPart], bool]:
        """
        Try to consume one step from the buffer.
        Returns (part or None, whether anything was consumed).
        """
        buf = self._buffer
        boundary = self.boundary
        blen = len(boundary)

        idx = buf.find(boundary)
        if idx == -1:
            # Keep only a tail that could still be the start of a boundary
            keep = blen - 1
            if len(buf) > keep:
                del buf[: len(buf) - keep]
            return None, False
        if idx > 0:
            del buf[:idx]

        if len(buf) < blen + 2:
            return None, False
        after = bytes(buf[blen:blen + 2])
        if after == b"--":
            # Terminal boundary: the multipart body is over
            self.reset()
            return None, True
        if after != CRLF:
            # Boundary text inside something else; skip past it
            del buf[:blen]
            return None, True

        header_start = blen + 2
        header_end = buf.find(HEADER_END, header_start)
        if header_end == -1:
            return None, False
        headers = parse_part_headers(bytes(buf[header_start:header_end]))
        body_start = header_end + len(HEADER_END)

        length = _content_length(headers)
        if length is not None:
            if length <= 0:
                del buf[:body_start]
                return None, True
            if len(buf) < body_start + length:
                return None, False
            body = bytes(buf[body_start:body_start + length])
            del buf[:body_start + length]
        else:
            next_idx = buf.find(boundary, body_start)
            if next_idx == -1:
                return None, False
            body = bytes(buf[body_start:next_idx])
            del buf[:next_idx]

        return StreamPart(headers=headers, body=body), True


def _content_length(headers: dict) -> Optional[int]:
    raw = headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None
