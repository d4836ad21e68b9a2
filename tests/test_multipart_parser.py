# tests/test_multipart_parser.py
"""Unit tests for the incremental alertStream multipart parser."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import json

from bridge.services.multipart_parser import (
    MAX_SNIFF_BYTES, MultipartStreamParser, StreamPart, decode_json_part, parse_part_headers,
)
from conftest import make_event, multipart_part


def _feed_in_chunks(parser, data: bytes, size: int) -> list:
    parts = []
    for i in range(0, len(data), size):
        parts.extend(parser.feed(data[i:i + size]))
    return parts


def _serials(parts) -> list:
    return [json.loads(p.body)["AccessControllerEvent"]["serialNo"] for p in parts]


class TestBoundarySniffing:

    def test_boundary_taken_from_body(self):
        parser = MultipartStreamParser()
        parser.feed(multipart_part(make_event(1), boundary="abc123"))
        assert parser.boundary == b"--abc123"

    def test_no_boundary_until_header_line_arrives(self):
        parser = MultipartStreamParser()
        assert parser.feed(b"--abc123\r\nConten") == []
        assert parser.boundary is None

    def test_gives_up_after_sniff_limit(self):
        parser = MultipartStreamParser()
        parser.feed(b"x" * (MAX_SNIFF_BYTES + 10))
        assert parser.boundary is None
        assert parser.buffered == 0


class TestPartExtraction:

    def test_parts_in_order_with_content_length(self):
        data = b"".join(multipart_part(make_event(n)) for n in range(1, 6))
        parts = MultipartStreamParser().feed(data)
        assert _serials(parts) == [1, 2, 3, 4, 5]
        assert all(p.is_json for p in parts)

    def test_arbitrary_chunking_yields_same_events(self):
        data = b"".join(multipart_part(make_event(n), with_length=(n % 2 == 0)) for n in range(1, 8))
        data += b"--MIME_boundary--\r\n"
        for size in (1, 2, 7, 13, 64, 1000):
            parts = _feed_in_chunks(MultipartStreamParser(), data, size)
            assert _serials(parts) == list(range(1, 8)), f"chunk size {size}"

    def test_split_inside_boundary_and_headers(self):
        data = multipart_part(make_event(1)) + multipart_part(make_event(2))
        split_boundary = data.index(b"--MIME_boundary", 10) + 5
        split_header = data.index(b"Content-Length", split_boundary) + 3
        parser = MultipartStreamParser()
        parts = parser.feed(data[:split_boundary])
        parts += parser.feed(data[split_boundary:split_header])
        parts += parser.feed(data[split_header:])
        assert _serials(parts) == [1, 2]

    def test_no_length_part_then_terminal_boundary(self):
        data = multipart_part(make_event(42), with_length=False) + b"--MIME_boundary--\r\n"
        parser = MultipartStreamParser()
        parts = parser.feed(data)
        assert _serials(parts) == [42]
        # terminal boundary resets the parser
        assert parser.boundary is None
        assert parser.buffered == 0

    def test_waits_for_full_body(self):
        data = multipart_part(make_event(7))
        parser = MultipartStreamParser()
        assert parser.feed(data[:-10]) == []
        assert _serials(parser.feed(data[-10:])) == [7]

    def test_zero_length_part_is_skipped(self):
        data = b"--MIME_boundary\r\nContent-Type: application/json\r\nContent-Length: 0\r\n\r\n"
        data += multipart_part(make_event(3))
        assert _serials(MultipartStreamParser().feed(data)) == [3]

    def test_non_json_part_is_returned_but_flagged(self):
        data = multipart_part(b"\xff\xd8jpegbytes", content_type="image/jpeg") + multipart_part(make_event(9))
        parts = MultipartStreamParser().feed(data)
        assert [p.is_json for p in parts] == [False, True]

    def test_reset_forgets_everything(self):
        parser = MultipartStreamParser()
        parser.feed(multipart_part(make_event(1))[:-5])
        parser.reset()
        assert parser.boundary is None
        assert parser.buffered == 0


class TestHelpers:

    def test_parse_part_headers_lowercases_names(self):
        headers = parse_part_headers(b"Content-Type: application/json\r\nContent-Length: 12")
        assert headers == {"content-type": "application/json", "content-length": "12"}

    def test_decode_json_part_drops_garbage(self):
        part = StreamPart(headers={"content-type": "application/json"}, body=b"{not json")
        assert decode_json_part(part) is None

    def test_decode_json_part(self):
        part = StreamPart(headers={"content-type": "application/json"}, body=b'\r\n{"eventType": "x"}\r\n')
        assert decode_json_part(part) == {"eventType": "x"}
