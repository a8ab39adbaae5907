"""
Unit tests for the event stream frame parser.
"""

from datetime import datetime, timezone

import pytest

from spark_cloud.events.models import EventRecord
from spark_cloud.events.parser import SSEFrameParser, parse_timestamp
from spark_cloud.shared.errors import ProtocolParseError

from tests.helpers import sse_frame


class TestSSEFrameParser:
    """Test cases for SSEFrameParser."""

    @pytest.fixture
    def parser(self):
        return SSEFrameParser()

    def test_envelope_frame(self, parser):
        """Test the cloud's event + JSON data frame."""
        items = parser.feed(sse_frame("temperature", data="21.5", device_id="abc123", ttl=60))

        assert len(items) == 1
        record = items[0]
        assert isinstance(record, EventRecord)
        assert record.name == "temperature"
        assert record.data == "21.5"
        assert record.ttl == 60
        assert record.device_id == "abc123"
        assert record.published_at == datetime(2015, 4, 1, 10, 0, tzinfo=timezone.utc)
        assert record.public is True

    def test_field_lines_in_any_order(self, parser):
        """Test fields given as separate lines, shuffled."""
        frame = (
            b"coreid: dev1\n"
            b"ttl: 30\n"
            b"data: hello\n"
            b"published_at: 2015-04-01T10:00:00Z\n"
            b"event: greeting\n"
            b"\n"
        )
        items = parser.feed(frame)

        assert len(items) == 1
        assert items[0].name == "greeting"
        assert items[0].data == "hello"
        assert items[0].ttl == 30
        assert items[0].device_id == "dev1"

    def test_frame_split_across_chunks(self, parser):
        """Test a frame delivered one byte at a time."""
        frame = sse_frame("temperature", data="21.5")
        items = []
        for i in range(len(frame)):
            items.extend(parser.feed(frame[i:i + 1]))

        assert len(items) == 1
        assert items[0].name == "temperature"
        assert items[0].data == "21.5"

    def test_multiple_frames_in_one_chunk(self, parser):
        chunk = sse_frame("a") + sse_frame("b") + sse_frame("c")

        items = parser.feed(chunk)

        assert [item.name for item in items] == ["a", "b", "c"]

    def test_crlf_line_endings(self, parser):
        frame = sse_frame("temperature").replace(b"\n", b"\r\n")

        items = parser.feed(frame)

        assert len(items) == 1
        assert items[0].name == "temperature"

    def test_keepalive_comments_ignored(self, parser):
        items = parser.feed(b":ok\n\n:\n\n")

        assert items == []
        assert parser.has_partial_frame is False

    def test_comment_inside_frame(self, parser):
        items = parser.feed(b"event: temp\n:keepalive\ndata: 1\n\n")

        assert len(items) == 1
        assert items[0].data == "1"

    def test_missing_data_yields_error(self, parser):
        """Test a frame without data gives one parse error and parsing continues."""
        items = parser.feed(b"event: temperature\ncoreid: abc123\n\n" + sse_frame("humidity"))

        assert len(items) == 2
        error = items[0]
        assert isinstance(error, ProtocolParseError)
        assert error.code == "PROTOCOL_PARSE_ERROR"
        assert error.event_name == "temperature"
        assert error.device_id == "abc123"
        assert isinstance(items[1], EventRecord)
        assert items[1].name == "humidity"

    def test_missing_event_name_yields_error(self, parser):
        items = parser.feed(b'data: {"data": "1", "coreid": "abc123"}\n\n')

        assert len(items) == 1
        assert isinstance(items[0], ProtocolParseError)
        assert items[0].event_name is None
        assert items[0].device_id == "abc123"

    def test_invalid_ttl_yields_error(self, parser):
        items = parser.feed(sse_frame("temperature", ttl="soon"))

        assert isinstance(items[0], ProtocolParseError)
        assert "ttl" in items[0].message

    def test_invalid_timestamp_yields_error(self, parser):
        items = parser.feed(sse_frame("temperature", published_at="yesterday"))

        assert isinstance(items[0], ProtocolParseError)
        assert "published_at" in items[0].message

    def test_undecodable_frame_yields_error(self, parser):
        items = parser.feed(b"event: temperature\ndata: \xff\xfe\n\n" + sse_frame("ok"))

        assert isinstance(items[0], ProtocolParseError)
        assert items[0].event_name == "temperature"
        assert isinstance(items[1], EventRecord)

    def test_private_flag(self, parser):
        items = parser.feed(sse_frame("secret", public=False))

        assert items[0].public is False
        assert items[0].private is True

    def test_private_field_line(self, parser):
        items = parser.feed(b"event: secret\ndata: x\nprivate: true\n\n")

        assert items[0].public is False

    def test_non_envelope_json_data_kept_opaque(self, parser):
        items = parser.feed(b'event: reading\ndata: {"value": 3}\n\n')

        assert items[0].data == '{"value": 3}'
        assert items[0].device_id is None

    def test_null_envelope_data(self, parser):
        items = parser.feed(b'event: ping\ndata: {"data": null, "ttl": 60, "coreid": "d1"}\n\n')

        assert items[0].data == ""
        assert items[0].device_id == "d1"

    def test_default_ttl(self, parser):
        items = parser.feed(b"event: ping\ndata: x\n\n")

        assert items[0].ttl == 60
        assert items[0].published_at is None

    def test_reset_discards_partial_frame(self, parser):
        parser.feed(b"event: temperature\ndata: 1")
        assert parser.has_partial_frame is True

        parser.reset()
        items = parser.feed(b"\n\n" + sse_frame("humidity"))

        assert [item.name for item in items] == ["humidity"]


def test_parse_timestamp_with_zulu_suffix():
    assert parse_timestamp("2015-04-01T10:00:00.000Z") == datetime(2015, 4, 1, 10, tzinfo=timezone.utc)
