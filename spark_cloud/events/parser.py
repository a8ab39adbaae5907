"""
Incremental Server-Sent Events frame parser for cloud event streams.

The cloud sends frames like::

    event: temperature
    data: {"data":"21.5","ttl":60,"published_at":"2015-04-01T10:00:00.000Z","coreid":"abc123"}

Fields may also arrive as their own lines (``ttl: 60``, ``coreid: abc123``)
in any order. Chunks from the network are fed as they arrive; frames that
straddle chunk boundaries are buffered until their terminating blank line.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from ..shared.errors import ProtocolParseError
from .models import EventRecord

ParsedItem = Union[EventRecord, ProtocolParseError]

DEFAULT_TTL = 60

_FRAME_FIELDS = {"event", "data", "ttl", "published_at", "coreid", "public", "private"}
_ENVELOPE_KEYS = {"data", "ttl", "published_at", "coreid", "public", "private"}


def parse_timestamp(value: str) -> datetime:
    """Parse the cloud's ISO-8601 timestamps (``...Z`` suffix included)."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "1", "yes"):
        return True
    if text in ("false", "0", "no"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


class SSEFrameParser:
    """Turns raw stream bytes into ``EventRecord`` or ``ProtocolParseError`` items."""

    def __init__(self):
        self._buffer = b""
        self._fields: Dict[str, str] = {}
        self._data_lines: List[str] = []
        self._raw_lines: List[str] = []
        self._undecodable = False

    @property
    def has_partial_frame(self) -> bool:
        """True while bytes of an unfinished frame are held."""
        return bool(self._buffer or self._fields or self._data_lines or self._undecodable)

    def reset(self):
        """Discard any partial frame, e.g. after the transport dropped."""
        self._buffer = b""
        self._start_frame()

    def feed(self, chunk: bytes) -> List[ParsedItem]:
        """Consume a chunk and return every frame it completed."""
        items: List[ParsedItem] = []
        self._buffer += chunk

        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1:]
            if line.endswith(b"\r"):
                line = line[:-1]

            if not line:
                item = self._finish_frame()
                if item is not None:
                    items.append(item)
                continue

            self._consume_line(line)

        return items

    def _start_frame(self):
        self._fields = {}
        self._data_lines = []
        self._raw_lines = []
        self._undecodable = False

    def _consume_line(self, line: bytes):
        if line.startswith(b":"):
            # Comment / keep-alive
            return

        try:
            text = line.decode("utf-8")
        except UnicodeDecodeError:
            self._undecodable = True
            self._raw_lines.append(line.decode("utf-8", errors="replace"))
            return

        self._raw_lines.append(text)

        name, sep, value = text.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        name = name.strip()

        if name not in _FRAME_FIELDS:
            # id, retry and unknown fields carry nothing we route on
            return

        if name == "data":
            self._data_lines.append(value)
        else:
            self._fields[name] = value

    def _finish_frame(self) -> Optional[ParsedItem]:
        fields = self._fields
        data_lines = self._data_lines
        raw = "\n".join(self._raw_lines)
        undecodable = self._undecodable
        self._start_frame()

        if not fields and not data_lines and not undecodable:
            return None

        event_name = fields.get("event")
        device_id = fields.get("coreid")

        if undecodable:
            return ProtocolParseError(
                "Event frame is not valid UTF-8",
                event_name=event_name,
                device_id=device_id,
                raw=raw
            )

        values: Dict[str, Any] = dict(fields)
        if data_lines:
            data = "\n".join(data_lines)
            envelope = self._decode_envelope(data)
            if envelope is None:
                values["data"] = data
            else:
                for key in _ENVELOPE_KEYS:
                    if key in envelope and key not in values:
                        values[key] = envelope[key]
                device_id = values.get("coreid", device_id)

        return self._build_record(values, raw, event_name, device_id)

    @staticmethod
    def _decode_envelope(data: str) -> Optional[Dict[str, Any]]:
        if not data.lstrip().startswith("{"):
            return None
        try:
            decoded = json.loads(data)
        except ValueError:
            return None
        if isinstance(decoded, dict) and ("data" in decoded or "coreid" in decoded):
            return decoded
        return None

    def _build_record(
        self,
        values: Dict[str, Any],
        raw: str,
        event_name: Optional[str],
        device_id: Optional[Any]
    ) -> ParsedItem:
        device_id = str(device_id) if device_id is not None else None

        def error(message: str) -> ProtocolParseError:
            return ProtocolParseError(message, event_name=event_name, device_id=device_id, raw=raw)

        if not event_name:
            return error("Event frame has no event name")
        if "data" not in values:
            return error("Event frame has no data")

        data = values["data"]
        if data is None:
            data = ""
        elif not isinstance(data, str):
            data = json.dumps(data)

        ttl = DEFAULT_TTL
        if values.get("ttl") is not None:
            try:
                ttl = int(values["ttl"])
            except (TypeError, ValueError):
                return error(f"Event frame has a non-integer ttl: {values['ttl']!r}")

        published_at = None
        if values.get("published_at"):
            try:
                published_at = parse_timestamp(str(values["published_at"]))
            except ValueError:
                return error(f"Event frame has an invalid published_at: {values['published_at']!r}")

        public = True
        try:
            if values.get("public") is not None:
                public = _parse_bool(values["public"])
            elif values.get("private") is not None:
                public = not _parse_bool(values["private"])
        except ValueError as e:
            return error(f"Event frame has an invalid visibility flag: {e}")

        return EventRecord(
            name=event_name,
            data=data,
            ttl=ttl,
            published_at=published_at,
            device_id=device_id,
            public=public
        )
