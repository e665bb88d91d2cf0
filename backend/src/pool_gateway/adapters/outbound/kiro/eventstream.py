"""Incremental decoder for the AWS binary event-stream framing.

Frame layout (all integers big-endian)::

    total_length u32 | headers_length u32 | prelude_crc u32
    headers ...      | payload ...        | message_crc u32

Each header is ``name_len u8 | name | value_type u8 | value``.
"""

from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass, field
from typing import Any

import orjson

from pool_gateway.domain.exceptions import UpstreamServerError

_PRELUDE = struct.Struct(">III")
_PRELUDE_LEN = _PRELUDE.size
_CRC_LEN = 4
_MIN_FRAME = _PRELUDE_LEN + _CRC_LEN

# Fixed-size header value types; 6 (bytes) and 7 (string) are u16-length prefixed
_FIXED_HEADER_SIZES = {0: 0, 1: 0, 2: 1, 3: 2, 4: 4, 5: 8, 8: 8, 9: 16}


class EventStreamError(UpstreamServerError):
    """The upstream sent a frame that cannot be decoded."""


@dataclass(frozen=True)
class EventMessage:
    headers: dict[str, Any] = field(default_factory=dict)
    payload: bytes = b""

    @property
    def event_type(self) -> str:
        return str(self.headers.get(":event-type", "unknown"))

    @property
    def message_type(self) -> str:
        return str(self.headers.get(":message-type", "event"))

    def json(self) -> dict[str, Any]:
        if not self.payload:
            return {}
        data = orjson.loads(self.payload)
        return data if isinstance(data, dict) else {"value": data}


def _parse_headers(raw: bytes) -> dict[str, Any]:
    headers: dict[str, Any] = {}
    pos = 0
    while pos < len(raw):
        name_len = raw[pos]
        pos += 1
        name = raw[pos : pos + name_len].decode("utf-8")
        pos += name_len
        value_type = raw[pos]
        pos += 1

        if value_type in (6, 7):
            (length,) = struct.unpack_from(">H", raw, pos)
            pos += 2
            value: Any = raw[pos : pos + length]
            if value_type == 7:
                value = value.decode("utf-8")
            pos += length
        elif value_type in _FIXED_HEADER_SIZES:
            size = _FIXED_HEADER_SIZES[value_type]
            if value_type in (0, 1):
                value = value_type == 0
            else:
                value = raw[pos : pos + size]
            pos += size
        else:
            raise EventStreamError(f"Unknown event-stream header type {value_type}")
        headers[name] = value
    return headers


class EventStreamDecoder:
    """Feed raw bytes in, get complete ``EventMessage`` frames out."""

    def __init__(self, *, verify_crc: bool = True) -> None:
        self._buffer = bytearray()
        self._verify_crc = verify_crc

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> list[EventMessage]:
        self._buffer.extend(data)
        messages: list[EventMessage] = []
        while len(self._buffer) >= _PRELUDE_LEN:
            total, headers_len, prelude_crc = _PRELUDE.unpack_from(self._buffer, 0)
            if total < _MIN_FRAME or headers_len > total - _MIN_FRAME:
                raise EventStreamError(f"Malformed event-stream prelude (length {total})")
            if self._verify_crc and zlib.crc32(self._buffer[:8]) != prelude_crc:
                raise EventStreamError("Event-stream prelude checksum mismatch")
            if len(self._buffer) < total:
                break

            frame = bytes(self._buffer[:total])
            del self._buffer[:total]
            if self._verify_crc:
                (message_crc,) = struct.unpack_from(">I", frame, total - _CRC_LEN)
                if zlib.crc32(frame[: total - _CRC_LEN]) != message_crc:
                    raise EventStreamError("Event-stream message checksum mismatch")

            headers_end = _PRELUDE_LEN + headers_len
            messages.append(
                EventMessage(
                    headers=_parse_headers(frame[_PRELUDE_LEN:headers_end]),
                    payload=frame[headers_end : total - _CRC_LEN],
                )
            )
        return messages


def encode_message(headers: dict[str, str], payload: bytes) -> bytes:
    """Build one frame with string headers.  Used by test doubles."""
    raw_headers = bytearray()
    for name, value in headers.items():
        name_bytes = name.encode("utf-8")
        value_bytes = value.encode("utf-8")
        raw_headers += bytes([len(name_bytes)]) + name_bytes + bytes([7])
        raw_headers += struct.pack(">H", len(value_bytes)) + value_bytes

    total = _PRELUDE_LEN + len(raw_headers) + len(payload) + _CRC_LEN
    prelude = struct.pack(">II", total, len(raw_headers))
    prelude += struct.pack(">I", zlib.crc32(prelude))
    body = prelude + bytes(raw_headers) + payload
    return body + struct.pack(">I", zlib.crc32(body))


def encode_event(event_type: str, data: dict[str, Any]) -> bytes:
    return encode_message(
        {":event-type": event_type, ":content-type": "application/json", ":message-type": "event"},
        orjson.dumps(data),
    )
