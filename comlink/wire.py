"""Wire encoding for transport frames.

Frames use the protocol-buffer wire format: length-delimited fields
holding a nested id message (field 1, with the raw id bytes in its own
field 1) and the payload (field 2). Empty fields are omitted, and
unknown fields are skipped on decode.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Tuple, Union

_VARINT = 0
_FIXED64 = 1
_LENGTH = 2
_FIXED32 = 5


class WireError(ValueError):
    """Raised when bytes cannot be decoded as a frame."""


@dataclass(frozen=True)
class MultiplexFrame:
    """A payload tagged with the conversation it belongs to."""

    conversation_id: bytes
    payload: bytes


@dataclass(frozen=True)
class Frame:
    """A payload tagged with the replica that sent it."""

    sender: bytes
    payload: bytes


def _varint(value: int) -> bytes:
    out = bytearray()
    while True:
        low = value & 0x7F
        value >>= 7
        if value:
            out.append(low | 0x80)
        else:
            out.append(low)
            return bytes(out)


def _bytes_field(number: int, data: bytes) -> bytes:
    return _varint((number << 3) | _LENGTH) + _varint(len(data)) + data


def _read_varint(data: bytes, pos: int) -> Tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise WireError("wire: truncated varint")
        if shift >= 64:
            raise WireError("wire: varint overflow")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        shift += 7
        if not byte & 0x80:
            return result, pos


def _take(data: bytes, pos: int, size: int) -> Tuple[bytes, int]:
    end = pos + size
    if end > len(data):
        raise WireError("wire: truncated field")
    return data[pos:end], end


def _fields(data: bytes) -> Iterator[Tuple[int, int, Union[int, bytes]]]:
    pos = 0
    while pos < len(data):
        key, pos = _read_varint(data, pos)
        number, wire_type = key >> 3, key & 0x7
        if number == 0:
            raise WireError("wire: invalid field number 0")
        if wire_type == _VARINT:
            value, pos = _read_varint(data, pos)
            yield number, wire_type, value
        elif wire_type == _FIXED64:
            raw, pos = _take(data, pos, 8)
            yield number, wire_type, raw
        elif wire_type == _LENGTH:
            size, pos = _read_varint(data, pos)
            raw, pos = _take(data, pos, size)
            yield number, wire_type, raw
        elif wire_type == _FIXED32:
            raw, pos = _take(data, pos, 4)
            yield number, wire_type, raw
        else:
            raise WireError(f"wire: unsupported wire type {wire_type}")


def _encode_id(value: bytes) -> bytes:
    return _bytes_field(1, value) if value else b""


def _decode_id(data: bytes) -> bytes:
    value = b""
    for number, wire_type, raw in _fields(data):
        if number == 1:
            if wire_type != _LENGTH:
                raise WireError("wire: id value has wrong wire type")
            value = bytes(raw)
    return value


def _encode_pair(ident: bytes, payload: bytes) -> bytes:
    out = _bytes_field(1, _encode_id(bytes(ident)))
    if payload:
        out += _bytes_field(2, bytes(payload))
    return out


def _decode_pair(data: bytes) -> Tuple[bytes, bytes]:
    ident = b""
    payload = b""
    for number, wire_type, raw in _fields(bytes(data)):
        if number in (1, 2) and wire_type != _LENGTH:
            raise WireError(f"wire: field {number} has wrong wire type")
        if number == 1:
            ident = _decode_id(raw)
        elif number == 2:
            payload = bytes(raw)
    return ident, payload


def encode_multiplex_frame(conversation_id: bytes, payload: bytes) -> bytes:
    """Encode a payload for the conversation ``conversation_id``."""
    return _encode_pair(conversation_id, payload)


def decode_multiplex_frame(data: bytes) -> MultiplexFrame:
    """Decode bytes produced by :func:`encode_multiplex_frame`."""
    conversation_id, payload = _decode_pair(data)
    return MultiplexFrame(conversation_id=conversation_id, payload=payload)


def encode_frame(sender: bytes, payload: bytes) -> bytes:
    """Encode a payload sent by replica ``sender``."""
    return _encode_pair(sender, payload)


def decode_frame(data: bytes) -> Frame:
    """Decode bytes produced by :func:`encode_frame`."""
    sender, payload = _decode_pair(data)
    return Frame(sender=sender, payload=payload)