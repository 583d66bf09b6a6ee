"""Codec for the feed's PricingData record.

Tagged protobuf-style fields; unknown field numbers are skipped so that
feed-side additions do not break decoding. Only the fields below are
understood:

    1  id              string   required
    2  price           float    required (double accepted)
    3  time            sint64   required, epoch ms
    4  currency        string   required
    5  exchange        string
    8  change_percent  float
    9  day_volume      sint64
    12 change          float
    13 short_name      string
"""
from __future__ import annotations

import base64
import binascii
import json
import math
import struct
from typing import Any, Iterable

from quotestream.errors import DecodeError, MalformedQuoteError
from quotestream.schemas.quote import Currency, Quote

_VARINT = 0
_FIXED64 = 1
_LENGTH = 2
_FIXED32 = 5

_STRING = "string"
_FLOAT = "float"
_SINT = "sint"

_FIELDS: dict[int, tuple[str, str]] = {
    1: ("symbol", _STRING),
    2: ("price", _FLOAT),
    3: ("ts", _SINT),
    4: ("currency", _STRING),
    5: ("exchange", _STRING),
    8: ("change_percent", _FLOAT),
    9: ("day_volume", _SINT),
    12: ("change", _FLOAT),
    13: ("short_name", _STRING),
}
_NUMBERS = {name: number for number, (name, _) in _FIELDS.items()}
_REQUIRED = ("symbol", "price", "ts", "currency")


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise MalformedQuoteError("TRUNCATED_VARINT")
        if shift >= 70:
            raise MalformedQuoteError("VARINT_TOO_LONG")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7


def _take(data: bytes, pos: int, size: int) -> tuple[bytes, int]:
    end = pos + size
    if end > len(data):
        raise MalformedQuoteError("TRUNCATED_FIELD")
    return data[pos:end], end


def _zigzag_decode(value: int) -> int:
    return (value >> 1) ^ -(value & 1)


def _zigzag_encode(value: int) -> int:
    return (value << 1) ^ (value >> 63)


def _convert(name: str, kind: str, wire_type: int, raw: Any) -> Any:
    if kind == _STRING:
        if wire_type != _LENGTH:
            raise MalformedQuoteError(f"WIRE_TYPE_MISMATCH: {name}")
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedQuoteError(f"INVALID_UTF8: {name}") from exc
    if kind == _FLOAT:
        if wire_type == _FIXED32:
            return struct.unpack("<f", raw)[0]
        if wire_type == _FIXED64:
            return struct.unpack("<d", raw)[0]
        raise MalformedQuoteError(f"WIRE_TYPE_MISMATCH: {name}")
    if wire_type != _VARINT:
        raise MalformedQuoteError(f"WIRE_TYPE_MISMATCH: {name}")
    return _zigzag_decode(raw)


def decode(payload: bytes) -> Quote:
    """Decode one PricingData payload into a Quote. Raises MalformedQuoteError."""
    if not isinstance(payload, (bytes, bytearray, memoryview)):
        raise MalformedQuoteError(f"PAYLOAD_TYPE: {type(payload).__name__}")
    data = bytes(payload)

    values: dict[str, Any] = {}
    pos = 0
    while pos < len(data):
        key, pos = _read_varint(data, pos)
        number, wire_type = key >> 3, key & 0x07
        if number == 0:
            raise MalformedQuoteError("FIELD_NUMBER_ZERO")

        if wire_type == _VARINT:
            raw, pos = _read_varint(data, pos)
        elif wire_type == _FIXED64:
            raw, pos = _take(data, pos, 8)
        elif wire_type == _LENGTH:
            size, pos = _read_varint(data, pos)
            raw, pos = _take(data, pos, size)
        elif wire_type == _FIXED32:
            raw, pos = _take(data, pos, 4)
        else:
            raise MalformedQuoteError(f"UNSUPPORTED_WIRE_TYPE: {wire_type}")

        field = _FIELDS.get(number)
        if field is None:
            continue
        name, kind = field
        values[name] = _convert(name, kind, wire_type, raw)

    missing = [name for name in _REQUIRED if name not in values]
    if missing:
        raise MalformedQuoteError(f"MISSING_FIELD: {','.join(missing)}")
    if not values["symbol"]:
        raise MalformedQuoteError("EMPTY_SYMBOL")
    if not math.isfinite(values["price"]):
        raise MalformedQuoteError(f"INVALID_PRICE: {values['price']!r}")
    try:
        values["currency"] = Currency(values["currency"])
    except ValueError as exc:
        raise MalformedQuoteError(f"UNKNOWN_CURRENCY: {values['currency']!r}") from exc

    return Quote(**values)


def _encode_varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _encode_float(number: int, value: float) -> bytes:
    try:
        narrow = struct.pack("<f", value)
    except OverflowError:
        narrow = None
    # 32-bit only when it reads back unchanged
    if narrow is not None and struct.unpack("<f", narrow)[0] == value:
        return _encode_varint(number << 3 | _FIXED32) + narrow
    return _encode_varint(number << 3 | _FIXED64) + struct.pack("<d", value)


def _encode_field(number: int, kind: str, value: Any) -> bytes:
    if kind == _STRING:
        raw = str(value).encode("utf-8")
        return _encode_varint(number << 3 | _LENGTH) + _encode_varint(len(raw)) + raw
    if kind == _FLOAT:
        return _encode_float(number, float(value))
    return _encode_varint(number << 3 | _VARINT) + _encode_varint(_zigzag_encode(int(value)))


def encode(quote: Quote) -> bytes:
    """Inverse of decode. Floats go out as 32-bit, the way the feed sends them,
    unless that would lose precision; those are written as 64-bit doubles.
    """
    out = bytearray()
    for number, (name, kind) in _FIELDS.items():
        value = getattr(quote, name)
        if value is None:
            continue
        if name == "currency":
            value = value.value
        out += _encode_field(number, kind, value)
    return bytes(out)


def encode_subscribe(symbols: Iterable[str]) -> str:
    return json.dumps({"subscribe": sorted(set(symbols))})


def unwrap_frame(frame: str | bytes) -> bytes:
    """Extract the protobuf payload from one feed frame.

    Binary frames are the payload itself. Text frames are base64, either bare
    or wrapped in a ``{"type": "pricing", "message": ...}`` envelope.
    """
    if isinstance(frame, (bytes, bytearray)):
        return bytes(frame)
    if not isinstance(frame, str):
        raise DecodeError(f"FRAME_TYPE: {type(frame).__name__}")

    text = frame.strip()
    if text.startswith("{"):
        try:
            envelope = json.loads(text)
        except json.JSONDecodeError as exc:
            raise DecodeError("FRAME_ENVELOPE: invalid json") from exc
        if not isinstance(envelope, dict):
            raise DecodeError("FRAME_ENVELOPE: not an object")
        kind = envelope.get("type", "pricing")
        if kind != "pricing":
            raise DecodeError(f"FRAME_NOT_PRICING: {kind}")
        text = envelope.get("message")
        if not isinstance(text, str):
            raise DecodeError("FRAME_ENVELOPE: missing message")

    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError("FRAME_BASE64") from exc
