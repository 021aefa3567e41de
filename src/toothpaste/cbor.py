"""
toothpaste.cbor - Minimal CBOR reader for authenticator structures.

Only the shapes that appear in attestation objects and COSE keys are
understood: unsigned and negative integers, byte strings, text strings and
maps (definite length). Anything else is rejected with FormatError.
"""

from __future__ import annotations

from typing import Any

from .errors import FormatError

MAJOR_UNSIGNED = 0
MAJOR_NEGATIVE = 1
MAJOR_BYTES = 2
MAJOR_TEXT = 3
MAJOR_MAP = 5

MAX_DEPTH = 8


def _read_argument(data: bytes, offset: int, info: int) -> tuple[int, int]:
    if info < 24:
        return info, offset
    widths = {24: 1, 25: 2, 26: 4, 27: 8}
    width = widths.get(info)
    if width is None:
        raise FormatError(f"unsupported CBOR additional info {info} at offset {offset - 1}")
    end = offset + width
    if end > len(data):
        raise FormatError("truncated CBOR argument")
    return int.from_bytes(data[offset:end], "big"), end


def decode_item(data: bytes, offset: int = 0, depth: int = 0) -> tuple[Any, int]:
    """Decode one item starting at `offset`; returns (value, next_offset)."""
    if depth > MAX_DEPTH:
        raise FormatError("CBOR nesting too deep")
    if offset >= len(data):
        raise FormatError("unexpected end of CBOR data")

    initial = data[offset]
    major, info = initial >> 5, initial & 0x1F
    value, offset = _read_argument(data, offset + 1, info)

    if major == MAJOR_UNSIGNED:
        return value, offset
    if major == MAJOR_NEGATIVE:
        return -1 - value, offset
    if major in (MAJOR_BYTES, MAJOR_TEXT):
        end = offset + value
        if end > len(data):
            raise FormatError("truncated CBOR string")
        chunk = bytes(data[offset:end])
        if major == MAJOR_BYTES:
            return chunk, end
        try:
            return chunk.decode("utf-8"), end
        except UnicodeDecodeError as e:
            raise FormatError(f"invalid UTF-8 in CBOR text string: {e}") from e
    if major == MAJOR_MAP:
        result: dict[Any, Any] = {}
        for _ in range(value):
            key, offset = decode_item(data, offset, depth + 1)
            if isinstance(key, dict):
                raise FormatError("CBOR map keys must be scalars")
            item, offset = decode_item(data, offset, depth + 1)
            result[key] = item
        return result, offset

    raise FormatError(f"unsupported CBOR major type {major}")


def decode(data: bytes) -> Any:
    """Decode exactly one item spanning all of `data`."""
    value, end = decode_item(data)
    if end != len(data):
        raise FormatError(f"{len(data) - end} trailing bytes after CBOR item")
    return value


# The encoder exists so tests and software authenticators can produce the
# same structures a platform authenticator would.


def _head(major: int, value: int) -> bytes:
    if value < 24:
        return bytes([(major << 5) | value])
    for info, width in ((24, 1), (25, 2), (26, 4), (27, 8)):
        if value < 1 << (8 * width):
            return bytes([(major << 5) | info]) + value.to_bytes(width, "big")
    raise FormatError("integer too large for CBOR")


def encode(value: Any) -> bytes:
    if isinstance(value, bool):
        raise FormatError("booleans are not supported")
    if isinstance(value, int):
        if value >= 0:
            return _head(MAJOR_UNSIGNED, value)
        return _head(MAJOR_NEGATIVE, -1 - value)
    if isinstance(value, (bytes, bytearray)):
        return _head(MAJOR_BYTES, len(value)) + bytes(value)
    if isinstance(value, str):
        raw = value.encode("utf-8")
        return _head(MAJOR_TEXT, len(raw)) + raw
    if isinstance(value, dict):
        out = bytearray(_head(MAJOR_MAP, len(value)))
        for k, v in value.items():
            out += encode(k)
            out += encode(v)
        return bytes(out)
    raise FormatError(f"cannot encode {type(value).__name__} as CBOR")
