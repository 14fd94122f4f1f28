"""Schema-free walker over protobuf wire bytes.

Only the generic encoding is understood: every field is a varint *tag*
(``field_number << 3 | wire_type``) followed by a payload whose size is
implied by the wire type.  Payloads are never interpreted beyond slicing,
so no message schema is needed to pull a single field out of a request.

Malformed input fails the whole scan: a truncated tail raises
:class:`WireFormatError` even when the wanted field was already seen.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from enum import IntEnum

from protoc_callback._common import WireFormatError

__all__ = [
    "WireField",
    "WireType",
    "encode_len_field",
    "encode_tag",
    "encode_varint",
    "find_last_bytes",
    "find_last_string",
    "iter_fields",
]

_MAX_VARINT_BYTES = 10
_MAX_FIELD_NUMBER = (1 << 29) - 1
_MAX_GROUP_DEPTH = 100


class WireType(IntEnum):
    """Wire types defined by the protobuf encoding."""

    VARINT = 0
    I64 = 1
    LEN = 2
    SGROUP = 3
    EGROUP = 4
    I32 = 5


@dataclass(frozen=True, slots=True)
class WireField:
    """One ``(field number, value)`` observation.

    ``value`` is an ``int`` for VARINT, the raw payload ``bytes`` for
    I64 / I32 / LEN, and the raw group body for SGROUP.  EGROUP is never
    yielded on its own.
    """

    number: int
    wire_type: WireType
    value: int | bytes


def _read_varint(data: bytes | memoryview, pos: int) -> tuple[int, int]:
    """Decode a varint at *pos*; return ``(value, next_pos)``."""
    result = 0
    shift = 0
    start = pos
    end = len(data)
    while True:
        if pos >= end:
            raise WireFormatError("truncated varint", start)
        if pos - start >= _MAX_VARINT_BYTES:
            raise WireFormatError("varint longer than 10 bytes", start)
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7


def _take(data: bytes | memoryview, pos: int, size: int, what: str) -> tuple[bytes, int]:
    end = pos + size
    if end > len(data):
        raise WireFormatError(f"{what} needs {size} bytes, only {len(data) - pos} available", pos)
    return bytes(data[pos:end]), end


def _read_tag(data: bytes | memoryview, pos: int) -> tuple[int, WireType, int]:
    """Decode and validate a tag at *pos*; return ``(number, wire_type, next_pos)``."""
    tag, next_pos = _read_varint(data, pos)
    number = tag >> 3
    if number == 0 or number > _MAX_FIELD_NUMBER:
        raise WireFormatError(f"invalid field number {number}", pos)
    try:
        wire_type = WireType(tag & 0x7)
    except ValueError:
        raise WireFormatError(f"invalid wire type {tag & 0x7}", pos) from None
    return number, wire_type, next_pos


def _skip_group(data: memoryview, pos: int, number: int, tag_pos: int, depth: int) -> tuple[int, int]:
    """Skip a group body starting at *pos*; return ``(body_end, next_pos)``.

    *tag_pos* is the offset of the opening tag, reported when the group
    never ends.
    """
    if depth > _MAX_GROUP_DEPTH:
        raise WireFormatError(f"groups nested deeper than {_MAX_GROUP_DEPTH}", tag_pos)
    end = len(data)
    while pos < end:
        inner_pos = pos
        inner_number, inner_type, pos = _read_tag(data, pos)
        if inner_type == WireType.EGROUP:
            if inner_number != number:
                raise WireFormatError(f"end group {inner_number} does not match start group {number}", inner_pos)
            return inner_pos, pos
        _, pos = _read_value(data, pos, inner_number, inner_type, inner_pos, depth + 1)
    raise WireFormatError(f"unterminated group {number}", tag_pos)


def _read_value(
    data: memoryview, pos: int, number: int, wire_type: WireType, tag_pos: int, depth: int = 0
) -> tuple[int | bytes, int]:
    if wire_type == WireType.VARINT:
        return _read_varint(data, pos)
    if wire_type == WireType.I64:
        return _take(data, pos, 8, "fixed64 field")
    if wire_type == WireType.I32:
        return _take(data, pos, 4, "fixed32 field")
    if wire_type == WireType.LEN:
        length, pos = _read_varint(data, pos)
        return _take(data, pos, length, "length-delimited field")
    if wire_type == WireType.SGROUP:
        body_end, next_pos = _skip_group(data, pos, number, tag_pos, depth)
        return bytes(data[pos:body_end]), next_pos
    raise WireFormatError(f"end group {number} without a matching start group", tag_pos)


def iter_fields(data: bytes | bytearray | memoryview) -> Iterator[WireField]:
    """Yield every top-level field of a serialized message in wire order.

    A group (SGROUP ... EGROUP) is yielded once, as an SGROUP field whose
    value is the raw group body; the fields inside it are not top-level.

    Raises:
        WireFormatError: On a truncated varint, an invalid tag, a payload
            running past the end of *data*, or an unbalanced group.  Fields
            yielded before the fault have already been delivered.

    """
    view = memoryview(data)
    pos = 0
    end = len(view)
    while pos < end:
        tag_pos = pos
        number, wire_type, pos = _read_tag(view, pos)
        value, pos = _read_value(view, pos, number, wire_type, tag_pos)
        yield WireField(number, wire_type, value)


def find_last_bytes(data: bytes | bytearray | memoryview, number: int) -> bytes | None:
    """Return the last length-delimited payload of field *number*, or ``None``.

    Occurrences of *number* with any other wire type are ignored.  The whole
    buffer is walked, so a malformed tail raises even after a match.
    """
    found: bytes | None = None
    for field in iter_fields(data):
        if field.number == number and field.wire_type == WireType.LEN:
            assert isinstance(field.value, bytes)
            found = field.value
    return found


def find_last_string(data: bytes | bytearray | memoryview, number: int) -> str | None:
    """Like :func:`find_last_bytes` but decodes the payload as UTF-8."""
    raw = find_last_bytes(data, number)
    if raw is None:
        return None
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise WireFormatError(f"field {number} payload is not valid UTF-8", e.start) from e


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def encode_varint(value: int) -> bytes:
    """Encode a non-negative integer as a varint."""
    if value < 0:
        raise ValueError("varints are unsigned")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def encode_tag(number: int, wire_type: WireType) -> bytes:
    """Encode a field tag."""
    if not 0 < number <= _MAX_FIELD_NUMBER:
        raise ValueError(f"invalid field number {number}")
    return encode_varint(number << 3 | wire_type)


def encode_len_field(number: int, payload: bytes | str) -> bytes:
    """Encode a length-delimited field; ``str`` payloads are UTF-8 encoded."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return encode_tag(number, WireType.LEN) + encode_varint(len(payload)) + payload
