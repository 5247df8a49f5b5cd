"""Protobuf binary wire codec for generated message types.

Each generated message carries a ``__wire__`` table of ``FieldSpec`` entries,
sorted by field number.  Encoding walks that table; decoding looks fields up
by number and skips anything unknown.

Reference: https://protobuf.dev/programming-guides/encoding/
"""

from __future__ import annotations

import math
import struct
from collections.abc import Callable
from dataclasses import dataclass
from enum import IntEnum, StrEnum
from functools import cache
from typing import TYPE_CHECKING, Any, TypeVar

from cdc_protogen.errors import WireDecodeError

if TYPE_CHECKING:
    from cdc_protogen.runtime.message import Message

M = TypeVar("M", bound="Message")

_MASK32 = (1 << 32) - 1
_MASK64 = (1 << 64) - 1


class WireType(IntEnum):
    VARINT = 0
    FIXED64 = 1
    LENGTH_DELIMITED = 2
    START_GROUP = 3
    END_GROUP = 4
    FIXED32 = 5


class Kind(StrEnum):
    """Schema field type."""

    DOUBLE = "double"
    FLOAT = "float"
    INT32 = "int32"
    INT64 = "int64"
    UINT32 = "uint32"
    UINT64 = "uint64"
    SINT32 = "sint32"
    SINT64 = "sint64"
    FIXED32 = "fixed32"
    FIXED64 = "fixed64"
    SFIXED32 = "sfixed32"
    SFIXED64 = "sfixed64"
    BOOL = "bool"
    STRING = "string"
    BYTES = "bytes"
    ENUM = "enum"
    MESSAGE = "message"
    MAP = "map"


class Presence(StrEnum):
    """How a field's presence is tracked and encoded."""

    IMPLICIT = "implicit"  # proto3 scalar: omitted when equal to the zero value
    EXPLICIT = "explicit"  # optional / message / oneof member: omitted when None
    REQUIRED = "required"  # proto2 required: always encoded
    REPEATED = "repeated"


_WIRE_TYPES: dict[Kind, WireType] = {
    Kind.DOUBLE: WireType.FIXED64,
    Kind.FLOAT: WireType.FIXED32,
    Kind.INT32: WireType.VARINT,
    Kind.INT64: WireType.VARINT,
    Kind.UINT32: WireType.VARINT,
    Kind.UINT64: WireType.VARINT,
    Kind.SINT32: WireType.VARINT,
    Kind.SINT64: WireType.VARINT,
    Kind.FIXED32: WireType.FIXED32,
    Kind.FIXED64: WireType.FIXED64,
    Kind.SFIXED32: WireType.FIXED32,
    Kind.SFIXED64: WireType.FIXED64,
    Kind.BOOL: WireType.VARINT,
    Kind.STRING: WireType.LENGTH_DELIMITED,
    Kind.BYTES: WireType.LENGTH_DELIMITED,
    Kind.ENUM: WireType.VARINT,
    Kind.MESSAGE: WireType.LENGTH_DELIMITED,
    Kind.MAP: WireType.LENGTH_DELIMITED,
}

_STRUCT_FORMATS: dict[Kind, str] = {
    Kind.DOUBLE: "<d",
    Kind.FLOAT: "<f",
    Kind.FIXED32: "<I",
    Kind.FIXED64: "<Q",
    Kind.SFIXED32: "<i",
    Kind.SFIXED64: "<q",
}

PACKABLE_KINDS = frozenset(
    k for k, wt in _WIRE_TYPES.items() if wt != WireType.LENGTH_DELIMITED
)


@dataclass(frozen=True, slots=True)
class FieldSpec:
    """Wire metadata for one schema field of a generated message.

    ``attr`` is the Python attribute holding the value; for oneof members it
    is the oneof attribute and ``name`` is the member (variant case).
    Type references are zero-argument callables so that generated modules
    can refer to classes defined later or in sibling modules.
    """

    name: str
    number: int
    kind: Kind
    presence: Presence = Presence.IMPLICIT
    attr: str = ""
    packed: bool = False
    oneof: str | None = None
    message_type: Callable[[], type[Message]] | None = None
    enum_type: Callable[[], type[IntEnum]] | None = None
    variant: Callable[[], type[Any]] | None = None
    map_key: FieldSpec | None = None
    map_value: FieldSpec | None = None

    def __post_init__(self) -> None:
        if not self.attr:
            object.__setattr__(self, "attr", self.name)

    @property
    def wire_type(self) -> WireType:
        return _WIRE_TYPES[self.kind]


# ---------------------------------------------------------------------------
# Primitive encoding
# ---------------------------------------------------------------------------


def encode_varint(value: int) -> bytes:
    """Encode *value* as a base-128 varint; negatives use 64-bit two's complement."""
    current = value & _MASK64
    out = bytearray()
    while current > 0x7F:
        out.append((current & 0x7F) | 0x80)
        current >>= 7
    out.append(current)
    return bytes(out)


def decode_varint(data: bytes, offset: int) -> tuple[int, int]:
    """Decode a varint at *offset*, returning ``(value, new_offset)``."""
    result = 0
    shift = 0
    index = offset
    while True:
        if index >= len(data):
            msg = "truncated varint"
            raise WireDecodeError(msg)
        byte = data[index]
        result |= (byte & 0x7F) << shift
        index += 1
        if byte < 0x80:
            return result & _MASK64, index
        shift += 7
        if shift >= 70:
            msg = "varint too long"
            raise WireDecodeError(msg)


def zigzag_encode(value: int, bits: int) -> int:
    return ((value << 1) ^ (value >> (bits - 1))) & ((1 << bits) - 1)


def zigzag_decode(value: int) -> int:
    return (value >> 1) ^ -(value & 1)


def _to_signed(value: int, bits: int) -> int:
    if value >= 1 << (bits - 1):
        return value - (1 << bits)
    return value


def _key(number: int, wire_type: WireType) -> bytes:
    return encode_varint((number << 3) | wire_type)


def _length_prefixed(payload: bytes) -> bytes:
    return encode_varint(len(payload)) + payload


def _encode_payload(spec: FieldSpec, value: Any) -> bytes:
    """Encode one value of *spec*'s kind, without the field key."""
    kind = spec.kind
    if kind in _STRUCT_FORMATS:
        return struct.pack(_STRUCT_FORMATS[kind], value)
    if kind in (Kind.INT32, Kind.INT64, Kind.UINT32, Kind.UINT64, Kind.ENUM):
        return encode_varint(int(value))
    if kind == Kind.SINT32:
        return encode_varint(zigzag_encode(value, 32))
    if kind == Kind.SINT64:
        return encode_varint(zigzag_encode(value, 64))
    if kind == Kind.BOOL:
        return b"\x01" if value else b"\x00"
    if kind == Kind.STRING:
        return _length_prefixed(value.encode("utf-8"))
    if kind == Kind.BYTES:
        return _length_prefixed(bytes(value))
    if kind == Kind.MESSAGE:
        return _length_prefixed(encode_message(value))
    msg = f"Cannot encode kind {kind}"
    raise TypeError(msg)


def _is_zero(kind: Kind, value: Any) -> bool:
    if kind in (Kind.STRING, Kind.BYTES):
        return len(value) == 0
    if kind in (Kind.DOUBLE, Kind.FLOAT):
        # -0.0 is not the default and is written.
        return value == 0 and math.copysign(1.0, value) > 0
    return bool(value == 0)


def _encode_field(spec: FieldSpec, value: Any) -> bytes:
    if spec.kind == Kind.MAP:
        assert spec.map_key is not None and spec.map_value is not None
        parts = []
        for k, v in value.items():
            entry = _encode_single(spec.map_key, k) + _encode_single(spec.map_value, v)
            parts.append(_key(spec.number, WireType.LENGTH_DELIMITED))
            parts.append(_length_prefixed(entry))
        return b"".join(parts)

    if spec.presence == Presence.REPEATED:
        if not value:
            return b""
        if spec.packed and spec.kind in PACKABLE_KINDS:
            payload = b"".join(_encode_payload(spec, v) for v in value)
            return _key(spec.number, WireType.LENGTH_DELIMITED) + _length_prefixed(
                payload
            )
        return b"".join(_encode_single(spec, v) for v in value)

    if value is None:
        if spec.presence == Presence.REQUIRED:
            msg = f"required field '{spec.name}' is not set"
            raise ValueError(msg)
        return b""
    if spec.presence == Presence.IMPLICIT and _is_zero(spec.kind, value):
        return b""
    return _encode_single(spec, value)


def _encode_single(spec: FieldSpec, value: Any) -> bytes:
    return _key(spec.number, spec.wire_type) + _encode_payload(spec, value)


def encode_message(message: Message) -> bytes:
    """Serialize *message* to protobuf wire bytes."""
    parts: list[bytes] = []
    for spec in type(message).__wire__:
        value = getattr(message, spec.attr)
        if spec.oneof is not None:
            if value is None or value.case != spec.name:
                continue
            value = value.value
        parts.append(_encode_field(spec, value))
    return b"".join(parts)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


@cache
def _specs_by_number(cls: type[Message]) -> dict[int, FieldSpec]:
    return {spec.number: spec for spec in cls.__wire__}


def _read_length_delimited(data: bytes, offset: int) -> tuple[bytes, int]:
    size, index = decode_varint(data, offset)
    end = index + size
    if end > len(data):
        msg = "truncated length-delimited field"
        raise WireDecodeError(msg)
    return data[index:end], end


def _read_fixed(data: bytes, offset: int, fmt: str) -> tuple[Any, int]:
    size = struct.calcsize(fmt)
    if offset + size > len(data):
        msg = "truncated fixed-width field"
        raise WireDecodeError(msg)
    return struct.unpack_from(fmt, data, offset)[0], offset + size


def _decode_payload(spec: FieldSpec, data: bytes, offset: int) -> tuple[Any, int]:
    """Decode one value of *spec*'s kind at *offset*."""
    kind = spec.kind
    if kind in _STRUCT_FORMATS:
        return _read_fixed(data, offset, _STRUCT_FORMATS[kind])
    if _WIRE_TYPES[kind] == WireType.VARINT:
        raw, offset = decode_varint(data, offset)
        if kind in (Kind.INT32, Kind.ENUM):
            return _to_signed(raw & _MASK32, 32), offset
        if kind == Kind.INT64:
            return _to_signed(raw, 64), offset
        if kind == Kind.UINT32:
            return raw & _MASK32, offset
        if kind == Kind.UINT64:
            return raw, offset
        if kind == Kind.SINT32:
            return zigzag_decode(raw & _MASK32), offset
        if kind == Kind.SINT64:
            return zigzag_decode(raw), offset
        return raw != 0, offset
    raw_bytes, offset = _read_length_delimited(data, offset)
    if kind == Kind.STRING:
        try:
            return raw_bytes.decode("utf-8"), offset
        except UnicodeDecodeError as exc:
            msg = f"field '{spec.name}' is not valid UTF-8"
            raise WireDecodeError(msg) from exc
    if kind == Kind.BYTES:
        return bytes(raw_bytes), offset
    assert spec.message_type is not None
    return decode_message(spec.message_type(), raw_bytes), offset


def _known_enum(spec: FieldSpec, value: int) -> bool:
    assert spec.enum_type is not None
    return value in spec.enum_type()._value2member_map_


def _zero_value(spec: FieldSpec) -> Any:
    if spec.kind == Kind.MESSAGE:
        assert spec.message_type is not None
        return spec.message_type()()
    if spec.kind == Kind.STRING:
        return ""
    if spec.kind == Kind.BYTES:
        return b""
    if spec.kind == Kind.BOOL:
        return False
    if spec.kind in (Kind.DOUBLE, Kind.FLOAT):
        return 0.0
    if spec.kind == Kind.ENUM:
        assert spec.enum_type is not None
        members = spec.enum_type()._value2member_map_
        return 0 if 0 in members else next(iter(spec.enum_type())).value
    return 0


def _decode_map_entry(spec: FieldSpec, data: bytes) -> tuple[Any, Any] | None:
    """Decode a map entry; ``None`` when its enum value is unknown."""
    assert spec.map_key is not None and spec.map_value is not None
    key = _zero_value(spec.map_key)
    value = _zero_value(spec.map_value)
    offset = 0
    while offset < len(data):
        tag, offset = decode_varint(data, offset)
        number, wire_type = tag >> 3, tag & 0x7
        if number == 1 and wire_type == spec.map_key.wire_type:
            key, offset = _decode_payload(spec.map_key, data, offset)
        elif number == 2 and wire_type == spec.map_value.wire_type:
            value, offset = _decode_payload(spec.map_value, data, offset)
        else:
            offset = skip_field(data, offset, wire_type, number)
    if spec.map_value.kind == Kind.ENUM and not _known_enum(spec.map_value, value):
        return None
    return key, value


def skip_field(data: bytes, offset: int, wire_type: int, number: int) -> int:
    """Skip over an unknown field's payload, returning the new offset."""
    if wire_type == WireType.VARINT:
        _, offset = decode_varint(data, offset)
        return offset
    if wire_type == WireType.FIXED64:
        return _read_fixed(data, offset, "<Q")[1]
    if wire_type == WireType.FIXED32:
        return _read_fixed(data, offset, "<I")[1]
    if wire_type == WireType.LENGTH_DELIMITED:
        return _read_length_delimited(data, offset)[1]
    if wire_type == WireType.START_GROUP:
        while True:
            if offset >= len(data):
                msg = f"unterminated group for field {number}"
                raise WireDecodeError(msg)
            tag, offset = decode_varint(data, offset)
            inner_number, inner_type = tag >> 3, tag & 0x7
            if inner_type == WireType.END_GROUP:
                if inner_number != number:
                    msg = f"mismatched end group {inner_number} for field {number}"
                    raise WireDecodeError(msg)
                return offset
            offset = skip_field(data, offset, inner_type, inner_number)
    msg = f"unexpected wire type {wire_type} for field {number}"
    raise WireDecodeError(msg)


def _decode_field(
    spec: FieldSpec,
    wire_type: int,
    data: bytes,
    offset: int,
    values: dict[str, Any],
) -> int:
    if spec.kind == Kind.MAP:
        if wire_type != WireType.LENGTH_DELIMITED:
            msg = f"map field '{spec.name}' has wire type {wire_type}"
            raise WireDecodeError(msg)
        entry, offset = _read_length_delimited(data, offset)
        decoded = _decode_map_entry(spec, entry)
        if decoded is not None:
            key, value = decoded
            values.setdefault(spec.attr, {})[key] = value
        return offset

    if spec.presence == Presence.REPEATED:
        items = values.setdefault(spec.attr, [])
        if wire_type == WireType.LENGTH_DELIMITED and spec.kind in PACKABLE_KINDS:
            packed, offset = _read_length_delimited(data, offset)
            index = 0
            while index < len(packed):
                item, index = _decode_payload(spec, packed, index)
                if spec.kind != Kind.ENUM or _known_enum(spec, item):
                    items.append(item)
            return offset
        if wire_type != spec.wire_type:
            msg = f"field '{spec.name}' has wire type {wire_type}"
            raise WireDecodeError(msg)
        item, offset = _decode_payload(spec, data, offset)
        if spec.kind != Kind.ENUM or _known_enum(spec, item):
            items.append(item)
        return offset

    if wire_type != spec.wire_type:
        msg = f"field '{spec.name}' has wire type {wire_type}"
        raise WireDecodeError(msg)
    value, offset = _decode_payload(spec, data, offset)
    if spec.kind == Kind.ENUM and not _known_enum(spec, value):
        return offset
    if spec.kind == Kind.MESSAGE:
        previous = values.get(spec.attr)
        if spec.oneof is not None and previous is not None:
            previous = previous.value if previous.case == spec.name else None
        if previous is not None:
            value = merge_message(previous, value)
    if spec.oneof is not None:
        assert spec.variant is not None
        values[spec.attr] = spec.variant()(value=value)
    else:
        values[spec.attr] = value
    return offset


def merge_message(target: M, source: M) -> M:
    """Return *target* with *source* merged in, leaving both unchanged.

    Same result as parsing the two encodings back to back, which is how
    protobuf defines a merge.
    """
    return decode_message(type(target), encode_message(target) + encode_message(source))


def decode_message(cls: type[M], data: bytes) -> M:
    """Parse protobuf wire bytes into an instance of *cls*.

    Unknown fields and unknown enum numbers are dropped.  A scalar field that
    appears more than once keeps its last value; repeated fields append and
    message fields merge.
    """
    specs = _specs_by_number(cls)
    values: dict[str, Any] = {}
    offset = 0
    while offset < len(data):
        tag, offset = decode_varint(data, offset)
        number, wire_type = tag >> 3, tag & 0x7
        if number == 0:
            msg = "invalid field number 0"
            raise WireDecodeError(msg)
        spec = specs.get(number)
        if spec is None:
            offset = skip_field(data, offset, wire_type, number)
            continue
        offset = _decode_field(spec, wire_type, data, offset, values)
    return cls.model_validate(values)
