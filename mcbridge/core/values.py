"""Scalar values exchanged between Matter attributes and LwM2M resources.

Only two kinds are bridged: Boolean and Unsigned Integer (uint16). On the
CoAP side both travel as decimal text in GET responses and as raw
little-endian bytes in PUT requests.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Union

from mcbridge.errors import ParseError, UnsupportedType


class ValueKind(str, Enum):
    """Value kinds, named after the LwM2M ``<Type>`` element."""

    BOOLEAN = "Boolean"
    UNSIGNED_INTEGER = "Unsigned Integer"

    @property
    def width(self) -> int:
        """Wire width in bytes of a PUT payload of this kind."""
        return _WIDTHS[self]


_WIDTHS: Dict[ValueKind, int] = {
    ValueKind.BOOLEAN: 1,
    ValueKind.UNSIGNED_INTEGER: 2,
}


@dataclass(frozen=True)
class BoolValue:
    value: bool

    @property
    def kind(self) -> ValueKind:
        return ValueKind.BOOLEAN

    def to_text(self) -> str:
        return "1" if self.value else "0"

    def to_bytes(self) -> bytes:
        return b"\x01" if self.value else b"\x00"


@dataclass(frozen=True)
class Uint16Value:
    value: int

    def __post_init__(self) -> None:
        if not 0 <= self.value <= 0xFFFF:
            raise ValueError(f"uint16 out of range: {self.value}")

    @property
    def kind(self) -> ValueKind:
        return ValueKind.UNSIGNED_INTEGER

    def to_text(self) -> str:
        return str(self.value)

    def to_bytes(self) -> bytes:
        return struct.pack("<H", self.value)


ScalarValue = Union[BoolValue, Uint16Value]


def parse_value_kind(type_name: Optional[str]) -> ValueKind:
    """Map a declared LwM2M resource type onto a supported kind.

    Raises UnsupportedType for anything else (String, Float, Opaque, ...).
    """
    for kind in ValueKind:
        if type_name is not None and type_name.strip().lower() == kind.value.lower():
            return kind
    raise UnsupportedType(f"Unsupported resource type '{type_name}'")


def decode_payload(kind: ValueKind, payload: bytes) -> ScalarValue:
    """Reinterpret a raw PUT payload according to ``kind``.

    Short payloads are zero-padded, so an absent body writes 0/false.
    Bytes beyond the kind's width are ignored.
    """
    raw = payload[:kind.width].ljust(kind.width, b"\x00")
    if kind is ValueKind.BOOLEAN:
        return BoolValue(raw[0] != 0)
    if kind is ValueKind.UNSIGNED_INTEGER:
        return Uint16Value(struct.unpack("<H", raw)[0])
    raise UnsupportedType(f"No decoder for {kind!r}")


def parse_text(kind: ValueKind, text: str) -> ScalarValue:
    """Parse the textual form produced by ``to_text``."""
    txt = text.strip()
    try:
        number = int(txt, 0)
    except ValueError:
        if kind is ValueKind.BOOLEAN and txt.lower() in ("true", "false"):
            return BoolValue(txt.lower() == "true")
        raise ParseError(f"Invalid {kind.value} value '{text}'") from None
    if kind is ValueKind.BOOLEAN:
        return BoolValue(number != 0)
    if kind is ValueKind.UNSIGNED_INTEGER:
        try:
            return Uint16Value(number)
        except ValueError as exc:
            raise ParseError(str(exc)) from None
    raise UnsupportedType(f"No parser for {kind!r}")


def coerce_value(kind: ValueKind, value: Union[bool, int]) -> ScalarValue:
    """Wrap a plain Python value coming back from a Matter read."""
    if kind is ValueKind.BOOLEAN:
        return BoolValue(bool(value))
    if kind is ValueKind.UNSIGNED_INTEGER:
        return Uint16Value(int(value))
    raise UnsupportedType(f"No coercion for {kind!r}")
