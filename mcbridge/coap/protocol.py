"""CoAP (RFC 7252) message encoding, options and URI handling.

Covers what the bridge needs on the wire: the 4-byte header, tokens,
delta-encoded options, the payload marker, and the Block2 option for large
documents.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional, Tuple
from urllib.parse import unquote, urlsplit

from mcbridge.errors import ParseError, UriParseError

COAP_VERSION = 1
COAP_DEFAULT_PORT = 5683
PAYLOAD_MARKER = 0xFF
MAX_TOKEN_LENGTH = 8


class MessageType(IntEnum):
    CON = 0  # Confirmable
    NON = 1  # Non-confirmable
    ACK = 2
    RST = 3


class Code(IntEnum):
    """Request methods and response codes (class << 5 | detail)."""

    EMPTY = 0
    GET = 1
    POST = 2
    PUT = 3
    DELETE = 4

    CREATED = 65                     # 2.01
    DELETED = 66                     # 2.02
    VALID = 67                       # 2.03
    CHANGED = 68                     # 2.04
    CONTENT = 69                     # 2.05
    CONTINUE = 95                    # 2.31

    BAD_REQUEST = 128                # 4.00
    UNAUTHORIZED = 129               # 4.01
    BAD_OPTION = 130                 # 4.02
    FORBIDDEN = 131                  # 4.03
    NOT_FOUND = 132                  # 4.04
    METHOD_NOT_ALLOWED = 133         # 4.05
    NOT_ACCEPTABLE = 134             # 4.06
    REQUEST_ENTITY_INCOMPLETE = 136  # 4.08
    UNSUPPORTED_CONTENT_FORMAT = 143 # 4.15

    INTERNAL_SERVER_ERROR = 160      # 5.00
    NOT_IMPLEMENTED = 161            # 5.01
    BAD_GATEWAY = 162                # 5.02
    SERVICE_UNAVAILABLE = 163        # 5.03
    GATEWAY_TIMEOUT = 164            # 5.04

    @property
    def dotted(self) -> str:
        return f"{self >> 5}.{self & 0x1F:02d}"

    @property
    def is_request(self) -> bool:
        return 1 <= self <= 31

    @property
    def is_success(self) -> bool:
        return (self >> 5) == 2


def code_name(code: int) -> str:
    try:
        c = Code(code)
        return f"{c.dotted} {c.name}"
    except ValueError:
        return f"{code >> 5}.{code & 0x1F:02d}"


class OptionNumber(IntEnum):
    IF_MATCH = 1
    URI_HOST = 3
    ETAG = 4
    IF_NONE_MATCH = 5
    OBSERVE = 6
    URI_PORT = 7
    LOCATION_PATH = 8
    URI_PATH = 11
    CONTENT_FORMAT = 12
    MAX_AGE = 14
    URI_QUERY = 15
    ACCEPT = 17
    LOCATION_QUERY = 20
    BLOCK2 = 23
    BLOCK1 = 27
    SIZE2 = 28
    PROXY_URI = 35
    SIZE1 = 60


class ContentFormat(IntEnum):
    TEXT_PLAIN = 0
    LINK_FORMAT = 40
    XML = 41
    OCTET_STREAM = 42
    JSON = 50
    CBOR = 60


def encode_uint(value: int) -> bytes:
    """Minimal-length big-endian unsigned integer (0 encodes as empty)."""
    if value < 0:
        raise ValueError("CoAP uint options cannot be negative")
    length = (value.bit_length() + 7) // 8
    return value.to_bytes(length, "big")


def decode_uint(data: bytes) -> int:
    return int.from_bytes(data, "big") if data else 0


@dataclass(frozen=True)
class BlockOption:
    """Block1/Block2 value: block number, more flag, size exponent."""

    num: int
    more: bool
    szx: int

    @property
    def size(self) -> int:
        return 1 << (self.szx + 4)

    def to_bytes(self) -> bytes:
        return encode_uint((self.num << 4) | (int(self.more) << 3) | self.szx)

    @classmethod
    def from_bytes(cls, data: bytes) -> "BlockOption":
        raw = decode_uint(data)
        szx = raw & 0x07
        if szx == 7:
            raise ParseError("Reserved block size exponent 7")
        return cls(num=raw >> 4, more=bool(raw & 0x08), szx=szx)

    @staticmethod
    def szx_for(size: int) -> int:
        if size not in (16, 32, 64, 128, 256, 512, 1024):
            raise ValueError(f"Invalid block size {size}")
        return size.bit_length() - 5


@dataclass
class CoapMessage:
    """One CoAP message. Options are kept as (number, raw value) pairs."""

    mtype: MessageType
    code: int
    message_id: int = 0
    token: bytes = b""
    options: List[Tuple[int, bytes]] = field(default_factory=list)
    payload: bytes = b""

    # --- option helpers ---

    def add_option(self, number: int, value: bytes = b"") -> None:
        self.options.append((int(number), bytes(value)))

    def add_uint_option(self, number: int, value: int) -> None:
        self.add_option(number, encode_uint(value))

    def get_options(self, number: int) -> List[bytes]:
        return [value for num, value in self.options if num == number]

    def get_option(self, number: int) -> Optional[bytes]:
        values = self.get_options(number)
        return values[0] if values else None

    def remove_option(self, number: int) -> None:
        self.options = [(num, value) for num, value in self.options if num != number]

    @property
    def uri_path(self) -> str:
        return "/".join(v.decode("utf-8", "replace") for v in self.get_options(OptionNumber.URI_PATH))

    @property
    def content_format(self) -> Optional[int]:
        raw = self.get_option(OptionNumber.CONTENT_FORMAT)
        return decode_uint(raw) if raw is not None else None

    @property
    def max_age(self) -> Optional[int]:
        raw = self.get_option(OptionNumber.MAX_AGE)
        return decode_uint(raw) if raw is not None else None

    @property
    def block2(self) -> Optional[BlockOption]:
        raw = self.get_option(OptionNumber.BLOCK2)
        return BlockOption.from_bytes(raw) if raw is not None else None

    # --- wire format ---

    def to_bytes(self) -> bytes:
        if len(self.token) > MAX_TOKEN_LENGTH:
            raise ValueError("CoAP token longer than 8 bytes")
        if not 0 <= self.message_id <= 0xFFFF:
            raise ValueError(f"Message id out of range: {self.message_id}")
        first = (COAP_VERSION << 6) | (int(self.mtype) << 4) | len(self.token)
        out = bytearray(struct.pack(">BBH", first, int(self.code), self.message_id))
        out += self.token

        previous = 0
        # sorted() is stable, so repeated options keep their order
        for number, value in sorted(self.options, key=lambda opt: opt[0]):
            delta = number - previous
            previous = number
            delta_nibble, delta_ext = _split_option_field(delta)
            length_nibble, length_ext = _split_option_field(len(value))
            out.append((delta_nibble << 4) | length_nibble)
            out += delta_ext + length_ext + value

        if self.payload:
            out.append(PAYLOAD_MARKER)
            out += self.payload
        return bytes(out)

    @classmethod
    def from_bytes(cls, data: bytes) -> "CoapMessage":
        if len(data) < 4:
            raise ParseError("CoAP message shorter than 4 bytes")
        first, code, message_id = struct.unpack(">BBH", data[:4])
        version = first >> 6
        if version != COAP_VERSION:
            raise ParseError(f"Unsupported CoAP version {version}")
        tkl = first & 0x0F
        if tkl > MAX_TOKEN_LENGTH:
            raise ParseError(f"Invalid token length {tkl}")
        pos = 4
        token = data[pos:pos + tkl]
        if len(token) != tkl:
            raise ParseError("Truncated token")
        pos += tkl

        if code == Code.EMPTY and len(data) > 4 + tkl:
            raise ParseError("Empty message with trailing bytes")

        options: List[Tuple[int, bytes]] = []
        number = 0
        payload = b""
        while pos < len(data):
            byte = data[pos]
            pos += 1
            if byte == PAYLOAD_MARKER:
                payload = data[pos:]
                if not payload:
                    raise ParseError("Payload marker followed by empty payload")
                break
            delta, pos = _read_option_field(byte >> 4, data, pos)
            length, pos = _read_option_field(byte & 0x0F, data, pos)
            value = data[pos:pos + length]
            if len(value) != length:
                raise ParseError("Truncated option value")
            pos += length
            number += delta
            options.append((number, value))

        return cls(
            mtype=MessageType(first >> 4 & 0x03),
            code=code,
            message_id=message_id,
            token=token,
            options=options,
            payload=payload,
        )

    def describe(self) -> str:
        path = self.uri_path
        parts = [
            self.mtype.name,
            code_name(self.code),
            f"mid={self.message_id}",
            f"token={self.token.hex() or '-'}",
        ]
        if path:
            parts.append(f"path=/{path}")
        if self.payload:
            parts.append(f"{len(self.payload)}B")
        return " ".join(parts)


def _split_option_field(value: int) -> Tuple[int, bytes]:
    if value < 13:
        return value, b""
    if value < 269:
        return 13, bytes([value - 13])
    if value < 65805:
        return 14, struct.pack(">H", value - 269)
    raise ValueError(f"Option field too large: {value}")


def _read_option_field(nibble: int, data: bytes, pos: int) -> Tuple[int, int]:
    if nibble < 13:
        return nibble, pos
    if nibble == 13:
        if pos + 1 > len(data):
            raise ParseError("Truncated option extension")
        return data[pos] + 13, pos + 1
    if nibble == 14:
        if pos + 2 > len(data):
            raise ParseError("Truncated option extension")
        return struct.unpack(">H", data[pos:pos + 2])[0] + 269, pos + 2
    raise ParseError("Reserved option nibble 15")


@dataclass(frozen=True)
class CoapUri:
    scheme: str
    host: str
    port: int
    path: Tuple[str, ...] = ()
    query: Tuple[str, ...] = ()

    def __str__(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        text = f"{self.scheme}://{host}:{self.port}/" + "/".join(self.path)
        if self.query:
            text += "?" + "&".join(self.query)
        return text

    def into_options(self, message: CoapMessage) -> None:
        """Append Uri-Path and Uri-Query options for this URI."""
        for segment in self.path:
            message.add_option(OptionNumber.URI_PATH, segment.encode("utf-8"))
        for item in self.query:
            message.add_option(OptionNumber.URI_QUERY, item.encode("utf-8"))


def parse_uri(uri: str) -> CoapUri:
    """Split a ``coap://host[:port]/path?query`` URI.

    IPv6 literals must be bracketed. Only the plain ``coap`` scheme is
    supported; DTLS (``coaps``) is not.
    """
    try:
        parts = urlsplit(uri)
        port = parts.port
    except ValueError as exc:
        raise UriParseError(f"Malformed URI: {exc}", uri) from None
    if parts.scheme != "coap":
        raise UriParseError(f"Unsupported URI scheme '{parts.scheme}'", uri)
    if not parts.hostname:
        raise UriParseError("URI has no host", uri)
    if parts.fragment:
        raise UriParseError("Fragments are not allowed in CoAP URIs", uri)
    path = tuple(unquote(p) for p in parts.path.split("/") if p)
    query = tuple(unquote(q) for q in parts.query.split("&") if q)
    return CoapUri(
        scheme=parts.scheme,
        host=parts.hostname,
        port=port or COAP_DEFAULT_PORT,
        path=path,
        query=query,
    )
