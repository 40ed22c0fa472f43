from __future__ import annotations

import pytest

from mcbridge.coap.protocol import (
    BlockOption,
    Code,
    CoapMessage,
    ContentFormat,
    MessageType,
    OptionNumber,
    code_name,
    parse_uri,
)
from mcbridge.errors import ParseError, UriParseError


def test_encode_get_request() -> None:
    msg = CoapMessage(MessageType.CON, Code.GET, message_id=0x1234, token=b"\xab")
    msg.add_option(OptionNumber.URI_PATH, b"3311")
    msg.add_option(OptionNumber.URI_PATH, b"0")
    msg.add_option(OptionNumber.URI_PATH, b"5850")

    data = msg.to_bytes()
    # ver 1, CON, TKL 1 | GET | mid | token
    assert data[:5] == bytes([0x41, 0x01, 0x12, 0x34, 0xAB])
    # first Uri-Path: delta 11, length 4
    assert data[5] == 0xB4
    assert data[6:10] == b"3311"
    # repeated Uri-Path: delta 0
    assert data[10] == 0x01
    assert data[11:12] == b"0"
    assert data[12] == 0x04
    assert data[13:] == b"5850"


def test_payload_marker_and_round_trip() -> None:
    msg = CoapMessage(MessageType.NON, Code.CONTENT, message_id=7, token=b"\x01\x02")
    msg.add_uint_option(OptionNumber.CONTENT_FORMAT, ContentFormat.TEXT_PLAIN)
    msg.add_uint_option(OptionNumber.MAX_AGE, 1)
    msg.payload = b"1"

    data = msg.to_bytes()
    assert data.endswith(b"\xff1")

    decoded = CoapMessage.from_bytes(data)
    assert decoded.mtype == MessageType.NON
    assert decoded.code == Code.CONTENT
    assert decoded.token == b"\x01\x02"
    assert decoded.content_format == ContentFormat.TEXT_PLAIN
    assert decoded.max_age == 1
    assert decoded.payload == b"1"


def test_zero_uint_option_is_empty() -> None:
    msg = CoapMessage(MessageType.NON, Code.CONTENT)
    msg.add_uint_option(OptionNumber.CONTENT_FORMAT, 0)
    assert msg.get_option(OptionNumber.CONTENT_FORMAT) == b""
    assert CoapMessage.from_bytes(msg.to_bytes()).content_format == 0


def test_extended_option_delta_and_length() -> None:
    msg = CoapMessage(MessageType.CON, Code.GET, message_id=1)
    msg.add_option(OptionNumber.URI_PATH, b"x" * 20)
    msg.add_option(OptionNumber.BLOCK2, BlockOption(num=3, more=True, szx=6).to_bytes())
    msg.add_option(OptionNumber.SIZE1, b"\x01\x00")

    decoded = CoapMessage.from_bytes(msg.to_bytes())
    assert decoded.uri_path == "x" * 20
    block = decoded.block2
    assert (block.num, block.more, block.size) == (3, True, 1024)
    assert decoded.get_option(OptionNumber.SIZE1) == b"\x01\x00"


def test_options_are_sorted_on_encode() -> None:
    msg = CoapMessage(MessageType.CON, Code.PUT, message_id=1)
    msg.add_uint_option(OptionNumber.CONTENT_FORMAT, ContentFormat.OCTET_STREAM)
    msg.add_option(OptionNumber.URI_PATH, b"a")
    msg.add_option(OptionNumber.URI_PATH, b"b")

    decoded = CoapMessage.from_bytes(msg.to_bytes())
    assert [num for num, _ in decoded.options] == [11, 11, 12]
    assert decoded.uri_path == "a/b"


@pytest.mark.parametrize(
    "data",
    [
        b"\x41\x01",                     # too short
        b"\x81\x01\x00\x01\x00",         # version 2
        b"\x49\x01\x00\x01" + b"\x00" * 9,  # token length 9
        b"\x44\x01\x00\x01\x00",         # truncated token
        b"\x40\x01\x00\x01\xff",         # marker without payload
        b"\x40\x01\x00\x01\xb5ab",       # truncated option value
        b"\x40\x01\x00\x01\xf0",         # reserved delta nibble
        b"\x40\x00\x00\x01\x01",         # empty message with bytes
    ],
)
def test_from_bytes_rejects_malformed(data: bytes) -> None:
    with pytest.raises(ParseError):
        CoapMessage.from_bytes(data)


def test_block_option_encoding() -> None:
    block = BlockOption(num=0, more=False, szx=BlockOption.szx_for(512))
    assert block.size == 512
    assert BlockOption.from_bytes(block.to_bytes()) == block
    with pytest.raises(ValueError):
        BlockOption.szx_for(100)
    with pytest.raises(ParseError):
        BlockOption.from_bytes(b"\x07")


def test_code_helpers() -> None:
    assert Code.CONTENT.dotted == "2.05"
    assert Code.NOT_FOUND.dotted == "4.04"
    assert Code.GET.is_request
    assert Code.CHANGED.is_success
    assert not Code.BAD_REQUEST.is_success
    assert code_name(Code.UNSUPPORTED_CONTENT_FORMAT) == "4.15 UNSUPPORTED_CONTENT_FORMAT"
    assert code_name(0x9F) == "4.31"


class TestParseUri:
    def test_ipv6_with_port(self) -> None:
        uri = parse_uri("coap://[fd73:13f6:c3ed:1:d8bd:9673:d9cd:a562]:5184/3311/0/5850")
        assert uri.host == "fd73:13f6:c3ed:1:d8bd:9673:d9cd:a562"
        assert uri.port == 5184
        assert uri.path == ("3311", "0", "5850")
        assert str(uri) == "coap://[fd73:13f6:c3ed:1:d8bd:9673:d9cd:a562]:5184/3311/0/5850"

    def test_default_port_and_query(self) -> None:
        uri = parse_uri("coap://example.com/sdf/sdf-mapping?group&x=1")
        assert uri.port == 5683
        assert uri.path == ("sdf", "sdf-mapping")
        assert uri.query == ("group", "x=1")

    def test_into_options(self) -> None:
        msg = CoapMessage(MessageType.NON, Code.GET)
        parse_uri("coap://127.0.0.1/a/b%20c?q").into_options(msg)
        assert msg.get_options(OptionNumber.URI_PATH) == [b"a", b"b c"]
        assert msg.get_options(OptionNumber.URI_QUERY) == [b"q"]

    @pytest.mark.parametrize(
        "uri",
        [
            "http://[::1]/3311/0/5850",
            "coaps://[::1]/3311/0/5850",
            "coap:///3311/0/5850",
            "coap://[::1]:99999/x",
            "coap://[::1]/x#frag",
            "not a uri",
        ],
    )
    def test_rejects(self, uri: str) -> None:
        with pytest.raises(UriParseError) as exc_info:
            parse_uri(uri)
        assert exc_info.value.step == "parse"
