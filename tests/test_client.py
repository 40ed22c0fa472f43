from __future__ import annotations

import pytest

from mcbridge.coap.client import (
    BufferDecoder,
    ClientState,
    CoapClient,
    JsonDocumentDecoder,
    XmlDocumentDecoder,
)
from mcbridge.coap.protocol import BlockOption, Code, ContentFormat, MessageType, OptionNumber
from mcbridge.errors import (
    AddressResolutionFailure,
    NackError,
    NackReason,
    ParseError,
    PduConstructionFailure,
    RequestTimeout,
    ResponseError,
    SendFailure,
    TransportSessionFailure,
    UriParseError,
)

from conftest import FakeTransport, path_of, reply_to

URI = "coap://[fd00::1]:5184/3311/0/5850"


def assert_released_once(transport: FakeTransport) -> None:
    for context in transport.contexts:
        assert context.closes == 1
    for session in transport.sessions:
        assert session.releases == 1


@pytest.mark.asyncio
async def test_get_success_walks_full_lifecycle() -> None:
    transport = FakeTransport(lambda req: reply_to(req, b"\x01"))
    client = CoapClient(transport)

    result = await client.get(URI)

    assert result == b"\x01"
    assert client.trace == [
        ClientState.IDLE,
        ClientState.PARSED_URI,
        ClientState.ADDRESS_RESOLVED,
        ClientState.SESSION_OPEN,
        ClientState.PDU_BUILT,
        ClientState.SENT,
        ClientState.RESPONSE_RECEIVED,
        ClientState.CLOSED,
    ]
    assert transport.resolved == [("fd00::1", 5184)]
    (request,) = transport.sent
    assert request.code == Code.GET
    assert request.mtype == MessageType.NON
    assert path_of(request) == "3311/0/5850"
    assert_released_once(transport)
    assert client.get_stats()["succeeded"] == 1


@pytest.mark.asyncio
async def test_malformed_uri_acquires_nothing() -> None:
    transport = FakeTransport(lambda req: reply_to(req))
    client = CoapClient(transport)

    with pytest.raises(UriParseError):
        await client.get("http://example.com/3311/0/5850")

    assert transport.resolved == []
    assert transport.contexts == []
    assert client.trace == [ClientState.IDLE, ClientState.CLOSED]


@pytest.mark.asyncio
async def test_resolution_failure_acquires_nothing() -> None:
    transport = FakeTransport(lambda req: reply_to(req))
    transport.fail_resolve = True
    client = CoapClient(transport)

    with pytest.raises(AddressResolutionFailure) as exc_info:
        await client.get("coap://no-such-host.invalid/3311/0/5850")

    assert exc_info.value.step == "resolve"
    assert transport.contexts == []
    assert client.get_stats()["failures_by_step"] == {"resolve": 1}


@pytest.mark.asyncio
async def test_session_failure_closes_context_once() -> None:
    transport = FakeTransport(lambda req: reply_to(req))
    transport.fail_session = True
    client = CoapClient(transport)

    with pytest.raises(TransportSessionFailure):
        await client.get(URI)

    assert len(transport.contexts) == 1
    assert transport.sessions == []
    assert_released_once(transport)


@pytest.mark.asyncio
async def test_send_failure_releases_session_and_context() -> None:
    transport = FakeTransport(lambda req: reply_to(req))
    transport.fail_send = True
    client = CoapClient(transport)

    with pytest.raises(SendFailure):
        await client.put(URI, b"\x01")

    assert len(transport.sessions) == 1
    assert_released_once(transport)
    assert ClientState.SENT not in client.trace
    assert client.trace[-2:] == [ClientState.PDU_BUILT, ClientState.CLOSED]


@pytest.mark.asyncio
async def test_oversized_pdu_is_rejected_before_send() -> None:
    transport = FakeTransport(lambda req: reply_to(req))
    transport.max_pdu_size = 64
    client = CoapClient(transport)

    with pytest.raises(PduConstructionFailure):
        await client.put(URI, b"x" * 100)

    assert transport.sent == []
    assert_released_once(transport)


@pytest.mark.asyncio
async def test_no_answer_times_out_and_cleans_up() -> None:
    transport = FakeTransport(lambda req: None)
    client = CoapClient(transport)

    with pytest.raises(RequestTimeout):
        await client.get(URI)

    assert ClientState.TIMED_OUT in client.trace
    assert len(transport.sent) == 1
    assert_released_once(transport)
    assert client.get_stats()["timeouts"] == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "reason, retryable",
    [
        (NackReason.TOO_MANY_RETRIES, True),
        (NackReason.NOT_DELIVERABLE, True),
        (NackReason.ICMP_ISSUE, True),
        (NackReason.RST, False),
        (NackReason.BAD_RESPONSE, False),
    ],
)
async def test_nack_is_reported_with_reason(reason: NackReason, retryable: bool) -> None:
    transport = FakeTransport(lambda req: reason)
    client = CoapClient(transport)

    with pytest.raises(NackError) as exc_info:
        await client.get(URI)

    assert exc_info.value.reason is reason
    assert exc_info.value.retryable is retryable
    assert ClientState.NACK_RECEIVED in client.trace
    assert len(transport.sent) == 1
    assert_released_once(transport)


@pytest.mark.asyncio
async def test_error_response_raises_response_error() -> None:
    transport = FakeTransport(lambda req: reply_to(req, code=Code.NOT_FOUND))
    client = CoapClient(transport)

    with pytest.raises(ResponseError) as exc_info:
        await client.get(URI)

    assert exc_info.value.code == Code.NOT_FOUND
    assert "4.04" in str(exc_info.value)
    assert_released_once(transport)


@pytest.mark.asyncio
async def test_buffer_decoder_truncates_to_capacity() -> None:
    transport = FakeTransport(lambda req: reply_to(req, b"\x2a\x00\xff\xff"))
    client = CoapClient(transport)
    buffer = bytearray(2)
    decoder = BufferDecoder(buffer)

    count = await client.get(URI, decoder)

    assert count == 2
    assert buffer == bytearray(b"\x2a\x00")
    assert decoder.truncated


@pytest.mark.asyncio
async def test_put_without_payload_sends_empty_body() -> None:
    transport = FakeTransport(lambda req: reply_to(req, code=Code.CHANGED))
    client = CoapClient(transport)

    await client.put("coap://[fd00::1]/3311/0/5523")

    (request,) = transport.sent
    assert request.code == Code.PUT
    assert request.payload == b""
    assert request.content_format is None


@pytest.mark.asyncio
async def test_put_with_content_format() -> None:
    transport = FakeTransport(lambda req: reply_to(req, code=Code.CHANGED))
    client = CoapClient(transport)

    await client.put(URI, b"\x01", content_format=ContentFormat.OCTET_STREAM)

    (request,) = transport.sent
    assert request.payload == b"\x01"
    assert request.content_format == ContentFormat.OCTET_STREAM


@pytest.mark.asyncio
async def test_confirmable_requests() -> None:
    transport = FakeTransport(lambda req: reply_to(req, b"ok"))
    client = CoapClient(transport, confirmable=True)

    assert await client.get(URI) == b"ok"
    assert transport.sent[0].mtype == MessageType.CON


@pytest.mark.asyncio
async def test_block2_transfer_is_reassembled() -> None:
    document = bytes(range(256)) * 3  # 768 bytes -> two 512-byte blocks

    def responder(request):
        block = request.block2
        start = block.num * block.size
        chunk = document[start:start + block.size]
        more = start + block.size < len(document)
        response = reply_to(request, chunk)
        response.add_option(OptionNumber.BLOCK2, BlockOption(block.num, more, block.szx).to_bytes())
        return response

    transport = FakeTransport(responder)
    client = CoapClient(transport, block_size=512)

    result = await client.get("coap://[fd00::1]/sdf/lwm2m-to-matter")

    assert result == document
    assert [m.block2.num for m in transport.sent] == [0, 1]
    # both blocks ride the same session
    assert len(transport.sessions) == 1
    assert_released_once(transport)


@pytest.mark.asyncio
async def test_json_and_xml_decoders() -> None:
    transport = FakeTransport(lambda req: reply_to(req, b'{"map": {}}'))
    client = CoapClient(transport)
    assert await client.get(URI, JsonDocumentDecoder()) == {"map": {}}

    transport.responder = lambda req: reply_to(req, b"<LWM2M><Object/></LWM2M>")
    root = await client.get(URI, XmlDocumentDecoder())
    assert root.tag == "LWM2M"


@pytest.mark.asyncio
async def test_invalid_json_body_is_a_parse_error() -> None:
    transport = FakeTransport(lambda req: reply_to(req, b"{not json"))
    client = CoapClient(transport)

    with pytest.raises(ParseError):
        await client.get(URI, JsonDocumentDecoder())
    assert_released_once(transport)


@pytest.mark.asyncio
async def test_each_call_uses_a_fresh_context() -> None:
    transport = FakeTransport(lambda req: reply_to(req, b"1"))
    client = CoapClient(transport)

    await client.get(URI)
    await client.get(URI)

    assert len(transport.contexts) == 2
    assert_released_once(transport)
    assert client.get_stats()["requests"] == 2
