from __future__ import annotations

import asyncio

import pytest

from mcbridge.bridge.external import ExternalAttributeAdapter, ExternalAttributeBridge, Status
from mcbridge.coap.client import CoapClient
from mcbridge.coap.protocol import Code, ContentFormat
from mcbridge.errors import NackReason

from conftest import FakeTransport, path_of, reply_to

PEER_URI = "coap://[fd73:13f6:c3ed:1:d8bd:9673:d9cd:a562]:5184"


def make_bridge(light_map, responder, bridged=(3,)):
    transport = FakeTransport(responder)
    bridge = ExternalAttributeBridge(light_map, CoapClient(transport), PEER_URI, bridged_endpoints=bridged)
    return bridge, transport


def test_attribute_uri_uses_object_instance_resource(light_map) -> None:
    bridge, _ = make_bridge(light_map, None)
    assert bridge.attribute_uri(6, 0x0000) == f"{PEER_URI}/3311/0/5850"
    assert bridge.command_uri(6, 0x02) == f"{PEER_URI}/3311/0/5523"


@pytest.mark.asyncio
async def test_read_fills_buffer(light_map) -> None:
    bridge, transport = make_bridge(light_map, lambda req: reply_to(req, b"\x2a\x00"))
    buffer = bytearray(2)

    status = await bridge.read(3, 6, 0x4001, buffer)

    assert status is Status.SUCCESS
    assert buffer == bytearray(b"\x2a\x00")
    (request,) = transport.sent
    assert request.code == Code.GET
    assert path_of(request) == "3311/0/5852"
    assert transport.resolved == [("fd73:13f6:c3ed:1:d8bd:9673:d9cd:a562", 5184)]


@pytest.mark.asyncio
async def test_read_truncates_long_values(light_map) -> None:
    bridge, _ = make_bridge(light_map, lambda req: reply_to(req, b"\x01\x02\x03"))
    buffer = bytearray(1)
    assert await bridge.read(3, 6, 0x0000, buffer) is Status.SUCCESS
    assert buffer == bytearray(b"\x01")


@pytest.mark.asyncio
async def test_write_sends_declared_width(light_map) -> None:
    bridge, transport = make_bridge(light_map, lambda req: reply_to(req, code=Code.CHANGED))

    status = await bridge.write(3, 6, 0x4001, b"\x2a\x00\xff\xff", size=2)

    assert status is Status.SUCCESS
    (request,) = transport.sent
    assert request.code == Code.PUT
    assert request.payload == b"\x2a\x00"
    assert request.content_format == ContentFormat.OCTET_STREAM


@pytest.mark.asyncio
async def test_invoke_is_put_without_body(light_map) -> None:
    bridge, transport = make_bridge(light_map, lambda req: reply_to(req, code=Code.CHANGED))

    assert await bridge.invoke(3, 6, 0x02) is Status.SUCCESS

    (request,) = transport.sent
    assert request.code == Code.PUT
    assert path_of(request) == "3311/0/5523"
    assert request.payload == b""


@pytest.mark.asyncio
async def test_unbridged_endpoint_sends_nothing(light_map) -> None:
    bridge, transport = make_bridge(light_map, lambda req: reply_to(req))

    assert await bridge.read(1, 6, 0x0000, bytearray(1)) is Status.FAILURE
    assert await bridge.write(1, 6, 0x0000, b"\x01") is Status.FAILURE
    assert await bridge.invoke(1, 6, 0x02) is Status.FAILURE
    assert transport.contexts == []
    assert bridge.get_stats()["failures"] == 3


@pytest.mark.asyncio
async def test_any_endpoint_when_unrestricted(light_map) -> None:
    bridge, transport = make_bridge(light_map, lambda req: reply_to(req, b"\x01"), bridged=None)
    assert await bridge.read(7, 6, 0x0000, bytearray(1)) is Status.SUCCESS


@pytest.mark.asyncio
async def test_unmapped_attribute_fails_without_request(light_map) -> None:
    bridge, transport = make_bridge(light_map, lambda req: reply_to(req))

    assert await bridge.read(3, 6, 0x0099, bytearray(2)) is Status.FAILURE
    assert await bridge.invoke(3, 8, 0x00) is Status.FAILURE
    assert transport.sent == []


@pytest.mark.asyncio
async def test_timeout_fails_after_a_single_attempt(light_map) -> None:
    bridge, transport = make_bridge(light_map, lambda req: None)

    assert await bridge.read(3, 6, 0x0000, bytearray(1)) is Status.FAILURE
    assert len(transport.sent) == 1


@pytest.mark.asyncio
async def test_nack_and_error_response_fail(light_map) -> None:
    bridge, transport = make_bridge(light_map, lambda req: NackReason.RST)
    assert await bridge.write(3, 6, 0x0000, b"\x01") is Status.FAILURE

    transport.responder = lambda req: reply_to(req, code=Code.NOT_FOUND)
    assert await bridge.invoke(3, 6, 0x02) is Status.FAILURE
    assert len(transport.sent) == 2


@pytest.mark.asyncio
async def test_adapter_runs_bridge_for_worker_thread(light_map) -> None:
    bridge, transport = make_bridge(light_map, lambda req: reply_to(req, b"\x01"))
    adapter = ExternalAttributeAdapter(bridge, asyncio.get_running_loop())
    buffer = bytearray(1)

    assert await asyncio.to_thread(adapter.read, 3, 6, 0x0000, buffer)
    assert buffer == bytearray(b"\x01")
    assert await asyncio.to_thread(adapter.write, 3, 6, 0x4001, b"\x2a\x00")
    assert transport.sent[-1].payload == b"\x2a\x00"
    assert await asyncio.to_thread(adapter.invoke, 3, 6, 0x02)
    assert path_of(transport.sent[-1]) == "3311/0/5523"
    # endpoint 2 is not bridged to the peer
    assert not await asyncio.to_thread(adapter.read, 2, 6, 0x0000, buffer)


@pytest.mark.asyncio
async def test_adapter_refuses_the_event_loop_thread(light_map) -> None:
    bridge, transport = make_bridge(light_map, lambda req: reply_to(req, b"\x01"))
    adapter = ExternalAttributeAdapter(bridge, asyncio.get_running_loop())

    with pytest.raises(RuntimeError):
        adapter.read(3, 6, 0x0000, bytearray(1))
    assert transport.sent == []
    assert bridge.reads == 0
