from __future__ import annotations

import asyncio
from typing import Callable, List, Optional, Union

import pytest

from mcbridge.coap.client import CoapClient
from mcbridge.coap.protocol import Code, CoapMessage, MessageType
from mcbridge.coap.transport import TransmissionParameters, UdpTransport
from mcbridge.errors import NackError, NackReason

Script = Callable[[CoapMessage], List[Union[CoapMessage, bytes]]]


class ScriptedPeer(asyncio.DatagramProtocol):
    """Loopback CoAP peer answering each datagram from a script."""

    def __init__(self, script: Script) -> None:
        self.script = script
        self.received: List[CoapMessage] = []
        self.transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr) -> None:
        message = CoapMessage.from_bytes(data)
        self.received.append(message)
        for reply in self.script(message):
            raw = reply if isinstance(reply, bytes) else reply.to_bytes()
            self.transport.sendto(raw, addr)


async def start_peer(script: Script):
    loop = asyncio.get_running_loop()
    transport, peer = await loop.create_datagram_endpoint(
        lambda: ScriptedPeer(script), local_addr=("127.0.0.1", 0)
    )
    port = transport.get_extra_info("sockname")[1]
    return transport, peer, port


FAST = TransmissionParameters(ack_timeout=0.05, ack_random_factor=1.0, max_retransmit=2, leisure=1.0)


@pytest.mark.asyncio
async def test_piggybacked_ack_response() -> None:
    def script(req):
        return [CoapMessage(MessageType.ACK, Code.CONTENT, req.message_id, req.token, payload=b"1")]

    transport, peer, port = await start_peer(script)
    try:
        client = CoapClient(UdpTransport(FAST), confirmable=True)
        assert await client.get(f"coap://127.0.0.1:{port}/3311/0/5850") == b"1"
    finally:
        transport.close()
    assert peer.received[0].mtype == MessageType.CON


@pytest.mark.asyncio
async def test_separate_response_is_acknowledged() -> None:
    def script(req):
        if req.code == Code.EMPTY:
            return []
        return [
            CoapMessage(MessageType.ACK, Code.EMPTY, req.message_id),
            CoapMessage(MessageType.CON, Code.CONTENT, 0x7000, req.token, payload=b"late"),
        ]

    transport, peer, port = await start_peer(script)
    try:
        client = CoapClient(UdpTransport(FAST), confirmable=True)
        assert await client.get(f"coap://127.0.0.1:{port}/a") == b"late"
        # give the empty ACK time to arrive
        for _ in range(50):
            if len(peer.received) > 1:
                break
            await asyncio.sleep(0.01)
    finally:
        transport.close()

    ack = peer.received[1]
    assert (ack.mtype, ack.code, ack.message_id) == (MessageType.ACK, Code.EMPTY, 0x7000)


@pytest.mark.asyncio
async def test_reset_is_a_terminal_nack() -> None:
    def script(req):
        return [CoapMessage(MessageType.RST, Code.EMPTY, req.message_id)]

    transport, _, port = await start_peer(script)
    try:
        client = CoapClient(UdpTransport(FAST), confirmable=True)
        with pytest.raises(NackError) as exc_info:
            await client.get(f"coap://127.0.0.1:{port}/a")
    finally:
        transport.close()
    assert exc_info.value.reason is NackReason.RST
    assert not exc_info.value.retryable


@pytest.mark.asyncio
async def test_unanswered_confirmable_is_retransmitted_then_nacked() -> None:
    transport, peer, port = await start_peer(lambda req: [])
    try:
        client = CoapClient(UdpTransport(FAST), confirmable=True)
        with pytest.raises(NackError) as exc_info:
            await client.get(f"coap://127.0.0.1:{port}/a")
    finally:
        transport.close()

    assert exc_info.value.reason is NackReason.TOO_MANY_RETRIES
    assert exc_info.value.retryable
    # first transmission plus max_retransmit copies of the same message
    assert len(peer.received) == 3
    assert len({m.message_id for m in peer.received}) == 1


@pytest.mark.asyncio
async def test_request_coded_reply_is_bad_response() -> None:
    def script(req):
        return [CoapMessage(MessageType.NON, Code.GET, 1, req.token)]

    transport, _, port = await start_peer(script)
    try:
        client = CoapClient(UdpTransport(FAST))
        with pytest.raises(NackError) as exc_info:
            await client.get(f"coap://127.0.0.1:{port}/a")
    finally:
        transport.close()
    assert exc_info.value.reason is NackReason.BAD_RESPONSE


@pytest.mark.asyncio
async def test_garbage_is_dropped_before_real_reply() -> None:
    def script(req):
        return [b"\x00", CoapMessage(MessageType.NON, Code.CONTENT, 2, req.token, payload=b"ok")]

    transport, _, port = await start_peer(script)
    try:
        client = CoapClient(UdpTransport(FAST))
        assert await client.get(f"coap://127.0.0.1:{port}/a") == b"ok"
    finally:
        transport.close()
