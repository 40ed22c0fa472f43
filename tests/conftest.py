"""
Shared fakes for the CoAP transport and the Matter stack.
"""
from __future__ import annotations

from pathlib import Path
from typing import Callable, List, Optional, Union

import pytest

from mcbridge.coap.protocol import Code, CoapMessage, MessageType, OptionNumber
from mcbridge.coap.transport import CoapContext, CoapSession, CoapTransport
from mcbridge.core.channel import ResultChannel
from mcbridge.core.mapping import IdentifierMap
from mcbridge.errors import NackReason
from mcbridge.matter.binding import BindingDispatcher
from mcbridge.matter.interactions import BindingEntry
from mcbridge.matter.stack import ImmediateWorkQueue, SimulatedMatterStack

EXAMPLES = Path(__file__).resolve().parent.parent / "examples"

Reply = Union[CoapMessage, NackReason, None]
Responder = Callable[[CoapMessage], Reply]


def reply_to(request: CoapMessage, payload: bytes = b"", code: int = Code.CONTENT) -> CoapMessage:
    """Build the response a peer would send for ``request``."""
    mtype = MessageType.ACK if request.mtype == MessageType.CON else MessageType.NON
    return CoapMessage(mtype, code, request.message_id, request.token, payload=payload)


class FakeSession(CoapSession):
    def __init__(self, context: "FakeContext", address) -> None:
        self.context = context
        self.address = address
        self.sent: List[CoapMessage] = []
        self.releases = 0
        self._queue: List[CoapMessage] = []
        self._mid = 0
        self._token = 0

    def new_message_id(self) -> int:
        self._mid += 1
        return self._mid

    def new_token(self) -> bytes:
        self._token += 1
        return bytes([self._token])

    async def send(self, message: CoapMessage) -> int:
        if self.context.transport.fail_send:
            raise OSError("network unreachable")
        self.sent.append(message)
        self._queue.append(message)
        return message.message_id

    async def process_io(self, timeout_ms: int) -> int:
        responder = self.context.transport.responder
        if self._queue and responder is not None:
            request = self._queue.pop(0)
            result = responder(request)
            if isinstance(result, NackReason):
                self.context.dispatch_nack(self, request, result)
                return 1
            if result is not None:
                self.context.dispatch_response(self, request, result)
                return 1
        # nothing arrived: the whole wait elapsed
        return timeout_ms

    def release(self) -> None:
        self.releases += 1


class FakeContext(CoapContext):
    def __init__(self, transport: "FakeTransport") -> None:
        super().__init__()
        self.transport = transport
        self.sessions: List[FakeSession] = []
        self.closes = 0

    async def new_client_session(self, address) -> CoapSession:
        if self.transport.fail_session:
            raise OSError("no route to host")
        session = FakeSession(self, address)
        session.max_pdu_size = self.transport.max_pdu_size
        self.sessions.append(session)
        return session

    def close(self) -> None:
        self.closes += 1


class FakeTransport(CoapTransport):
    """Scriptable transport. ``responder`` answers each sent request."""

    def __init__(self, responder: Optional[Responder] = None) -> None:
        self.responder = responder
        self.fail_resolve = False
        self.fail_session = False
        self.fail_send = False
        self.max_pdu_size = 1152
        self.resolved: List[tuple] = []
        self.contexts: List[FakeContext] = []

    async def resolve_address(self, host: str, port: int):
        if self.fail_resolve:
            raise OSError(f"Name or service not known: {host}")
        self.resolved.append((host, port))
        return (host, port)

    def new_context(self) -> CoapContext:
        context = FakeContext(self)
        self.contexts.append(context)
        return context

    @property
    def sessions(self) -> List[FakeSession]:
        return [s for c in self.contexts for s in c.sessions]

    @property
    def sent(self) -> List[CoapMessage]:
        return [m for s in self.sessions for m in s.sent]


def path_of(message: CoapMessage) -> str:
    return "/".join(v.decode() for v in message.get_options(OptionNumber.URI_PATH))


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def light_map() -> IdentifierMap:
    """OnOff cluster <-> Light Control object."""
    return IdentifierMap.from_pairs(
        clusters={6: 3311},
        attributes={0x0000: 5850, 0x4001: 5852},
        commands={0x02: 5523},
    )


@pytest.fixture
def sim_stack() -> SimulatedMatterStack:
    stack = SimulatedMatterStack(
        bindings=[
            BindingEntry.unicast(fabric_index=1, node_id=0x1234, local_endpoint=2, remote_endpoint=1, cluster_id=6),
            BindingEntry.multicast(fabric_index=1, group_id=0x0101, local_endpoint=2, cluster_id=6),
        ],
        work_queue=ImmediateWorkQueue(),
        groups={0x0101: [(0x1234, 1), (0x5678, 1)]},
    )
    stack.set_attribute(0x1234, 1, 6, 0x0000, False)
    stack.set_attribute(0x1234, 1, 6, 0x4001, 0)
    return stack


@pytest.fixture
def channel() -> ResultChannel:
    return ResultChannel()


@pytest.fixture
def dispatcher(sim_stack: SimulatedMatterStack, channel: ResultChannel) -> BindingDispatcher:
    dispatcher = BindingDispatcher(sim_stack, channel)
    dispatcher.register()
    return dispatcher
