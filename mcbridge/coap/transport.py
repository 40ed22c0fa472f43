"""CoAP transport: address resolution, contexts, client sessions and I/O.

The client only talks to the abstract classes below, so tests can swap in
a fake transport and force a failure at any step. ``UdpTransport`` is the
real implementation on top of asyncio datagram endpoints. It handles
confirmable retransmission and turns RST, ICMP errors and exhausted
retransmissions into nacks.
"""
from __future__ import annotations

import asyncio
import logging
import random
import socket
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from mcbridge.errors import NackReason, ParseError

from .protocol import Code, CoapMessage, MessageType

logger = logging.getLogger("mcbridge.coap.transport")

Address = Tuple[Any, ...]

# RFC 7252 section 4.8 transmission parameters
ACK_TIMEOUT = 2.0
ACK_RANDOM_FACTOR = 1.5
MAX_RETRANSMIT = 4
DEFAULT_LEISURE = 5.0
DEFAULT_MAX_PDU_SIZE = 1152

ResponseHandler = Callable[["CoapSession", CoapMessage, CoapMessage], None]
NackHandler = Callable[["CoapSession", CoapMessage, NackReason], None]


class CoapSession(ABC):
    """A client session towards one remote endpoint."""

    leisure: float = DEFAULT_LEISURE
    max_pdu_size: int = DEFAULT_MAX_PDU_SIZE
    # RFC 7252 MAX_TRANSMIT_WAIT for the default parameters
    max_transmit_wait: float = ACK_TIMEOUT * ((1 << (MAX_RETRANSMIT + 1)) - 1) * ACK_RANDOM_FACTOR

    @abstractmethod
    def new_message_id(self) -> int:
        pass

    @abstractmethod
    def new_token(self) -> bytes:
        pass

    @abstractmethod
    async def send(self, message: CoapMessage) -> int:
        """Transmit ``message``; returns its message id."""

    @abstractmethod
    async def process_io(self, timeout_ms: int) -> int:
        """Run one I/O step, waiting at most ``timeout_ms``.

        Dispatches received messages to the context handlers and returns
        the milliseconds actually spent.
        """

    @abstractmethod
    def release(self) -> None:
        pass


class CoapContext(ABC):
    """Holds handlers shared by the sessions it creates."""

    def __init__(self) -> None:
        self._response_handler: Optional[ResponseHandler] = None
        self._nack_handler: Optional[NackHandler] = None

    def register_response_handler(self, handler: ResponseHandler) -> None:
        self._response_handler = handler

    def register_nack_handler(self, handler: NackHandler) -> None:
        self._nack_handler = handler

    def dispatch_response(self, session: CoapSession, sent: CoapMessage, received: CoapMessage) -> None:
        if self._response_handler:
            self._response_handler(session, sent, received)

    def dispatch_nack(self, session: CoapSession, sent: CoapMessage, reason: NackReason) -> None:
        if reason.retryable:
            logger.error("Cannot deliver CoAP message mid=%d: %s", sent.message_id, reason.value)
        else:
            logger.warning("CoAP message mid=%d nacked: %s", sent.message_id, reason.value)
        if self._nack_handler:
            self._nack_handler(session, sent, reason)

    @abstractmethod
    async def new_client_session(self, address: Address) -> CoapSession:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


class CoapTransport(ABC):
    @abstractmethod
    async def resolve_address(self, host: str, port: int) -> Address:
        pass

    @abstractmethod
    def new_context(self) -> CoapContext:
        pass


# --- UDP implementation ---


@dataclass
class TransmissionParameters:
    ack_timeout: float = ACK_TIMEOUT
    ack_random_factor: float = ACK_RANDOM_FACTOR
    max_retransmit: int = MAX_RETRANSMIT
    leisure: float = DEFAULT_LEISURE
    max_pdu_size: int = DEFAULT_MAX_PDU_SIZE


@dataclass
class _Outstanding:
    """A confirmable message waiting for its ACK."""

    message: CoapMessage
    data: bytes
    timeout: float
    deadline: float
    retries: int = 0


class _SessionProtocol(asyncio.DatagramProtocol):
    def __init__(self, queue: "asyncio.Queue[Tuple[str, Any]]") -> None:
        self._queue = queue

    def datagram_received(self, data: bytes, addr: Address) -> None:
        self._queue.put_nowait(("data", data))

    def error_received(self, exc: Exception) -> None:
        self._queue.put_nowait(("error", exc))

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc is not None:
            self._queue.put_nowait(("lost", exc))


class UdpSession(CoapSession):
    def __init__(self, context: "UdpContext", address: Address, params: TransmissionParameters) -> None:
        self._context = context
        self.address = address
        self.params = params
        self.leisure = params.leisure
        self.max_pdu_size = params.max_pdu_size
        self.max_transmit_wait = (
            params.ack_timeout * ((1 << (params.max_retransmit + 1)) - 1) * params.ack_random_factor
        )
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._incoming: "asyncio.Queue[Tuple[str, Any]]" = asyncio.Queue()
        self._next_mid = random.randint(0, 0xFFFF)
        self._by_token: Dict[bytes, CoapMessage] = {}
        self._outstanding: Dict[int, _Outstanding] = {}
        self._released = False

    async def open(self) -> None:
        loop = asyncio.get_running_loop()
        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: _SessionProtocol(self._incoming),
            remote_addr=self.address[:2],
        )

    def new_message_id(self) -> int:
        self._next_mid = (self._next_mid + 1) & 0xFFFF
        return self._next_mid

    def new_token(self) -> bytes:
        return random.getrandbits(32).to_bytes(4, "big")

    async def send(self, message: CoapMessage) -> int:
        if self._transport is None or self._released:
            raise ConnectionError("Session is not open")
        data = message.to_bytes()
        logger.debug("CoAP -> %s: %s", self.address[0], message.describe())
        self._transport.sendto(data)
        if message.code != Code.EMPTY:
            self._by_token[message.token] = message
        if message.mtype == MessageType.CON:
            loop = asyncio.get_running_loop()
            timeout = self.params.ack_timeout * random.uniform(1.0, self.params.ack_random_factor)
            self._outstanding[message.message_id] = _Outstanding(
                message=message, data=data, timeout=timeout, deadline=loop.time() + timeout
            )
        return message.message_id

    async def process_io(self, timeout_ms: int) -> int:
        loop = asyncio.get_running_loop()
        start = loop.time()
        wait = max(0.0, timeout_ms / 1000.0)
        if self._outstanding:
            nearest = min(o.deadline for o in self._outstanding.values())
            wait = max(0.0, min(wait, nearest - start))
        try:
            kind, item = await asyncio.wait_for(self._incoming.get(), timeout=wait)
        except asyncio.TimeoutError:
            pass
        else:
            if kind == "data":
                self._handle_datagram(item)
            else:
                logger.warning("CoAP socket error from %s: %s", self.address[0], item)
                reason = NackReason.ICMP_ISSUE if kind == "error" else NackReason.NOT_DELIVERABLE
                self._nack_all(reason)
        self._check_retransmissions(loop.time())
        return int((loop.time() - start) * 1000)

    def _handle_datagram(self, data: bytes) -> None:
        try:
            message = CoapMessage.from_bytes(data)
        except ParseError as exc:
            logger.warning("Dropping undecodable datagram from %s: %s", self.address[0], exc)
            return
        logger.debug("CoAP <- %s: %s", self.address[0], message.describe())

        if message.mtype in (MessageType.ACK, MessageType.RST):
            outstanding = self._outstanding.pop(message.message_id, None)
            if message.mtype == MessageType.RST:
                sent = outstanding.message if outstanding else self._find_by_mid(message.message_id)
                if sent is not None:
                    self._by_token.pop(sent.token, None)
                    self._context.dispatch_nack(self, sent, NackReason.RST)
                return
            if message.code == Code.EMPTY:
                # separate response will follow
                return
        elif message.mtype == MessageType.CON:
            self._reply_empty(MessageType.ACK, message.message_id)

        sent = self._by_token.get(message.token)
        if sent is None:
            if message.mtype == MessageType.CON:
                logger.debug("Unmatched token %s", message.token.hex())
            return
        self._by_token.pop(message.token, None)
        if message.code < 32:
            # a request or empty code is not a valid response
            self._context.dispatch_nack(self, sent, NackReason.BAD_RESPONSE)
            return
        self._context.dispatch_response(self, sent, message)

    def _reply_empty(self, mtype: MessageType, message_id: int) -> None:
        if self._transport is not None:
            self._transport.sendto(CoapMessage(mtype=mtype, code=Code.EMPTY, message_id=message_id).to_bytes())

    def _find_by_mid(self, message_id: int) -> Optional[CoapMessage]:
        for sent in self._by_token.values():
            if sent.message_id == message_id:
                return sent
        return None

    def _check_retransmissions(self, now: float) -> None:
        for mid, outstanding in list(self._outstanding.items()):
            if now < outstanding.deadline:
                continue
            if outstanding.retries >= self.params.max_retransmit:
                del self._outstanding[mid]
                self._by_token.pop(outstanding.message.token, None)
                self._context.dispatch_nack(self, outstanding.message, NackReason.TOO_MANY_RETRIES)
                continue
            outstanding.retries += 1
            outstanding.timeout *= 2
            outstanding.deadline = now + outstanding.timeout
            logger.debug("Retransmitting mid=%d (attempt %d)", mid, outstanding.retries)
            if self._transport is not None:
                self._transport.sendto(outstanding.data)

    def _nack_all(self, reason: NackReason) -> None:
        pending: List[CoapMessage] = list(self._by_token.values())
        self._by_token.clear()
        self._outstanding.clear()
        for sent in pending:
            self._context.dispatch_nack(self, sent, reason)

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        self._by_token.clear()
        self._outstanding.clear()
        self._context._forget(self)


class UdpContext(CoapContext):
    def __init__(self, params: TransmissionParameters) -> None:
        super().__init__()
        self.params = params
        self._sessions: List[UdpSession] = []
        self._closed = False

    async def new_client_session(self, address: Address) -> CoapSession:
        if self._closed:
            raise RuntimeError("Context is closed")
        session = UdpSession(self, address, self.params)
        await session.open()
        self._sessions.append(session)
        return session

    def _forget(self, session: UdpSession) -> None:
        if session in self._sessions:
            self._sessions.remove(session)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for session in list(self._sessions):
            session.release()


class UdpTransport(CoapTransport):
    def __init__(self, params: Optional[TransmissionParameters] = None) -> None:
        self.params = params or TransmissionParameters()

    async def resolve_address(self, host: str, port: int) -> Address:
        loop = asyncio.get_running_loop()
        infos = await loop.getaddrinfo(host, port, type=socket.SOCK_DGRAM)
        if not infos:
            raise OSError(f"No address for {host}")
        return infos[0][4]

    def new_context(self) -> CoapContext:
        return UdpContext(self.params)
