"""CoAP resource server on an asyncio datagram endpoint.

Datagrams are queued and handled by a single worker, so resource handlers
run strictly one at a time. Confirmable requests get a piggybacked ACK;
retransmissions of a request already answered are served from a small
response cache instead of being dispatched again.
"""
from __future__ import annotations

import asyncio
import logging
import random
from collections import OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from mcbridge.errors import (
    BridgeError,
    NotFound,
    ParseError,
    UnknownResource,
    UnsupportedCommand,
    UnsupportedType,
)

from .protocol import Code, CoapMessage, MessageType, OptionNumber, code_name

logger = logging.getLogger("mcbridge.coap.server")

Address = Tuple
DUPLICATE_CACHE_SIZE = 64

# Checked in order; the first matching class wins.
ERROR_CODES: List[Tuple[type, Code]] = [
    (ParseError, Code.BAD_REQUEST),
    (UnknownResource, Code.NOT_FOUND),
    (NotFound, Code.NOT_FOUND),
    (UnsupportedType, Code.UNSUPPORTED_CONTENT_FORMAT),
    (UnsupportedCommand, Code.NOT_IMPLEMENTED),
]


def error_code_for(exc: BaseException) -> Code:
    for exc_type, code in ERROR_CODES:
        if isinstance(exc, exc_type):
            return code
    return Code.INTERNAL_SERVER_ERROR


@dataclass
class CoapRequest:
    method: Code
    path: str
    payload: bytes
    content_format: Optional[int]
    peer: Address
    message: CoapMessage


@dataclass
class CoapReply:
    code: Code
    payload: bytes = b""
    content_format: Optional[int] = None
    max_age: Optional[int] = None


RequestHandler = Callable[[CoapRequest], Awaitable[CoapReply]]


class _ServerProtocol(asyncio.DatagramProtocol):
    def __init__(self, queue: "asyncio.Queue[Tuple[bytes, Address]]") -> None:
        self._queue = queue

    def datagram_received(self, data: bytes, addr: Address) -> None:
        self._queue.put_nowait((data, addr))

    def error_received(self, exc: Exception) -> None:
        logger.warning("CoAP server socket error: %s", exc)


class CoapServer:
    """Serves registered ``path -> {method: handler}`` resources."""

    def __init__(self, host: str = "0.0.0.0", port: int = 5683, cache_size: int = DUPLICATE_CACHE_SIZE):
        self.host = host
        self.port = port
        self._resources: Dict[str, Dict[Code, RequestHandler]] = {}
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._queue: "asyncio.Queue[Tuple[bytes, Address]]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._recent: "OrderedDict[Tuple[Address, int], bytes]" = OrderedDict()
        self._cache_size = cache_size
        self._next_mid = random.randint(0, 0xFFFF)
        self._running = False

        self.requests_handled = 0
        self.errors = 0
        self.duplicates = 0

    # --- Resources ---

    def add_resource(self, path: str, method: Code, handler: RequestHandler) -> None:
        path = path.strip("/")
        methods = self._resources.setdefault(path, {})
        if method in methods:
            raise ValueError(f"{method.name} already registered for /{path}")
        methods[method] = handler
        logger.debug("Registered %s /%s", method.name, path)

    def methods_for(self, path: str) -> List[Code]:
        return sorted(self._resources.get(path.strip("/"), {}))

    @property
    def paths(self) -> List[str]:
        return sorted(self._resources)

    # --- Lifecycle ---

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: _ServerProtocol(self._queue),
            local_addr=(self.host, self.port),
        )
        sockname = self._transport.get_extra_info("sockname")
        if sockname:
            self.port = sockname[1]
        self._running = True
        self._worker = asyncio.create_task(self._serve())
        logger.info("CoAP server listening on %s:%d (%d resources)", self.host, self.port, len(self._resources))

    async def stop(self) -> None:
        self._running = False
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        if self._transport:
            self._transport.close()
            self._transport = None
        logger.info("CoAP server stopped")

    async def _serve(self) -> None:
        while self._running:
            data, addr = await self._queue.get()
            try:
                reply = await self.handle_datagram(data, addr)
            except Exception:
                logger.exception("Unhandled error processing datagram from %s", addr)
                continue
            if reply is not None and self._transport is not None:
                self._transport.sendto(reply, addr)

    # --- Request handling ---

    def _new_message_id(self) -> int:
        self._next_mid = (self._next_mid + 1) & 0xFFFF
        return self._next_mid

    async def handle_datagram(self, data: bytes, addr: Address) -> Optional[bytes]:
        """Process one datagram and return the encoded reply, if any."""
        try:
            request = CoapMessage.from_bytes(data)
        except ParseError as exc:
            logger.warning("Dropping malformed CoAP datagram from %s: %s", addr, exc)
            return None

        if request.mtype in (MessageType.ACK, MessageType.RST):
            return None
        if request.code == Code.EMPTY:
            # CoAP ping
            if request.mtype == MessageType.CON:
                return CoapMessage(MessageType.RST, Code.EMPTY, request.message_id).to_bytes()
            return None
        if not 1 <= request.code <= 31:
            logger.debug("Ignoring non-request code %s from %s", code_name(request.code), addr)
            return None

        key = (addr, request.message_id)
        if key in self._recent:
            self.duplicates += 1
            logger.debug("Duplicate mid=%d from %s, resending cached reply", request.message_id, addr)
            return self._recent[key]

        logger.debug("Request from %s: %s", addr, request.describe())
        reply = await self._dispatch(request, addr)
        response = self._encode_reply(request, reply)
        logger.debug("Reply to %s: %s", addr, response.describe())

        encoded = response.to_bytes()
        self._recent[key] = encoded
        while len(self._recent) > self._cache_size:
            self._recent.popitem(last=False)
        return encoded

    async def _dispatch(self, request: CoapMessage, addr: Address) -> CoapReply:
        self.requests_handled += 1
        path = request.uri_path
        methods = self._resources.get(path)
        if methods is None:
            self.errors += 1
            return CoapReply(Code.NOT_FOUND)
        try:
            method = Code(request.code)
        except ValueError:
            method = None
        handler = methods.get(method) if method is not None else None
        if handler is None:
            self.errors += 1
            return CoapReply(Code.METHOD_NOT_ALLOWED)

        incoming = CoapRequest(
            method=method,
            path=path,
            payload=request.payload,
            content_format=request.content_format,
            peer=addr,
            message=request,
        )
        try:
            return await handler(incoming)
        except BridgeError as exc:
            self.errors += 1
            code = error_code_for(exc)
            logger.warning("%s /%s failed (%s): %s", method.name, path, code.dotted, exc)
            return CoapReply(code)
        except Exception:
            self.errors += 1
            logger.exception("Handler for %s /%s crashed", method.name, path)
            return CoapReply(Code.INTERNAL_SERVER_ERROR)

    def _encode_reply(self, request: CoapMessage, reply: CoapReply) -> CoapMessage:
        if request.mtype == MessageType.CON:
            mtype, mid = MessageType.ACK, request.message_id
        else:
            mtype, mid = MessageType.NON, self._new_message_id()
        response = CoapMessage(mtype=mtype, code=reply.code, message_id=mid, token=request.token)
        if reply.content_format is not None:
            response.add_uint_option(OptionNumber.CONTENT_FORMAT, reply.content_format)
        if reply.max_age is not None:
            response.add_uint_option(OptionNumber.MAX_AGE, reply.max_age)
        response.payload = reply.payload
        return response

    def get_stats(self) -> dict:
        return {
            "requests": self.requests_handled,
            "errors": self.errors,
            "duplicates": self.duplicates,
            "resources": len(self._resources),
        }
