"""CoAP client: one request/response cycle against a remote resource.

Each call walks the same lifecycle::

    IDLE -> PARSED_URI -> ADDRESS_RESOLVED -> SESSION_OPEN -> PDU_BUILT -> SENT
         -> RESPONSE_RECEIVED | NACK_RECEIVED | TIMED_OUT -> CLOSED

A failing step raises the matching ``CoapClientError`` subclass. Whatever
was acquired before the failure (context, session) is released exactly
once on the way out. Requests are never retried here; callers that want
retries repeat the whole call.
"""
from __future__ import annotations

import json
import logging
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from contextlib import ExitStack
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union, cast

from mcbridge.errors import (
    AddressResolutionFailure,
    CoapClientError,
    NackError,
    NackReason,
    ParseError,
    PduConstructionFailure,
    RequestTimeout,
    ResponseError,
    SendFailure,
    TransportSessionFailure,
)

from .protocol import BlockOption, Code, CoapMessage, CoapUri, MessageType, OptionNumber, parse_uri
from .transport import CoapSession, CoapTransport, UdpTransport

logger = logging.getLogger("mcbridge.coap.client")


class ClientState(Enum):
    IDLE = "idle"
    PARSED_URI = "parsed-uri"
    ADDRESS_RESOLVED = "address-resolved"
    SESSION_OPEN = "session-open"
    PDU_BUILT = "pdu-built"
    SENT = "sent"
    RESPONSE_RECEIVED = "response-received"
    NACK_RECEIVED = "nack-received"
    TIMED_OUT = "timed-out"
    CLOSED = "closed"


# --- Decoders ---


class ResponseDecoder(ABC):
    """Turns a successful response payload into the caller's result."""

    @abstractmethod
    def decode(self, payload: bytes) -> Any:
        pass


class RawDecoder(ResponseDecoder):
    def decode(self, payload: bytes) -> bytes:
        return bytes(payload)


class JsonDocumentDecoder(ResponseDecoder):
    def decode(self, payload: bytes) -> Any:
        try:
            return json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ParseError(f"Invalid JSON document: {exc}") from None


class XmlDocumentDecoder(ResponseDecoder):
    def decode(self, payload: bytes) -> ET.Element:
        try:
            return ET.fromstring(payload)
        except ET.ParseError as exc:
            raise ParseError(f"Invalid XML document: {exc}") from None


class BufferDecoder(ResponseDecoder):
    """Copy the payload into a caller-owned fixed-size buffer.

    Payloads longer than the buffer are truncated. ``decode`` returns the
    number of bytes copied.
    """

    def __init__(self, buffer: Union[bytearray, memoryview]) -> None:
        self.buffer = buffer
        self.truncated = False

    def decode(self, payload: bytes) -> int:
        count = min(len(self.buffer), len(payload))
        self.buffer[:count] = payload[:count]
        self.truncated = count < len(payload)
        if self.truncated:
            logger.warning("Response truncated from %d to %d bytes", len(payload), count)
        return count


# --- Client ---


@dataclass
class CoapResponse:
    code: int
    payload: bytes = b""
    content_format: Optional[int] = None
    max_age: Optional[int] = None

    @property
    def ok(self) -> bool:
        return (self.code >> 5) == 2


@dataclass
class _Exchange:
    """Outcome slot filled by the context handlers while waiting."""

    token: bytes
    response: Optional[CoapMessage] = None
    nack: Optional[NackReason] = None

    @property
    def done(self) -> bool:
        return self.response is not None or self.nack is not None


@dataclass
class ClientStats:
    requests: int = 0
    succeeded: int = 0
    failed: int = 0
    nacks: int = 0
    timeouts: int = 0
    failures_by_step: Dict[str, int] = field(default_factory=dict)


class CoapClient:
    """Stateless between calls apart from statistics and the last trace."""

    def __init__(
        self,
        transport: Optional[CoapTransport] = None,
        confirmable: bool = False,
        block_size: Optional[int] = None,
    ):
        self.transport = transport or UdpTransport()
        self.confirmable = confirmable
        self.block_size = block_size
        self.stats = ClientStats()
        self.trace: List[ClientState] = []

    async def get(self, uri: str, decoder: Optional[ResponseDecoder] = None) -> Any:
        return await self.request(uri, Code.GET, decoder=decoder)

    async def put(
        self,
        uri: str,
        payload: Optional[bytes] = None,
        content_format: Optional[int] = None,
        decoder: Optional[ResponseDecoder] = None,
    ) -> Any:
        return await self.request(uri, Code.PUT, payload, decoder=decoder, content_format=content_format)

    async def request(
        self,
        uri: str,
        method: Code = Code.GET,
        payload: Optional[bytes] = None,
        decoder: Optional[ResponseDecoder] = None,
        content_format: Optional[int] = None,
    ) -> Any:
        """Run one full cycle and decode the response body.

        A PUT with ``payload=None`` sends no body at all.
        """
        response = await self.exchange(uri, method, payload, content_format)
        return (decoder or RawDecoder()).decode(response.payload)

    async def exchange(
        self,
        uri: str,
        method: Code = Code.GET,
        payload: Optional[bytes] = None,
        content_format: Optional[int] = None,
    ) -> CoapResponse:
        self.trace = [ClientState.IDLE]
        self.stats.requests += 1
        try:
            with ExitStack() as cleanup:
                response = await self._run(cleanup, uri, method, payload, content_format)
        except CoapClientError as exc:
            self.stats.failed += 1
            self.stats.failures_by_step[exc.step] = self.stats.failures_by_step.get(exc.step, 0) + 1
            logger.error("CoAP %s %s failed at step '%s': %s", method.name, uri, exc.step, exc)
            raise
        finally:
            self.trace.append(ClientState.CLOSED)

        if not response.ok:
            self.stats.failed += 1
            error = ResponseError(response.code, uri)
            logger.warning("CoAP %s %s: %s", method.name, uri, error)
            raise error
        self.stats.succeeded += 1
        return response

    def _enter(self, state: ClientState) -> None:
        self.trace.append(state)

    async def _run(
        self,
        cleanup: ExitStack,
        uri: str,
        method: Code,
        payload: Optional[bytes],
        content_format: Optional[int],
    ) -> CoapResponse:
        target = parse_uri(uri)
        self._enter(ClientState.PARSED_URI)

        try:
            address = await self.transport.resolve_address(target.host, target.port)
        except OSError as exc:
            raise AddressResolutionFailure(f"Cannot resolve '{target.host}': {exc}", uri) from exc
        self._enter(ClientState.ADDRESS_RESOLVED)

        try:
            context = self.transport.new_context()
            cleanup.callback(context.close)
            session = await context.new_client_session(address)
            cleanup.callback(session.release)
        except (OSError, RuntimeError) as exc:
            raise TransportSessionFailure(f"Cannot open session: {exc}", uri) from exc
        self._enter(ClientState.SESSION_OPEN)

        exchange: Optional[_Exchange] = None

        def on_response(_session: CoapSession, sent: CoapMessage, received: CoapMessage) -> None:
            if exchange is not None and sent.token == exchange.token:
                exchange.response = received

        def on_nack(_session: CoapSession, sent: CoapMessage, reason: NackReason) -> None:
            if exchange is not None and sent.token == exchange.token:
                exchange.nack = reason

        context.register_response_handler(on_response)
        context.register_nack_handler(on_nack)

        body = bytearray()
        block: Optional[BlockOption] = None
        if method == Code.GET and self.block_size:
            block = BlockOption(num=0, more=False, szx=BlockOption.szx_for(self.block_size))

        while True:
            message = self._build(session, target, method, payload, content_format, block, uri)
            exchange = _Exchange(token=message.token)
            self._enter(ClientState.PDU_BUILT)

            try:
                await session.send(message)
            except OSError as exc:
                raise SendFailure(f"Cannot send: {exc}", uri) from exc
            self._enter(ClientState.SENT)

            received = await self._wait(session, exchange, uri)
            body += received.payload

            reply_block = received.block2
            if reply_block is None or not reply_block.more or (received.code >> 5) != 2:
                break
            block = BlockOption(num=reply_block.num + 1, more=False, szx=reply_block.szx)
            logger.debug("Fetching block %d of %s", block.num, uri)

        return CoapResponse(
            code=received.code,
            payload=bytes(body),
            content_format=received.content_format,
            max_age=received.max_age,
        )

    def _build(
        self,
        session: CoapSession,
        target: CoapUri,
        method: Code,
        payload: Optional[bytes],
        content_format: Optional[int],
        block: Optional[BlockOption],
        uri: str,
    ) -> CoapMessage:
        try:
            message = CoapMessage(
                mtype=MessageType.CON if self.confirmable else MessageType.NON,
                code=method,
                message_id=session.new_message_id(),
                token=session.new_token(),
            )
            target.into_options(message)
            if payload is not None and content_format is not None:
                message.add_uint_option(OptionNumber.CONTENT_FORMAT, content_format)
            if block is not None:
                message.add_option(OptionNumber.BLOCK2, block.to_bytes())
            if payload:
                message.payload = bytes(payload)
            size = len(message.to_bytes())
        except ValueError as exc:
            raise PduConstructionFailure(f"Cannot build request: {exc}", uri) from exc
        if size > session.max_pdu_size:
            raise PduConstructionFailure(
                f"Request of {size} bytes exceeds the {session.max_pdu_size} byte PDU limit", uri
            )
        return message

    async def _wait(self, session: CoapSession, exchange: _Exchange, uri: str) -> CoapMessage:
        if self.confirmable:
            # the transport gives up at max_transmit_wait; leave room for its nack
            budget_ms = int((session.max_transmit_wait + session.leisure) * 1000)
        else:
            budget_ms = (int(session.leisure) + 1) * 1000
        remaining = budget_ms

        while not exchange.done:
            if remaining <= 0:
                self._enter(ClientState.TIMED_OUT)
                self.stats.timeouts += 1
                raise RequestTimeout(f"No response within {budget_ms} ms", uri)
            elapsed = await session.process_io(remaining)
            remaining -= max(elapsed, 1)

        if exchange.nack is not None:
            self._enter(ClientState.NACK_RECEIVED)
            self.stats.nacks += 1
            raise NackError(exchange.nack, uri)

        self._enter(ClientState.RESPONSE_RECEIVED)
        return cast(CoapMessage, exchange.response)

    def get_stats(self) -> dict:
        return {
            "requests": self.stats.requests,
            "succeeded": self.stats.succeeded,
            "failed": self.stats.failed,
            "nacks": self.stats.nacks,
            "timeouts": self.stats.timeouts,
            "failures_by_step": dict(self.stats.failures_by_step),
        }
