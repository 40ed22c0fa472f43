"""Error hierarchy shared by the CoAP client, the proxies and the bridge.

Every failure the bridge can recover from is a ``BridgeError``. The request
boundaries (CoAP resource handlers, external attribute callbacks) catch these,
log them and answer with an error response; nothing here is fatal to the
process.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class BridgeError(Exception):
    """Base class for all recoverable bridge failures."""


class ParseError(BridgeError):
    """Malformed URI, resource path, CoAP message or document."""


class NotFound(BridgeError, KeyError):
    """Identifier missing from one direction of a BiMap."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message
        return str(self.args[0]) if self.args else "not found"


class UnknownResource(BridgeError):
    """Resource path that cannot be translated to a Matter target."""


class UnsupportedType(BridgeError):
    """Declared value type that is neither Boolean nor Unsigned Integer."""


class UnsupportedCommand(BridgeError):
    """Command id outside the closed table of invocable commands."""


class ChannelTimeout(BridgeError):
    """No result was published before the poll budget ran out."""


class ExternalAttributeFailure(BridgeError):
    """An attribute in external storage could not be read, written or invoked."""


class NackReason(str, Enum):
    """Why the transport gave up on a sent message."""

    TOO_MANY_RETRIES = "too-many-retries"
    NOT_DELIVERABLE = "not-deliverable"
    RST = "rst"
    ICMP_ISSUE = "icmp-issue"
    BAD_RESPONSE = "bad-response"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE_NACKS


_RETRYABLE_NACKS = frozenset({
    NackReason.TOO_MANY_RETRIES,
    NackReason.NOT_DELIVERABLE,
    NackReason.ICMP_ISSUE,
})


class CoapClientError(BridgeError):
    """A CoAP request/response cycle aborted at ``step``."""

    step = "request"

    def __init__(self, message: str, uri: Optional[str] = None) -> None:
        self.uri = uri
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        if self.uri:
            return f"{base} [{self.step}: {self.uri}]"
        return base


class UriParseError(ParseError, CoapClientError):
    step = "parse"


class AddressResolutionFailure(CoapClientError):
    step = "resolve"


class TransportSessionFailure(CoapClientError):
    step = "session"


class PduConstructionFailure(CoapClientError):
    step = "build"


class SendFailure(CoapClientError):
    step = "send"


class RequestTimeout(CoapClientError):
    step = "wait"


class ResponseError(CoapClientError):
    """The peer answered with a 4.xx or 5.xx code."""

    step = "response"

    def __init__(self, code: int, uri: Optional[str] = None) -> None:
        self.code = code
        super().__init__(f"Peer answered {code >> 5}.{code & 0x1F:02d}", uri)


class NackError(CoapClientError):
    step = "wait"

    def __init__(self, reason: NackReason, uri: Optional[str] = None) -> None:
        self.reason = reason
        super().__init__(f"Request was not acknowledged ({reason.value})", uri)

    @property
    def retryable(self) -> bool:
        return self.reason.retryable
