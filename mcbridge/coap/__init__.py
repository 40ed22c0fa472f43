"""CoAP (RFC 7252) codec, transport, client and resource server."""

from .client import BufferDecoder, CoapClient, JsonDocumentDecoder, RawDecoder, XmlDocumentDecoder
from .protocol import Code, CoapMessage, ContentFormat, MessageType, OptionNumber, parse_uri
from .server import CoapReply, CoapRequest, CoapServer
from .transport import CoapTransport, UdpTransport

__all__ = [
    "BufferDecoder",
    "Code",
    "CoapClient",
    "CoapMessage",
    "CoapReply",
    "CoapRequest",
    "CoapServer",
    "CoapTransport",
    "ContentFormat",
    "JsonDocumentDecoder",
    "MessageType",
    "OptionNumber",
    "RawDecoder",
    "UdpTransport",
    "XmlDocumentDecoder",
    "parse_uri",
]
