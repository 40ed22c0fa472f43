"""Bridge engine: proxies, exposed resources and the reverse bridge."""

from .bridge import Bridge, build_stack, load_document
from .external import ExternalAttributeAdapter, ExternalAttributeBridge, Status
from .proxy import AttributeProxy, CommandProxy
from .resources import BridgeResourceServer, ResourceRegistration, registrations_from_object

__all__ = [
    "AttributeProxy",
    "Bridge",
    "BridgeResourceServer",
    "CommandProxy",
    "ExternalAttributeAdapter",
    "ExternalAttributeBridge",
    "ResourceRegistration",
    "Status",
    "build_stack",
    "load_document",
    "registrations_from_object",
]
