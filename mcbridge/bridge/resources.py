"""LwM2M resources exposed over CoAP for a bridged Matter device.

Each resource of the object definition becomes one registration. Its
declared operations select the handlers:

    R    -> GET (attribute read)
    W    -> PUT (attribute write)
    RW   -> GET and PUT on the same path
    E    -> PUT (command invoke); takes precedence over W
"""
from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

from mcbridge.coap.protocol import Code, ContentFormat, OptionNumber
from mcbridge.coap.server import CoapReply, CoapRequest, CoapServer
from mcbridge.core.lwm2m import ObjectDefinition, Operations, ResourcePath
from mcbridge.errors import ChannelTimeout

from .proxy import AttributeProxy, CommandProxy

logger = logging.getLogger("mcbridge.bridge.resources")

READ_MAX_AGE = 1
GROUP_QUERY = b"group"


@dataclass(frozen=True)
class ResourceRegistration:
    path: str
    type_name: str
    operations: Operations
    name: str = ""

    @property
    def is_command(self) -> bool:
        return self.operations.execute

    @property
    def methods(self) -> Tuple[Code, ...]:
        methods = []
        if self.operations.read:
            methods.append(Code.GET)
        if self.operations.write or self.operations.execute:
            methods.append(Code.PUT)
        return tuple(methods)


def registrations_from_object(definition: ObjectDefinition, instance_id: int = 0) -> List[ResourceRegistration]:
    registrations = []
    for res in definition.resources:
        ops = res.operations
        if not (ops.read or ops.write or ops.execute):
            logger.debug("Resource %d (%s) has no operations, skipped", res.id, res.name)
            continue
        path = str(ResourcePath(definition.id, instance_id, res.id))
        registrations.append(ResourceRegistration(path, res.type, ops, res.name))
    return registrations


class BridgeResourceServer:
    """Binds registrations to the CoAP server and the two proxies."""

    def __init__(self, server: CoapServer, attributes: AttributeProxy, commands: CommandProxy):
        self.server = server
        self.attributes = attributes
        self.commands = commands
        self.registrations: Dict[str, ResourceRegistration] = {}
        self.read_timeouts = 0

    def register(self, registration: ResourceRegistration) -> None:
        if registration.path in self.registrations:
            raise ValueError(f"Resource /{registration.path} already registered")
        if registration.operations.read:
            self.server.add_resource(registration.path, Code.GET, functools.partial(self._handle_get, registration))
        if registration.is_command:
            self.server.add_resource(registration.path, Code.PUT, functools.partial(self._handle_invoke, registration))
        elif registration.operations.write:
            self.server.add_resource(registration.path, Code.PUT, functools.partial(self._handle_put, registration))
        self.registrations[registration.path] = registration
        logger.info(
            "Resource /%s %s (%s, %s)",
            registration.path,
            registration.operations,
            registration.name or "-",
            registration.type_name or "no type",
        )

    def register_all(self, registrations: Iterable[ResourceRegistration]) -> int:
        count = 0
        for registration in registrations:
            self.register(registration)
            count += 1
        return count

    def register_object(self, definition: ObjectDefinition) -> int:
        return self.register_all(registrations_from_object(definition))

    # --- handlers ---

    async def _handle_get(self, registration: ResourceRegistration, request: CoapRequest) -> CoapReply:
        try:
            text = await self.attributes.read(registration.path, registration.type_name)
        except ChannelTimeout as exc:
            # a reply is still owed to the client
            self.read_timeouts += 1
            logger.warning("GET /%s: %s", registration.path, exc)
            text = ""
        return CoapReply(
            Code.CONTENT,
            text.encode("ascii"),
            content_format=ContentFormat.TEXT_PLAIN,
            max_age=READ_MAX_AGE,
        )

    async def _handle_put(self, registration: ResourceRegistration, request: CoapRequest) -> CoapReply:
        interaction = self.attributes.write(registration.path, registration.type_name, request.payload)
        logger.debug("PUT /%s -> %s", registration.path, interaction.value.to_text())
        return CoapReply(Code.CHANGED)

    async def _handle_invoke(self, registration: ResourceRegistration, request: CoapRequest) -> CoapReply:
        is_group = GROUP_QUERY in request.message.get_options(OptionNumber.URI_QUERY)
        self.commands.invoke(registration.path, is_group=is_group)
        return CoapReply(Code.CHANGED)
