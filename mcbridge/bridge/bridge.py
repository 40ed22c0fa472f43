"""Bridge orchestrator - wires the CoAP server, the proxies and the peer client.

Startup fetches three documents (object definition, LwM2M->Matter mapping,
Matter->LwM2M mapping), builds the identifier maps from them and registers
one CoAP resource per LwM2M resource that declares an operation.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

from mcbridge.coap.client import CoapClient, JsonDocumentDecoder, ResponseDecoder, XmlDocumentDecoder
from mcbridge.coap.server import CoapServer
from mcbridge.coap.transport import CoapTransport, TransmissionParameters, UdpTransport
from mcbridge.config import BridgeConfig
from mcbridge.core.channel import ResultChannel
from mcbridge.core.lwm2m import ObjectDefinition, parse_object_definition
from mcbridge.core.mapping import IdentifierMap, build_identifier_map
from mcbridge.errors import ParseError
from mcbridge.matter.binding import BindingDispatcher, init_binding_handler
from mcbridge.matter.interactions import BindingKind
from mcbridge.matter.stack import ON_OFF_ATTRIBUTE, ON_OFF_CLUSTER, MatterStack, SimulatedMatterStack

from .external import ExternalAttributeAdapter, ExternalAttributeBridge
from .proxy import AttributeProxy, CommandProxy
from .resources import BridgeResourceServer

logger = logging.getLogger("mcbridge.bridge")


async def load_document(source: str, decoder: ResponseDecoder, client: CoapClient) -> Any:
    """Fetch ``source`` over CoAP, or read it from disk, and decode it."""
    if source.startswith("coap://"):
        logger.info("Fetching %s", source)
        return await client.get(source, decoder=decoder)
    path = Path(source)
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise ParseError(f"Cannot read {path}: {exc}") from None
    logger.info("Loaded %s (%d bytes)", path, len(data))
    return decoder.decode(data)


def build_stack(config: BridgeConfig) -> SimulatedMatterStack:
    """In-memory Matter stack from the ``matter`` config section.

    Every unicast OnOff binding target starts with OnOff = false. The peer's
    bridged endpoints are kept in external storage.
    """
    stack = SimulatedMatterStack(
        bindings=config.matter.bindings,
        groups={gid: [tuple(m) for m in members] for gid, members in config.matter.groups.items()},
        external_endpoints=config.peer.bridged_endpoints or (),
    )
    for binding in config.matter.bindings:
        if binding.kind is BindingKind.UNICAST and binding.cluster_id in (None, ON_OFF_CLUSTER):
            stack.set_attribute(binding.node_id, binding.remote_endpoint or 1, ON_OFF_CLUSTER, ON_OFF_ATTRIBUTE, False)
    return stack


class Bridge:
    """Matter <-> LwM2M bridge.

    Example:
        config = load_config("bridge.yaml")
        bridge = Bridge(config, build_stack(config))
        await bridge.run_forever()
    """

    def __init__(
        self,
        config: BridgeConfig,
        stack: MatterStack,
        transport: Optional[CoapTransport] = None,
    ):
        self.config = config
        self.stack = stack

        if transport is None:
            transport = UdpTransport(
                TransmissionParameters(
                    ack_timeout=config.client.ack_timeout,
                    ack_random_factor=config.client.ack_random_factor,
                    max_retransmit=config.client.max_retransmit,
                    leisure=config.client.leisure,
                )
            )
        self._client = CoapClient(
            transport,
            confirmable=config.client.confirmable,
            block_size=config.client.block_size,
        )
        self._server = CoapServer(host=config.server.host, port=config.server.port)
        self._channel = ResultChannel()
        self._dispatcher = BindingDispatcher(stack, self._channel)

        self.object_definition: Optional[ObjectDefinition] = None
        self.inbound_map: Optional[IdentifierMap] = None
        self.outbound_map: Optional[IdentifierMap] = None
        self._resources: Optional[BridgeResourceServer] = None
        self._external: Optional[ExternalAttributeBridge] = None
        self._running = False

    # --- Startup ---

    async def bootstrap(self) -> None:
        """Load documents, build identifier maps and register resources."""
        docs = self.config.documents

        if docs.lwm2m_to_matter:
            document = await load_document(docs.lwm2m_to_matter, JsonDocumentDecoder(), self._client)
            self.inbound_map = build_identifier_map(document)
        if docs.matter_to_lwm2m:
            document = await load_document(docs.matter_to_lwm2m, JsonDocumentDecoder(), self._client)
            self.outbound_map = build_identifier_map(document)
        if docs.object_definition:
            element = await load_document(docs.object_definition, XmlDocumentDecoder(), self._client)
            self.object_definition = parse_object_definition(element)
            logger.info(
                "Object %d (%s) with %d resources",
                self.object_definition.id,
                self.object_definition.name,
                len(self.object_definition.resources),
            )

        if self.object_definition is not None and self.inbound_map is not None:
            proxy_cfg = self.config.proxy
            attributes = AttributeProxy(
                self.inbound_map,
                self.stack,
                self._dispatcher,
                self._channel,
                poll_attempts=proxy_cfg.poll_attempts,
                poll_interval=proxy_cfg.poll_interval,
                local_endpoint=proxy_cfg.local_endpoint,
            )
            commands = CommandProxy(
                self.inbound_map, self.stack, self._dispatcher, local_endpoint=proxy_cfg.local_endpoint
            )
            self._resources = BridgeResourceServer(self._server, attributes, commands)
            self._resources.register_object(self.object_definition)

        if self.config.peer.uri and self.outbound_map is not None:
            self._external = ExternalAttributeBridge(
                self.outbound_map,
                self._client,
                self.config.peer.uri,
                bridged_endpoints=self.config.peer.bridged_endpoints,
            )
            self.stack.register_external_attribute_handler(
                ExternalAttributeAdapter(self._external, asyncio.get_running_loop())
            )
            logger.info("External attributes bridged to %s", self.config.peer.uri)

    async def start(self) -> None:
        logger.info("Starting bridge...")
        self.stack.start()
        init_binding_handler(self.stack, self._dispatcher)
        await self.bootstrap()
        await self._server.start()
        self._running = True
        logger.info("Bridge started successfully")

    async def stop(self) -> None:
        logger.info("Stopping bridge...")
        self._running = False
        await self._server.stop()
        self.stack.stop()
        logger.info("Bridge stopped")

    async def run_forever(self) -> None:
        """Run the bridge until interrupted."""
        try:
            await self.start()
            while self._running:
                await asyncio.sleep(1)
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    # --- Component access ---

    @property
    def server(self) -> CoapServer:
        return self._server

    @property
    def client(self) -> CoapClient:
        return self._client

    @property
    def channel(self) -> ResultChannel:
        return self._channel

    @property
    def dispatcher(self) -> BindingDispatcher:
        return self._dispatcher

    @property
    def resources(self) -> Optional[BridgeResourceServer]:
        return self._resources

    @property
    def external(self) -> Optional[ExternalAttributeBridge]:
        return self._external

    @property
    def is_running(self) -> bool:
        return self._running

    def get_stats(self) -> dict:
        """Get bridge statistics."""
        stats = {
            "running": self._running,
            "resources": len(self._resources.registrations) if self._resources else 0,
            "server": self._server.get_stats(),
            "client": self._client.get_stats(),
            "channel": self._channel.get_stats(),
            "matter": self._dispatcher.get_stats(),
        }
        if self.inbound_map is not None:
            stats["inbound_map"] = self.inbound_map.stats()
        if self.outbound_map is not None:
            stats["outbound_map"] = self.outbound_map.stats()
        if self._resources is not None:
            stats["read_timeouts"] = self._resources.read_timeouts
        if self._external is not None:
            stats["external"] = self._external.get_stats()
        return stats
