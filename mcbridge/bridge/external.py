"""Matter -> LwM2M direction.

When the Matter attribute store misses on an attribute of a bridged
endpoint, it calls in here. The (cluster, attribute) pair is translated to
an LwM2M (object, resource) pair and fetched from, or written to, the peer
device with a single CoAP request. Failures are reported, never retried.
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Coroutine, Iterable, Optional, Union

from mcbridge.coap.client import BufferDecoder, CoapClient
from mcbridge.coap.protocol import ContentFormat
from mcbridge.core.mapping import IdentifierMap
from mcbridge.errors import BridgeError
from mcbridge.matter.stack import ExternalAttributeHandler

logger = logging.getLogger("mcbridge.bridge.external")

DEFAULT_INSTANCE = 0


class Status(Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class ExternalAttributeBridge:
    def __init__(
        self,
        ident: IdentifierMap,
        client: CoapClient,
        peer_uri: str,
        bridged_endpoints: Optional[Iterable[int]] = None,
        instance_id: int = DEFAULT_INSTANCE,
    ):
        self.ident = ident
        self.client = client
        self.peer_uri = peer_uri.rstrip("/")
        self.bridged_endpoints = None if bridged_endpoints is None else frozenset(bridged_endpoints)
        self.instance_id = instance_id
        self.reads = 0
        self.writes = 0
        self.invokes = 0
        self.failures = 0

    def attribute_uri(self, cluster_id: int, attribute_id: int) -> str:
        object_id = self.ident.clusters.to_oma(cluster_id)
        resource_id = self.ident.attributes.to_oma(attribute_id)
        return f"{self.peer_uri}/{object_id}/{self.instance_id}/{resource_id}"

    def command_uri(self, cluster_id: int, command_id: int) -> str:
        object_id = self.ident.clusters.to_oma(cluster_id)
        resource_id = self.ident.commands.to_oma(command_id)
        return f"{self.peer_uri}/{object_id}/{self.instance_id}/{resource_id}"

    def _is_bridged(self, endpoint: int) -> bool:
        if self.bridged_endpoints is None or endpoint in self.bridged_endpoints:
            return True
        logger.warning("Endpoint %d is not bridged to %s", endpoint, self.peer_uri)
        return False

    async def read(
        self,
        endpoint: int,
        cluster_id: int,
        attribute_id: int,
        buffer: Union[bytearray, memoryview],
    ) -> Status:
        """Fill ``buffer`` with the peer's current value (truncated to fit)."""
        self.reads += 1
        if not self._is_bridged(endpoint):
            return self._failed()
        try:
            uri = self.attribute_uri(cluster_id, attribute_id)
            count = await self.client.get(uri, decoder=BufferDecoder(buffer))
        except BridgeError as exc:
            logger.error(
                "External read ep %d cluster 0x%04X attr 0x%04X failed: %s",
                endpoint, cluster_id, attribute_id, exc,
            )
            return self._failed()
        logger.debug("External read %s -> %d byte(s)", uri, count)
        return Status.SUCCESS

    async def write(
        self,
        endpoint: int,
        cluster_id: int,
        attribute_id: int,
        data: bytes,
        size: Optional[int] = None,
    ) -> Status:
        """Send ``size`` bytes of ``data`` (the attribute's declared width)."""
        self.writes += 1
        if not self._is_bridged(endpoint):
            return self._failed()
        payload = bytes(data if size is None else data[:size])
        try:
            uri = self.attribute_uri(cluster_id, attribute_id)
            await self.client.put(uri, payload, content_format=ContentFormat.OCTET_STREAM)
        except BridgeError as exc:
            logger.error(
                "External write ep %d cluster 0x%04X attr 0x%04X failed: %s",
                endpoint, cluster_id, attribute_id, exc,
            )
            return self._failed()
        return Status.SUCCESS

    async def invoke(self, endpoint: int, cluster_id: int, command_id: int) -> Status:
        """Forward a command as a PUT with no body."""
        self.invokes += 1
        if not self._is_bridged(endpoint):
            return self._failed()
        try:
            uri = self.command_uri(cluster_id, command_id)
            await self.client.put(uri)
        except BridgeError as exc:
            logger.error(
                "External invoke ep %d cluster 0x%04X cmd 0x%02X failed: %s",
                endpoint, cluster_id, command_id, exc,
            )
            return self._failed()
        return Status.SUCCESS

    def _failed(self) -> Status:
        self.failures += 1
        return Status.FAILURE

    def get_stats(self) -> dict:
        return {
            "reads": self.reads,
            "writes": self.writes,
            "invokes": self.invokes,
            "failures": self.failures,
        }


class ExternalAttributeAdapter(ExternalAttributeHandler):
    """Serves the Matter stack's external storage callbacks from the bridge.

    The stack calls in synchronously on its work queue thread; each call
    blocks that thread until the bridge coroutine has finished on ``loop``.
    """

    def __init__(self, bridge: ExternalAttributeBridge, loop: asyncio.AbstractEventLoop) -> None:
        self.bridge = bridge
        self.loop = loop

    def read(self, endpoint: int, cluster_id: int, attribute_id: int, buffer: bytearray) -> bool:
        return self._run(self.bridge.read(endpoint, cluster_id, attribute_id, buffer))

    def write(self, endpoint: int, cluster_id: int, attribute_id: int, data: bytes) -> bool:
        return self._run(self.bridge.write(endpoint, cluster_id, attribute_id, data, size=len(data)))

    def invoke(self, endpoint: int, cluster_id: int, command_id: int) -> bool:
        return self._run(self.bridge.invoke(endpoint, cluster_id, command_id))

    def _run(self, coro: Coroutine[Any, Any, Status]) -> bool:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self.loop:
            coro.close()
            raise RuntimeError("External attribute callbacks must not run on the bridge event loop")
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result() is Status.SUCCESS
