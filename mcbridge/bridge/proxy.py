"""LwM2M -> Matter proxies.

A resource path ``<object>/<instance>/<resource>`` is translated through the
identifier map into a Matter (cluster, attribute) or (cluster, command)
pair, wrapped in a pending interaction and handed to the Matter work queue.
Reads then wait on the result channel; writes and invokes return as soon
as the interaction is scheduled.
"""
from __future__ import annotations

import logging
from typing import Tuple, Union

from mcbridge.core.channel import ResultChannel
from mcbridge.core.lwm2m import ResourcePath
from mcbridge.core.mapping import BiMap, IdentifierMap
from mcbridge.core.values import ValueKind, decode_payload, parse_value_kind
from mcbridge.errors import ChannelTimeout, NotFound, UnknownResource
from mcbridge.matter.binding import BindingDispatcher, command_name
from mcbridge.matter.interactions import (
    DEFAULT_LOCAL_ENDPOINT,
    InvokeCommand,
    PendingInteraction,
    ReadAttribute,
    WriteAttribute,
    describe,
)
from mcbridge.matter.stack import MatterStack

logger = logging.getLogger("mcbridge.bridge.proxy")

DEFAULT_POLL_ATTEMPTS = 10
DEFAULT_POLL_INTERVAL = 0.5

KindLike = Union[ValueKind, str]


def _as_kind(kind: KindLike) -> ValueKind:
    return kind if isinstance(kind, ValueKind) else parse_value_kind(kind)


class _Proxy:
    def __init__(
        self,
        ident: IdentifierMap,
        stack: MatterStack,
        dispatcher: BindingDispatcher,
        local_endpoint: int = DEFAULT_LOCAL_ENDPOINT,
    ):
        self.ident = ident
        self.stack = stack
        self.dispatcher = dispatcher
        self.local_endpoint = local_endpoint

    def _translate(self, path: str, table: BiMap) -> Tuple[ResourcePath, int, int]:
        resource = ResourcePath.parse(path)
        try:
            cluster_id = self.ident.clusters.to_matter(resource.object_id)
            target_id = table.to_matter(resource.resource_id)
        except NotFound as exc:
            raise UnknownResource(f"/{path}: {exc}") from None
        return resource, cluster_id, target_id

    def _schedule(self, interaction: PendingInteraction) -> None:
        self.dispatcher.track(interaction)
        self.stack.schedule_work(self._notify, interaction)
        logger.debug("Scheduled %s", describe(interaction))

    def _notify(self, interaction: PendingInteraction) -> None:
        self.stack.notify_bound_cluster_changed(
            interaction.local_endpoint, interaction.cluster_id, interaction
        )


class AttributeProxy(_Proxy):
    def __init__(
        self,
        ident: IdentifierMap,
        stack: MatterStack,
        dispatcher: BindingDispatcher,
        channel: ResultChannel,
        poll_attempts: int = DEFAULT_POLL_ATTEMPTS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        local_endpoint: int = DEFAULT_LOCAL_ENDPOINT,
    ):
        super().__init__(ident, stack, dispatcher, local_endpoint)
        self.channel = channel
        self.poll_attempts = poll_attempts
        self.poll_interval = poll_interval

    async def read(self, path: str, kind: KindLike) -> str:
        """Read the mapped Matter attribute and return its text form.

        Raises ChannelTimeout when no value arrives within the poll budget.
        """
        value_kind = _as_kind(kind)
        _, cluster_id, attribute_id = self._translate(path, self.ident.attributes)
        interaction = ReadAttribute(cluster_id, attribute_id, value_kind, local_endpoint=self.local_endpoint)
        # results of earlier reads are never handed to this one
        self.channel.clear()
        self._schedule(interaction)
        try:
            value = await self.channel.await_and_take(
                self.poll_attempts, self.poll_interval, interaction_id=interaction.id
            )
        except ChannelTimeout:
            self.channel.clear()
            raise
        return value.to_text()

    def write(self, path: str, kind: KindLike, payload: bytes) -> WriteAttribute:
        value_kind = _as_kind(kind)
        _, cluster_id, attribute_id = self._translate(path, self.ident.attributes)
        interaction = WriteAttribute(
            cluster_id,
            attribute_id,
            decode_payload(value_kind, payload or b""),
            local_endpoint=self.local_endpoint,
        )
        self._schedule(interaction)
        return interaction


class CommandProxy(_Proxy):
    def invoke(self, path: str, is_group: bool = False) -> InvokeCommand:
        """Schedule the mapped command. Success means accepted, not executed."""
        _, cluster_id, command_id = self._translate(path, self.ident.commands)
        name = command_name(cluster_id, command_id)
        interaction = InvokeCommand(
            cluster_id, command_id, local_endpoint=self.local_endpoint, is_group=is_group
        )
        logger.info("Invoking %s for /%s", name, path)
        self._schedule(interaction)
        return interaction
