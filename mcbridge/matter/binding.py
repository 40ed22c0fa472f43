"""Routes pending interactions to bound Matter devices.

The proxies never call the Matter stack directly: they schedule a
``notify_bound_cluster_changed`` carrying the interaction as context. The
stack then calls ``on_bound_device_changed`` for each matching binding and
finally ``on_context_release`` once the interaction is no longer needed.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

from mcbridge.core.channel import ResultChannel
from mcbridge.core.values import coerce_value
from mcbridge.errors import UnsupportedCommand

from .interactions import (
    BindingEntry,
    BindingKind,
    InvokeCommand,
    PendingInteraction,
    ReadAttribute,
    WriteAttribute,
    describe,
)
from .stack import ON_OFF_CLUSTER, MatterStack, PeerDevice

logger = logging.getLogger("mcbridge.matter.binding")

# Commands the bridge knows how to invoke, per cluster
SUPPORTED_COMMANDS: Dict[int, Dict[int, str]] = {
    ON_OFF_CLUSTER: {
        0x00: "Off",
        0x01: "On",
        0x02: "Toggle",
    },
}


def command_name(cluster_id: int, command_id: int) -> str:
    """Name of a supported command; raises UnsupportedCommand otherwise."""
    try:
        return SUPPORTED_COMMANDS[cluster_id][command_id]
    except KeyError:
        raise UnsupportedCommand(
            f"Command 0x{command_id:02X} on cluster 0x{cluster_id:04X} is not supported"
        ) from None


class BindingDispatcher:
    """Bound-device-changed and context-release handlers for the stack."""

    def __init__(self, stack: MatterStack, channel: ResultChannel) -> None:
        self.stack = stack
        self.channel = channel
        self._lock = threading.Lock()
        self._outstanding: Dict[int, PendingInteraction] = {}
        self.dispatched = 0
        self.released = 0
        self.failures = 0

    def register(self) -> None:
        self.stack.register_bound_device_changed_handler(self.on_bound_device_changed)
        self.stack.register_bound_device_context_release_handler(self.on_context_release)
        logger.info("Binding handlers registered")

    # --- ownership ---

    def track(self, interaction: PendingInteraction) -> None:
        with self._lock:
            self._outstanding[interaction.id] = interaction

    def on_context_release(self, context: Any) -> None:
        if context is None:
            return
        with self._lock:
            if self._outstanding.pop(getattr(context, "id", None), None) is not None:
                self.released += 1

    @property
    def outstanding(self) -> int:
        with self._lock:
            return len(self._outstanding)

    # --- dispatch ---

    def on_bound_device_changed(self, binding: BindingEntry, peer: Optional[PeerDevice], context: Any) -> None:
        if context is None:
            # Binding table changed; nothing to send
            return
        interaction: PendingInteraction = context

        if binding.kind is BindingKind.MULTICAST and interaction.is_group:
            self._dispatch_group(binding, interaction)
        elif binding.kind is BindingKind.UNICAST and not interaction.is_group:
            if peer is None:
                logger.warning("No session for %s, dropping %s", binding.describe(), describe(interaction))
                return
            self._dispatch_unicast(binding, peer, interaction)

    def _dispatch_group(self, binding: BindingEntry, interaction: PendingInteraction) -> None:
        if not isinstance(interaction, InvokeCommand):
            logger.warning("Group %s not supported, only commands", describe(interaction))
            return
        name = command_name(interaction.cluster_id, interaction.command_id)
        logger.debug("Group %s -> %s", name, binding.describe())
        self.stack.invoke_group_command(
            binding.fabric_index, binding.group_id, interaction.cluster_id, interaction.command_id
        )
        self.dispatched += 1

    def _dispatch_unicast(self, binding: BindingEntry, peer: PeerDevice, interaction: PendingInteraction) -> None:
        endpoint = binding.remote_endpoint or 1
        logger.debug("%s -> %s", describe(interaction), binding.describe())

        if isinstance(interaction, ReadAttribute):
            kind, read_id = interaction.kind, interaction.id

            def on_read(value: Any) -> None:
                self.channel.publish(coerce_value(kind, value), read_id)

            self.stack.read_attribute(
                peer, endpoint, interaction.cluster_id, interaction.attribute_id, on_read, self._on_failure
            )
        elif isinstance(interaction, WriteAttribute):
            self.stack.write_attribute(
                peer, endpoint, interaction.cluster_id, interaction.attribute_id,
                interaction.value, self._on_success, self._on_failure,
            )
        elif isinstance(interaction, InvokeCommand):
            name = command_name(interaction.cluster_id, interaction.command_id)
            logger.debug("Invoking %s on node 0x%X", name, peer.node_id)
            self.stack.invoke_command(
                peer, endpoint, interaction.cluster_id, interaction.command_id,
                self._on_success, self._on_failure,
            )
        else:
            raise TypeError(f"Unknown interaction {interaction!r}")
        self.dispatched += 1

    def _on_success(self, _value: Any) -> None:
        pass

    def _on_failure(self, error: Exception) -> None:
        self.failures += 1
        logger.error("Matter interaction failed: %s", error)

    def get_stats(self) -> dict:
        return {
            "dispatched": self.dispatched,
            "released": self.released,
            "failures": self.failures,
            "outstanding": self.outstanding,
        }


def init_binding_handler(stack: MatterStack, dispatcher: BindingDispatcher) -> None:
    """Register the dispatcher from the Matter work queue."""
    stack.schedule_work(lambda _ctx: dispatcher.register())
