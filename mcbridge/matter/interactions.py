"""Work items handed from the CoAP side to the Matter work queue.

``PendingInteraction`` is a closed union: a read, a write or a command
invoke. Each variant carries only the fields it needs.
"""
from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from mcbridge.core.values import ScalarValue, ValueKind

# Endpoint of the bridge's own bound-device binding cluster
DEFAULT_LOCAL_ENDPOINT = 2

_ids = itertools.count(1)


class BindingKind(str, Enum):
    UNICAST = "unicast"
    MULTICAST = "multicast"


@dataclass(frozen=True)
class BindingEntry:
    """One entry of the Matter binding table.

    Unicast entries address a node on a fabric; multicast entries address a
    group on a fabric.
    """

    kind: BindingKind
    fabric_index: int
    local_endpoint: int
    cluster_id: Optional[int] = None
    node_id: Optional[int] = None
    remote_endpoint: Optional[int] = None
    group_id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.kind is BindingKind.UNICAST and self.node_id is None:
            raise ValueError("Unicast binding needs a node id")
        if self.kind is BindingKind.MULTICAST and self.group_id is None:
            raise ValueError("Multicast binding needs a group id")

    @classmethod
    def unicast(cls, fabric_index: int, node_id: int, local_endpoint: int,
                remote_endpoint: int = 1, cluster_id: Optional[int] = None) -> "BindingEntry":
        return cls(BindingKind.UNICAST, fabric_index, local_endpoint, cluster_id,
                   node_id=node_id, remote_endpoint=remote_endpoint)

    @classmethod
    def multicast(cls, fabric_index: int, group_id: int, local_endpoint: int,
                  cluster_id: Optional[int] = None) -> "BindingEntry":
        return cls(BindingKind.MULTICAST, fabric_index, local_endpoint, cluster_id, group_id=group_id)

    def describe(self) -> str:
        if self.kind is BindingKind.UNICAST:
            return f"fabric {self.fabric_index} node 0x{self.node_id:X} ep {self.remote_endpoint}"
        return f"fabric {self.fabric_index} group 0x{self.group_id:X}"


@dataclass(frozen=True)
class ReadAttribute:
    cluster_id: int
    attribute_id: int
    kind: ValueKind
    local_endpoint: int = DEFAULT_LOCAL_ENDPOINT
    is_group: bool = False
    id: int = field(default_factory=lambda: next(_ids), compare=False)


@dataclass(frozen=True)
class WriteAttribute:
    cluster_id: int
    attribute_id: int
    value: ScalarValue
    local_endpoint: int = DEFAULT_LOCAL_ENDPOINT
    is_group: bool = False
    id: int = field(default_factory=lambda: next(_ids), compare=False)


@dataclass(frozen=True)
class InvokeCommand:
    cluster_id: int
    command_id: int
    local_endpoint: int = DEFAULT_LOCAL_ENDPOINT
    is_group: bool = False
    id: int = field(default_factory=lambda: next(_ids), compare=False)


PendingInteraction = Union[ReadAttribute, WriteAttribute, InvokeCommand]


def describe(interaction: PendingInteraction) -> str:
    if isinstance(interaction, ReadAttribute):
        return f"read cluster 0x{interaction.cluster_id:04X} attr 0x{interaction.attribute_id:04X}"
    if isinstance(interaction, WriteAttribute):
        return (f"write cluster 0x{interaction.cluster_id:04X} attr 0x{interaction.attribute_id:04X}"
                f" = {interaction.value.to_text()}")
    if isinstance(interaction, InvokeCommand):
        return f"invoke cluster 0x{interaction.cluster_id:04X} cmd 0x{interaction.command_id:02X}"
    raise TypeError(f"Not a pending interaction: {interaction!r}")
