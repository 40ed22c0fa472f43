"""Matter side: interaction types, stack interface, binding dispatch."""

from .binding import SUPPORTED_COMMANDS, BindingDispatcher, init_binding_handler
from .interactions import BindingEntry, BindingKind, InvokeCommand, PendingInteraction, ReadAttribute, WriteAttribute
from .stack import ExternalAttributeHandler, MatterStack, SimulatedMatterStack, ThreadedWorkQueue

__all__ = [
    "BindingDispatcher",
    "BindingEntry",
    "BindingKind",
    "ExternalAttributeHandler",
    "InvokeCommand",
    "MatterStack",
    "PendingInteraction",
    "ReadAttribute",
    "SUPPORTED_COMMANDS",
    "SimulatedMatterStack",
    "ThreadedWorkQueue",
    "WriteAttribute",
    "init_binding_handler",
]
