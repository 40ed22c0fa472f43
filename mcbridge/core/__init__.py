"""Protocol-independent building blocks: values, id maps, result channel."""

from .channel import ResultChannel
from .lwm2m import ObjectDefinition, Operations, ResourceDefinition, ResourcePath, parse_object_definition
from .mapping import BiMap, IdentifierMap, build_identifier_map
from .values import BoolValue, ScalarValue, Uint16Value, ValueKind

__all__ = [
    "BiMap",
    "BoolValue",
    "IdentifierMap",
    "ObjectDefinition",
    "Operations",
    "ResourceDefinition",
    "ResourcePath",
    "ResultChannel",
    "ScalarValue",
    "Uint16Value",
    "ValueKind",
    "build_identifier_map",
    "parse_object_definition",
]
