"""LwM2M addressing and object definitions.

Resources are addressed as ``<object>/<instance>/<resource>``. The bridge
always exposes instance 0. Object definitions come from the OMA LwM2M XML
schema (``<LWM2M><Object>...``), usually fetched from the peer at startup.
"""
from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import List, Union

from mcbridge.errors import ParseError


@dataclass(frozen=True)
class ResourcePath:
    object_id: int
    instance_id: int
    resource_id: int

    @classmethod
    def parse(cls, path: str) -> "ResourcePath":
        parts = path.split("/")
        if len(parts) != 3:
            raise ParseError(f"Resource path must be object/instance/resource: '{path}'")
        try:
            ids = [int(p) for p in parts]
        except ValueError:
            raise ParseError(f"Non-numeric segment in resource path '{path}'") from None
        if any(i < 0 or str(i) != p for i, p in zip(ids, parts)):
            raise ParseError(f"Invalid segment in resource path '{path}'")
        return cls(*ids)

    def __str__(self) -> str:
        return f"{self.object_id}/{self.instance_id}/{self.resource_id}"


@dataclass(frozen=True)
class Operations:
    """Parsed ``<Operations>`` field: any combination of R, W and E."""

    read: bool = False
    write: bool = False
    execute: bool = False

    @classmethod
    def parse(cls, text: str) -> "Operations":
        ops = (text or "").upper()
        return cls(read="R" in ops, write="W" in ops, execute="E" in ops)

    def __str__(self) -> str:
        return "".join(c for c, on in (("R", self.read), ("W", self.write), ("E", self.execute)) if on) or "-"


@dataclass
class ResourceDefinition:
    id: int
    name: str
    type: str = ""
    operations: Operations = field(default_factory=Operations)
    mandatory: bool = False
    multiple_instances: bool = False


@dataclass
class ObjectDefinition:
    id: int
    name: str
    resources: List[ResourceDefinition] = field(default_factory=list)

    def resource(self, resource_id: int) -> ResourceDefinition:
        for res in self.resources:
            if res.id == resource_id:
                return res
        raise KeyError(resource_id)


def _text(node: ET.Element, tag: str) -> str:
    child = node.find(tag)
    if child is None or child.text is None:
        return ""
    return child.text.strip()


def parse_object_definition(source: Union[str, bytes, ET.Element]) -> ObjectDefinition:
    """Parse an LwM2M object definition document (text or parsed element)."""
    if isinstance(source, ET.Element):
        root = source
    else:
        try:
            root = ET.fromstring(source)
        except ET.ParseError as exc:
            raise ParseError(f"Invalid LwM2M XML: {exc}") from None

    obj = root if root.tag == "Object" else root.find("Object")
    if obj is None:
        raise ParseError("LwM2M document has no <Object> element")
    try:
        object_id = int(_text(obj, "ObjectID"))
    except ValueError:
        raise ParseError("LwM2M <ObjectID> missing or not an integer") from None

    definition = ObjectDefinition(id=object_id, name=_text(obj, "Name"))
    resources = obj.find("Resources")
    for item in (resources.findall("Item") if resources is not None else []):
        try:
            res_id = int(item.get("ID", ""))
        except ValueError:
            raise ParseError(f"Resource <Item> without numeric ID in object {object_id}") from None
        definition.resources.append(
            ResourceDefinition(
                id=res_id,
                name=_text(item, "Name"),
                type=_text(item, "Type"),
                operations=Operations.parse(_text(item, "Operations")),
                mandatory=_text(item, "Mandatory").lower() == "mandatory",
                multiple_instances=_text(item, "MultipleInstances").lower() == "multiple",
            )
        )
    return definition
