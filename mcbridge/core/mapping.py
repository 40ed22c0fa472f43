"""Bidirectional Matter <-> LwM2M identifier tables.

A merged SDF mapping document correlates Matter ids (``matter:id``) with
LwM2M ids (``oma:id``). Its ``map`` keys are JSON-pointer-like paths whose
second-to-last segment names the SDF class of the entry::

    {
      "map": {
        "#/sdfObject/OnOff": {"matter:id": 6, "oma:id": 3311},
        "#/sdfObject/OnOff/sdfProperty/OnOff": {"matter:id": 0, "oma:id": 5850}
      }
    }

Each class feeds one ``BiMap`` of the resulting ``IdentifierMap``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple

from mcbridge.errors import NotFound, ParseError

logger = logging.getLogger("mcbridge.core.mapping")


class BiMap:
    """One-to-one table between Matter ids and LwM2M ids.

    Populated once while building an ``IdentifierMap`` and frozen afterwards.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._matter_to_oma: Dict[int, int] = {}
        self._oma_to_matter: Dict[int, int] = {}
        self._frozen = False

    def insert(self, matter_id: int, oma_id: int) -> bool:
        """Add a pair; returns False (and changes nothing) on any duplicate."""
        if self._frozen:
            raise RuntimeError(f"BiMap '{self.name}' is read-only")
        if matter_id in self._matter_to_oma or oma_id in self._oma_to_matter:
            logger.error(
                "Duplicate %s mapping ignored: matter=%d oma=%d",
                self.name or "id",
                matter_id,
                oma_id,
            )
            return False
        self._matter_to_oma[matter_id] = oma_id
        self._oma_to_matter[oma_id] = matter_id
        return True

    def freeze(self) -> None:
        self._frozen = True

    def to_oma(self, matter_id: int) -> int:
        try:
            return self._matter_to_oma[matter_id]
        except KeyError:
            raise NotFound(f"No LwM2M id for Matter {self.name} {matter_id}") from None

    def to_matter(self, oma_id: int) -> int:
        try:
            return self._oma_to_matter[oma_id]
        except KeyError:
            raise NotFound(f"No Matter id for LwM2M {self.name} {oma_id}") from None

    def items(self) -> Iterator[Tuple[int, int]]:
        return iter(self._matter_to_oma.items())

    def __len__(self) -> int:
        return len(self._matter_to_oma)

    def __contains__(self, pair: object) -> bool:
        if not isinstance(pair, tuple) or len(pair) != 2:
            return False
        matter_id, oma_id = pair
        return self._matter_to_oma.get(matter_id) == oma_id


# SDF class -> IdentifierMap attribute. sdfThing has no LwM2M counterpart.
SDF_CLASSES: Dict[str, Optional[str]] = {
    "sdfThing": None,
    "sdfObject": "clusters",
    "sdfProperty": "attributes",
    "sdfAction": "commands",
    "sdfEvent": "events",
}


@dataclass(frozen=True)
class IdentifierMap:
    """The four id tables: cluster/object, attribute, command, event."""

    clusters: BiMap = field(default_factory=lambda: BiMap("cluster"))
    attributes: BiMap = field(default_factory=lambda: BiMap("attribute"))
    commands: BiMap = field(default_factory=lambda: BiMap("command"))
    events: BiMap = field(default_factory=lambda: BiMap("event"))

    def freeze(self) -> "IdentifierMap":
        for table in (self.clusters, self.attributes, self.commands, self.events):
            table.freeze()
        return self

    def stats(self) -> Dict[str, int]:
        return {
            "clusters": len(self.clusters),
            "attributes": len(self.attributes),
            "commands": len(self.commands),
            "events": len(self.events),
        }

    @classmethod
    def from_pairs(
        cls,
        clusters: Optional[Mapping[int, int]] = None,
        attributes: Optional[Mapping[int, int]] = None,
        commands: Optional[Mapping[int, int]] = None,
        events: Optional[Mapping[int, int]] = None,
    ) -> "IdentifierMap":
        """Build directly from ``{matter_id: oma_id}`` dicts (handy in tests)."""
        ident = cls()
        for table, pairs in (
            (ident.clusters, clusters),
            (ident.attributes, attributes),
            (ident.commands, commands),
            (ident.events, events),
        ):
            for matter_id, oma_id in (pairs or {}).items():
                table.insert(int(matter_id), int(oma_id))
        return ident.freeze()


def sdf_class_of(key: str) -> str:
    """Return the segment between the last two slashes of a mapping key."""
    parts = key.split("/")
    if len(parts) < 3:
        return ""
    return parts[-2]


def build_identifier_map(document: Mapping[str, Any]) -> IdentifierMap:
    """Single pass over a merged mapping document."""
    if not isinstance(document, Mapping):
        raise ParseError("Mapping document must be a JSON object")
    ident = IdentifierMap()
    entries = document.get("map", {})
    if not isinstance(entries, Mapping):
        raise ParseError("Mapping document 'map' must be an object")

    for key, value in entries.items():
        if not isinstance(value, Mapping):
            continue
        if "matter:id" not in value or "oma:id" not in value:
            continue
        sdf_class = sdf_class_of(key)
        target = SDF_CLASSES.get(sdf_class)
        if target is None:
            if sdf_class not in SDF_CLASSES:
                logger.debug("Skipping mapping entry %s (class '%s')", key, sdf_class)
            continue
        try:
            matter_id = int(value["matter:id"])
            oma_id = int(value["oma:id"])
        except (TypeError, ValueError):
            raise ParseError(f"Non-integer id in mapping entry {key}") from None
        getattr(ident, target).insert(matter_id, oma_id)

    logger.info("Built identifier map: %s", ident.stats())
    return ident.freeze()
