from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from mcbridge.coap.protocol import COAP_DEFAULT_PORT, parse_uri
from mcbridge.coap.transport import ACK_RANDOM_FACTOR, ACK_TIMEOUT, DEFAULT_LEISURE, MAX_RETRANSMIT
from mcbridge.errors import UriParseError
from mcbridge.matter.interactions import DEFAULT_LOCAL_ENDPOINT, BindingEntry, BindingKind

BLOCK_SIZES = (16, 32, 64, 128, 256, 512, 1024)


@dataclass(slots=True)
class ServerConfig:
    """Where the LwM2M resources of the Matter device are served."""

    host: str = "::"
    port: int = COAP_DEFAULT_PORT

    def validate(self) -> None:
        if not 0 <= self.port <= 65535:
            raise ValueError(f"Invalid server port {self.port}")


@dataclass(slots=True)
class PeerConfig:
    """The LwM2M device reached through the external attribute bridge."""

    uri: Optional[str] = None
    bridged_endpoints: Optional[List[int]] = None

    def validate(self) -> None:
        if self.uri is None:
            return
        try:
            target = parse_uri(self.uri)
        except UriParseError as exc:
            raise ValueError(f"Invalid peer URI: {exc}") from None
        if target.path:
            raise ValueError("Peer URI must not carry a path")


@dataclass(slots=True)
class DocumentSources:
    """Each source is a coap:// URI fetched at startup or a local path."""

    object_definition: Optional[str] = None
    lwm2m_to_matter: Optional[str] = None
    matter_to_lwm2m: Optional[str] = None

    def validate(self) -> None:
        if self.object_definition and not self.lwm2m_to_matter:
            raise ValueError("Serving an object definition needs the LwM2M->Matter mapping")


@dataclass(slots=True)
class ProxyConfig:
    poll_attempts: int = 10
    poll_interval: float = 0.5
    local_endpoint: int = DEFAULT_LOCAL_ENDPOINT

    def validate(self) -> None:
        if self.poll_attempts < 1:
            raise ValueError("poll_attempts must be at least 1")
        if self.poll_interval < 0:
            raise ValueError("poll_interval cannot be negative")


@dataclass(slots=True)
class ClientConfig:
    confirmable: bool = False
    ack_timeout: float = ACK_TIMEOUT
    ack_random_factor: float = ACK_RANDOM_FACTOR
    max_retransmit: int = MAX_RETRANSMIT
    leisure: float = DEFAULT_LEISURE
    block_size: Optional[int] = None

    def validate(self) -> None:
        if self.ack_timeout <= 0:
            raise ValueError("ack_timeout must be positive")
        if self.ack_random_factor < 1.0:
            raise ValueError("ack_random_factor must be >= 1.0")
        if self.max_retransmit < 0:
            raise ValueError("max_retransmit cannot be negative")
        if self.block_size is not None and self.block_size not in BLOCK_SIZES:
            raise ValueError(f"block_size must be one of {BLOCK_SIZES}")


@dataclass(slots=True)
class MatterConfig:
    """Bindings and group membership for the simulated stack."""

    simulate: bool = False
    bindings: List[BindingEntry] = field(default_factory=list)
    groups: Dict[int, List[List[int]]] = field(default_factory=dict)


@dataclass(slots=True)
class BridgeConfig:
    """Top-level configuration for the Matter/LwM2M bridge."""

    server: ServerConfig = field(default_factory=ServerConfig)
    peer: PeerConfig = field(default_factory=PeerConfig)
    documents: DocumentSources = field(default_factory=DocumentSources)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    client: ClientConfig = field(default_factory=ClientConfig)
    matter: MatterConfig = field(default_factory=MatterConfig)

    def validate(self) -> None:
        for section in (self.server, self.peer, self.documents, self.proxy, self.client):
            section.validate()
        if self.peer.uri and not self.documents.matter_to_lwm2m:
            raise ValueError("A peer URI needs the Matter->LwM2M mapping")


def _to_binding(data: Dict[str, Any]) -> BindingEntry:
    kind = BindingKind(data.get("kind", "unicast"))
    cluster = data.get("cluster")
    local_endpoint = int(data.get("local_endpoint", DEFAULT_LOCAL_ENDPOINT))
    if kind is BindingKind.MULTICAST:
        return BindingEntry.multicast(
            fabric_index=int(data.get("fabric", 1)),
            group_id=int(data["group"]),
            local_endpoint=local_endpoint,
            cluster_id=None if cluster is None else int(cluster),
        )
    return BindingEntry.unicast(
        fabric_index=int(data.get("fabric", 1)),
        node_id=int(data["node"]),
        local_endpoint=local_endpoint,
        remote_endpoint=int(data.get("endpoint", 1)),
        cluster_id=None if cluster is None else int(cluster),
    )


def config_from_dict(raw: Dict[str, Any]) -> BridgeConfig:
    if not isinstance(raw, dict):
        raise ValueError("Configuration must be an object/dict")

    server = raw.get("server", {}) or {}
    peer = raw.get("peer", {}) or {}
    documents = raw.get("documents", {}) or {}
    proxy = raw.get("proxy", {}) or {}
    client = raw.get("client", {}) or {}
    matter = raw.get("matter", {}) or {}

    endpoints = peer.get("bridged_endpoints")
    block_size = client.get("block_size")

    config = BridgeConfig(
        server=ServerConfig(
            host=str(server.get("host", "::")),
            port=int(server.get("port", COAP_DEFAULT_PORT)),
        ),
        peer=PeerConfig(
            uri=peer.get("uri"),
            bridged_endpoints=None if endpoints is None else [int(e) for e in endpoints],
        ),
        documents=DocumentSources(
            object_definition=documents.get("object_definition"),
            lwm2m_to_matter=documents.get("lwm2m_to_matter"),
            matter_to_lwm2m=documents.get("matter_to_lwm2m"),
        ),
        proxy=ProxyConfig(
            poll_attempts=int(proxy.get("poll_attempts", 10)),
            poll_interval=float(proxy.get("poll_interval", 0.5)),
            local_endpoint=int(proxy.get("local_endpoint", DEFAULT_LOCAL_ENDPOINT)),
        ),
        client=ClientConfig(
            confirmable=bool(client.get("confirmable", False)),
            ack_timeout=float(client.get("ack_timeout", ACK_TIMEOUT)),
            ack_random_factor=float(client.get("ack_random_factor", ACK_RANDOM_FACTOR)),
            max_retransmit=int(client.get("max_retransmit", MAX_RETRANSMIT)),
            leisure=float(client.get("leisure", DEFAULT_LEISURE)),
            block_size=None if block_size is None else int(block_size),
        ),
        matter=MatterConfig(
            simulate=bool(matter.get("simulate", False)),
            bindings=[_to_binding(item) for item in matter.get("bindings", []) or []],
            groups={
                int(gid): [[int(node), int(ep)] for node, ep in members]
                for gid, members in (matter.get("groups", {}) or {}).items()
            },
        ),
    )
    config.validate()
    return config


def load_config(path: str | Path) -> BridgeConfig:
    """Parse a YAML/JSON config file into a structured config object."""

    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(file_path)

    text = file_path.read_text(encoding="utf-8")
    if file_path.suffix.lower() in {".yaml", ".yml"}:
        raw = yaml.safe_load(text)
    else:
        raw = json.loads(text)
    return config_from_dict(raw)
