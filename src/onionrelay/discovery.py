# src/onionrelay/discovery.py
"""
Discovery module for onionrelay.

The node directory is the registry of relay nodes and their public keys.
Relays register themselves at startup; senders list the directory before
choosing a circuit.
"""

import logging
from dataclasses import dataclass
from typing import Any

from . import crypto
from .robustness import DirectoryError, DuplicateNodeError, TransportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Node:
    node_id: int
    pub_key: str  # base64 DER SubjectPublicKeyInfo

    def to_dict(self) -> dict[str, Any]:
        return {"nodeId": self.node_id, "pubKey": self.pub_key}

    @classmethod
    def from_dict(cls, data: Any) -> "Node":
        if not isinstance(data, dict):
            raise DirectoryError(f"Node entry must be an object, got {type(data).__name__}")
        node_id = data.get("nodeId")
        pub_key = data.get("pubKey")
        if isinstance(node_id, bool) or not isinstance(node_id, int) or node_id < 0:
            raise DirectoryError(f"Invalid nodeId: {node_id!r}")
        if not isinstance(pub_key, str) or not pub_key:
            raise DirectoryError(f"Invalid pubKey for node {node_id}")
        return cls(node_id=node_id, pub_key=pub_key)


class NodeDirectory:
    """
    In-memory node registry.

    Entries are unique per node id: re-registering the same id with the same
    key is a no-op, with a different key it is rejected. Nothing is ever
    removed.
    """

    def __init__(self):
        self._nodes: dict[int, Node] = {}

    def register(self, node_id: int, pub_key: str) -> Node:
        if isinstance(node_id, bool) or not isinstance(node_id, int) or node_id < 0:
            raise ValueError(f"nodeId must be a non-negative integer, got {node_id!r}")
        crypto.import_pub_key(pub_key)

        existing = self._nodes.get(node_id)
        if existing is not None:
            if existing.pub_key == pub_key:
                logger.debug(f"Node {node_id} already registered")
                return existing
            raise DuplicateNodeError(
                f"Node {node_id} is already registered with a different key",
                context={"node_id": node_id},
            )

        node = Node(node_id=node_id, pub_key=pub_key)
        self._nodes[node_id] = node
        logger.info(f"Registered node {node_id} ({len(self._nodes)} known)")
        return node

    def list_nodes(self) -> tuple[Node, ...]:
        return tuple(self._nodes.values())

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: int) -> bool:
        return node_id in self._nodes


class DirectoryClient:
    """Client for the registry service."""

    def __init__(self, transport, registry_address: str):
        self.transport = transport
        self.registry_address = registry_address

    async def register(self, node_id: int, pub_key: str) -> None:
        """Register a relay's public key with the registry."""
        try:
            await self.transport.post_json(
                self.registry_address, "/registerNode", {"nodeId": node_id, "pubKey": pub_key}
            )
        except TransportError as e:
            raise DirectoryError(f"Failed to register node {node_id}: {e}", context=e.context) from e
        logger.info(f"Node {node_id} registered with directory")

    async def list_nodes(self) -> list[Node]:
        """Fetch the current directory snapshot."""
        try:
            data = await self.transport.get_json(self.registry_address, "/getNodeRegistry")
        except TransportError as e:
            raise DirectoryError(f"Failed to fetch node registry: {e}", context=e.context) from e
        if not isinstance(data, dict) or not isinstance(data.get("nodes"), list):
            raise DirectoryError("Registry returned a malformed node list")
        nodes = [Node.from_dict(entry) for entry in data["nodes"]]
        logger.debug(f"Directory lists {len(nodes)} nodes")
        return nodes

