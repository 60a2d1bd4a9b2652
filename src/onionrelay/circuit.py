"""
onionrelay.circuit - Circuit selection.

Circuits are drawn with the ``random`` module or an injected
``random.Random``; session keys and IVs come from ``os.urandom`` in
onionrelay.crypto.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Iterable

from .discovery import Node
from .robustness import InsufficientNodesError

logger = logging.getLogger(__name__)

DEFAULT_CIRCUIT_LENGTH = 3


def select_circuit(
    nodes: Iterable[Node], length: int = DEFAULT_CIRCUIT_LENGTH, rng: random.Random | None = None
) -> list[Node]:
    """
    Pick ``length`` distinct nodes uniformly at random, in path order
    ``[entry, ..., exit]``.

    Duplicate directory entries for one node id count once (first wins).
    """
    if length < 1:
        raise ValueError(f"Circuit length must be positive, got {length}")

    unique: dict[int, Node] = {}
    for node in nodes:
        unique.setdefault(node.node_id, node)

    if len(unique) < length:
        raise InsufficientNodesError(
            f"Not enough onion routers available ({len(unique)} known, {length} required)",
            context={"available": len(unique), "required": length},
        )

    circuit = (rng or random).sample(list(unique.values()), length)
    logger.debug(f"Selected circuit {[n.node_id for n in circuit]}")
    return circuit
