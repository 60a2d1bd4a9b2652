"""
onionrelay.user - Message senders and recipients.

A user sends by drawing a fresh circuit from the directory, wrapping the
message in one layer per hop and handing the outer layer to the entry
router. It receives plain messages delivered by exit routers.
"""

from __future__ import annotations

import logging
import random

from . import layered_crypto, network
from .circuit import DEFAULT_CIRCUIT_LENGTH, select_circuit
from .discovery import DirectoryClient
from .robustness import ForwardingError, TransportError, log_with_context

logger = logging.getLogger(__name__)


class User:
    def __init__(
        self,
        user_id: int,
        directory: DirectoryClient,
        transport: network.NetworkTransport,
        addressing: network.Addressing,
        circuit_length: int = DEFAULT_CIRCUIT_LENGTH,
        rng: random.Random | None = None,
    ):
        self.user_id = user_id
        self.directory = directory
        self.transport = transport
        self.addressing = addressing
        self.circuit_length = circuit_length
        self.rng = rng
        self.last_sent_message: str | None = None
        self.last_received_message: str | None = None
        self.last_circuit: list[int] | None = None

    def receive(self, message: str) -> None:
        self.last_received_message = message
        logger.info(f"User {self.user_id} received a message")

    async def send_message(self, message: str, destination_user_id: int) -> list[int]:
        """
        Send ``message`` to ``destination_user_id`` through a fresh circuit.

        Returns the circuit's node ids, entry first. Raises
        InsufficientNodesError before contacting any router when the
        directory is too small.
        """
        self.last_sent_message = message
        logger.info(f"User {self.user_id} sending message to user {destination_user_id}")

        nodes = await self.directory.list_nodes()
        circuit = select_circuit(nodes, self.circuit_length, self.rng)
        self.last_circuit = [node.node_id for node in circuit]
        log_with_context(f"User {self.user_id} created circuit", "info", {"circuit": self.last_circuit})

        onion = layered_crypto.build_onion(circuit, destination_user_id, message, self.addressing)
        entry = circuit[0].node_id
        try:
            await self.transport.post_json(self.addressing.router_address(entry), "/forwardMessage", onion.to_dict())
        except TransportError as e:
            raise ForwardingError(f"Entry node {entry} rejected the message: {e}", context=e.context) from e
        return self.last_circuit
