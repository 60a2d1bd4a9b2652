"""
onionrelay.relay - Relay functionality for onion routing with layered crypto.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from cryptography.hazmat.primitives.asymmetric import rsa

from . import crypto, layered_crypto, network
from .layered_crypto import Layer, TerminalMessage
from .robustness import ForwardingError, KeyUnavailableError, TransportError, log_with_context

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RelayDiagnostics:
    """Observable state of the most recent message; replaced, never mutated."""

    last_received_ciphertext: str | None = None
    last_received_plaintext: str | None = None
    last_forward_target: int | None = None


class RelayProcessor:
    """Peels one onion layer per message and forwards or delivers the rest."""

    def __init__(self, node_id: int, transport: network.NetworkTransport, addressing: network.Addressing):
        self.node_id = node_id
        self.transport = transport
        self.addressing = addressing
        self.public_key: rsa.RSAPublicKey | None = None
        self.private_key: rsa.RSAPrivateKey | None = None
        self.diagnostics = RelayDiagnostics()

    def initialize(self) -> str:
        """Generate the node's key pair once; returns the exported public key."""
        if self.private_key is None:
            self.public_key, self.private_key = crypto.generate_rsa_key_pair()
            logger.info(f"Relay {self.node_id} generated its key pair")
        return self.public_key_text

    @property
    def public_key_text(self) -> str:
        if self.public_key is None:
            raise KeyUnavailableError(f"Relay {self.node_id} has no key pair yet")
        return crypto.export_pub_key(self.public_key)

    def export_private_key(self) -> str:
        """Debug-only export of the private key."""
        if self.private_key is None:
            raise KeyUnavailableError(f"Relay {self.node_id} has no key pair yet")
        return crypto.export_prv_key(self.private_key)

    def _record(self, **changes) -> None:
        self.diagnostics = replace(self.diagnostics, **changes)

    async def handle_forward(self, layer: Layer) -> None:
        """
        Handle an incoming layer: decrypt it and forward or deliver the content.
        """
        self._record(last_received_ciphertext=crypto.b64encode(layer.encrypted_payload))

        if self.private_key is None:
            raise KeyUnavailableError(f"Relay {self.node_id} is not initialized")

        inner = layered_crypto.peel_layer(layer, self.private_key)

        if isinstance(inner, TerminalMessage):
            await self._deliver(inner)
        else:
            await self._forward(inner, layer.next_hop)

    async def _forward(self, inner: Layer, next_hop: str) -> None:
        target = network.parse_address(next_hop)
        self._record(last_received_plaintext=inner.to_bytes().decode("utf-8"), last_forward_target=target)
        try:
            await self.transport.post_json(next_hop, "/forwardMessage", inner.to_dict())
        except TransportError as e:
            log_with_context(f"Relay {self.node_id} could not forward", "error", {"next_hop": target, **e.context})
            raise ForwardingError(f"Forwarding to {target} failed: {e}", context={"next_hop": target}) from e
        logger.debug(f"Relay {self.node_id} forwarded layer to {target}")

    async def _deliver(self, message: TerminalMessage) -> None:
        address = self.addressing.user_address(message.recipient_id)
        target = network.parse_address(address)
        self._record(last_received_plaintext=message.content, last_forward_target=target)
        try:
            await self.transport.post_json(address, "/message", {"message": message.content})
        except TransportError as e:
            log_with_context(
                f"Relay {self.node_id} could not deliver to user {message.recipient_id}", "error", e.context
            )
            raise ForwardingError(
                f"Delivery to user {message.recipient_id} failed: {e}",
                context={"recipient_id": message.recipient_id},
            ) from e
        logger.info(f"Relay {self.node_id} delivered message to user {message.recipient_id}")
