"""
onionrelay.layered_crypto - Layered RSA-OAEP / AES-256-CBC encryption for onion routing.

An onion is built from the innermost layer outward. Every layer carries a
fresh symmetric key encrypted under the public key of the node that will
peel it, and a payload encrypted under that symmetric key. RELAY payloads
hold the next serialized layer; the FINAL payload holds the terminal
message for the recipient.

Wire format (JSON, binary fields base64)::

    {"kind": "relay", "nextHop": "0000004002",
     "encryptedKey": "...", "encryptedPayload": "..."}
    {"recipientId": 42, "content": "hi"}
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from cryptography.hazmat.primitives.asymmetric import rsa

from . import crypto
from .discovery import Node
from .network import Addressing, parse_address
from .robustness import DecryptionError, KeyFormatError, LayerFormatError, log_with_context

logger = logging.getLogger(__name__)


class LayerKind(str, Enum):
    RELAY = "relay"
    FINAL = "final"


@dataclass(frozen=True)
class TerminalMessage:
    recipient_id: int
    content: str

    def to_dict(self) -> dict[str, Any]:
        return {"recipientId": self.recipient_id, "content": self.content}

    @classmethod
    def from_dict(cls, data: Any) -> TerminalMessage:
        if not isinstance(data, dict):
            raise LayerFormatError("Terminal message must be an object")
        recipient_id = data.get("recipientId")
        content = data.get("content")
        if isinstance(recipient_id, bool) or not isinstance(recipient_id, int) or recipient_id < 0:
            raise LayerFormatError(f"Invalid recipientId: {recipient_id!r}")
        if not isinstance(content, str):
            raise LayerFormatError("Terminal message content must be a string")
        return cls(recipient_id=recipient_id, content=content)

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> TerminalMessage:
        return cls.from_dict(_loads(data))


@dataclass(frozen=True)
class Layer:
    """One onion layer; ``next_hop`` is set if and only if kind is RELAY."""

    kind: LayerKind
    encrypted_key: bytes
    encrypted_payload: bytes
    next_hop: str | None = None

    def __post_init__(self):
        if not isinstance(self.kind, LayerKind):
            raise LayerFormatError(f"Unknown layer kind: {self.kind!r}")
        if self.kind is LayerKind.RELAY:
            parse_address(self.next_hop)
        elif self.next_hop is not None:
            raise LayerFormatError("A final layer must not carry a next hop")

    def to_dict(self) -> dict[str, Any]:
        data = {
            "kind": self.kind.value,
            "encryptedKey": crypto.b64encode(self.encrypted_key),
            "encryptedPayload": crypto.b64encode(self.encrypted_payload),
        }
        if self.next_hop is not None:
            data["nextHop"] = self.next_hop
        return data

    @classmethod
    def from_dict(cls, data: Any) -> Layer:
        if not isinstance(data, dict):
            raise LayerFormatError("Layer must be an object")
        try:
            kind = LayerKind(data.get("kind"))
        except ValueError as e:
            raise LayerFormatError(f"Unknown layer kind: {data.get('kind')!r}") from e
        try:
            encrypted_key = crypto.b64decode(data.get("encryptedKey"))
            encrypted_payload = crypto.b64decode(data.get("encryptedPayload"))
        except ValueError as e:
            raise LayerFormatError(f"Invalid layer encoding: {e}") from e
        return cls(
            kind=kind,
            encrypted_key=encrypted_key,
            encrypted_payload=encrypted_payload,
            next_hop=data.get("nextHop"),
        )

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> Layer:
        return cls.from_dict(_loads(data))


def _loads(data: bytes) -> Any:
    try:
        return json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise LayerFormatError(f"Payload is not valid JSON: {e}") from e


def encrypt_layer(
    kind: LayerKind, inner: bytes, public_key: rsa.RSAPublicKey, next_hop: str | None = None
) -> Layer:
    """Wrap ``inner`` for the holder of ``public_key`` under a fresh session key."""
    sym_key = crypto.create_random_symmetric_key()
    return Layer(
        kind=kind,
        encrypted_key=crypto.rsa_encrypt(crypto.export_sym_key(sym_key).encode("ascii"), public_key),
        encrypted_payload=crypto.sym_encrypt(sym_key, inner),
        next_hop=next_hop,
    )


def build_onion(circuit: Sequence[Node], recipient_id: int, content: str, addressing: Addressing) -> Layer:
    """
    Build the onion for ``circuit`` (entry first), innermost layer first.

    Returns the outermost layer, to be sent to the entry node.
    """
    if not circuit:
        raise ValueError("Circuit must contain at least one node")

    exit_node = circuit[-1]
    current = encrypt_layer(
        LayerKind.FINAL,
        TerminalMessage(recipient_id=recipient_id, content=content).to_bytes(),
        crypto.import_pub_key(exit_node.pub_key),
    )
    for i in range(len(circuit) - 2, -1, -1):
        current = encrypt_layer(
            LayerKind.RELAY,
            current.to_bytes(),
            crypto.import_pub_key(circuit[i].pub_key),
            next_hop=addressing.router_address(circuit[i + 1].node_id),
        )

    logger.debug(f"Built onion with {len(circuit)} layers for recipient {recipient_id}")
    return current


def decrypt_layer(layer: Layer, private_key: rsa.RSAPrivateKey) -> bytes:
    """Recover the session key and return the decrypted inner bytes."""
    exported = crypto.rsa_decrypt(layer.encrypted_key, private_key)
    try:
        sym_key = crypto.import_sym_key(exported.decode("ascii", "replace"))
    except KeyFormatError as e:
        raise DecryptionError(f"Layer carries an invalid session key: {e}") from e
    return crypto.sym_decrypt(sym_key, layer.encrypted_payload)


def peel_layer(layer: Layer, private_key: rsa.RSAPrivateKey) -> Layer | TerminalMessage:
    """
    Remove one layer: the inner Layer for RELAY, the TerminalMessage for FINAL.
    """
    inner = decrypt_layer(layer, private_key)
    try:
        if layer.kind is LayerKind.RELAY:
            return Layer.from_bytes(inner)
        return TerminalMessage.from_bytes(inner)
    except LayerFormatError as e:
        log_with_context(f"Decrypted payload is malformed: {e}", "warning", {"kind": layer.kind.value})
        raise
