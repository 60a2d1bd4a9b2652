"""
Unit tests for layered_crypto module.
"""

import json

import pytest

from onionrelay import crypto
from onionrelay.discovery import Node
from onionrelay.layered_crypto import (
    Layer,
    LayerKind,
    TerminalMessage,
    build_onion,
    decrypt_layer,
    encrypt_layer,
    peel_layer,
)
from onionrelay.robustness import DecryptionError, LayerFormatError


def test_build_and_peel_three_hops(key_pairs, nodes, addressing):
    onion = build_onion(nodes, 42, "Hello, final destination!", addressing)

    # Entry node
    assert onion.kind is LayerKind.RELAY
    assert onion.next_hop == addressing.router_address(2)
    middle = peel_layer(onion, key_pairs[1][1])
    assert isinstance(middle, Layer)
    assert middle.kind is LayerKind.RELAY
    assert middle.next_hop == addressing.router_address(3)

    # Middle node
    last = peel_layer(middle, key_pairs[2][1])
    assert isinstance(last, Layer)
    assert last.kind is LayerKind.FINAL
    assert last.next_hop is None

    # Exit node
    terminal = peel_layer(last, key_pairs[3][1])
    assert terminal == TerminalMessage(recipient_id=42, content="Hello, final destination!")


def test_exit_payload_is_terminal_message_bytes(key_pairs, nodes, addressing):
    content = 'braces {"kind": "relay"} and\nnewlines'
    onion = build_onion(nodes, 7, content, addressing)
    layer = peel_layer(peel_layer(onion, key_pairs[1][1]), key_pairs[2][1])
    raw = decrypt_layer(layer, key_pairs[3][1])
    assert raw == TerminalMessage(7, content).to_bytes()
    assert json.loads(raw) == {"recipientId": 7, "content": content}


def test_each_layer_is_keyed_to_its_own_hop(key_pairs, nodes, addressing):
    onion = build_onion(nodes, 42, "hi", addressing)
    # Neither the middle nor the exit node can open the outer layer.
    for node_id in (2, 3, 4):
        with pytest.raises(DecryptionError):
            peel_layer(onion, key_pairs[node_id][1])


def test_next_hop_is_fixed_width_router_address(nodes, addressing):
    onion = build_onion(nodes, 42, "hi", addressing)
    assert onion.next_hop == "0000004002"
    assert len(onion.next_hop) == 10


def test_layers_use_fresh_session_keys(key_pairs, nodes, addressing):
    first = build_onion(nodes, 42, "hi", addressing)
    second = build_onion(nodes, 42, "hi", addressing)
    assert first.encrypted_key != second.encrypted_key
    assert first.encrypted_payload != second.encrypted_payload


def test_single_hop_circuit(key_pairs, nodes, addressing):
    onion = build_onion(nodes[:1], 5, "direct", addressing)
    assert onion.kind is LayerKind.FINAL
    assert peel_layer(onion, key_pairs[1][1]) == TerminalMessage(5, "direct")


def test_empty_circuit(addressing):
    with pytest.raises(ValueError):
        build_onion([], 1, "x", addressing)


def test_layer_wire_format(key_pairs, nodes, addressing):
    onion = build_onion(nodes, 42, "hi", addressing)
    data = onion.to_dict()
    assert set(data) == {"kind", "encryptedKey", "encryptedPayload", "nextHop"}
    assert data["kind"] == "relay"
    assert Layer.from_dict(data) == onion
    assert Layer.from_bytes(onion.to_bytes()) == onion


def test_final_layer_has_no_next_hop_on_the_wire(key_pairs):
    layer = encrypt_layer(LayerKind.FINAL, b"{}", key_pairs[1][0])
    assert "nextHop" not in layer.to_dict()


class TestLayerValidation:
    def test_relay_requires_next_hop(self):
        with pytest.raises(LayerFormatError):
            Layer(LayerKind.RELAY, b"k", b"p")

    def test_final_rejects_next_hop(self):
        with pytest.raises(LayerFormatError):
            Layer(LayerKind.FINAL, b"k", b"p", next_hop="0000004001")

    @pytest.mark.parametrize("next_hop", ["4001", "00000040x1", "0000099999", 4001])
    def test_malformed_next_hop(self, next_hop):
        with pytest.raises(LayerFormatError):
            Layer(LayerKind.RELAY, b"k", b"p", next_hop=next_hop)

    @pytest.mark.parametrize(
        "data",
        [
            None,
            [],
            {"kind": "exit", "encryptedKey": "", "encryptedPayload": ""},
            {"kind": "final", "encryptedKey": "***", "encryptedPayload": ""},
            {"kind": "final", "encryptedKey": "", "encryptedPayload": None},
        ],
    )
    def test_from_dict_rejects(self, data):
        with pytest.raises(LayerFormatError):
            Layer.from_dict(data)

    @pytest.mark.parametrize(
        "data",
        [
            {"recipientId": "42", "content": "hi"},
            {"recipientId": -1, "content": "hi"},
            {"recipientId": True, "content": "hi"},
            {"recipientId": 42, "content": 5},
            ["recipientId", 42],
        ],
    )
    def test_terminal_message_rejects(self, data):
        with pytest.raises(LayerFormatError):
            TerminalMessage.from_dict(data)


def test_relay_layer_with_garbage_inner_payload(key_pairs):
    layer = encrypt_layer(LayerKind.RELAY, b"not a layer", key_pairs[1][0], next_hop="0000004002")
    with pytest.raises(LayerFormatError):
        peel_layer(layer, key_pairs[1][1])


def test_final_layer_wrapping_a_layer_is_rejected(key_pairs, nodes, addressing):
    inner = build_onion(nodes, 42, "hi", addressing)
    layer = encrypt_layer(LayerKind.FINAL, inner.to_bytes(), key_pairs[1][0])
    with pytest.raises(LayerFormatError):
        peel_layer(layer, key_pairs[1][1])


def test_invalid_session_key(key_pairs):
    layer = Layer(
        LayerKind.FINAL,
        crypto.rsa_encrypt(b"not-a-key", key_pairs[1][0]),
        crypto.sym_encrypt(crypto.create_random_symmetric_key(), b"{}"),
    )
    with pytest.raises(DecryptionError):
        peel_layer(layer, key_pairs[1][1])


def test_build_rejects_bad_public_key(addressing):
    from onionrelay.robustness import KeyFormatError

    with pytest.raises(KeyFormatError):
        build_onion([Node(1, "bm90IGEga2V5")], 42, "hi", addressing)
