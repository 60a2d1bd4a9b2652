import random

import pytest

from onionrelay import crypto
from onionrelay.discovery import DirectoryClient, Node, NodeDirectory
from onionrelay.layered_crypto import Layer
from onionrelay.network import Addressing, NetworkTransport
from onionrelay.relay import RelayProcessor
from onionrelay.robustness import OnionRelayError, TransportError
from onionrelay.user import User


@pytest.fixture(scope="session")
def key_pairs():
    # RSA generation is slow; share one key pair per node id across the session.
    return {node_id: crypto.generate_rsa_key_pair() for node_id in (1, 2, 3, 4)}


@pytest.fixture
def addressing():
    return Addressing()


@pytest.fixture
def nodes(key_pairs):
    return [Node(node_id, crypto.export_pub_key(key_pairs[node_id][0])) for node_id in (1, 2, 3)]


class LocalTransport(NetworkTransport):
    """
    In-process transport: requests go straight to handlers registered per
    (address, path). Handler failures surface as TransportError, the way an
    HTTP error status does.
    """

    def __init__(self):
        self.handlers = {}
        self.calls = []

    async def start(self):
        pass

    async def stop(self):
        pass

    def route(self, address, path, handler):
        self.handlers[(address, path)] = handler

    async def post_json(self, address, path, body):
        self.calls.append(("POST", address, path, body))
        return await self._dispatch(address, path, body)

    async def get_json(self, address, path):
        self.calls.append(("GET", address, path, None))
        return await self._dispatch(address, path, None)

    async def _dispatch(self, address, path, body):
        handler = self.handlers.get((address, path))
        if handler is None:
            raise TransportError(f"Connection refused: {address}{path}")
        try:
            return await handler(body)
        except OnionRelayError as e:
            raise TransportError(f"{address}{path} returned 500: {e}") from e

    def calls_to(self, path):
        return [call for call in self.calls if call[2] == path]


class LocalNetwork:
    """Registry, relays and users wired together over a LocalTransport."""

    def __init__(self, addressing, seed=7):
        self.addressing = addressing
        self.transport = LocalTransport()
        self.directory = NodeDirectory()
        self.relays = {}
        self.users = {}
        self.rng = random.Random(seed)
        registry = addressing.registry_address

        async def register(body):
            self.directory.register(body["nodeId"], body["pubKey"])
            return {"status": "ok"}

        async def get_registry(body):
            return {"nodes": [node.to_dict() for node in self.directory.list_nodes()]}

        self.transport.route(registry, "/registerNode", register)
        self.transport.route(registry, "/getNodeRegistry", get_registry)
        self.directory_client = DirectoryClient(self.transport, registry)

    async def add_relay(self, node_id, key_pair=None):
        processor = RelayProcessor(node_id, self.transport, self.addressing)
        if key_pair is not None:
            processor.public_key, processor.private_key = key_pair
        pub_key = processor.initialize()
        await self.directory_client.register(node_id, pub_key)

        async def forward(body):
            await processor.handle_forward(Layer.from_dict(body))
            return {"status": "success"}

        self.transport.route(self.addressing.router_address(node_id), "/forwardMessage", forward)
        self.relays[node_id] = processor
        return processor

    def add_user(self, user_id):
        user = User(user_id, self.directory_client, self.transport, self.addressing, rng=self.rng)

        async def message(body):
            user.receive(body["message"])
            return "success"

        self.transport.route(self.addressing.user_address(user_id), "/message", message)
        self.users[user_id] = user
        return user


@pytest.fixture
def local_network(addressing):
    return LocalNetwork(addressing)
