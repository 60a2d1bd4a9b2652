"""
onionrelay.server - HTTP services for the registry, onion routers and users.

Protocol:
- Registry:  POST /registerNode, GET /getNodeRegistry
- Router:    POST /forwardMessage, diagnostic GETs
- User:      POST /message, POST /sendMessage, diagnostic GETs
- All:       GET /status
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field

from aiohttp import web

from .config import ConfigModel
from .discovery import DirectoryClient, NodeDirectory
from .layered_crypto import Layer
from .network import Addressing, HttpTransport
from .relay import RelayProcessor
from .robustness import DuplicateNodeError, KeyFormatError, OnionRelayError, log_with_context
from .user import User

logger = logging.getLogger(__name__)


async def _read_json(request: web.Request):
    try:
        return await request.json()
    except ValueError:
        return None


class HttpService:
    """Lifecycle shared by every node service."""

    name = "service"

    def __init__(self, host: str, port: int):
        self.host = host
        self.port = port
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def _create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/status", self.handle_status)
        self._add_routes(app)
        return app

    def _add_routes(self, app: web.Application) -> None:
        raise NotImplementedError

    async def handle_status(self, request: web.Request) -> web.Response:
        return web.Response(text="live")

    async def start(self) -> None:
        if self._runner is not None:
            logger.warning(f"{self.name} already running")
            return
        self._app = self._create_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()
        logger.info(f"{self.name} listening on {self.host}:{self.port}")

    async def stop(self) -> None:
        if self._site:
            await self._site.stop()
        if self._runner:
            await self._runner.cleanup()
        self._site = None
        self._runner = None
        self._app = None


class RegistryServer(HttpService):
    name = "Registry"

    def __init__(self, directory: NodeDirectory, host: str, port: int):
        super().__init__(host, port)
        self.directory = directory

    def _add_routes(self, app: web.Application) -> None:
        app.router.add_post("/registerNode", self.handle_register)
        app.router.add_get("/getNodeRegistry", self.handle_get_registry)

    async def handle_register(self, request: web.Request) -> web.Response:
        """
        POST /registerNode {"nodeId": 1, "pubKey": "<base64 SPKI>"}
        """
        data = await _read_json(request)
        if not isinstance(data, dict):
            return web.json_response({"status": "error", "error": "invalid_json"}, status=400)
        try:
            self.directory.register(data.get("nodeId"), data.get("pubKey"))
        except (ValueError, KeyFormatError) as e:
            return web.json_response({"status": "error", "error": str(e)}, status=400)
        except DuplicateNodeError as e:
            return web.json_response({"status": "error", "error": str(e)}, status=409)
        return web.json_response({"status": "ok"})

    async def handle_get_registry(self, request: web.Request) -> web.Response:
        return web.json_response({"nodes": [node.to_dict() for node in self.directory.list_nodes()]})


class OnionRouterServer(HttpService):
    name = "Onion router"

    def __init__(self, processor: RelayProcessor, host: str, port: int):
        super().__init__(host, port)
        self.processor = processor

    def _add_routes(self, app: web.Application) -> None:
        app.router.add_get("/getLastReceivedEncryptedMessage", self.handle_last_encrypted)
        app.router.add_get("/getLastReceivedDecryptedMessage", self.handle_last_decrypted)
        app.router.add_get("/getLastMessageDestination", self.handle_last_destination)
        app.router.add_get("/getPrivateKey", self.handle_private_key)
        app.router.add_post("/forwardMessage", self.handle_forward)

    async def handle_last_encrypted(self, request: web.Request) -> web.Response:
        return web.json_response({"result": self.processor.diagnostics.last_received_ciphertext})

    async def handle_last_decrypted(self, request: web.Request) -> web.Response:
        return web.json_response({"result": self.processor.diagnostics.last_received_plaintext})

    async def handle_last_destination(self, request: web.Request) -> web.Response:
        return web.json_response({"result": self.processor.diagnostics.last_forward_target})

    async def handle_private_key(self, request: web.Request) -> web.Response:
        # Debug surface; a real deployment must never expose this.
        try:
            return web.json_response({"result": self.processor.export_private_key()})
        except OnionRelayError as e:
            return web.json_response({"error": "Private key not available", "details": str(e)}, status=500)

    async def handle_forward(self, request: web.Request) -> web.Response:
        try:
            layer = Layer.from_dict(await _read_json(request))
        except OnionRelayError as e:
            return web.json_response(
                {"status": "error", "message": "Malformed layer", "error": str(e)}, status=400
            )
        try:
            await self.processor.handle_forward(layer)
        except OnionRelayError as e:
            log_with_context(
                f"Router {self.processor.node_id} failed to process message: {e}",
                "warning",
                {"error_type": e.error_type.value, **e.context},
            )
            return web.json_response(
                {"status": "error", "message": "Failed to process message", "error": str(e)}, status=500
            )
        return web.json_response({"status": "success"})


class UserServer(HttpService):
    name = "User"

    def __init__(self, user: User, host: str, port: int):
        super().__init__(host, port)
        self.user = user

    def _add_routes(self, app: web.Application) -> None:
        app.router.add_get("/getLastReceivedMessage", self.handle_last_received)
        app.router.add_get("/getLastSentMessage", self.handle_last_sent)
        app.router.add_get("/getLastCircuit", self.handle_last_circuit)
        app.router.add_post("/message", self.handle_message)
        app.router.add_post("/sendMessage", self.handle_send)

    async def handle_last_received(self, request: web.Request) -> web.Response:
        return web.json_response({"result": self.user.last_received_message})

    async def handle_last_sent(self, request: web.Request) -> web.Response:
        return web.json_response({"result": self.user.last_sent_message})

    async def handle_last_circuit(self, request: web.Request) -> web.Response:
        if self.user.last_circuit is None:
            return web.json_response({"result": None}, status=404)
        return web.json_response({"result": self.user.last_circuit})

    async def handle_message(self, request: web.Request) -> web.Response:
        data = await _read_json(request)
        if not isinstance(data, dict) or not isinstance(data.get("message"), str):
            return web.json_response({"status": "error", "error": "message must be a string"}, status=400)
        self.user.receive(data["message"])
        return web.Response(text="success")

    async def handle_send(self, request: web.Request) -> web.Response:
        """
        POST /sendMessage {"message": "hi", "destinationUserId": 42}
        """
        data = await _read_json(request)
        if not isinstance(data, dict):
            return web.json_response({"status": "error", "error": "invalid_json"}, status=400)
        message = data.get("message")
        destination = data.get("destinationUserId")
        if not isinstance(message, str):
            return web.json_response({"status": "error", "error": "message must be a string"}, status=400)
        if isinstance(destination, bool) or not isinstance(destination, int) or destination < 0:
            return web.json_response(
                {"status": "error", "error": "destinationUserId must be a non-negative integer"}, status=400
            )

        try:
            circuit = await self.user.send_message(message, destination)
        except OnionRelayError as e:
            log_with_context(
                f"User {self.user.user_id} failed to send message: {e}", "error", {"error_type": e.error_type.value}
            )
            return web.json_response({"status": "error", "error": str(e)}, status=500)
        return web.json_response({"status": "Message sent successfully", "circuit": circuit})


@dataclass
class Network:
    """Handle on a locally launched network."""

    transport: HttpTransport
    registry: RegistryServer
    routers: list[OnionRouterServer] = field(default_factory=list)
    users: list[UserServer] = field(default_factory=list)

    async def stop(self) -> None:
        """Stop every service and the client session, even if some fail."""
        failed = []
        for service in [*self.users, *self.routers, self.registry]:
            try:
                await service.stop()
            except Exception as e:
                log_with_context(f"{service.name} failed to stop: {e}", "error", {"port": service.port})
                failed.append(service.port)
        await self.transport.stop()
        if failed:
            raise OnionRelayError(f"{len(failed)} services failed to stop", context={"ports": failed})
        logger.info("Network stopped")


async def launch_onion_router(
    node_id: int, transport: HttpTransport, addressing: Addressing
) -> OnionRouterServer:
    """Generate keys, register with the directory, then start listening."""
    processor = RelayProcessor(node_id, transport, addressing)
    pub_key = processor.initialize()
    await DirectoryClient(transport, addressing.registry_address).register(node_id, pub_key)
    server = OnionRouterServer(processor, addressing.host, addressing.router_port(node_id))
    await server.start()
    return server


async def launch_network(
    settings: ConfigModel, routers: int, users: int, rng: random.Random | None = None
) -> Network:
    """Start a registry, ``routers`` onion routers and ``users`` users."""
    addressing = settings.network.addressing()
    transport = HttpTransport(addressing, settings.network.request_timeout)
    await transport.start()

    registry = RegistryServer(NodeDirectory(), addressing.host, addressing.registry_port)
    network = Network(transport=transport, registry=registry)
    try:
        await registry.start()
        for node_id in range(routers):
            network.routers.append(await launch_onion_router(node_id, transport, addressing))
        directory = DirectoryClient(transport, addressing.registry_address)
        for user_id in range(users):
            user = User(user_id, directory, transport, addressing, settings.routing.circuit_length, rng)
            server = UserServer(user, addressing.host, addressing.user_port(user_id))
            await server.start()
            network.users.append(server)
    except Exception:
        await network.stop()
        raise

    logger.info(f"Network launched with {routers} routers and {users} users")
    return network
