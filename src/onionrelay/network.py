# src/onionrelay/network.py
"""
Networking module for onionrelay.

Handles node addressing and the request/response transport between nodes.
Every node (registry, onion router, user) is an HTTP service reachable on
a deterministic port; addresses travel inside layers as fixed-width numeric
strings.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp

from .robustness import LayerFormatError, TransportError, log_with_context

logger = logging.getLogger(__name__)

ADDRESS_WIDTH = 10
MAX_PORT = 65535
DEFAULT_REQUEST_TIMEOUT = 10.0


def format_address(port: int) -> str:
    return str(port).zfill(ADDRESS_WIDTH)


def parse_address(address: str) -> int:
    """Return the port encoded in ``address``."""
    if not isinstance(address, str) or not address.isdigit() or len(address) != ADDRESS_WIDTH:
        raise LayerFormatError(f"Malformed address: {address!r}")
    port = int(address)
    if not 0 < port <= MAX_PORT:
        raise LayerFormatError(f"Address out of range: {address!r}")
    return port


@dataclass(frozen=True)
class Addressing:
    host: str = "127.0.0.1"
    registry_port: int = 8080
    base_router_port: int = 4000
    base_user_port: int = 3000

    def router_port(self, node_id: int) -> int:
        return self.base_router_port + node_id

    def user_port(self, user_id: int) -> int:
        return self.base_user_port + user_id

    def router_address(self, node_id: int) -> str:
        return format_address(self.router_port(node_id))

    def user_address(self, user_id: int) -> str:
        return format_address(self.user_port(user_id))

    @property
    def registry_address(self) -> str:
        return format_address(self.registry_port)

    def url(self, address: str, path: str) -> str:
        return f"http://{self.host}:{parse_address(address)}{path}"


class NetworkTransport:
    """Abstract base for network transport implementations."""

    async def start(self):
        raise NotImplementedError

    async def stop(self):
        raise NotImplementedError

    async def post_json(self, address: str, path: str, body: dict[str, Any]) -> Any:
        raise NotImplementedError

    async def get_json(self, address: str, path: str) -> Any:
        raise NotImplementedError


class HttpTransport(NetworkTransport):
    """
    aiohttp-based transport.

    Each request is a single attempt bounded by ``request_timeout`` seconds;
    connection errors, timeouts and HTTP error statuses raise TransportError.
    """

    def __init__(self, addressing: Addressing, request_timeout: float = DEFAULT_REQUEST_TIMEOUT):
        self.addressing = addressing
        self.request_timeout = request_timeout
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def start(self):
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )

    async def stop(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def post_json(self, address: str, path: str, body: dict[str, Any]) -> Any:
        return await self._request("POST", address, path, body)

    async def get_json(self, address: str, path: str) -> Any:
        return await self._request("GET", address, path)

    async def _request(self, method: str, address: str, path: str, body: dict[str, Any] | None = None) -> Any:
        if self.session is None:
            raise TransportError("Transport not started")
        url = self.addressing.url(address, path)
        try:
            async with self.session.request(method, url, json=body) as resp:
                if resp.content_type == "application/json":
                    payload = await resp.json()
                else:
                    payload = await resp.text()
                if resp.status >= 400:
                    raise TransportError(
                        f"{method} {url} returned {resp.status}",
                        context={"url": url, "status": resp.status, "response": payload},
                    )
                return payload
        except asyncio.TimeoutError as e:
            log_with_context(f"{method} {url} timed out", "warning", {"timeout": self.request_timeout})
            raise TransportError(f"{method} {url} timed out after {self.request_timeout}s", context={"url": url}) from e
        except aiohttp.ClientError as e:
            log_with_context(f"{method} {url} failed: {e}", "warning", {"url": url})
            raise TransportError(f"{method} {url} failed: {e}", context={"url": url}) from e
        except ValueError as e:
            raise TransportError(f"{method} {url} returned invalid JSON: {e}", context={"url": url}) from e
