"""
Shared fixtures: fake Electrum RPC clients and block header builders.
"""

from __future__ import annotations

import asyncio
import hashlib
from collections.abc import Callable
from typing import Any

import pytest

from btcexplorer.network import TransportError


def build_header(block_time: int, nonce: int = 0) -> str:
    """Serialized 80-byte header with the given timestamp (other fields zero)."""
    header = bytes(68) + block_time.to_bytes(4, "little") + bytes(4) + nonce.to_bytes(4, "little")
    return header.hex()


def header_hash(header_hex: str) -> str:
    raw = bytes.fromhex(header_hex)
    return hashlib.sha256(hashlib.sha256(raw).digest()).digest()[::-1].hex()


class FakeElectrumClient:
    """
    In-memory stand-in for ElectrumClient.

    `responses` maps a method to a value, an exception instance to raise, or a
    callable receiving the params.
    """

    def __init__(self, responses: dict[str, Any]) -> None:
        self.responses = dict(responses)
        self.on_disconnect: Callable[[], None] | None = None
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.handlers: dict[str, list[Callable[[list[Any]], None]]] = {}
        self.fail_connect = False
        self.fail_ping = False
        self.closed = False
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if self.fail_connect:
            raise TransportError("Connection refused")
        self._connected = True

    def on_notification(self, method: str, handler: Callable[[list[Any]], None]) -> None:
        self.handlers.setdefault(method, []).append(handler)

    async def request(self, method: str, *params: Any, timeout: float | None = None) -> Any:
        if not self._connected:
            raise TransportError("Not connected")
        self.calls.append((method, params))
        await asyncio.sleep(0)
        response = self.responses.get(method)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(*params)
        return response

    async def ping(self, timeout: float | None = None) -> None:
        if self.fail_ping:
            raise TransportError("Ping failed")
        await self.request("server.ping")

    def notify(self, method: str, params: list[Any]) -> None:
        for handler in self.handlers.get(method, []):
            handler(params)

    def drop(self) -> None:
        """Simulate the server closing the socket."""
        self._connected = False
        if self.on_disconnect:
            self.on_disconnect()

    async def close(self) -> None:
        self.closed = True
        self._connected = False

    def called(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)


class FakeClientFactory:
    """Client factory recording every client it builds."""

    def __init__(self, tip_height: int = 100, block_time: int = 1_700_000_000) -> None:
        self.tip_height = tip_height
        self.block_time = block_time
        self.responses: dict[str, Any] = {}
        self.clients: list[FakeElectrumClient] = []
        self.fail_connect = False

    def tip_header(self) -> dict[str, Any]:
        return {"height": self.tip_height, "hex": build_header(self.block_time, self.tip_height)}

    def __call__(self) -> FakeElectrumClient:
        client = FakeElectrumClient(
            {
                "server.version": ["ElectrumX 1.16.0", "1.4"],
                "server.ping": None,
                "blockchain.headers.subscribe": lambda: self.tip_header(),
                **self.responses,
            }
        )
        client.fail_connect = self.fail_connect
        self.clients.append(client)
        return client

    @property
    def last(self) -> FakeElectrumClient:
        return self.clients[-1]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def client_factory() -> FakeClientFactory:
    return FakeClientFactory()


@pytest.fixture
def make_header() -> Callable[..., str]:
    return build_header
