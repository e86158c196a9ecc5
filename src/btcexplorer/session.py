"""
Persistent Electrum session: connect, subscribe to headers, heartbeat, reconnect.

Every (re)connection starts a new session generation. Background work (the
heartbeat probe, header notifications, disconnect callbacks) captures the
generation it was started for and does nothing once that generation is stale,
so a late result from a previous connection never touches the current one.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from enum import Enum
from typing import Any

from loguru import logger

from btcexplorer.block_status import (
    BlockStatus,
    BlockStatusCache,
    ConfirmationPolicy,
    parse_block_header,
)
from btcexplorer.constants import (
    DEFAULT_PING_INTERVAL,
    DEFAULT_PROBE_TIMEOUT,
    DEFAULT_RECONNECT_BACKOFF,
    DEFAULT_RECONNECT_GRACE,
    ELECTRUM_CLIENT_NAME,
    ELECTRUM_PROTOCOL_VERSION,
)
from btcexplorer.electrum_client import ElectrumClient
from btcexplorer.errors import (
    AlreadyConnectedError,
    AlreadyConnectingError,
    HardTransientError,
    NotConnectedError,
    ProtocolViolationError,
)
from btcexplorer.network import TransportError

HEADERS_SUBSCRIBE = "blockchain.headers.subscribe"


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class SessionManager:
    """
    Owns one long-lived Electrum connection.

    Operations issued while the session is down fail with NotConnectedError;
    operations whose connection drops mid-flight fail with HardTransientError.
    Retrying them is up to the caller.
    """

    def __init__(
        self,
        client_factory: Callable[[], ElectrumClient],
        cache: BlockStatusCache,
        policy: ConfirmationPolicy,
        server_label: str = "electrum",
        ping_interval: float = DEFAULT_PING_INTERVAL,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        reconnect_backoff: float = DEFAULT_RECONNECT_BACKOFF,
        reconnect_grace: float = DEFAULT_RECONNECT_GRACE,
    ) -> None:
        """
        Args:
            client_factory: Builds a fresh, unconnected RPC client per connection
            cache: Block status cache shared with the explorer
            policy: Confirmation policy shared with the explorer
            server_label: host:port used in log messages
            ping_interval: Seconds between heartbeat probes
            probe_timeout: Upper bound for one liveness probe
            reconnect_backoff: Pause between dropping a dead connection and reopening
            reconnect_grace: How long a request waits for a reconnect in progress
        """
        self.client_factory = client_factory
        self.cache = cache
        self.policy = policy
        self.server_label = server_label
        self.ping_interval = ping_interval
        self.probe_timeout = probe_timeout
        self.reconnect_backoff = reconnect_backoff
        self.reconnect_grace = reconnect_grace

        self.state = SessionState.DISCONNECTED
        self.tip_height: int | None = None
        self.generation = 0
        self._client: ElectrumClient | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._wake = asyncio.Event()
        self._connected_event = asyncio.Event()

    async def connect(self) -> None:
        if self.state in (SessionState.CONNECTING, SessionState.RECONNECTING):
            raise AlreadyConnectingError(f"Already connecting to {self.server_label}")
        if self.state is SessionState.CONNECTED:
            raise AlreadyConnectedError(f"Already connected to {self.server_label}")

        self.state = SessionState.CONNECTING
        self.generation += 1
        generation = self.generation

        try:
            client = await self._open(generation)
        except Exception:
            if generation == self.generation:
                self.state = SessionState.DISCONNECTED
            raise

        if generation != self.generation:
            # close() ran while we were connecting
            await self._teardown(client)
            raise NotConnectedError(f"Session to {self.server_label} closed while connecting")

        self.state = SessionState.CONNECTED
        self._connected_event.set()
        self._wake.clear()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info(f"Connected to Electrum server {self.server_label} (tip: {self.tip_height})")

    async def _open(self, generation: int) -> ElectrumClient:
        """Open a transport, negotiate the protocol version and subscribe to headers."""
        client = self.client_factory()
        client.on_disconnect = lambda: self._on_transport_lost(generation)
        self._client = client
        self.tip_height = None

        try:
            await client.connect()
            server_version = await client.request(
                "server.version", ELECTRUM_CLIENT_NAME, ELECTRUM_PROTOCOL_VERSION
            )
            logger.debug(f"Electrum server {self.server_label} version: {server_version}")
            client.on_notification(
                HEADERS_SUBSCRIBE,
                lambda params: self._on_header_notification(generation, params),
            )
            header = await client.request(HEADERS_SUBSCRIBE)
            if not isinstance(header, dict) or not isinstance(header.get("height"), int):
                raise ProtocolViolationError(f"Unexpected headers.subscribe result: {header!r}")
        except (TransportError, TimeoutError) as e:
            await self._teardown(client)
            logger.error(f"Failed to init Electrum session with {self.server_label}: {e}")
            raise HardTransientError(f"Failed to init Electrum: {e}") from e
        except Exception as e:
            await self._teardown(client)
            logger.error(f"Failed to init Electrum session with {self.server_label}: {e}")
            raise

        self._on_header(header)
        return client

    async def _teardown(self, client: ElectrumClient) -> None:
        if self._client is client:
            self._client = None
        try:
            await client.close()
        except Exception as e:
            logger.debug(f"Error closing Electrum client: {e}")

    def _on_transport_lost(self, generation: int) -> None:
        if generation != self.generation or self.state is not SessionState.CONNECTED:
            return
        logger.warning(f"Lost connection to {self.server_label}, probing now")
        self._wake.set()

    def _on_header_notification(self, generation: int, params: list[Any]) -> None:
        if generation != self.generation:
            return
        for header in params:
            self._on_header(header)

    def _on_header(self, header: Any) -> None:
        if not isinstance(header, dict) or not isinstance(header.get("height"), int):
            logger.warning(f"Ignoring malformed header notification: {header!r}")
            return

        height = header["height"]
        if self.tip_height is not None and height <= self.tip_height:
            logger.debug(f"Ignoring header {height}, tip is already {self.tip_height}")
            return
        self.tip_height = height
        logger.debug(f"New tip height: {height}")

        header_hex = header.get("hex")
        if not header_hex:
            return
        try:
            block_hash, block_time = parse_block_header(header_hex)
        except ProtocolViolationError as e:
            logger.warning(f"Could not parse tip header {height}: {e}")
            return
        self.cache.store(
            BlockStatus(
                block_height=height,
                block_hash=block_hash,
                block_time=block_time,
                irreversible=self.policy.is_irreversible(height, height),
            )
        )

    async def _heartbeat_loop(self) -> None:
        while True:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=self.ping_interval)
            self._wake.clear()

            generation = self.generation
            if self.state is SessionState.RECONNECTING:
                # A previous reconnect attempt failed
                await self._reconnect(generation)
                continue

            alive = await self._probe()
            if generation != self.generation:
                logger.debug("Discarding heartbeat result from a stale session generation")
                continue
            if alive:
                logger.debug(f"Electrum ping {self.server_label} ok")
            else:
                await self._reconnect(generation)

    async def _probe(self) -> bool:
        client = self._client
        if client is None or not client.connected:
            return False
        try:
            await client.ping(timeout=self.probe_timeout)
        except (TransportError, TimeoutError) as e:
            logger.warning(f"Electrum ping to {self.server_label} failed: {e}")
            return False
        return True

    async def _reconnect(self, generation: int) -> None:
        self.state = SessionState.RECONNECTING
        self._connected_event.clear()
        if self._client is not None:
            await self._teardown(self._client)

        logger.warning(f"Reconnecting to {self.server_label} in {self.reconnect_backoff}s")
        await asyncio.sleep(self.reconnect_backoff)
        if generation != self.generation:
            return

        self.generation += 1
        new_generation = self.generation
        try:
            await self._open(new_generation)
        except Exception as e:
            logger.warning(
                f"Reconnect to {self.server_label} failed: {e}, "
                f"retrying in {self.ping_interval}s"
            )
            return

        if new_generation != self.generation:
            return
        self.state = SessionState.CONNECTED
        self._connected_event.set()
        logger.info(f"Reconnected to {self.server_label} (tip: {self.tip_height})")

    async def is_connected(self) -> bool:
        """Probe the server now. Bounded by probe_timeout, does not touch the tip."""
        if self.state is not SessionState.CONNECTED:
            return False
        return await self._probe()

    async def request(self, method: str, *params: Any) -> Any:
        client = await self._live_client()
        try:
            return await client.request(method, *params)
        except TransportError as e:
            raise HardTransientError(f"{method} failed: {e}") from e
        except TimeoutError as e:
            raise HardTransientError(f"{method} timed out") from e

    async def _live_client(self) -> ElectrumClient:
        if self.state is SessionState.RECONNECTING:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._connected_event.wait(), timeout=self.reconnect_grace)
        if self.state is not SessionState.CONNECTED or self._client is None:
            raise NotConnectedError(f"Electrum client not connected ({self.state.value})")
        return self._client

    def require_tip(self) -> int:
        if self.state is not SessionState.CONNECTED or self.tip_height is None:
            raise NotConnectedError(f"Electrum client not connected ({self.state.value})")
        return self.tip_height

    async def close(self) -> None:
        if self.state in (SessionState.DISCONNECTED, SessionState.CLOSED) and self._client is None:
            logger.info(f"Session to {self.server_label} already closed")
            return

        self.generation += 1
        self.state = SessionState.CLOSED
        self._connected_event.clear()

        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if self._client is not None:
            await self._teardown(self._client)
        logger.info(f"Closed session to {self.server_label}")
