"""
Minimal Electrum JSON-RPC client.

Requests and responses are newline-delimited JSON objects over one TCP/TLS
connection. Responses are matched to requests by id; messages without an id
are server notifications (e.g. new block headers) and are dispatched to the
handlers registered with on_notification().

API: https://electrumx.readthedocs.io/en/latest/protocol-methods.html
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import Callable
from typing import Any

from loguru import logger

from btcexplorer.constants import DEFAULT_RPC_TIMEOUT, ELECTRUM_MAX_MESSAGE_SIZE
from btcexplorer.errors import ServerError
from btcexplorer.network import TCPConnection, TransportError, connect_direct

NotificationHandler = Callable[[list[Any]], None]


class ElectrumRPCError(ServerError):
    """Error object returned by the Electrum server."""

    def __init__(self, method: str, error: Any) -> None:
        if isinstance(error, dict):
            code = error.get("code", "unknown")
            message = error.get("message", str(error))
        else:
            code = "unknown"
            message = str(error)
        super().__init__(f"Electrum error {code} on {method}: {message}")
        self.code = code
        self.method = method


class ElectrumClient:
    def __init__(
        self,
        host: str,
        port: int,
        protocol: str = "tcp",
        timeout: float = DEFAULT_RPC_TIMEOUT,
        max_message_size: int = ELECTRUM_MAX_MESSAGE_SIZE,
        on_disconnect: Callable[[], None] | None = None,
    ) -> None:
        """
        Args:
            host: Electrum server hostname
            port: Electrum server port
            protocol: "tcp" or "ssl"
            timeout: Connect and per-request timeout in seconds
            max_message_size: Largest accepted line in bytes
            on_disconnect: Called once when the server drops the connection
        """
        self.host = host
        self.port = port
        self.protocol = protocol
        self.timeout = timeout
        self.max_message_size = max_message_size
        self.on_disconnect = on_disconnect
        self.connection: TCPConnection | None = None
        self._request_id = 0
        self._pending: dict[int, tuple[asyncio.Future[Any], str]] = {}
        self._handlers: dict[str, list[NotificationHandler]] = {}
        self._reader_task: asyncio.Task[None] | None = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self.connection is not None and self.connection.is_connected()

    async def connect(self) -> None:
        self._closing = False
        self.connection = await connect_direct(
            self.host,
            self.port,
            use_ssl=self.protocol == "ssl",
            max_message_size=self.max_message_size,
            timeout=self.timeout,
        )
        self._reader_task = asyncio.create_task(self._read_loop())

    def on_notification(self, method: str, handler: NotificationHandler) -> None:
        self._handlers.setdefault(method, []).append(handler)

    async def request(self, method: str, *params: Any, timeout: float | None = None) -> Any:
        """
        Send one request and wait for its response.

        Raises:
            TransportError: Not connected, or the connection dropped
            TimeoutError: No response within the timeout
            ElectrumRPCError: The server answered with an error object
        """
        if self.connection is None or not self.connection.is_connected():
            raise TransportError("Not connected")

        self._request_id += 1
        request_id = self._request_id
        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": list(params)}
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (future, method)

        try:
            await self.connection.send(json.dumps(payload).encode("utf-8"))
            return await asyncio.wait_for(future, timeout=timeout or self.timeout)
        finally:
            self._pending.pop(request_id, None)

    async def ping(self, timeout: float | None = None) -> None:
        await self.request("server.ping", timeout=timeout)

    async def _read_loop(self) -> None:
        assert self.connection is not None
        reason = "connection closed"
        try:
            while True:
                data = await self.connection.receive()
                if data:
                    self._dispatch(data)
        except TransportError as e:
            reason = str(e)
        finally:
            self._fail_pending(TransportError(f"Connection lost: {reason}"))
            if not self._closing:
                logger.warning(f"Electrum server {self.host}:{self.port} disconnected: {reason}")
                if self.on_disconnect:
                    self.on_disconnect()

    def _dispatch(self, data: bytes) -> None:
        try:
            message = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Discarding malformed message from {self.host}: {e}")
            return

        messages = message if isinstance(message, list) else [message]
        for item in messages:
            if isinstance(item, dict):
                self._handle_message(item)

    def _handle_message(self, message: dict[str, Any]) -> None:
        request_id = message.get("id")
        if request_id is not None:
            entry = self._pending.get(request_id)
            if entry is None or entry[0].done():
                logger.debug(f"Response for unknown or expired request id {request_id}")
                return
            future, method = entry
            if message.get("error"):
                future.set_exception(ElectrumRPCError(method, message["error"]))
            else:
                future.set_result(message.get("result"))
            return

        method = message.get("method")
        if not method:
            return
        params = message.get("params") or []
        for handler in self._handlers.get(method, []):
            try:
                handler(params)
            except Exception as e:
                logger.error(f"Notification handler for {method} failed: {e}")

    def _fail_pending(self, error: Exception) -> None:
        for future, _method in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def close(self) -> None:
        self._closing = True
        if self._reader_task is not None:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None
        if self.connection is not None:
            await self.connection.close()
        self._fail_pending(TransportError("Client closed"))
