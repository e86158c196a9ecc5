"""
Newline-framed TCP/TLS connections.
"""

from __future__ import annotations

import asyncio
import ssl

from loguru import logger


class TransportError(Exception):
    pass


class TCPConnection:
    """One message per line; messages must not contain a raw newline."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        max_message_size: int = 2097152,
    ):
        self.reader = reader
        self.writer = writer
        self.max_message_size = max_message_size
        self._connected = True

    async def send(self, data: bytes) -> None:
        if not self._connected:
            raise TransportError("Connection closed")
        if len(data) > self.max_message_size:
            raise ValueError(f"Message too large: {len(data)} > {self.max_message_size}")

        logger.debug(f"TCPConnection.send: {len(data)} bytes: {data[:200]!r}")
        self.writer.write(data + b"\n")
        try:
            await self.writer.drain()
        except OSError as e:
            self._connected = False
            raise TransportError(f"Send failed: {e}") from e

    async def receive(self) -> bytes:
        if not self._connected:
            raise TransportError("Connection closed")

        try:
            data = await self.reader.readuntil(b"\n")
        except asyncio.LimitOverrunError as e:
            logger.error(f"Message too large (>{self.max_message_size} bytes)")
            raise TransportError("Message too large") from e
        except asyncio.IncompleteReadError as e:
            self._connected = False
            logger.debug("TCPConnection.receive: connection closed by peer")
            raise TransportError("Connection closed by peer") from e
        except OSError as e:
            self._connected = False
            raise TransportError(f"Receive failed: {e}") from e

        stripped = data.rstrip(b"\r\n")
        logger.debug(f"TCPConnection.receive: {len(stripped)} bytes")
        return stripped

    async def close(self) -> None:
        if not self._connected:
            return
        self._connected = False
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error while closing connection: {e}")

    def is_connected(self) -> bool:
        return self._connected


async def connect_direct(
    host: str,
    port: int,
    use_ssl: bool = False,
    max_message_size: int = 2097152,
    timeout: float = 30.0,
) -> TCPConnection:
    """
    Open a TCP (optionally TLS) connection.

    Public Electrum servers commonly use self-signed certificates, so TLS is
    used for transport encryption only and the certificate is not verified.
    """
    ssl_context: ssl.SSLContext | None = None
    if use_ssl:
        ssl_context = ssl.create_default_context()
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE

    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port, ssl=ssl_context, limit=max_message_size),
            timeout=timeout,
        )
    except (OSError, TimeoutError) as e:
        raise TransportError(f"Failed to connect to {host}:{port}: {e}") from e

    logger.debug(f"Connected to {host}:{port} ({'ssl' if use_ssl else 'tcp'})")
    return TCPConnection(reader, writer, max_message_size)
