"""
Exception hierarchy shared by all explorer backends.
"""

from __future__ import annotations


class ExplorerError(Exception):
    """Base class for every error raised by btcexplorer."""


class ConfigurationError(ExplorerError, ValueError):
    """Invalid host, port, url or parameter supplied at construction time."""


class NotConnectedError(ExplorerError):
    """Operation attempted before connect() or after close()."""


class AlreadyConnectingError(ExplorerError):
    pass


class AlreadyConnectedError(ExplorerError):
    pass


class SoftTransientError(ExplorerError):
    """Backend signalled temporary overload (HTTP 429 / 5xx)."""

    def __init__(self, status_code: int, url: str = "") -> None:
        super().__init__(f"Transient server status {status_code} for {url}")
        self.status_code = status_code
        self.url = url


class HardTransientError(ExplorerError):
    """Transport level failure (socket closed, timeout, connection refused)."""


class ExhaustedRetriesError(ExplorerError):
    pass


class ProtocolViolationError(ExplorerError):
    """Malformed or unexpected response shape."""


class LimitExceededError(ExplorerError):
    pass


class ServerError(ExplorerError):
    """Structured error returned by the backend."""

    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class InvalidAddressError(ExplorerError, ValueError):
    pass
