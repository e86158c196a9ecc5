"""
btcexplorer - Bitcoin blockchain explorer clients

One async interface over Esplora (HTTP) and Electrum (persistent socket)
servers, with request throttling, session recovery and block finality
tracking.
"""

__version__ = "0.1.0"

from btcexplorer.backends import (
    AddressInfo,
    ElectrumExplorer,
    EsploraExplorer,
    Explorer,
    TxHistoryEntry,
    UtxoInfo,
    UtxoSet,
    create_explorer,
)
from btcexplorer.block_status import BlockStatus, BlockStatusCache, ConfirmationPolicy
from btcexplorer.config import ElectrumSessionParams, RequestQueueParams, Settings
from btcexplorer.errors import (
    AlreadyConnectedError,
    AlreadyConnectingError,
    ConfigurationError,
    ExhaustedRetriesError,
    ExplorerError,
    HardTransientError,
    InvalidAddressError,
    LimitExceededError,
    NotConnectedError,
    ProtocolViolationError,
    ServerError,
    SoftTransientError,
)

__all__ = [
    "AddressInfo",
    "AlreadyConnectedError",
    "AlreadyConnectingError",
    "BlockStatus",
    "BlockStatusCache",
    "ConfigurationError",
    "ConfirmationPolicy",
    "ElectrumExplorer",
    "ElectrumSessionParams",
    "EsploraExplorer",
    "ExhaustedRetriesError",
    "Explorer",
    "ExplorerError",
    "HardTransientError",
    "InvalidAddressError",
    "LimitExceededError",
    "NotConnectedError",
    "ProtocolViolationError",
    "RequestQueueParams",
    "ServerError",
    "Settings",
    "SoftTransientError",
    "TxHistoryEntry",
    "UtxoInfo",
    "UtxoSet",
    "create_explorer",
]
