"""
Base explorer interface.

An explorer is a client to a blockchain indexing service (an Esplora HTTP API
or an Electrum server). Script hashes passed to and returned by explorers use
the Electrum convention, see btcexplorer.address.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import TracebackType

from loguru import logger

from btcexplorer.block_status import BlockStatus, BlockStatusCache, ConfirmationPolicy
from btcexplorer.constants import IRREVERSIBILITY_THRESHOLD, MAX_TX_PER_KEY
from btcexplorer.errors import ConfigurationError, LimitExceededError


@dataclass
class AddressInfo:
    balance: int
    tx_count: int
    unconfirmed_balance: int
    unconfirmed_tx_count: int

    @property
    def used(self) -> bool:
        """Whether the address/script ever received or spent coins."""
        return self.tx_count > 0 or self.unconfirmed_tx_count > 0


@dataclass
class TxHistoryEntry:
    tx_id: str
    block_height: int  # 0 while in the mempool
    irreversible: bool


@dataclass
class UtxoInfo:
    utxo_id: str  # "txid:vout"
    tx_hex: str
    vout: int
    block_height: int  # 0 while in the mempool


@dataclass
class UtxoSet:
    confirmed: dict[str, UtxoInfo] = field(default_factory=dict)
    unconfirmed: dict[str, UtxoInfo] = field(default_factory=dict)

    def add(self, utxo: UtxoInfo) -> None:
        if utxo.block_height > 0:
            self.confirmed[utxo.utxo_id] = utxo
        else:
            self.unconfirmed[utxo.utxo_id] = utxo


class Explorer(ABC):
    """
    Abstract explorer client.

    Implementations provide the backend specific queries; the confirmation
    model (fetch_block_status and per-transaction irreversibility) is shared.
    """

    # Backends that keep the tip record fresh from header notifications
    reuses_tip_record = False

    def __init__(
        self,
        network: str = "mainnet",
        irreversibility_threshold: int = IRREVERSIBILITY_THRESHOLD,
        max_tx_per_key: int = MAX_TX_PER_KEY,
    ):
        if isinstance(max_tx_per_key, bool) or not isinstance(max_tx_per_key, int):
            raise ConfigurationError(f"max_tx_per_key must be an integer, got {max_tx_per_key!r}")
        if max_tx_per_key < 1:
            raise ConfigurationError(f"max_tx_per_key must be >= 1, got {max_tx_per_key}")
        self.network = network
        self.policy = ConfirmationPolicy(irreversibility_threshold)
        self.max_tx_per_key = max_tx_per_key
        self.block_cache = BlockStatusCache()

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection to the server"""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Calling it twice is harmless."""

    @abstractmethod
    async def is_connected(self) -> bool:
        """Probe the server (bounded by a timeout)"""

    @abstractmethod
    async def fetch_address(self, address: str) -> AddressInfo:
        """Get balances and tx counts for an address"""

    @abstractmethod
    async def fetch_script_hash(self, script_hash: str) -> AddressInfo:
        """Get balances and tx counts for an Electrum-style script hash"""

    @abstractmethod
    async def fetch_utxos(
        self, address: str | None = None, script_hash: str | None = None
    ) -> UtxoSet:
        """Get unspent outputs of an address or script hash"""

    @abstractmethod
    async def fetch_tx_history(
        self, address: str | None = None, script_hash: str | None = None
    ) -> list[TxHistoryEntry]:
        """
        Get the transaction history of an address or script hash.

        Confirmed transactions come first in ascending block height, followed
        by mempool transactions (block_height 0).

        Raises:
            LimitExceededError: More than max_tx_per_key transactions
        """

    @abstractmethod
    async def fetch_tx(self, tx_id: str) -> str:
        """Get a raw transaction (hex)"""

    @abstractmethod
    async def push(self, tx_hex: str) -> str:
        """Broadcast a raw transaction, returns its txid"""

    @abstractmethod
    async def fetch_fee_estimates(self) -> dict[str, float]:
        """
        Get feerates (sat/vB) keyed by confirmation target.

        Targets are 1-25, 144, 504 and 1008 blocks.
        """

    @abstractmethod
    async def fetch_block_height(self) -> int:
        """Get the current tip height"""

    @abstractmethod
    async def _fetch_block_header(self, height: int) -> tuple[str, int]:
        """Get (block_hash, block_time) of the block at `height`"""

    async def fetch_block_status(self, height: int) -> BlockStatus | None:
        """
        Get hash, time and irreversibility of the block at `height`.

        Returns None if `height` is above the current tip. Irreversible
        records are served from the cache and never fetched again.
        """
        if isinstance(height, bool) or not isinstance(height, int) or height < 0:
            raise ValueError(f"Invalid block height: {height!r}")

        cached = self.block_cache.get_irreversible(height)
        if cached is not None:
            return cached

        tip_height = await self.fetch_block_height()
        if height > tip_height:
            return None

        cached = self.block_cache.get(height)
        if self.reuses_tip_record and cached is not None and height == tip_height:
            return cached

        block_hash, block_time = await self._fetch_block_header(height)
        status = BlockStatus(
            block_height=height,
            block_hash=block_hash,
            block_time=block_time,
            irreversible=self.policy.is_irreversible(height, tip_height),
        )
        return self.block_cache.store(status)

    def _history_entry(self, tx_id: str, block_height: int, tip_height: int) -> TxHistoryEntry:
        # Height 0 marks a mempool transaction, never final
        block_height = max(block_height, 0)
        return TxHistoryEntry(
            tx_id=tx_id,
            block_height=block_height,
            irreversible=block_height > 0
            and self.policy.is_irreversible(block_height, tip_height),
        )

    def _check_history_size(self, count: int, key: str) -> None:
        if count > self.max_tx_per_key:
            logger.warning(f"{key} has more than {self.max_tx_per_key} transactions")
            raise LimitExceededError(
                f"Too many transactions for {key}: more than {self.max_tx_per_key}"
            )

    async def __aenter__(self) -> Explorer:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
