"""
Electrum server explorer.

Keeps one persistent JSON-RPC session (see btcexplorer.session) with a header
subscription, so the tip height is known locally and fetch_block_height()
needs no round trip.

Protocol reference: https://electrumx.readthedocs.io/en/latest/protocol-methods.html
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from loguru import logger

from btcexplorer.address import address_to_scripthash, validate_scripthash
from btcexplorer.backends.base import (
    AddressInfo,
    Explorer,
    TxHistoryEntry,
    UtxoInfo,
    UtxoSet,
)
from btcexplorer.block_status import parse_block_header
from btcexplorer.config import ElectrumSessionParams
from btcexplorer.constants import (
    BTC_PER_KB_TO_SAT_PER_VB,
    DEFAULT_ELECTRUM_SERVERS,
    FEE_ESTIMATE_TARGETS,
    IRREVERSIBILITY_THRESHOLD,
    MAX_TX_PER_KEY,
)
from btcexplorer.electrum_client import ElectrumClient
from btcexplorer.errors import ConfigurationError, ProtocolViolationError
from btcexplorer.fees import check_fee_estimates
from btcexplorer.session import SessionManager


class ElectrumExplorer(Explorer):
    reuses_tip_record = True

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        protocol: str | None = None,
        network: str = "mainnet",
        irreversibility_threshold: int = IRREVERSIBILITY_THRESHOLD,
        max_tx_per_key: int = MAX_TX_PER_KEY,
        session_params: ElectrumSessionParams | None = None,
        client_factory: Callable[[], ElectrumClient] | None = None,
    ):
        """
        Args:
            host: Server hostname. host, port and protocol default to the
                network's public server when all three are omitted.
            port: Server port
            protocol: "ssl" or "tcp"
            network: mainnet, testnet or regtest
            irreversibility_threshold: Confirmations after which a block is final
            max_tx_per_key: Maximum history size per address/script hash
            session_params: Heartbeat, reconnect and RPC timeouts
            client_factory: Builds the RPC client for each connection (tests)
        """
        super().__init__(
            network=network,
            irreversibility_threshold=irreversibility_threshold,
            max_tx_per_key=max_tx_per_key,
        )
        if host is None and port is None and protocol is None:
            if network not in DEFAULT_ELECTRUM_SERVERS:
                raise ConfigurationError(f"Unknown network: {network}")
            host, port, protocol = DEFAULT_ELECTRUM_SERVERS[network]

        if (
            not isinstance(host, str)
            or not host
            or isinstance(port, bool)
            or not isinstance(port, int)
            or not 0 < port < 65536
            or protocol not in ("ssl", "tcp")
        ):
            raise ConfigurationError(
                "Specify a host (string), port (integer), and protocol ('ssl' or 'tcp') "
                "for Electrum."
            )

        self.host = host
        self.port = port
        self.protocol = protocol
        params = session_params or ElectrumSessionParams()

        if client_factory is None:

            def client_factory() -> ElectrumClient:
                return ElectrumClient(host, port, protocol, timeout=params.rpc_timeout)

        self.session = SessionManager(
            client_factory,
            self.block_cache,
            self.policy,
            server_label=f"{host}:{port}",
            ping_interval=params.ping_interval,
            probe_timeout=params.probe_timeout,
            reconnect_backoff=params.reconnect_backoff,
            reconnect_grace=params.reconnect_grace,
        )

    async def connect(self) -> None:
        await self.session.connect()

    async def close(self) -> None:
        await self.session.close()

    async def is_connected(self) -> bool:
        return await self.session.is_connected()

    def _script_hash(self, address: str | None, script_hash: str | None) -> str:
        if address is not None:
            return address_to_scripthash(address, self.network)
        if script_hash is not None:
            return validate_scripthash(script_hash)
        raise ValueError("Either address or script_hash must be given")

    async def fetch_address(self, address: str) -> AddressInfo:
        return await self.fetch_script_hash(address_to_scripthash(address, self.network))

    async def fetch_script_hash(self, script_hash: str) -> AddressInfo:
        script_hash = validate_scripthash(script_hash)
        balance, history = await asyncio.gather(
            self.session.request("blockchain.scripthash.get_balance", script_hash),
            self.session.request("blockchain.scripthash.get_history", script_hash),
        )
        if not isinstance(balance, dict) or not isinstance(history, list):
            raise ProtocolViolationError(f"Unexpected balance/history for {script_hash}")

        try:
            tx_count = sum(1 for tx in history if tx["height"] > 0)
            return AddressInfo(
                balance=balance["confirmed"],
                tx_count=tx_count,
                unconfirmed_balance=balance["unconfirmed"],
                unconfirmed_tx_count=len(history) - tx_count,
            )
        except (KeyError, TypeError) as e:
            raise ProtocolViolationError(f"Unexpected balance/history for {script_hash}") from e

    async def fetch_utxos(
        self, address: str | None = None, script_hash: str | None = None
    ) -> UtxoSet:
        key = self._script_hash(address, script_hash)
        unspent = await self.session.request("blockchain.scripthash.listunspent", key)
        if not isinstance(unspent, list):
            raise ProtocolViolationError(f"Unexpected listunspent result for {key}")

        try:
            outpoints = [(u["tx_hash"], int(u["tx_pos"]), max(u["height"], 0)) for u in unspent]
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolViolationError(f"Unexpected UTXO entry for {key}: {e}") from e

        # Several outputs of one transaction share a single fetch
        txids = list(dict.fromkeys(txid for txid, _, _ in outpoints))
        tx_hexes = dict(zip(txids, await asyncio.gather(*map(self.fetch_tx, txids)), strict=True))

        utxos = UtxoSet()
        for txid, vout, height in outpoints:
            utxos.add(
                UtxoInfo(
                    utxo_id=f"{txid}:{vout}",
                    tx_hex=tx_hexes[txid],
                    vout=vout,
                    block_height=height,
                )
            )
        return utxos

    async def fetch_tx_history(
        self, address: str | None = None, script_hash: str | None = None
    ) -> list[TxHistoryEntry]:
        key = self._script_hash(address, script_hash)
        history = await self.session.request("blockchain.scripthash.get_history", key)
        if not isinstance(history, list):
            raise ProtocolViolationError(f"Unexpected get_history result for {key}")
        self._check_history_size(len(history), key)

        tip_height = self.session.require_tip()
        confirmed: list[tuple[str, int]] = []
        mempool: list[str] = []
        try:
            for tx in history:
                # Mempool txs are reported with height 0, or -1 with unconfirmed parents
                if tx["height"] > 0:
                    confirmed.append((tx["tx_hash"], tx["height"]))
                else:
                    mempool.append(tx["tx_hash"])
        except (KeyError, TypeError) as e:
            raise ProtocolViolationError(f"Unexpected history entry for {key}: {e}") from e

        confirmed.sort(key=lambda item: item[1])
        if confirmed and confirmed[-1][1] > tip_height:
            # The header notification for this block has not arrived yet
            logger.warning(
                f"History of {key} reaches height {confirmed[-1][1]}, above tip {tip_height}"
            )
            tip_height = confirmed[-1][1]

        return [
            self._history_entry(txid, height, tip_height) for txid, height in confirmed
        ] + [self._history_entry(txid, 0, tip_height) for txid in mempool]

    async def fetch_tx(self, tx_id: str) -> str:
        tx_hex = await self.session.request("blockchain.transaction.get", tx_id)
        if not isinstance(tx_hex, str):
            raise ProtocolViolationError(f"Unexpected transaction.get result for {tx_id}")
        return tx_hex

    async def push(self, tx_hex: str) -> str:
        txid = await self.session.request("blockchain.transaction.broadcast", tx_hex)
        if not isinstance(txid, str):
            raise ProtocolViolationError(f"Unexpected broadcast result: {txid!r}")
        logger.info(f"Broadcast transaction {txid} via {self.host}:{self.port}")
        return txid

    async def fetch_fee_estimates(self) -> dict[str, float]:
        results = await asyncio.gather(
            *(
                self.session.request("blockchain.estimatefee", target)
                for target in FEE_ESTIMATE_TARGETS
            )
        )
        fee_estimates: dict[str, Any] = {}
        for target, btc_per_kb in zip(FEE_ESTIMATE_TARGETS, results, strict=True):
            if isinstance(btc_per_kb, bool) or not isinstance(btc_per_kb, int | float):
                raise ProtocolViolationError(
                    f"Invalid fee estimate for target {target}: {btc_per_kb!r}"
                )
            # -1 means the server has no estimate for this target
            fee_estimates[str(target)] = max(btc_per_kb, 0) * BTC_PER_KB_TO_SAT_PER_VB
        return check_fee_estimates(fee_estimates)

    async def fetch_block_height(self) -> int:
        return self.session.require_tip()

    async def _fetch_block_header(self, height: int) -> tuple[str, int]:
        header_hex = await self.session.request("blockchain.block.header", height)
        if not isinstance(header_hex, str):
            raise ProtocolViolationError(f"Unexpected block.header result for {height}")
        return parse_block_header(header_hex)
