"""
Esplora HTTP API explorer.

All requests go through a RequestQueue, which paces them and retries
rate-limit responses and transport errors. When the queue gives up, an
overload status raises SoftTransientError and any other non-2xx status raises
ServerError.

API reference: https://github.com/Blockstream/esplora/blob/master/API.md
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
from loguru import logger

from btcexplorer.address import address_to_scriptpubkey, reverse_scripthash
from btcexplorer.backends.base import (
    AddressInfo,
    Explorer,
    TxHistoryEntry,
    UtxoInfo,
    UtxoSet,
)
from btcexplorer.config import RequestQueueParams
from btcexplorer.constants import (
    DEFAULT_ESPLORA_URLS,
    DEFAULT_PROBE_TIMEOUT,
    ESPLORA_CHAIN_PAGE_SIZE,
    IRREVERSIBILITY_THRESHOLD,
    MAX_TX_PER_KEY,
)
from btcexplorer.errors import (
    AlreadyConnectedError,
    ConfigurationError,
    ExplorerError,
    HardTransientError,
    NotConnectedError,
    ProtocolViolationError,
    ServerError,
    SoftTransientError,
)
from btcexplorer.fees import check_fee_estimates
from btcexplorer.request_queue import RequestQueue, is_soft_error
from btcexplorer.throttle import ThrottleController


def is_valid_http_url(url: Any) -> bool:
    if not isinstance(url, str) or not url:
        return False
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError, ValueError):
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.host)


class EsploraExplorer(Explorer):
    """
    Explorer backed by an Esplora REST server (e.g. blockstream.info).

    The throttle controller is owned by the instance, so explorers pointed at
    different servers do not slow each other down.
    """

    def __init__(
        self,
        url: str | None = None,
        network: str = "mainnet",
        irreversibility_threshold: int = IRREVERSIBILITY_THRESHOLD,
        max_tx_per_key: int = MAX_TX_PER_KEY,
        request_queue_params: RequestQueueParams | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            url: API root, may include a port and path (http://host:3002/api).
                Defaults to the network's public server.
            network: mainnet, testnet or regtest, used to validate addresses
            irreversibility_threshold: Confirmations after which a block is final
            max_tx_per_key: Maximum history size per address/script hash
            request_queue_params: Throttling and retry settings
            timeout: Per-attempt HTTP timeout in seconds
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        super().__init__(
            network=network,
            irreversibility_threshold=irreversibility_threshold,
            max_tx_per_key=max_tx_per_key,
        )
        if url is None:
            if network not in DEFAULT_ESPLORA_URLS:
                raise ConfigurationError(f"Unknown network: {network}")
            url = DEFAULT_ESPLORA_URLS[network]
        if not is_valid_http_url(url):
            raise ConfigurationError(
                "Specify a valid URL for Esplora and nothing else. Note that the url "
                "can include the port: http://api.example.com:8080/api"
            )
        self.url = url.rstrip("/")

        self.params = request_queue_params or RequestQueueParams()
        self.throttle = ThrottleController(
            max_concurrent_tasks=self.params.max_concurrent_tasks,
            throttle_interval=self.params.throttle_interval,
            unthrottle_after_ok_count=self.params.unthrottle_after_ok_count,
            unthrottle_after_time=self.params.unthrottle_after_time,
        )
        self.timeout = timeout
        self._transport = transport
        self.client: httpx.AsyncClient | None = None
        self.request_queue: RequestQueue | None = None

    async def connect(self) -> None:
        if self.client is not None:
            raise AlreadyConnectedError(f"Already connected to {self.url}")
        self.client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        self.request_queue = RequestQueue(
            self.client,
            self.throttle,
            soft_retry_budget=self.params.soft_retry_budget,
            hard_retry_budget=self.params.hard_retry_budget,
        )
        logger.info(f"Esplora explorer ready: {self.url}")

    async def close(self) -> None:
        if self.client is None:
            logger.info(f"Esplora explorer {self.url} already closed")
            return
        client = self.client
        self.client = None
        self.request_queue = None
        self.throttle.reset()
        await client.aclose()
        logger.info(f"Closed Esplora explorer {self.url}")

    async def is_connected(self) -> bool:
        if self.client is None:
            return False
        try:
            await asyncio.wait_for(self.fetch_block_height(), timeout=DEFAULT_PROBE_TIMEOUT)
        except (ExplorerError, TimeoutError) as e:
            logger.debug(f"Esplora {self.url} not reachable: {e}")
            return False
        return True

    async def _fetch(self, path: str, method: str = "GET", **kwargs: Any) -> httpx.Response:
        if self.request_queue is None:
            raise NotConnectedError(f"Esplora explorer {self.url} not connected")

        url = f"{self.url}{path}"
        try:
            response = await self.request_queue.fetch(url, method, **kwargs)
        except httpx.HTTPError as e:
            raise HardTransientError(f"{method} {url} failed: {e}") from e

        if is_soft_error(response.status_code):
            raise SoftTransientError(response.status_code, url)
        if not response.is_success:
            raise ServerError(
                f"Network request failed! Status code: {response.status_code} "
                f"({response.reason_phrase}). URL: {url}. Server response: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        return response

    async def get_json(self, path: str) -> Any:
        response = await self._fetch(path)
        try:
            return response.json()
        except ValueError as e:
            raise ProtocolViolationError(
                f"Failed to parse server response as JSON! URL: {response.url}"
            ) from e

    async def get_text(self, path: str) -> str:
        response = await self._fetch(path)
        return response.text

    async def post_text(self, path: str, body: str) -> str:
        response = await self._fetch(path, method="POST", content=body)
        return response.text

    def _key_path(self, address: str | None, script_hash: str | None) -> str:
        if address is not None:
            address_to_scriptpubkey(address, self.network)
            return f"/address/{address}"
        if script_hash is not None:
            return f"/scripthash/{reverse_scripthash(script_hash)}"
        raise ValueError("Either address or script_hash must be given")

    @staticmethod
    def _parse_stats(data: Any) -> AddressInfo:
        try:
            chain = data["chain_stats"]
            mempool = data["mempool_stats"]
            return AddressInfo(
                balance=chain["funded_txo_sum"] - chain["spent_txo_sum"],
                tx_count=chain["tx_count"],
                unconfirmed_balance=mempool["funded_txo_sum"] - mempool["spent_txo_sum"],
                unconfirmed_tx_count=mempool["tx_count"],
            )
        except (KeyError, TypeError) as e:
            raise ProtocolViolationError(f"Unexpected address stats: {data!r}") from e

    async def fetch_address(self, address: str) -> AddressInfo:
        return self._parse_stats(await self.get_json(self._key_path(address, None)))

    async def fetch_script_hash(self, script_hash: str) -> AddressInfo:
        return self._parse_stats(await self.get_json(self._key_path(None, script_hash)))

    async def fetch_utxos(
        self, address: str | None = None, script_hash: str | None = None
    ) -> UtxoSet:
        key = self._key_path(address, script_hash)
        fetched = await self.get_json(f"{key}/utxo")
        if not isinstance(fetched, list):
            raise ProtocolViolationError(
                "Invalid response from Esplora server while querying UTXOs."
            )

        try:
            outpoints = [
                (
                    utxo["txid"],
                    int(utxo["vout"]),
                    utxo["status"].get("block_height", 0) if utxo["status"]["confirmed"] else 0,
                )
                for utxo in fetched
            ]
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ProtocolViolationError(f"Unexpected UTXO entry from {key}: {e}") from e

        tx_hexes = await asyncio.gather(*(self.fetch_tx(txid) for txid, _, _ in outpoints))

        utxos = UtxoSet()
        for (txid, vout, block_height), tx_hex in zip(outpoints, tx_hexes, strict=True):
            utxos.add(
                UtxoInfo(
                    utxo_id=f"{txid}:{vout}",
                    tx_hex=tx_hex,
                    vout=vout,
                    block_height=block_height or 0,
                )
            )
        return utxos

    async def fetch_tx_history(
        self, address: str | None = None, script_hash: str | None = None
    ) -> list[TxHistoryEntry]:
        key = self._key_path(address, script_hash)
        tip_height = await self.fetch_block_height()

        mempool_txs = await self.get_json(f"{key}/txs/mempool")
        if not isinstance(mempool_txs, list):
            raise ProtocolViolationError(f"Invalid mempool history for {key}")
        self._check_history_size(len(mempool_txs), key)

        # /txs/chain returns newest first, 25 per page
        chain_txs: list[dict[str, Any]] = []
        last_seen: str | None = None
        while True:
            path = f"{key}/txs/chain" + (f"/{last_seen}" if last_seen else "")
            page = await self.get_json(path)
            if not isinstance(page, list) or not all(isinstance(tx, dict) for tx in page):
                raise ProtocolViolationError(f"Invalid chain history for {key}")
            chain_txs.extend(page)
            self._check_history_size(len(chain_txs) + len(mempool_txs), key)
            if len(page) < ESPLORA_CHAIN_PAGE_SIZE:
                break
            last_seen = page[-1].get("txid")
            if not last_seen:
                raise ProtocolViolationError(f"Chain history page without txid for {key}")

        history: list[TxHistoryEntry] = []
        try:
            for tx in reversed(chain_txs):
                block_height = tx["status"]["block_height"]
                if block_height > tip_height:
                    logger.warning(
                        f"Tx {tx['txid']} at height {block_height} is above the tip "
                        f"{tip_height}, the tip moved while fetching"
                    )
                    tip_height = block_height
                history.append(self._history_entry(tx["txid"], block_height, tip_height))
            for tx in mempool_txs:
                history.append(self._history_entry(tx["txid"], 0, tip_height))
        except (KeyError, TypeError) as e:
            raise ProtocolViolationError(f"Unexpected history entry for {key}: {e}") from e
        return history

    async def fetch_tx(self, tx_id: str) -> str:
        return await self.get_text(f"/tx/{tx_id}/hex")

    async def push(self, tx_hex: str) -> str:
        txid = (await self.post_text("/tx", tx_hex)).strip()
        logger.info(f"Broadcast transaction {txid} via {self.url}")
        return txid

    async def fetch_fee_estimates(self) -> dict[str, float]:
        return check_fee_estimates(await self.get_json("/fee-estimates"))

    async def fetch_block_height(self) -> int:
        text = await self.get_text("/blocks/tip/height")
        try:
            return int(text.strip())
        except ValueError as e:
            raise ProtocolViolationError(f"Invalid tip height: {text!r}") from e

    async def _fetch_block_header(self, height: int) -> tuple[str, int]:
        block_hash = (await self.get_text(f"/block-height/{height}")).strip()
        block = await self.get_json(f"/block/{block_hash}")
        if not isinstance(block, dict) or not isinstance(block.get("timestamp"), int):
            raise ProtocolViolationError(f"Unexpected block response for {block_hash}")
        return block_hash, block["timestamp"]
