"""
Tests for ElectrumExplorer with an in-memory RPC client.
"""

from __future__ import annotations

import pytest
from conftest import FakeClientFactory, build_header, header_hash

from btcexplorer.address import address_to_scripthash
from btcexplorer.backends.electrum import ElectrumExplorer
from btcexplorer.config import ElectrumSessionParams
from btcexplorer.constants import FEE_ESTIMATE_TARGETS
from btcexplorer.electrum_client import ElectrumRPCError
from btcexplorer.errors import (
    ConfigurationError,
    InvalidAddressError,
    LimitExceededError,
    NotConnectedError,
    ProtocolViolationError,
    ServerError,
)
from btcexplorer.session import HEADERS_SUBSCRIBE

ADDRESS = "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"
SCRIPT_HASH = address_to_scripthash(ADDRESS)


def make_explorer(factory: FakeClientFactory, **kwargs) -> ElectrumExplorer:
    return ElectrumExplorer(
        host="electrum.test",
        port=50001,
        protocol="tcp",
        session_params=ElectrumSessionParams(ping_interval=60, reconnect_backoff=0.01),
        client_factory=factory,
        **kwargs,
    )


class TestConstruction:
    def test_network_defaults(self) -> None:
        explorer = ElectrumExplorer(network="testnet")
        assert (explorer.host, explorer.port, explorer.protocol) == (
            "electrum.blockstream.info",
            60002,
            "ssl",
        )

    @pytest.mark.parametrize(
        "host,port,protocol",
        [
            ("electrum.test", None, None),
            ("", 50001, "tcp"),
            ("electrum.test", "50001", "tcp"),
            ("electrum.test", 70000, "tcp"),
            ("electrum.test", 50001, "wss"),
        ],
    )
    def test_invalid_server(self, host, port, protocol) -> None:
        with pytest.raises(ConfigurationError):
            ElectrumExplorer(host=host, port=port, protocol=protocol)

    def test_invalid_threshold(self) -> None:
        with pytest.raises(ConfigurationError):
            ElectrumExplorer(irreversibility_threshold=0)

    def test_session_params_reach_session(self) -> None:
        explorer = ElectrumExplorer(
            session_params=ElectrumSessionParams(reconnect_grace=4.0, reconnect_backoff=0.5)
        )
        assert explorer.session.reconnect_grace == 4.0
        assert explorer.session.reconnect_backoff == 0.5


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_block_height_from_subscription(self, client_factory: FakeClientFactory) -> None:
        explorer = make_explorer(client_factory)
        await explorer.connect()
        assert await explorer.fetch_block_height() == 100

        client_factory.last.notify(HEADERS_SUBSCRIBE, [{"height": 101, "hex": build_header(1)}])
        assert await explorer.fetch_block_height() == 101
        await explorer.close()

    @pytest.mark.asyncio
    async def test_close_then_connect(self, client_factory: FakeClientFactory) -> None:
        explorer = make_explorer(client_factory)
        await explorer.connect()
        await explorer.close()
        with pytest.raises(NotConnectedError):
            await explorer.fetch_block_height()

        await explorer.connect()
        assert await explorer.fetch_block_height() == 100
        assert await explorer.is_connected() is True
        await explorer.close()


class TestQueries:
    @pytest.mark.asyncio
    async def test_fetch_address(self, client_factory: FakeClientFactory) -> None:
        client_factory.responses.update(
            {
                "blockchain.scripthash.get_balance": {"confirmed": 4000, "unconfirmed": -1000},
                "blockchain.scripthash.get_history": [
                    {"tx_hash": "aa" * 32, "height": 90},
                    {"tx_hash": "bb" * 32, "height": 95},
                    {"tx_hash": "cc" * 32, "height": 0, "fee": 200},
                ],
            }
        )
        async with make_explorer(client_factory) as explorer:
            info = await explorer.fetch_address(ADDRESS)

        assert info.balance == 4000
        assert info.unconfirmed_balance == -1000
        assert info.tx_count == 2
        assert info.unconfirmed_tx_count == 1
        assert info.used is True
        assert ("blockchain.scripthash.get_balance", (SCRIPT_HASH,)) in client_factory.last.calls

    @pytest.mark.asyncio
    async def test_fetch_script_hash_validates(self, client_factory: FakeClientFactory) -> None:
        async with make_explorer(client_factory) as explorer:
            with pytest.raises(InvalidAddressError):
                await explorer.fetch_script_hash("abcd")

    @pytest.mark.asyncio
    async def test_fetch_utxos(self, client_factory: FakeClientFactory) -> None:
        client_factory.responses.update(
            {
                "blockchain.scripthash.listunspent": [
                    {"tx_hash": "aa" * 32, "tx_pos": 0, "height": 90, "value": 1000},
                    {"tx_hash": "aa" * 32, "tx_pos": 2, "height": 90, "value": 2000},
                    {"tx_hash": "bb" * 32, "tx_pos": 1, "height": 0, "value": 500},
                ],
                "blockchain.transaction.get": lambda txid: f"raw-{txid[:2]}",
            }
        )
        async with make_explorer(client_factory) as explorer:
            utxos = await explorer.fetch_utxos(script_hash=SCRIPT_HASH)

        assert sorted(utxos.confirmed) == [f"{'aa' * 32}:0", f"{'aa' * 32}:2"]
        assert utxos.confirmed[f"{'aa' * 32}:2"].tx_hex == "raw-aa"
        assert utxos.unconfirmed[f"{'bb' * 32}:1"].block_height == 0
        assert client_factory.last.called("blockchain.transaction.get") == 2

    @pytest.mark.asyncio
    async def test_fetch_tx_server_error(self, client_factory: FakeClientFactory) -> None:
        client_factory.responses["blockchain.transaction.get"] = ElectrumRPCError(
            "blockchain.transaction.get", {"code": 2, "message": "No such transaction"}
        )
        async with make_explorer(client_factory) as explorer:
            with pytest.raises(ServerError, match="No such transaction"):
                await explorer.fetch_tx("dd" * 32)

    @pytest.mark.asyncio
    async def test_push(self, client_factory: FakeClientFactory) -> None:
        client_factory.responses["blockchain.transaction.broadcast"] = "ee" * 32
        async with make_explorer(client_factory) as explorer:
            assert await explorer.push("0200") == "ee" * 32

    @pytest.mark.asyncio
    async def test_fee_estimates(self, client_factory: FakeClientFactory) -> None:
        """BTC/kB from the server is reported as sat/vB for every target."""

        def estimatefee(target: int) -> float:
            return -1 if target == 1008 else 0.0001

        client_factory.responses["blockchain.estimatefee"] = estimatefee
        async with make_explorer(client_factory) as explorer:
            estimates = await explorer.fetch_fee_estimates()

        assert list(estimates) == [str(target) for target in FEE_ESTIMATE_TARGETS]
        assert estimates["1"] == pytest.approx(10.0)
        assert estimates["1008"] == 0.0

    @pytest.mark.asyncio
    async def test_fee_estimates_bad_value(self, client_factory: FakeClientFactory) -> None:
        client_factory.responses["blockchain.estimatefee"] = "cheap"
        async with make_explorer(client_factory) as explorer:
            with pytest.raises(ProtocolViolationError):
                await explorer.fetch_fee_estimates()


class TestHistory:
    @pytest.mark.asyncio
    async def test_history_order_and_irreversibility(
        self, client_factory: FakeClientFactory
    ) -> None:
        client_factory.responses["blockchain.scripthash.get_history"] = [
            {"tx_hash": "c1" * 32, "height": 0},
            {"tx_hash": "b1" * 32, "height": 99},
            {"tx_hash": "a1" * 32, "height": 98},
            {"tx_hash": "d1" * 32, "height": -1},
        ]
        async with make_explorer(client_factory) as explorer:
            history = await explorer.fetch_tx_history(address=ADDRESS)

        assert [(e.tx_id[:2], e.block_height, e.irreversible) for e in history] == [
            ("a1", 98, True),
            ("b1", 99, False),
            ("c1", 0, False),
            ("d1", 0, False),
        ]

    @pytest.mark.asyncio
    async def test_history_above_tip(self, client_factory: FakeClientFactory) -> None:
        """A tx mined in a block whose header has not arrived yet does not fail."""
        client_factory.responses["blockchain.scripthash.get_history"] = [
            {"tx_hash": "a1" * 32, "height": 100},
            {"tx_hash": "b1" * 32, "height": 102},
        ]
        async with make_explorer(client_factory) as explorer:
            history = await explorer.fetch_tx_history(script_hash=SCRIPT_HASH)
            assert await explorer.fetch_block_height() == 100

        assert [e.irreversible for e in history] == [True, False]

    @pytest.mark.asyncio
    async def test_too_many_transactions(self, client_factory: FakeClientFactory) -> None:
        client_factory.responses["blockchain.scripthash.get_history"] = [
            {"tx_hash": f"{i:064x}", "height": i} for i in range(1, 6)
        ]
        async with make_explorer(client_factory, max_tx_per_key=4) as explorer:
            with pytest.raises(LimitExceededError):
                await explorer.fetch_tx_history(address=ADDRESS)

    @pytest.mark.asyncio
    async def test_history_requires_a_key(self, client_factory: FakeClientFactory) -> None:
        async with make_explorer(client_factory) as explorer:
            with pytest.raises(ValueError):
                await explorer.fetch_tx_history()


class TestBlockStatus:
    @pytest.mark.asyncio
    async def test_tip_served_from_header_subscription(
        self, client_factory: FakeClientFactory
    ) -> None:
        async with make_explorer(client_factory) as explorer:
            status = await explorer.fetch_block_status(100)
            assert client_factory.last.called("blockchain.block.header") == 0

        expected = build_header(client_factory.block_time, 100)
        assert status.block_hash == header_hash(expected)
        assert status.block_time == client_factory.block_time
        assert status.irreversible is False

    @pytest.mark.asyncio
    async def test_older_block_fetched_once(self, client_factory: FakeClientFactory) -> None:
        client_factory.responses["blockchain.block.header"] = lambda height: build_header(
            1_600_000_000 + height
        )
        async with make_explorer(client_factory) as explorer:
            first = await explorer.fetch_block_status(90)
            second = await explorer.fetch_block_status(90)
            assert await explorer.fetch_block_status(101) is None

        assert first is second
        assert first.irreversible is True
        assert first.block_time == 1_600_000_090
        assert client_factory.last.called("blockchain.block.header") == 1

    @pytest.mark.asyncio
    async def test_threshold_boundary(self, client_factory: FakeClientFactory) -> None:
        client_factory.tip_height = 10
        client_factory.responses["blockchain.block.header"] = lambda height: build_header(height)
        async with make_explorer(client_factory, irreversibility_threshold=3) as explorer:
            assert (await explorer.fetch_block_status(8)).irreversible is True
            assert (await explorer.fetch_block_status(9)).irreversible is False

    @pytest.mark.asyncio
    async def test_bad_header(self, client_factory: FakeClientFactory) -> None:
        client_factory.responses["blockchain.block.header"] = "00" * 79
        async with make_explorer(client_factory) as explorer:
            with pytest.raises(ProtocolViolationError):
                await explorer.fetch_block_status(50)
