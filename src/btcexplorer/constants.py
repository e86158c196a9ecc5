"""
Default servers, thresholds and protocol constants.

Default servers follow the public Blockstream infrastructure for mainnet and
testnet and the usual local ports of an esplora/electrs regtest stack.
"""

from __future__ import annotations

from typing import Literal

NetworkName = Literal["mainnet", "testnet", "regtest"]

ESPLORA_BLOCKSTREAM_URL = "https://blockstream.info/api"
ESPLORA_BLOCKSTREAM_TESTNET_URL = "https://blockstream.info/testnet/api"
ESPLORA_LOCAL_REGTEST_URL = "http://127.0.0.1:3002"

ELECTRUM_BLOCKSTREAM_HOST = "electrum.blockstream.info"
ELECTRUM_BLOCKSTREAM_PORT = 50002
ELECTRUM_BLOCKSTREAM_PROTOCOL = "ssl"

ELECTRUM_BLOCKSTREAM_TESTNET_HOST = "electrum.blockstream.info"
ELECTRUM_BLOCKSTREAM_TESTNET_PORT = 60002
ELECTRUM_BLOCKSTREAM_TESTNET_PROTOCOL = "ssl"

ELECTRUM_LOCAL_REGTEST_HOST = "127.0.0.1"
ELECTRUM_LOCAL_REGTEST_PORT = 60401
ELECTRUM_LOCAL_REGTEST_PROTOCOL = "tcp"

DEFAULT_ESPLORA_URLS: dict[str, str] = {
    "mainnet": ESPLORA_BLOCKSTREAM_URL,
    "testnet": ESPLORA_BLOCKSTREAM_TESTNET_URL,
    "regtest": ESPLORA_LOCAL_REGTEST_URL,
}

DEFAULT_ELECTRUM_SERVERS: dict[str, tuple[str, int, str]] = {
    "mainnet": (
        ELECTRUM_BLOCKSTREAM_HOST,
        ELECTRUM_BLOCKSTREAM_PORT,
        ELECTRUM_BLOCKSTREAM_PROTOCOL,
    ),
    "testnet": (
        ELECTRUM_BLOCKSTREAM_TESTNET_HOST,
        ELECTRUM_BLOCKSTREAM_TESTNET_PORT,
        ELECTRUM_BLOCKSTREAM_TESTNET_PROTOCOL,
    ),
    "regtest": (
        ELECTRUM_LOCAL_REGTEST_HOST,
        ELECTRUM_LOCAL_REGTEST_PORT,
        ELECTRUM_LOCAL_REGTEST_PROTOCOL,
    ),
}

# A block is treated as final once it has this many confirmations
IRREVERSIBILITY_THRESHOLD = 3

# Refuse to fetch histories larger than this instead of truncating them
MAX_TX_PER_KEY = 1000

# Confirmation targets (in blocks) reported by fetch_fee_estimates,
# same set as Esplora's /fee-estimates
FEE_ESTIMATE_TARGETS: tuple[int, ...] = (*range(1, 26), 144, 504, 1008)

# 10^8 sat/BTC / 10^3 vbyte/kvbyte
BTC_PER_KB_TO_SAT_PER_VB = 100_000

# Esplora returns confirmed history in pages of this size
ESPLORA_CHAIN_PAGE_SIZE = 25

# Request queue defaults
DEFAULT_MAX_CONCURRENT_TASKS = 30  # 50% over the typical gap limit
DEFAULT_THROTTLE_INTERVAL = 0.2  # seconds
DEFAULT_UNTHROTTLE_AFTER_OK_COUNT = 10
DEFAULT_UNTHROTTLE_AFTER_TIME = 2.0  # seconds
DEFAULT_SOFT_RETRY_BUDGET = 100
DEFAULT_HARD_RETRY_BUDGET = 5

# HTTP statuses that signal overload rather than a bad request
SOFT_ERROR_STATUSES = frozenset({429, 500, 502, 503, 504})

# Electrum session defaults
ELECTRUM_CLIENT_NAME = "btcexplorer"
ELECTRUM_PROTOCOL_VERSION = "1.4"
DEFAULT_PING_INTERVAL = 60.0  # seconds
DEFAULT_PROBE_TIMEOUT = 10.0  # seconds
DEFAULT_RECONNECT_BACKOFF = 0.5  # seconds
DEFAULT_RECONNECT_GRACE = 1.0  # seconds
DEFAULT_RPC_TIMEOUT = 30.0  # seconds

# Electrum responses (full histories, large transactions) can be big
ELECTRUM_MAX_MESSAGE_SIZE = 16 * 1024 * 1024
