"""
Tests for the confirmation policy, header parsing and block status cache.
"""

from __future__ import annotations

import pytest

from btcexplorer.block_status import (
    BlockStatus,
    BlockStatusCache,
    ConfirmationPolicy,
    parse_block_header,
)
from btcexplorer.errors import ConfigurationError, ProtocolViolationError

GENESIS_HEADER = (
    "0100000000000000000000000000000000000000000000000000000000000000"
    "000000003ba3edfd7a7b12b27ac72c3e67768f617fc81bc3888a51323a9fb8aa"
    "4b1e5e4a29ab5f49ffff001d1dac2b7c"
)
GENESIS_HASH = "000000000019d6689c085ae165831e934ff763ae46a2a6c172b3f1b60a8ce26f"


class TestConfirmationPolicy:
    def test_threshold_boundary(self) -> None:
        """tip=10, threshold=3: height 8 has 3 confirmations, height 9 has 2."""
        policy = ConfirmationPolicy(irreversibility_threshold=3)
        assert policy.is_irreversible(8, 10) is True
        assert policy.is_irreversible(9, 10) is False
        assert policy.is_irreversible(10, 10) is False

    def test_genesis_counts_like_any_block(self) -> None:
        policy = ConfirmationPolicy(irreversibility_threshold=3)
        assert policy.confirmations(0, 10) == 11
        assert policy.is_irreversible(0, 10) is True
        assert policy.is_irreversible(0, 1) is False

    def test_threshold_one_makes_tip_final(self) -> None:
        policy = ConfirmationPolicy(irreversibility_threshold=1)
        assert policy.is_irreversible(10, 10) is True

    def test_height_above_tip_has_no_confirmations(self) -> None:
        policy = ConfirmationPolicy()
        assert policy.confirmations(12, 10) == 0

    @pytest.mark.parametrize("threshold", [0, -3, 2.5, "3"])
    def test_invalid_threshold(self, threshold: object) -> None:
        with pytest.raises(ConfigurationError):
            ConfirmationPolicy(irreversibility_threshold=threshold)  # type: ignore[arg-type]


class TestParseBlockHeader:
    def test_genesis_header(self) -> None:
        block_hash, block_time = parse_block_header(GENESIS_HEADER)
        assert block_hash == GENESIS_HASH
        assert block_time == 1231006505

    def test_wrong_length(self) -> None:
        with pytest.raises(ProtocolViolationError):
            parse_block_header(GENESIS_HEADER[:-2])

    def test_not_hex(self) -> None:
        with pytest.raises(ProtocolViolationError):
            parse_block_header("zz" * 80)


class TestBlockStatusCache:
    def test_store_and_get(self) -> None:
        cache = BlockStatusCache()
        status = BlockStatus(5, "aa" * 32, 1000, irreversible=False)
        assert cache.store(status) is status
        assert cache.get(5) is status
        assert cache.get_irreversible(5) is None
        assert 5 in cache
        assert len(cache) == 1

    def test_reversible_record_is_overwritten(self) -> None:
        cache = BlockStatusCache()
        cache.store(BlockStatus(5, "aa" * 32, 1000, irreversible=False))
        newer = BlockStatus(5, "bb" * 32, 1001, irreversible=False)
        assert cache.store(newer) is newer
        assert cache.get(5) is newer

    def test_irreversible_record_wins(self) -> None:
        """Once final, a record is returned as-is for every later store."""
        cache = BlockStatusCache()
        final = BlockStatus(5, "aa" * 32, 1000, irreversible=True)
        cache.store(final)

        for replacement in (
            BlockStatus(5, "aa" * 32, 1000, irreversible=True),
            BlockStatus(5, "bb" * 32, 2000, irreversible=False),
        ):
            assert cache.store(replacement) is final

        assert cache.get_irreversible(5) is final
