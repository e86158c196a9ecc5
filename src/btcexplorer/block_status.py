"""
Confirmation model: per-height block status cache and irreversibility policy.

A block (or a transaction confirmed in it) is irreversible once
``tip - height + 1 >= irreversibility_threshold``. Irreversible records are
frozen in the cache: they are never recomputed or evicted. Records that are
still reversible may be overwritten as the tip advances.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

from loguru import logger

from btcexplorer.constants import IRREVERSIBILITY_THRESHOLD
from btcexplorer.errors import ConfigurationError, ProtocolViolationError

BLOCK_HEADER_SIZE = 80


@dataclass(frozen=True)
class ConfirmationPolicy:
    irreversibility_threshold: int = IRREVERSIBILITY_THRESHOLD

    def __post_init__(self) -> None:
        if (
            not isinstance(self.irreversibility_threshold, int)
            or self.irreversibility_threshold < 1
        ):
            raise ConfigurationError(
                f"irreversibility_threshold must be an integer >= 1, "
                f"got {self.irreversibility_threshold!r}"
            )

    def confirmations(self, height: int, tip_height: int) -> int:
        """Number of confirmations of the block at `height`, 0 above the tip."""
        return max(0, tip_height - height + 1)

    def is_irreversible(self, height: int, tip_height: int) -> bool:
        return self.confirmations(height, tip_height) >= self.irreversibility_threshold


@dataclass(frozen=True)
class BlockStatus:
    block_height: int
    block_hash: str
    block_time: int
    irreversible: bool


def parse_block_header(header_hex: str) -> tuple[str, int]:
    """
    Extract (block_hash, block_time) from a serialized 80-byte block header.

    The hash is the byte-reversed double SHA-256 of the header; the timestamp is
    the little-endian uint32 at offset 68.
    """
    try:
        header = bytes.fromhex(header_hex)
    except (TypeError, ValueError) as e:
        raise ProtocolViolationError(f"Block header is not valid hex: {e}") from e
    if len(header) != BLOCK_HEADER_SIZE:
        raise ProtocolViolationError(
            f"Invalid block header length: {len(header)}, expected {BLOCK_HEADER_SIZE}"
        )
    block_hash = hashlib.sha256(hashlib.sha256(header).digest()).digest()[::-1].hex()
    block_time = int.from_bytes(header[68:72], "little")
    return block_hash, block_time


class BlockStatusCache:
    """
    Unbounded in-memory cache of BlockStatus records keyed by height.

    Owned by a single explorer instance.
    """

    def __init__(self) -> None:
        self._records: dict[int, BlockStatus] = {}

    def get(self, height: int) -> BlockStatus | None:
        return self._records.get(height)

    def get_irreversible(self, height: int) -> BlockStatus | None:
        """Return the cached record only if it is already final."""
        record = self._records.get(height)
        if record is not None and record.irreversible:
            return record
        return None

    def store(self, status: BlockStatus) -> BlockStatus:
        """
        Insert or refresh a record.

        An irreversible record already in the cache always wins; the stored
        (possibly pre-existing) record is returned.
        """
        existing = self._records.get(status.block_height)
        if existing is not None and existing.irreversible:
            if existing.block_hash != status.block_hash:
                logger.warning(
                    f"Ignoring conflicting hash {status.block_hash} for irreversible "
                    f"block {status.block_height} ({existing.block_hash})"
                )
            return existing
        self._records[status.block_height] = status
        return status

    def __contains__(self, height: object) -> bool:
        return height in self._records

    def __len__(self) -> int:
        return len(self._records)
