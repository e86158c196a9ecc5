"""
Address to scriptPubKey / script hash conversion.

Electrum indexes outputs by script hash: SHA256(scriptPubKey), byte-reversed,
hex encoded. Esplora's /scripthash/ endpoints take the same digest without the
reversal.

References:
- https://electrumx.readthedocs.io/en/latest/protocol-basics.html#script-hashes
- https://github.com/Blockstream/esplora/issues/460
"""

from __future__ import annotations

import hashlib

import base58
import bech32

from btcexplorer.errors import InvalidAddressError

BECH32_HRP = {"mainnet": "bc", "testnet": "tb", "regtest": "bcrt"}

# (P2PKH, P2SH) base58 version bytes; regtest shares testnet's
BASE58_VERSIONS = {
    "mainnet": (0x00, 0x05),
    "testnet": (0x6F, 0xC4),
    "regtest": (0x6F, 0xC4),
}


def address_to_scriptpubkey(address: str, network: str = "mainnet") -> bytes:
    """
    Convert a Bitcoin address to its scriptPubKey.

    Supports:
    - P2WPKH, P2WSH (bech32, witness v0)
    - P2TR (bech32m, witness v1)
    - P2PKH, P2SH (base58check)

    Raises:
        InvalidAddressError: Malformed address or address of another network
    """
    if network not in BECH32_HRP:
        raise InvalidAddressError(f"Unknown network: {network}")

    hrp = BECH32_HRP[network]
    if address.lower().startswith(hrp + "1"):
        witver, witprog = bech32.decode(hrp, address)
        if witver is None or witprog is None:
            raise InvalidAddressError(f"Invalid bech32 address: {address}")
        program = bytes(witprog)

        if witver == 0 and len(program) in (20, 32):
            # P2WPKH / P2WSH: OP_0 <push>
            return bytes([0x00, len(program)]) + program
        if witver == 1 and len(program) == 32:
            # P2TR: OP_1 <32-byte-pubkey>
            return bytes([0x51, 0x20]) + program
        raise InvalidAddressError(f"Unsupported witness program in {address}")

    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise InvalidAddressError(f"Invalid address {address}: {e}") from e

    if len(decoded) != 21:
        raise InvalidAddressError(f"Invalid base58 payload length in {address}")

    version, payload = decoded[0], decoded[1:]
    p2pkh_version, p2sh_version = BASE58_VERSIONS[network]
    if version == p2pkh_version:
        # OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
        return bytes([0x76, 0xA9, 0x14]) + payload + bytes([0x88, 0xAC])
    if version == p2sh_version:
        # OP_HASH160 <20-byte-scripthash> OP_EQUAL
        return bytes([0xA9, 0x14]) + payload + bytes([0x87])

    raise InvalidAddressError(f"Address {address} does not belong to {network}")


def scriptpubkey_to_scripthash(scriptpubkey: bytes) -> str:
    """Electrum-style script hash of a scriptPubKey."""
    return hashlib.sha256(scriptpubkey).digest()[::-1].hex()


def address_to_scripthash(address: str, network: str = "mainnet") -> str:
    return scriptpubkey_to_scripthash(address_to_scriptpubkey(address, network))


def reverse_scripthash(script_hash: str) -> str:
    """Swap between the Electrum and Esplora script hash byte orders."""
    return bytes.fromhex(validate_scripthash(script_hash))[::-1].hex()


def validate_scripthash(script_hash: str) -> str:
    """Return the script hash lowercased, or raise if it is not 32 bytes of hex."""
    try:
        raw = bytes.fromhex(script_hash)
    except (TypeError, ValueError) as e:
        raise InvalidAddressError(f"Invalid script hash: {script_hash}") from e
    if len(raw) != 32:
        raise InvalidAddressError(f"Invalid script hash length: {script_hash}")
    return raw.hex()
