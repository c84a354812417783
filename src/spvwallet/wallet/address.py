"""
Bitcoin address generation and parsing utilities.
"""

from __future__ import annotations

import hashlib

import base58
import bech32
from ripemd.ripemd160 import ripemd160

from spvwallet.models import NetworkParams


class AddressError(ValueError):
    pass


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    return ripemd160(hashlib.sha256(data).digest())


def pubkey_to_p2wpkh_script(pubkey: bytes) -> bytes:
    """Create P2WPKH scriptPubKey (OP_0 <20-byte-hash>)"""
    return bytes([0x00, 0x14]) + hash160(pubkey)


def pubkey_to_p2pkh_script(pubkey: bytes) -> bytes:
    """Create P2PKH scriptPubKey (OP_DUP OP_HASH160 <20-byte-hash> OP_EQUALVERIFY OP_CHECKSIG)"""
    return bytes([0x76, 0xA9, 0x14]) + hash160(pubkey) + bytes([0x88, 0xAC])


def pubkey_to_p2pkh_address(pubkey: bytes, params: NetworkParams) -> str:
    """Convert compressed public key to a legacy base58check P2PKH address."""
    if len(pubkey) != 33:
        raise AddressError(f"Invalid compressed pubkey length: {len(pubkey)}")
    return base58.b58encode_check(bytes([params.p2pkh_version]) + hash160(pubkey)).decode()


def pubkey_to_p2wpkh_address(pubkey: bytes, params: NetworkParams) -> str:
    """
    Convert compressed public key to P2WPKH (native segwit) address.
    BIP173 bech32 encoding.
    """
    if len(pubkey) != 33:
        raise AddressError(f"Invalid compressed pubkey length: {len(pubkey)}")

    address = bech32.encode(params.bech32_hrp, 0, hash160(pubkey))
    if address is None:
        raise AddressError("Failed to encode P2WPKH address")
    return address


def _is_bech32(address: str) -> bool:
    return "1" in address and address.lower().startswith(("bc1", "tb1", "bcrt1"))


def address_to_scriptpubkey(address: str, params: NetworkParams) -> bytes:
    """
    Convert a Bitcoin address to scriptPubKey for the given network.

    Supports:
    - P2WPKH and P2WSH (witness version 0, bech32)
    - Taproot and later witness versions 1-16 (bech32m)
    - P2PKH and P2SH (base58check)

    Raises:
        AddressError: malformed address, wrong network, or unsupported type
    """
    address = address.strip()
    if not address:
        raise AddressError("Empty address")

    if _is_bech32(address):
        hrp = address.lower().rsplit("1", 1)[0]
        if hrp != params.bech32_hrp:
            raise AddressError(
                f"Address prefix '{hrp}' does not belong to {params.network.value}"
            )

        witver, witprog = bech32.decode(hrp, address)
        if witver is None or witprog is None:
            raise AddressError(f"Invalid bech32 address: {address}")

        program = bytes(witprog)
        if witver == 0 and len(program) == 20:
            return bytes([0x00, 0x14]) + program
        if witver == 0 and len(program) == 32:
            return bytes([0x00, 0x20]) + program
        if 1 <= witver <= 16 and 2 <= len(program) <= 40:
            # OP_1..OP_16 <program>, bech32m encoded (BIP350)
            return bytes([0x50 + witver, len(program)]) + program
        raise AddressError(f"Unsupported witness program: version {witver}, {len(program)} bytes")

    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise AddressError(f"Invalid address: {e}") from e

    if len(decoded) != 21:
        raise AddressError(f"Invalid base58 payload length: {len(decoded)}")

    version = decoded[0]
    payload = decoded[1:]

    if version == params.p2pkh_version:
        # OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
        return bytes([0x76, 0xA9, 0x14]) + payload + bytes([0x88, 0xAC])
    if version == params.p2sh_version:
        # OP_HASH160 <20-byte-scripthash> OP_EQUAL
        return bytes([0xA9, 0x14]) + payload + bytes([0x87])

    raise AddressError(f"Address version {version:#04x} does not belong to {params.network.value}")


def is_valid_address(address: str, params: NetworkParams) -> bool:
    try:
        address_to_scriptpubkey(address, params)
    except AddressError:
        return False
    return True


def scriptpubkey_to_address(scriptpubkey: bytes, params: NetworkParams) -> str | None:
    """Convert scriptPubKey to address, or None for non-standard scripts."""
    if len(scriptpubkey) in (22, 34) and scriptpubkey[0] == 0x00 and scriptpubkey[1] == len(
        scriptpubkey
    ) - 2:
        return bech32.encode(params.bech32_hrp, 0, scriptpubkey[2:])

    if (
        4 <= len(scriptpubkey) <= 42
        and 0x51 <= scriptpubkey[0] <= 0x60
        and scriptpubkey[1] == len(scriptpubkey) - 2
    ):
        return bech32.encode(params.bech32_hrp, scriptpubkey[0] - 0x50, scriptpubkey[2:])

    if (
        len(scriptpubkey) == 25
        and scriptpubkey[:3] == b"\x76\xa9\x14"
        and scriptpubkey[23:] == b"\x88\xac"
    ):
        return base58.b58encode_check(bytes([params.p2pkh_version]) + scriptpubkey[3:23]).decode()

    if len(scriptpubkey) == 23 and scriptpubkey[:2] == b"\xa9\x14" and scriptpubkey[22] == 0x87:
        return base58.b58encode_check(bytes([params.p2sh_version]) + scriptpubkey[2:22]).decode()

    return None
