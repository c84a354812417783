"""
Bitcoin transaction signing utilities for P2WPKH and legacy P2PKH inputs.
"""

from __future__ import annotations

import struct

from coincurve import PrivateKey, PublicKey

from spvwallet.wallet.address import hash160, pubkey_to_p2pkh_script
from spvwallet.wallet.transaction import Transaction, TxInput, encode_var_bytes, hash256

SIGHASH_ALL = 1


class TransactionSigningError(Exception):
    pass


def compute_sighash_segwit(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """BIP143 signature hash for a witness v0 input."""
    if input_index >= len(tx.inputs):
        raise TransactionSigningError("Input index out of range")

    hash_prevouts = hash256(b"".join(inp.serialize_outpoint() for inp in tx.inputs))
    hash_sequence = hash256(b"".join(struct.pack("<I", inp.sequence) for inp in tx.inputs))
    hash_outputs = hash256(b"".join(out.serialize() for out in tx.outputs))

    target_input = tx.inputs[input_index]

    preimage = (
        struct.pack("<i", tx.version)
        + hash_prevouts
        + hash_sequence
        + target_input.serialize_outpoint()
        + encode_var_bytes(script_code)
        + struct.pack("<Q", value)
        + struct.pack("<I", target_input.sequence)
        + hash_outputs
        + struct.pack("<I", tx.locktime)
        + struct.pack("<I", sighash_type)
    )

    return hash256(preimage)


def create_p2wpkh_script_code(pubkey_bytes: bytes) -> bytes:
    """Create the scriptCode for P2WPKH signing (BIP 143).

    For P2WPKH, the scriptCode is the P2PKH script:
    OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
    """
    return b"\x76\xa9\x14" + hash160(pubkey_bytes) + b"\x88\xac"


def sign_p2wpkh_input(
    tx: Transaction,
    input_index: int,
    value: int,
    private_key: PrivateKey,
    sighash_type: int = SIGHASH_ALL,
) -> None:
    """Sign a P2WPKH input in place using coincurve.

    Args:
        tx: The transaction to sign
        input_index: Index of the input to sign
        value: The value of the input being spent (in satoshis)
        private_key: coincurve PrivateKey instance
        sighash_type: Sighash type (default SIGHASH_ALL)
    """
    pubkey_bytes = private_key.public_key.format(compressed=True)
    script_code = create_p2wpkh_script_code(pubkey_bytes)
    sighash = compute_sighash_segwit(tx, input_index, script_code, value, sighash_type)

    # sighash is already SHA256d; hasher=None skips hashing
    signature = private_key.sign(sighash, hasher=None)

    tx.inputs[input_index].script_sig = b""
    tx.inputs[input_index].witness = [signature + bytes([sighash_type]), pubkey_bytes]


def verify_p2wpkh_input(tx: Transaction, input_index: int, value: int) -> bool:
    """Check the witness signature of a P2WPKH input against its embedded pubkey."""
    witness = tx.inputs[input_index].witness
    if len(witness) != 2:
        return False
    signature, pubkey_bytes = witness
    sighash_type = signature[-1]
    script_code = create_p2wpkh_script_code(pubkey_bytes)
    sighash = compute_sighash_segwit(tx, input_index, script_code, value, sighash_type)
    try:
        return PublicKey(pubkey_bytes).verify(signature[:-1], sighash, hasher=None)
    except ValueError:
        return False


def compute_sighash_legacy(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """Pre-segwit signature hash: the tx with only this input's scriptSig set to script_code."""
    if input_index >= len(tx.inputs):
        raise TransactionSigningError("Input index out of range")

    inputs = [
        TxInput(
            txid=inp.txid,
            vout=inp.vout,
            script_sig=script_code if index == input_index else b"",
            sequence=inp.sequence,
        )
        for index, inp in enumerate(tx.inputs)
    ]
    stripped = Transaction(
        inputs=inputs, outputs=tx.outputs, version=tx.version, locktime=tx.locktime
    )
    return hash256(stripped.serialize(include_witness=False) + struct.pack("<I", sighash_type))


def _push(data: bytes) -> bytes:
    # Signatures and compressed pubkeys are always below OP_PUSHDATA1
    return bytes([len(data)]) + data


def sign_p2pkh_input(
    tx: Transaction,
    input_index: int,
    private_key: PrivateKey,
    sighash_type: int = SIGHASH_ALL,
) -> None:
    """Sign a legacy P2PKH input in place: scriptSig is <sig> <pubkey>."""
    pubkey_bytes = private_key.public_key.format(compressed=True)
    script_code = pubkey_to_p2pkh_script(pubkey_bytes)
    sighash = compute_sighash_legacy(tx, input_index, script_code, sighash_type)

    signature = private_key.sign(sighash, hasher=None)

    tx.inputs[input_index].script_sig = _push(signature + bytes([sighash_type])) + _push(
        pubkey_bytes
    )
    tx.inputs[input_index].witness = []


def verify_p2pkh_input(tx: Transaction, input_index: int) -> bool:
    """Check the scriptSig signature of a P2PKH input against its embedded pubkey."""
    script_sig = tx.inputs[input_index].script_sig
    if not script_sig:
        return False
    sig_len = script_sig[0]
    signature = script_sig[1 : 1 + sig_len]
    rest = script_sig[1 + sig_len :]
    if not signature or not rest or rest[0] != len(rest) - 1:
        return False
    pubkey_bytes = rest[1:]
    sighash_type = signature[-1]
    script_code = pubkey_to_p2pkh_script(pubkey_bytes)
    sighash = compute_sighash_legacy(tx, input_index, script_code, sighash_type)
    try:
        return PublicKey(pubkey_bytes).verify(signature[:-1], sighash, hasher=None)
    except ValueError:
        return False
