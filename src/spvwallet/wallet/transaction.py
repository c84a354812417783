"""
Bitcoin transaction structures and (de)serialization.

Txids are kept in display (RPC, big-endian) hex; the wire format stores them
byte-reversed.
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field
from io import BytesIO
from typing import BinaryIO

DEFAULT_SEQUENCE = 0xFFFFFFFD  # opt-in RBF, locktime enabled


class TransactionParseError(ValueError):
    pass


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def encode_varint(value: int) -> bytes:
    """Encode integer as Bitcoin varint."""
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", value)
    if value <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", value)
    return b"\xff" + struct.pack("<Q", value)


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = stream.read(size)
    if len(data) != size:
        raise TransactionParseError(f"Unexpected end of data (wanted {size}, got {len(data)})")
    return data


def read_varint(stream: BinaryIO) -> int:
    first = _read_exact(stream, 1)[0]
    if first < 0xFD:
        return first
    if first == 0xFD:
        return struct.unpack("<H", _read_exact(stream, 2))[0]
    if first == 0xFE:
        return struct.unpack("<I", _read_exact(stream, 4))[0]
    return struct.unpack("<Q", _read_exact(stream, 8))[0]


def read_var_bytes(stream: BinaryIO) -> bytes:
    return _read_exact(stream, read_varint(stream))


def encode_var_bytes(data: bytes) -> bytes:
    return encode_varint(len(data)) + data


@dataclass
class TxInput:
    txid: str
    vout: int
    script_sig: bytes = b""
    sequence: int = DEFAULT_SEQUENCE
    witness: list[bytes] = field(default_factory=list)

    @property
    def outpoint(self) -> tuple[str, int]:
        return self.txid, self.vout

    def serialize_outpoint(self) -> bytes:
        # txid is in RPC format (big-endian), reversed for raw tx
        return bytes.fromhex(self.txid)[::-1] + struct.pack("<I", self.vout)

    def is_coinbase(self) -> bool:
        return self.txid == "00" * 32 and self.vout == 0xFFFFFFFF


@dataclass
class TxOutput:
    value: int
    script: bytes

    def serialize(self) -> bytes:
        return struct.pack("<Q", self.value) + encode_var_bytes(self.script)


@dataclass
class Transaction:
    inputs: list[TxInput] = field(default_factory=list)
    outputs: list[TxOutput] = field(default_factory=list)
    version: int = 2
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        segwit = include_witness and self.has_witness

        parts = [struct.pack("<i", self.version)]
        if segwit:
            parts.append(b"\x00\x01")

        parts.append(encode_varint(len(self.inputs)))
        for inp in self.inputs:
            parts.append(inp.serialize_outpoint())
            parts.append(encode_var_bytes(inp.script_sig))
            parts.append(struct.pack("<I", inp.sequence))

        parts.append(encode_varint(len(self.outputs)))
        for out in self.outputs:
            parts.append(out.serialize())

        if segwit:
            for inp in self.inputs:
                parts.append(encode_varint(len(inp.witness)))
                for item in inp.witness:
                    parts.append(encode_var_bytes(item))

        parts.append(struct.pack("<I", self.locktime))
        return b"".join(parts)

    @property
    def txid(self) -> str:
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    @property
    def wtxid(self) -> str:
        return hash256(self.serialize())[::-1].hex()

    @property
    def vsize(self) -> int:
        base_size = len(self.serialize(include_witness=False))
        total_size = len(self.serialize())
        weight = base_size * 3 + total_size
        return (weight + 3) // 4

    def is_coinbase(self) -> bool:
        return len(self.inputs) == 1 and self.inputs[0].is_coinbase()

    def hex(self) -> str:
        return self.serialize().hex()


def read_transaction(stream: BinaryIO) -> Transaction:
    """Read one transaction from a stream (used for blocks and tx messages)."""
    version = struct.unpack("<i", _read_exact(stream, 4))[0]

    input_count = read_varint(stream)
    segwit = False
    if input_count == 0:
        flag = _read_exact(stream, 1)[0]
        if flag != 0x01:
            raise TransactionParseError(f"Invalid segwit flag: {flag}")
        segwit = True
        input_count = read_varint(stream)

    inputs: list[TxInput] = []
    for _ in range(input_count):
        txid = _read_exact(stream, 32)[::-1].hex()
        vout = struct.unpack("<I", _read_exact(stream, 4))[0]
        script_sig = read_var_bytes(stream)
        sequence = struct.unpack("<I", _read_exact(stream, 4))[0]
        inputs.append(TxInput(txid, vout, script_sig, sequence))

    outputs: list[TxOutput] = []
    for _ in range(read_varint(stream)):
        value = struct.unpack("<Q", _read_exact(stream, 8))[0]
        outputs.append(TxOutput(value, read_var_bytes(stream)))

    if segwit:
        for inp in inputs:
            inp.witness = [read_var_bytes(stream) for _ in range(read_varint(stream))]

    locktime = struct.unpack("<I", _read_exact(stream, 4))[0]
    return Transaction(inputs, outputs, version, locktime)


def deserialize_transaction(tx_bytes: bytes) -> Transaction:
    stream = BytesIO(tx_bytes)
    tx = read_transaction(stream)
    if stream.read(1):
        raise TransactionParseError("Trailing data after transaction")
    return tx
