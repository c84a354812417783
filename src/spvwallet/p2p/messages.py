"""
Bitcoin P2P wire messages.

Every message is framed as:
    magic (4) | command (12, NUL padded) | payload length (4, LE) | checksum (4) | payload

where checksum is the first four bytes of SHA256d(payload). Hashes are held
as display (big-endian) hex strings and reversed on the wire.
"""

from __future__ import annotations

import struct
import time
from dataclasses import dataclass, field
from enum import IntEnum
from io import BytesIO

from spvwallet.constants import (
    MAX_HEADERS_PER_MESSAGE,
    MAX_INV_PER_MESSAGE,
    MAX_MESSAGE_PAYLOAD,
    PROTOCOL_VERSION,
)
from spvwallet.wallet.transaction import (
    Transaction,
    TransactionParseError,
    encode_var_bytes,
    encode_varint,
    hash256,
    read_transaction,
    read_var_bytes,
    read_varint,
)

HEADER_SIZE = 24
BLOCK_HEADER_SIZE = 80
ZERO_HASH = "00" * 32


class ProtocolError(Exception):
    pass


class InvType(IntEnum):
    ERROR = 0
    TX = 1
    BLOCK = 2
    FILTERED_BLOCK = 3
    WITNESS_TX = 0x40000001
    WITNESS_BLOCK = 0x40000002


def checksum(payload: bytes) -> bytes:
    return hash256(payload)[:4]


def encode_message(magic: bytes, command: str, payload: bytes = b"") -> bytes:
    encoded_command = command.encode("ascii")
    if len(encoded_command) > 12:
        raise ProtocolError(f"Command too long: {command}")
    return (
        magic
        + encoded_command.ljust(12, b"\x00")
        + struct.pack("<I", len(payload))
        + checksum(payload)
        + payload
    )


@dataclass
class MessageHeader:
    magic: bytes
    command: str
    length: int
    checksum: bytes

    @classmethod
    def parse(cls, data: bytes, expected_magic: bytes) -> MessageHeader:
        if len(data) != HEADER_SIZE:
            raise ProtocolError(f"Header must be {HEADER_SIZE} bytes, got {len(data)}")

        magic = data[:4]
        if magic != expected_magic:
            raise ProtocolError(f"Wrong network magic {magic.hex()}")

        raw_command = data[4:16]
        command_bytes = raw_command.rstrip(b"\x00")
        if b"\x00" in command_bytes:
            raise ProtocolError("Malformed command field")
        try:
            command = command_bytes.decode("ascii")
        except UnicodeDecodeError as e:
            raise ProtocolError("Non-ascii command") from e

        length = struct.unpack("<I", data[16:20])[0]
        if length > MAX_MESSAGE_PAYLOAD:
            raise ProtocolError(f"Payload too large: {length} bytes")

        return cls(magic, command, length, data[20:24])

    def verify(self, payload: bytes) -> None:
        if checksum(payload) != self.checksum:
            raise ProtocolError(f"Checksum mismatch for '{self.command}'")


def _hash_to_wire(display_hex: str) -> bytes:
    return bytes.fromhex(display_hex)[::-1]


def _hash_from_wire(raw: bytes) -> str:
    return raw[::-1].hex()


def _read(stream: BytesIO, size: int) -> bytes:
    data = stream.read(size)
    if len(data) != size:
        raise ProtocolError(f"Truncated payload (wanted {size}, got {len(data)})")
    return data


def _net_address(services: int, host: str = "::", port: int = 0) -> bytes:
    # IPv4-mapped for dotted quads, unspecified otherwise
    ip = bytes(16)
    if host.count(".") == 3 and all(p.isdigit() for p in host.split(".")):
        ip = bytes(10) + b"\xff\xff" + bytes(int(p) for p in host.split("."))
    return struct.pack("<Q", services) + ip + struct.pack(">H", port)


@dataclass
class VersionMessage:
    version: int = PROTOCOL_VERSION
    services: int = 0
    timestamp: int = field(default_factory=lambda: int(time.time()))
    nonce: int = 0
    user_agent: str = ""
    start_height: int = 0
    relay: bool = True
    receiver_services: int = 0
    receiver_host: str = "::"
    receiver_port: int = 0

    command = "version"

    def to_payload(self) -> bytes:
        return (
            struct.pack("<iQq", self.version, self.services, self.timestamp)
            + _net_address(self.receiver_services, self.receiver_host, self.receiver_port)
            + _net_address(self.services)
            + struct.pack("<Q", self.nonce)
            + encode_var_bytes(self.user_agent.encode("utf-8"))
            + struct.pack("<i", self.start_height)
            + (b"\x01" if self.relay else b"\x00")
        )

    @classmethod
    def from_payload(cls, payload: bytes) -> VersionMessage:
        stream = BytesIO(payload)
        try:
            version, services, timestamp = struct.unpack("<iQq", _read(stream, 20))
            _read(stream, 26)  # addr_recv
            _read(stream, 26)  # addr_from
            nonce = struct.unpack("<Q", _read(stream, 8))[0]
            user_agent = read_var_bytes(stream).decode("utf-8", errors="replace")
            start_height = struct.unpack("<i", _read(stream, 4))[0]
        except (struct.error, TransactionParseError) as e:
            raise ProtocolError(f"Malformed version message: {e}") from e
        relay_byte = stream.read(1)
        return cls(
            version=version,
            services=services,
            timestamp=timestamp,
            nonce=nonce,
            user_agent=user_agent,
            start_height=start_height,
            relay=relay_byte != b"\x00",
        )


@dataclass
class PingMessage:
    nonce: int

    command = "ping"

    def to_payload(self) -> bytes:
        return struct.pack("<Q", self.nonce)

    @classmethod
    def from_payload(cls, payload: bytes) -> PingMessage:
        # Pre-BIP31 pings have no nonce
        if len(payload) < 8:
            return cls(0)
        return cls(struct.unpack("<Q", payload[:8])[0])


@dataclass
class PongMessage(PingMessage):
    command = "pong"


@dataclass(frozen=True)
class InvVector:
    inv_type: int
    hash: str

    def to_bytes(self) -> bytes:
        return struct.pack("<I", self.inv_type) + _hash_to_wire(self.hash)

    @property
    def is_tx(self) -> bool:
        return self.inv_type in (InvType.TX, InvType.WITNESS_TX)

    @property
    def is_block(self) -> bool:
        return self.inv_type in (InvType.BLOCK, InvType.WITNESS_BLOCK)


@dataclass
class InventoryMessage:
    """Payload shared by inv, getdata and notfound."""

    items: list[InvVector] = field(default_factory=list)

    def to_payload(self) -> bytes:
        if len(self.items) > MAX_INV_PER_MESSAGE:
            raise ProtocolError(f"Too many inventory items: {len(self.items)}")
        return encode_varint(len(self.items)) + b"".join(item.to_bytes() for item in self.items)

    @classmethod
    def from_payload(cls, payload: bytes) -> InventoryMessage:
        stream = BytesIO(payload)
        try:
            count = read_varint(stream)
        except TransactionParseError as e:
            raise ProtocolError(f"Malformed inventory: {e}") from e
        if count > MAX_INV_PER_MESSAGE:
            raise ProtocolError(f"Too many inventory items: {count}")
        items = []
        for _ in range(count):
            inv_type = struct.unpack("<I", _read(stream, 4))[0]
            items.append(InvVector(inv_type, _hash_from_wire(_read(stream, 32))))
        return cls(items)


@dataclass
class GetHeadersMessage:
    locator: list[str]
    stop_hash: str = ZERO_HASH
    version: int = PROTOCOL_VERSION

    command = "getheaders"

    def to_payload(self) -> bytes:
        return (
            struct.pack("<I", self.version)
            + encode_varint(len(self.locator))
            + b"".join(_hash_to_wire(h) for h in self.locator)
            + _hash_to_wire(self.stop_hash)
        )

    @classmethod
    def from_payload(cls, payload: bytes) -> GetHeadersMessage:
        stream = BytesIO(payload)
        try:
            version = struct.unpack("<I", _read(stream, 4))[0]
            count = read_varint(stream)
        except TransactionParseError as e:
            raise ProtocolError(f"Malformed getheaders: {e}") from e
        locator = [_hash_from_wire(_read(stream, 32)) for _ in range(count)]
        stop_hash = _hash_from_wire(_read(stream, 32))
        return cls(locator, stop_hash, version)


def bits_to_target(bits: int) -> int:
    """Expand the compact difficulty representation."""
    exponent = bits >> 24
    mantissa = bits & 0x007FFFFF
    if bits & 0x00800000:
        return 0  # negative targets are invalid
    if exponent <= 3:
        return mantissa >> (8 * (3 - exponent))
    return mantissa << (8 * (exponent - 3))


@dataclass
class BlockHeader:
    version: int
    prev_block: str
    merkle_root: str
    timestamp: int
    bits: int
    nonce: int

    def serialize(self) -> bytes:
        return (
            struct.pack("<i", self.version)
            + _hash_to_wire(self.prev_block)
            + _hash_to_wire(self.merkle_root)
            + struct.pack("<III", self.timestamp, self.bits, self.nonce)
        )

    @property
    def hash(self) -> str:
        return _hash_from_wire(hash256(self.serialize()))

    @property
    def target(self) -> int:
        return bits_to_target(self.bits)

    def check_proof_of_work(self, pow_limit_bits: int) -> bool:
        """The header hash must meet its own target, which may not exceed the network limit."""
        target = self.target
        if target <= 0 or target > bits_to_target(pow_limit_bits):
            return False
        return int(self.hash, 16) <= target

    @classmethod
    def read(cls, stream: BytesIO) -> BlockHeader:
        raw = _read(stream, BLOCK_HEADER_SIZE)
        version = struct.unpack("<i", raw[:4])[0]
        timestamp, bits, nonce = struct.unpack("<III", raw[68:80])
        return cls(
            version=version,
            prev_block=_hash_from_wire(raw[4:36]),
            merkle_root=_hash_from_wire(raw[36:68]),
            timestamp=timestamp,
            bits=bits,
            nonce=nonce,
        )


@dataclass
class HeadersMessage:
    headers: list[BlockHeader] = field(default_factory=list)

    command = "headers"

    def to_payload(self) -> bytes:
        # Each header is followed by a transaction count, always zero here
        return encode_varint(len(self.headers)) + b"".join(
            h.serialize() + b"\x00" for h in self.headers
        )

    @classmethod
    def from_payload(cls, payload: bytes) -> HeadersMessage:
        stream = BytesIO(payload)
        try:
            count = read_varint(stream)
            if count > MAX_HEADERS_PER_MESSAGE:
                raise ProtocolError(f"Too many headers: {count}")
            headers = []
            for _ in range(count):
                headers.append(BlockHeader.read(stream))
                read_varint(stream)
        except TransactionParseError as e:
            raise ProtocolError(f"Malformed headers message: {e}") from e
        return cls(headers)


def compute_merkle_root(txids: list[str]) -> str:
    if not txids:
        return ZERO_HASH
    level = [_hash_to_wire(txid) for txid in txids]
    while len(level) > 1:
        if len(level) % 2:
            level.append(level[-1])
        level = [hash256(level[i] + level[i + 1]) for i in range(0, len(level), 2)]
    return _hash_from_wire(level[0])


@dataclass
class Block:
    header: BlockHeader
    transactions: list[Transaction] = field(default_factory=list)

    command = "block"

    @property
    def hash(self) -> str:
        return self.header.hash

    def check_merkle_root(self) -> bool:
        return compute_merkle_root([tx.txid for tx in self.transactions]) == self.header.merkle_root

    def to_payload(self) -> bytes:
        return (
            self.header.serialize()
            + encode_varint(len(self.transactions))
            + b"".join(tx.serialize() for tx in self.transactions)
        )

    @classmethod
    def from_payload(cls, payload: bytes) -> Block:
        stream = BytesIO(payload)
        try:
            header = BlockHeader.read(stream)
            count = read_varint(stream)
            transactions = [read_transaction(stream) for _ in range(count)]
        except TransactionParseError as e:
            raise ProtocolError(f"Malformed block: {e}") from e
        return cls(header, transactions)


@dataclass
class RejectMessage:
    message: str
    ccode: int
    reason: str
    data: bytes = b""

    command = "reject"

    @property
    def rejected_hash(self) -> str | None:
        if len(self.data) == 32:
            return _hash_from_wire(self.data)
        return None

    def to_payload(self) -> bytes:
        return (
            encode_var_bytes(self.message.encode("ascii"))
            + bytes([self.ccode])
            + encode_var_bytes(self.reason.encode("utf-8"))
            + self.data
        )

    @classmethod
    def from_payload(cls, payload: bytes) -> RejectMessage:
        stream = BytesIO(payload)
        try:
            message = read_var_bytes(stream).decode("ascii", errors="replace")
            ccode = _read(stream, 1)[0]
            reason = read_var_bytes(stream).decode("utf-8", errors="replace")
        except TransactionParseError as e:
            raise ProtocolError(f"Malformed reject: {e}") from e
        return cls(message, ccode, reason, stream.read())
