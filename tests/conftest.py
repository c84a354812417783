"""
Pytest configuration and fixtures for spvwallet tests.

FakeNode plays a regtest full node behind an in-memory MessageConnection so
the peer, sync and send paths run end to end without sockets.
"""

from __future__ import annotations

import asyncio
import struct
from collections.abc import Callable
from pathlib import Path

import pytest

from spvwallet.config import WalletSettings, get_settings
from spvwallet.constants import NODE_NETWORK, NODE_WITNESS
from spvwallet.models import REGTEST_PARAMS, NetworkType
from spvwallet.p2p.messages import (
    Block,
    BlockHeader,
    GetHeadersMessage,
    HeadersMessage,
    InventoryMessage,
    InvType,
    InvVector,
    PingMessage,
    PongMessage,
    RejectMessage,
    VersionMessage,
    compute_merkle_root,
)
from spvwallet.p2p.network import MessageConnection, PeerConnectionError
from spvwallet.wallet.mnemonic import mnemonic_to_seed
from spvwallet.wallet.transaction import Transaction, TxInput, TxOutput, deserialize_transaction

TEST_MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)

# P2WPKH script not owned by the test wallet
FOREIGN_SCRIPT = bytes([0x00, 0x14]) + bytes(range(20))

_CLOSED = ("", b"")


@pytest.fixture(scope="session")
def test_mnemonic() -> str:
    """Test mnemonic (BIP39 test vector)"""
    return TEST_MNEMONIC


@pytest.fixture(scope="session")
def test_seed() -> bytes:
    return mnemonic_to_seed(TEST_MNEMONIC)


@pytest.fixture
def regtest_settings(tmp_path: Path) -> WalletSettings:
    return get_settings(
        network=NetworkType.REGTEST,
        peer_host="127.0.0.1",
        data_dir=tmp_path,
        send_timeout=2.0,
        connect_timeout=1.0,
        handshake_timeout=1.0,
        shutdown_grace_period=1.0,
        reconnect_backoff_initial=0.01,
        reconnect_backoff_max=0.05,
        max_reconnect_attempts=3,
        lookahead=5,
    )


def make_funding_tx(script: bytes, value: int, tag: int = 0) -> Transaction:
    """A transaction paying `value` to `script` from an outpoint we do not own."""
    fake_prev = struct.pack(">I", tag).rjust(32, b"\x11").hex()
    return Transaction(
        inputs=[TxInput(txid=fake_prev, vout=0, script_sig=b"\x51")],
        outputs=[TxOutput(value=value, script=script)],
    )


class ChainBuilder:
    """Mines regtest blocks on top of the regtest genesis hash."""

    def __init__(self, start_time: int = 1_700_000_000):
        self.blocks: list[Block] = []
        self.start_time = start_time

    @property
    def tip_hash(self) -> str:
        return self.blocks[-1].hash if self.blocks else REGTEST_PARAMS.genesis_hash

    @property
    def height(self) -> int:
        return len(self.blocks)

    def hashes(self) -> list[str]:
        return [REGTEST_PARAMS.genesis_hash] + [b.hash for b in self.blocks]

    def mine(self, transactions: list[Transaction] | None = None) -> Block:
        height = self.height + 1
        coinbase = Transaction(
            inputs=[
                TxInput(
                    txid="00" * 32,
                    vout=0xFFFFFFFF,
                    script_sig=b"\x03" + height.to_bytes(3, "little"),
                    sequence=0xFFFFFFFF,
                )
            ],
            outputs=[TxOutput(value=50 * 100_000_000, script=FOREIGN_SCRIPT)],
        )
        txs = [coinbase, *(transactions or [])]
        header = BlockHeader(
            version=0x20000000,
            prev_block=self.tip_hash,
            merkle_root=compute_merkle_root([tx.txid for tx in txs]),
            timestamp=self.start_time + height * 600,
            bits=REGTEST_PARAMS.pow_limit_bits,
            nonce=0,
        )
        while not header.check_proof_of_work(REGTEST_PARAMS.pow_limit_bits):
            header.nonce += 1
        block = Block(header, txs)
        self.blocks.append(block)
        return block

    def mine_many(self, count: int) -> list[Block]:
        return [self.mine() for _ in range(count)]


class FakeConnection(MessageConnection):
    def __init__(self, node: FakeNode):
        self.node = node
        self.inbox: asyncio.Queue[tuple[str, bytes]] = asyncio.Queue()
        self.sent: list[tuple[str, bytes]] = []
        self._connected = True

    async def send_message(self, command: str, payload: bytes = b"") -> None:
        if not self._connected:
            raise PeerConnectionError("Connection closed")
        self.sent.append((command, payload))
        self.node.handle(self, command, payload)

    async def receive_message(self) -> tuple[str, bytes]:
        if not self._connected:
            raise PeerConnectionError("Connection closed")
        message = await self.inbox.get()
        if message is _CLOSED:
            raise PeerConnectionError("Connection closed by peer")
        return message

    def push(self, command: str, payload: bytes = b"") -> None:
        self.inbox.put_nowait((command, payload))

    async def close(self) -> None:
        if self._connected:
            self._connected = False
            self.inbox.put_nowait(_CLOSED)

    def is_connected(self) -> bool:
        return self._connected

    def commands_sent(self) -> list[str]:
        return [command for command, _ in self.sent]


class FakeNode:
    """
    Minimal regtest node.

    tx_policy decides what happens when the wallet announces a transaction:
    "fetch" requests it with getdata, "reject" answers with a reject message
    carrying reject_reason, "ignore" does nothing.
    """

    def __init__(self, chain: ChainBuilder | None = None):
        self.chain = chain or ChainBuilder()
        self.connections: list[FakeConnection] = []
        self.received_txs: list[Transaction] = []
        self.tx_policy = "fetch"
        self.reject_reason = "bad-txns-inputs-missingorspent"
        self.fail_connects = 0
        self.services = NODE_NETWORK | NODE_WITNESS
        self.version = 70016
        self.connect_attempts = 0

    async def connect(self, host: str, port: int, magic: bytes, timeout: float) -> FakeConnection:
        self.connect_attempts += 1
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise PeerConnectionError(f"Connection to {host}:{port} refused")
        connection = FakeConnection(self)
        self.connections.append(connection)
        return connection

    @property
    def open_connections(self) -> list[FakeConnection]:
        return [c for c in self.connections if c.is_connected()]

    def handle(self, conn: FakeConnection, command: str, payload: bytes) -> None:
        if command == "version":
            reply = VersionMessage(
                version=self.version,
                services=self.services,
                nonce=1,
                user_agent="/Satoshi:27.0.0/",
                start_height=self.chain.height,
            )
            conn.push("version", reply.to_payload())
            conn.push("verack")
        elif command == "ping":
            conn.push("pong", PongMessage(PingMessage.from_payload(payload).nonce).to_payload())
        elif command == "getheaders":
            self._send_headers(conn, GetHeadersMessage.from_payload(payload))
        elif command == "getdata":
            self._send_data(conn, InventoryMessage.from_payload(payload))
        elif command == "inv":
            self._on_inv(conn, InventoryMessage.from_payload(payload))
        elif command == "tx":
            self.received_txs.append(deserialize_transaction(payload))

    def _send_headers(self, conn: FakeConnection, message: GetHeadersMessage) -> None:
        hashes = self.chain.hashes()
        start = 0
        for locator_hash in message.locator:
            if locator_hash in hashes:
                start = hashes.index(locator_hash)
                break
        headers = [b.header for b in self.chain.blocks[start : start + 2000]]
        conn.push("headers", HeadersMessage(headers).to_payload())

    def _send_data(self, conn: FakeConnection, message: InventoryMessage) -> None:
        by_hash = {b.hash: b for b in self.chain.blocks}
        missing = []
        for item in message.items:
            block = by_hash.get(item.hash) if item.is_block else None
            if block is None:
                missing.append(item)
            else:
                conn.push("block", block.to_payload())
        if missing:
            conn.push("notfound", InventoryMessage(missing).to_payload())

    def _on_inv(self, conn: FakeConnection, message: InventoryMessage) -> None:
        tx_items = [item for item in message.items if item.is_tx]
        if not tx_items:
            return
        if self.tx_policy == "fetch":
            conn.push("getdata", InventoryMessage(tx_items).to_payload())
        elif self.tx_policy == "reject":
            for item in tx_items:
                reject = RejectMessage(
                    "tx", 0x10, self.reject_reason, bytes.fromhex(item.hash)[::-1]
                )
                conn.push("reject", reject.to_payload())

    def announce_tip(self) -> None:
        inv = InventoryMessage([InvVector(InvType.BLOCK, self.chain.tip_hash)])
        for conn in self.open_connections:
            conn.push("inv", inv.to_payload())

    def relay_tx(self, tx: Transaction) -> None:
        for conn in self.open_connections:
            conn.push("tx", tx.serialize())

    def drop_all(self) -> None:
        for conn in self.open_connections:
            conn._connected = False
            conn.inbox.put_nowait(_CLOSED)


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def chain() -> ChainBuilder:
    return ChainBuilder()


@pytest.fixture
def node(chain: ChainBuilder) -> FakeNode:
    return FakeNode(chain)
