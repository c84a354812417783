"""
A single remote peer: connection lifecycle, handshake and message dispatch.
"""

from __future__ import annotations

import asyncio
import secrets
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from loguru import logger

from spvwallet.constants import (
    MIN_PEER_PROTOCOL_VERSION,
    NODE_NETWORK,
    NODE_NETWORK_LIMITED,
    PROTOCOL_VERSION,
    USER_AGENT,
)
from spvwallet.models import NetworkParams, PeerInfo, PeerState
from spvwallet.p2p.messages import (
    Block,
    GetHeadersMessage,
    HeadersMessage,
    InventoryMessage,
    InvVector,
    PingMessage,
    PongMessage,
    ProtocolError,
    RejectMessage,
    VersionMessage,
)
from spvwallet.p2p.network import MessageConnection, PeerConnectionError
from spvwallet.wallet.transaction import Transaction, TransactionParseError, deserialize_transaction

ConnectionFactory = Callable[[str, int, bytes, float], Awaitable[MessageConnection]]

ALLOWED_TRANSITIONS: dict[PeerState, frozenset[PeerState]] = {
    PeerState.DISCONNECTED: frozenset({PeerState.CONNECTING}),
    PeerState.CONNECTING: frozenset({PeerState.HANDSHAKING, PeerState.DISCONNECTED}),
    PeerState.HANDSHAKING: frozenset({PeerState.READY, PeerState.DISCONNECTED}),
    PeerState.READY: frozenset({PeerState.SYNCING, PeerState.IDLE, PeerState.DISCONNECTED}),
    PeerState.SYNCING: frozenset({PeerState.IDLE, PeerState.DISCONNECTED}),
    PeerState.IDLE: frozenset({PeerState.SYNCING, PeerState.DISCONNECTED}),
}


class PeerStateError(Exception):
    pass


class PeerEventHandler(ABC):
    """Receives the messages a ready peer delivers."""

    @abstractmethod
    async def on_headers(self, peer: Peer, message: HeadersMessage) -> None:
        pass

    @abstractmethod
    async def on_inv(self, peer: Peer, message: InventoryMessage) -> None:
        pass

    @abstractmethod
    async def on_getdata(self, peer: Peer, message: InventoryMessage) -> None:
        pass

    @abstractmethod
    async def on_notfound(self, peer: Peer, message: InventoryMessage) -> None:
        pass

    @abstractmethod
    async def on_block(self, peer: Peer, block: Block) -> None:
        pass

    @abstractmethod
    async def on_tx(self, peer: Peer, tx: Transaction) -> None:
        pass

    @abstractmethod
    async def on_reject(self, peer: Peer, message: RejectMessage) -> None:
        pass


class Peer:
    def __init__(
        self,
        host: str,
        port: int,
        params: NetworkParams,
        handler: PeerEventHandler,
        connection_factory: ConnectionFactory,
        manual: bool = False,
        start_height: int = 0,
        connect_timeout: float = 10.0,
        handshake_timeout: float = 30.0,
    ):
        self.info = PeerInfo(host=host, port=port, manual=manual)
        self.params = params
        self.handler = handler
        self.connection_factory = connection_factory
        self.start_height = start_height
        self.connect_timeout = connect_timeout
        self.handshake_timeout = handshake_timeout
        self.connection: MessageConnection | None = None

    @property
    def peer_id(self) -> str:
        return self.info.location_string

    @property
    def state(self) -> PeerState:
        return self.info.state

    @property
    def is_ready(self) -> bool:
        return self.state in (PeerState.READY, PeerState.SYNCING, PeerState.IDLE)

    def transition(self, new_state: PeerState) -> None:
        """Move to `new_state`; a transition to the current state is a no-op."""
        current = self.info.state
        if new_state == current:
            return
        if new_state not in ALLOWED_TRANSITIONS[current]:
            raise PeerStateError(
                f"{self.peer_id}: illegal transition {current.value} -> {new_state.value}"
            )
        logger.debug(f"{self.peer_id}: {current.value} -> {new_state.value}")
        self.info.state = new_state

    async def connect(self) -> None:
        """
        Open the connection and complete the version handshake.

        On failure the peer is back in DISCONNECTED and the error propagates.
        """
        self.transition(PeerState.CONNECTING)
        try:
            self.connection = await self.connection_factory(
                self.info.host, self.info.port, self.params.magic, self.connect_timeout
            )
            self.transition(PeerState.HANDSHAKING)
            await asyncio.wait_for(self._handshake(), self.handshake_timeout)
        except TimeoutError as e:
            await self.close()
            raise PeerConnectionError(f"{self.peer_id}: handshake timed out") from e
        except (PeerConnectionError, ProtocolError):
            await self.close()
            raise

        self.transition(PeerState.READY)
        logger.info(
            f"Connected to {self.peer_id} ({self.info.user_agent}, "
            f"version {self.info.protocol_version}, height {self.info.start_height})"
        )

    async def _handshake(self) -> None:
        version = VersionMessage(
            version=PROTOCOL_VERSION,
            services=0,
            nonce=secrets.randbits(64),
            user_agent=USER_AGENT,
            start_height=self.start_height,
            relay=True,
            receiver_host=self.info.host,
            receiver_port=self.info.port,
        )
        await self.send("version", version.to_payload())

        got_version = False
        got_verack = False
        while not (got_version and got_verack):
            command, payload = await self._receive()
            if command == "version":
                remote = VersionMessage.from_payload(payload)
                self._check_version(remote)
                got_version = True
                await self.send("verack")
            elif command == "verack":
                got_verack = True
            elif command == "ping":
                await self._pong(payload)
            else:
                logger.trace(f"{self.peer_id}: ignoring '{command}' during handshake")

        # Ask for new blocks to be announced as headers
        await self.send("sendheaders")

    def _check_version(self, remote: VersionMessage) -> None:
        if remote.version < MIN_PEER_PROTOCOL_VERSION:
            raise PeerConnectionError(
                f"{self.peer_id}: protocol version {remote.version} below {MIN_PEER_PROTOCOL_VERSION}"
            )
        if not remote.services & (NODE_NETWORK | NODE_NETWORK_LIMITED):
            raise PeerConnectionError(f"{self.peer_id}: peer does not serve blocks")

        self.info.protocol_version = remote.version
        self.info.services = remote.services
        self.info.user_agent = remote.user_agent
        self.info.start_height = remote.start_height

    async def _receive(self) -> tuple[str, bytes]:
        if self.connection is None:
            raise PeerConnectionError(f"{self.peer_id}: not connected")
        command, payload = await self.connection.receive_message()
        self.info.last_seen = datetime.now(UTC)
        return command, payload

    async def _pong(self, ping_payload: bytes) -> None:
        nonce = PingMessage.from_payload(ping_payload).nonce
        await self.send("pong", PongMessage(nonce).to_payload())

    async def send(self, command: str, payload: bytes = b"") -> None:
        if self.connection is None or not self.connection.is_connected():
            raise PeerConnectionError(f"{self.peer_id}: not connected")
        await self.connection.send_message(command, payload)

    async def send_getheaders(self, locator: list[str]) -> None:
        await self.send("getheaders", GetHeadersMessage(locator).to_payload())

    async def send_getdata(self, items: list[InvVector]) -> None:
        await self.send("getdata", InventoryMessage(items).to_payload())

    async def send_inv(self, items: list[InvVector]) -> None:
        await self.send("inv", InventoryMessage(items).to_payload())

    async def send_tx(self, tx: Transaction) -> None:
        await self.send("tx", tx.serialize())

    async def run(self) -> None:
        """
        Read and dispatch messages until the connection fails.

        Raises:
            PeerConnectionError: connection lost
            ProtocolError: peer sent malformed data
        """
        while True:
            command, payload = await self._receive()
            await self._dispatch(command, payload)

    async def _dispatch(self, command: str, payload: bytes) -> None:
        if command == "ping":
            await self._pong(payload)
        elif command == "headers":
            await self.handler.on_headers(self, HeadersMessage.from_payload(payload))
        elif command == "inv":
            await self.handler.on_inv(self, InventoryMessage.from_payload(payload))
        elif command == "getdata":
            await self.handler.on_getdata(self, InventoryMessage.from_payload(payload))
        elif command == "notfound":
            await self.handler.on_notfound(self, InventoryMessage.from_payload(payload))
        elif command == "block":
            await self.handler.on_block(self, Block.from_payload(payload))
        elif command == "tx":
            try:
                tx = deserialize_transaction(payload)
            except TransactionParseError as e:
                raise ProtocolError(f"{self.peer_id}: malformed tx: {e}") from e
            await self.handler.on_tx(self, tx)
        elif command == "reject":
            await self.handler.on_reject(self, RejectMessage.from_payload(payload))
        else:
            logger.trace(f"{self.peer_id}: ignoring '{command}'")

    async def close(self) -> None:
        connection, self.connection = self.connection, None
        if connection is not None:
            await connection.close()
        if self.info.state != PeerState.DISCONNECTED:
            self.transition(PeerState.DISCONNECTED)
