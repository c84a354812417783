"""
Peer synchronization engine.

Keeps one supervisor task per peer target. A single download peer drives
headers-first sync: headers are validated into the HeaderChain, then blocks
above the wallet's processed tip are fetched (bounded in-flight window),
buffered and handed to the wallet store strictly in height order.

The engine is also the wallet's broadcaster: transactions are announced by
inv and considered accepted once a peer fetches them with getdata or relays
them back.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from loguru import logger
from pydantic import BaseModel

from spvwallet.config import WalletSettings
from spvwallet.constants import MAX_BLOCKS_IN_FLIGHT, MAX_HEADER_VIOLATIONS, MAX_HEADERS_PER_MESSAGE
from spvwallet.events import (
    BlockReceived,
    EventBus,
    PeerConnected,
    PeerDisconnected,
    PeersExhausted,
    ShutdownTimedOut,
    SyncComplete,
)
from spvwallet.models import NetworkParams, PeerState
from spvwallet.p2p.chain import HeaderChain, InvalidProofOfWorkError, NonLinkingHeaderError
from spvwallet.p2p.messages import (
    Block,
    HeadersMessage,
    InventoryMessage,
    InvType,
    InvVector,
    ProtocolError,
    RejectMessage,
)
from spvwallet.p2p.network import PeerConnectionError, discover_peers, open_connection
from spvwallet.p2p.peer import ConnectionFactory, Peer, PeerEventHandler, PeerStateError
from spvwallet.wallet.sender import Broadcaster, BroadcastError, BroadcastRejected, NoPeersError
from spvwallet.wallet.store import OutOfOrderBlockError, WalletStateStore
from spvwallet.wallet.transaction import Transaction

PeerDiscovery = Callable[[NetworkParams], Awaitable[list[tuple[str, int]]]]

PEER_ERRORS = (PeerConnectionError, ProtocolError, PeerStateError)


class SyncProgress(BaseModel):
    tip_height: int | None
    best_height: int
    blocks_remaining: int
    connected_peers: int
    synced: bool


class SyncEngine(PeerEventHandler, Broadcaster):
    def __init__(
        self,
        settings: WalletSettings,
        store: WalletStateStore,
        events: EventBus,
        connection_factory: ConnectionFactory = open_connection,
        discovery: PeerDiscovery = discover_peers,
    ):
        self.settings = settings
        self.params = settings.params
        self.store = store
        self.events = events
        self.connection_factory = connection_factory
        self.discovery = discovery

        self.chain = self._initial_chain()
        self.peers: dict[str, Peer] = {}
        self._download_peer: Peer | None = None
        self._targets: list[tuple[str, int]] = []
        self._exhausted: set[tuple[str, int]] = set()

        self._next_height = self._scan_start()
        self._requested_blocks: dict[str, int] = {}
        self._buffer: dict[int, Block] = {}
        self._requested_txs: set[str] = set()
        self._awaiting_headers = False
        self._header_violations: dict[str, int] = {}

        self._pending_broadcasts: dict[str, tuple[Transaction, asyncio.Future[str]]] = {}

        self._running = False
        self._stopping = asyncio.Event()
        self._synced = False
        self._synced_event = asyncio.Event()
        self._apply_lock = asyncio.Lock()
        self._supervisors: list[asyncio.Task[None]] = []
        self._background: set[asyncio.Task[None]] = set()

    def _initial_chain(self) -> HeaderChain:
        if self.store.tip_height is not None and self.store.tip_hash is not None:
            base_height, base_hash = self.store.tip_height, self.store.tip_hash
        else:
            base_height, base_hash = 0, self.params.genesis_hash
        return HeaderChain(base_height, base_hash, self.params.pow_limit_bits)

    def _scan_start(self) -> int:
        if self.store.tip_height is not None:
            return self.store.tip_height + 1
        return max(self.settings.scan_from_height, self.chain.base_height + 1)

    # Lifecycle

    @property
    def running(self) -> bool:
        return self._running

    @property
    def synced(self) -> bool:
        return self._synced

    def connected_peers(self) -> list[Peer]:
        return [p for p in self.peers.values() if p.is_ready]

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stopping.clear()

        manual = self.settings.manual_peer
        if manual is not None:
            self._targets = [manual]
        else:
            try:
                self._targets = (await self.discovery(self.params))[: self.settings.max_peers]
            except PeerConnectionError as e:
                logger.error(f"Peer discovery failed: {e}")
                self._targets = []

        if not self._targets:
            logger.error("No peers to connect to")
            self.events.publish(PeersExhausted(attempted=0))
            return

        logger.info(
            f"Starting sync on {self.params.network.value} from height {self._next_height} "
            f"with {len(self._targets)} peer target(s)"
        )
        for host, port in self._targets:
            task = asyncio.create_task(self._supervise(host, port, manual is not None))
            self._supervisors.append(task)

    async def stop(self, grace_period: float | None = None) -> bool:
        """
        Stop syncing and close every connection.

        Returns:
            True when all supervisors finished within the grace period, False
            if some had to be cancelled (ShutdownTimedOut is published).
        """
        grace = self.settings.shutdown_grace_period if grace_period is None else grace_period
        self._running = False
        self._stopping.set()

        for peer in list(self.peers.values()):
            await peer.close()

        for task in list(self._background):
            task.cancel()

        clean = True
        supervisors, self._supervisors = self._supervisors, []
        if supervisors:
            _done, pending = await asyncio.wait(supervisors, timeout=grace)
            if pending:
                clean = False
                logger.warning(
                    f"{len(pending)} peer task(s) still running after {grace}s, cancelling"
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                self.events.publish(ShutdownTimedOut(pending_tasks=len(pending), grace_period=grace))

        self._fail_pending_broadcasts(NoPeersError("Sync engine stopped"))
        logger.info("Sync engine stopped" + ("" if clean else " (forced)"))
        return clean

    async def wait_until_synced(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._synced_event.wait(), timeout)
        except TimeoutError:
            return False
        return True

    def progress(self) -> SyncProgress:
        peers_best = max((p.info.start_height for p in self.connected_peers()), default=0)
        best_height = max(self.chain.tip_height, peers_best)
        processed = self._next_height - 1
        return SyncProgress(
            tip_height=self.store.tip_height,
            best_height=best_height,
            blocks_remaining=max(best_height - processed, 0),
            connected_peers=len(self.connected_peers()),
            synced=self._synced,
        )

    # Connection supervision

    async def _sleep(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), delay)
        except TimeoutError:
            pass

    async def _supervise(self, host: str, port: int, manual: bool) -> None:
        target = (host, port)
        failures = 0
        delay = self.settings.reconnect_backoff_initial

        while self._running:
            peer = Peer(
                host,
                port,
                self.params,
                self,
                self.connection_factory,
                manual=manual,
                start_height=self.chain.tip_height,
                connect_timeout=self.settings.connect_timeout,
                handshake_timeout=self.settings.handshake_timeout,
            )
            self.peers[peer.peer_id] = peer

            try:
                await peer.connect()
            except PEER_ERRORS as e:
                await self._forget_peer(peer)
                if not self._running:
                    break
                failures += 1
                logger.warning(
                    f"Connection to {peer.peer_id} failed ({failures}/"
                    f"{self.settings.max_reconnect_attempts}): {e}"
                )
                if failures >= self.settings.max_reconnect_attempts:
                    break
                await self._sleep(delay)
                delay = min(delay * 2, self.settings.reconnect_backoff_max)
                continue

            failures = 0
            delay = self.settings.reconnect_backoff_initial
            self.events.publish(
                PeerConnected(peer_id=peer.peer_id, peer_count=len(self.connected_peers()))
            )

            try:
                await self._on_peer_ready(peer)
                await peer.run()
            except PEER_ERRORS as e:
                if self._running:
                    logger.warning(f"Lost peer {peer.peer_id}: {e}")
            except Exception:
                logger.exception(f"Unexpected error handling peer {peer.peer_id}")
            finally:
                await self._drop_peer(peer)

            if self._running:
                await self._sleep(delay)

        if self._running:
            self._exhausted.add(target)
            if self._exhausted.issuperset(self._targets):
                logger.error(f"All {len(self._targets)} peer target(s) exhausted, giving up")
                self.events.publish(PeersExhausted(attempted=len(self._targets)))
                self._fail_pending_broadcasts(NoPeersError("No peers available"))

    async def _forget_peer(self, peer: Peer) -> None:
        await peer.close()
        if self.peers.get(peer.peer_id) is peer:
            del self.peers[peer.peer_id]

    async def _drop_peer(self, peer: Peer) -> None:
        await self._forget_peer(peer)
        self._header_violations.pop(peer.peer_id, None)
        self.events.publish(
            PeerDisconnected(peer_id=peer.peer_id, peer_count=len(self.connected_peers()))
        )

        if peer is self._download_peer:
            self._download_peer = None
            # In-flight blocks were requested from this peer only
            self._requested_blocks.clear()
            if self._running:
                replacement = next(iter(self.connected_peers()), None)
                if replacement is not None:
                    try:
                        await self._start_sync(replacement)
                    except PEER_ERRORS as e:
                        logger.warning(f"Could not hand sync to {replacement.peer_id}: {e}")

    async def _on_peer_ready(self, peer: Peer) -> None:
        if self._pending_broadcasts:
            await peer.send_inv([InvVector(InvType.TX, txid) for txid in self._pending_broadcasts])

        if self._download_peer is None or not self._download_peer.is_ready:
            await self._start_sync(peer)
        else:
            peer.transition(PeerState.IDLE)

    async def _start_sync(self, peer: Peer) -> None:
        self._download_peer = peer
        peer.transition(PeerState.SYNCING)
        logger.info(f"Syncing headers from {peer.peer_id} (local tip {self.chain.tip_height})")
        await self._request_headers(peer)
        await self._request_blocks()

    async def _request_headers(self, peer: Peer) -> None:
        self._awaiting_headers = True
        await peer.send_getheaders(self.chain.locator())

    # Headers and blocks

    async def on_headers(self, peer: Peer, message: HeadersMessage) -> None:
        is_download_peer = peer is self._download_peer
        try:
            added = self.chain.add_headers(message.headers)
        except (NonLinkingHeaderError, InvalidProofOfWorkError) as e:
            if not is_download_peer:
                logger.debug(f"Ignoring unusable headers from {peer.peer_id}: {e}")
                return
            violations = self._header_violations.get(peer.peer_id, 0) + 1
            self._header_violations[peer.peer_id] = violations
            logger.warning(f"Bad headers from {peer.peer_id} ({violations}): {e}")
            if violations >= MAX_HEADER_VIOLATIONS:
                raise ProtocolError(f"Too many invalid headers from {peer.peer_id}") from e
            await self._request_headers(peer)
            return

        self._header_violations.pop(peer.peer_id, None)

        if len(message.headers) >= MAX_HEADERS_PER_MESSAGE:
            await self._request_headers(peer)
        else:
            self._awaiting_headers = False

        if added:
            self._mark_syncing()
            await self._request_blocks()
        await self._check_caught_up()

    def _mark_syncing(self) -> None:
        if self._next_height > self.chain.tip_height:
            return
        if self._synced:
            logger.info(f"New blocks up to height {self.chain.tip_height}, resuming sync")
        self._synced = False
        self._synced_event.clear()
        peer = self._download_peer
        if peer is not None and peer.state == PeerState.IDLE:
            peer.transition(PeerState.SYNCING)

    async def _request_blocks(self) -> None:
        peer = self._download_peer
        if peer is None or not peer.is_ready:
            return

        items: list[InvVector] = []
        height = self._next_height
        while (
            len(self._requested_blocks) + len(items) < MAX_BLOCKS_IN_FLIGHT
            and height <= self.chain.tip_height
        ):
            block_hash = self.chain.hash_at(height)
            if (
                block_hash is not None
                and height not in self._buffer
                and block_hash not in self._requested_blocks
            ):
                items.append(InvVector(InvType.BLOCK, block_hash))
            height += 1

        if not items:
            return
        for item in items:
            self._requested_blocks[item.hash] = self.chain.height_of(item.hash) or 0
        logger.debug(f"Requesting {len(items)} block(s) from {peer.peer_id}")
        await peer.send_getdata(items)

    async def on_block(self, peer: Peer, block: Block) -> None:
        block_hash = block.hash
        height = self.chain.height_of(block_hash)
        self._requested_blocks.pop(block_hash, None)

        if height is None:
            logger.debug(f"Ignoring block {block_hash} not on the header chain")
            return
        if height < self._next_height or height in self._buffer:
            logger.debug(f"Ignoring duplicate block {block_hash} at height {height}")
            return
        if not block.check_merkle_root():
            logger.warning(f"Block {block_hash} from {peer.peer_id} has a bad merkle root")
            await self._request_blocks()
            return

        self._buffer[height] = block
        await self._apply_buffered()
        await self._request_blocks()
        await self._check_caught_up()

    async def _apply_buffered(self) -> None:
        async with self._apply_lock:
            while self._next_height in self._buffer:
                height = self._next_height
                block = self._buffer.pop(height)
                prev_hash = self.chain.hash_at(height - 1) or block.header.prev_block
                timestamp = datetime.fromtimestamp(block.header.timestamp, UTC)
                try:
                    await self.store.apply_block(
                        block.hash, height, prev_hash, block.transactions, timestamp
                    )
                except OutOfOrderBlockError as e:
                    logger.warning(f"Store rejected block {block.hash}: {e}")
                    store_tip = self.store.tip_height
                    self._buffer.clear()
                    self._requested_blocks.clear()
                    if store_tip is not None:
                        self._next_height = store_tip + 1
                    break

                self._next_height = height + 1
                self._confirm_broadcasts(block)
                self.events.publish(
                    BlockReceived(
                        block_hash=block.hash,
                        height=height,
                        blocks_remaining=max(self.chain.tip_height - height, 0),
                    )
                )

    async def _check_caught_up(self) -> None:
        if self._awaiting_headers:
            return
        if self._next_height <= self.chain.tip_height or self._requested_blocks or self._buffer:
            return

        peer = self._download_peer
        if peer is not None and peer.state == PeerState.SYNCING:
            peer.transition(PeerState.IDLE)
        if self._synced:
            return

        self._synced = True
        self._synced_event.set()
        logger.info(f"Sync complete at height {self.chain.tip_height}")
        self.events.publish(SyncComplete(height=self.chain.tip_height))

    # Inventory and transactions

    async def on_inv(self, peer: Peer, message: InventoryMessage) -> None:
        wanted: list[InvVector] = []
        unknown_block = False
        for item in message.items:
            if item.is_block:
                if item.hash not in self.chain:
                    unknown_block = True
            elif item.is_tx:
                if item.hash in self._pending_broadcasts:
                    self._acknowledge(item.hash, f"relayed back by {peer.peer_id}")
                elif (
                    item.hash not in self._requested_txs
                    and not self.store.has_transaction(item.hash)
                ):
                    self._requested_txs.add(item.hash)
                    wanted.append(InvVector(InvType.TX, item.hash))

        if unknown_block:
            source = self._download_peer if self._download_peer is not None else peer
            await self._request_headers(source)
        if wanted:
            await peer.send_getdata(wanted)

    async def on_tx(self, peer: Peer, tx: Transaction) -> None:
        txid = tx.txid
        self._requested_txs.discard(txid)
        if txid in self._pending_broadcasts:
            self._acknowledge(txid, f"relayed back by {peer.peer_id}")
        if self.store.is_relevant(tx):
            await self.store.apply_transaction(tx)

    async def on_notfound(self, peer: Peer, message: InventoryMessage) -> None:
        retry_blocks = False
        for item in message.items:
            if item.is_block and self._requested_blocks.pop(item.hash, None) is not None:
                retry_blocks = True
            elif item.is_tx:
                self._requested_txs.discard(item.hash)
        if retry_blocks:
            logger.warning(f"{peer.peer_id} does not have requested blocks")
            await self._request_blocks()

    async def on_getdata(self, peer: Peer, message: InventoryMessage) -> None:
        missing: list[InvVector] = []
        for item in message.items:
            pending = self._pending_broadcasts.get(item.hash) if item.is_tx else None
            if pending is None:
                missing.append(item)
                continue
            tx, _future = pending
            await peer.send_tx(tx)
            self._acknowledge(item.hash, f"fetched by {peer.peer_id}")
        if missing:
            await peer.send("notfound", InventoryMessage(missing).to_payload())

    async def on_reject(self, peer: Peer, message: RejectMessage) -> None:
        txid = message.rejected_hash
        if message.message != "tx" or txid is None or txid not in self._pending_broadcasts:
            logger.debug(f"{peer.peer_id} rejected {message.message}: {message.reason}")
            return
        _tx, future = self._pending_broadcasts.pop(txid)
        logger.warning(f"{peer.peer_id} rejected {txid}: {message.reason}")
        if not future.done():
            future.set_exception(BroadcastRejected(txid, message.reason, message.ccode))

    # Broadcasting

    def broadcast_transaction(self, tx: Transaction) -> asyncio.Future[str]:
        ready = self.connected_peers()
        if not ready:
            raise NoPeersError("No connected peers to broadcast to")

        txid = tx.txid
        existing = self._pending_broadcasts.get(txid)
        if existing is not None:
            return existing[1]

        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        # Outcome may arrive after the sender stopped waiting
        future.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._pending_broadcasts[txid] = (tx, future)
        for peer in ready:
            self._spawn(self._announce(peer, txid))
        logger.info(f"Announced {txid} to {len(ready)} peer(s)")
        return future

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _announce(self, peer: Peer, txid: str) -> None:
        try:
            await peer.send_inv([InvVector(InvType.TX, txid)])
        except PEER_ERRORS as e:
            logger.debug(f"Failed to announce {txid} to {peer.peer_id}: {e}")

    def _acknowledge(self, txid: str, how: str) -> None:
        pending = self._pending_broadcasts.get(txid)
        if pending is None:
            return
        future = pending[1]
        if not future.done():
            logger.info(f"Transaction {txid} accepted ({how})")
            future.set_result(txid)

    def _confirm_broadcasts(self, block: Block) -> None:
        for tx in block.transactions:
            pending = self._pending_broadcasts.pop(tx.txid, None)
            if pending is not None and not pending[1].done():
                pending[1].set_result(tx.txid)

    def _fail_pending_broadcasts(self, error: BroadcastError) -> None:
        for txid, (_tx, future) in list(self._pending_broadcasts.items()):
            if not future.done():
                future.set_exception(error)
            del self._pending_broadcasts[txid]
