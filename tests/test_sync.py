"""
Tests for the sync engine against an in-memory regtest node.
"""

import asyncio

import pytest
import pytest_asyncio
from conftest import ChainBuilder, make_funding_tx, wait_until

from spvwallet.config import get_settings
from spvwallet.constants import MAX_BLOCKS_IN_FLIGHT
from spvwallet.events import (
    BlockReceived,
    PeerConnected,
    PeerDisconnected,
    PeersExhausted,
    ShutdownTimedOut,
    SyncComplete,
)
from spvwallet.models import NetworkType, PeerState
from spvwallet.p2p.messages import Block, HeadersMessage, ProtocolError
from spvwallet.wallet.sender import NoPeersError
from spvwallet.wallet.service import WalletService
from spvwallet.wallet.transaction import deserialize_transaction


@pytest_asyncio.fixture
async def service(regtest_settings, test_seed, node):
    service = WalletService(regtest_settings, test_seed, connection_factory=node.connect)
    yield service
    await service.stop(grace_period=1.0)


def _collect(service: WalletService, *event_types: type) -> list:
    collected: list = []
    service.events.subscribe(collected.append, *event_types)
    return collected


class TestInitialSync:
    @pytest.mark.asyncio
    async def test_sync_finds_payment(self, service, chain):
        address = service.keychain.receive_address()
        chain.mine_many(2)
        funding = make_funding_tx(address.scriptpubkey, 250_000)
        chain.mine([funding])
        chain.mine_many(2)
        events = _collect(service)

        await service.start()
        assert await service.sync.wait_until_synced(5)

        assert service.store.tip_height == 5
        assert service.store.tip_hash == chain.tip_hash
        assert service.store.balance().confirmed == 250_000
        (entry,) = service.store.history()
        assert entry.txid == funding.txid
        assert entry.height == 3

        await service.events.drain()
        blocks = [e for e in events if isinstance(e, BlockReceived)]
        assert [e.height for e in blocks] == [1, 2, 3, 4, 5]
        assert blocks[-1].blocks_remaining == 0
        assert [e for e in events if isinstance(e, SyncComplete)] == [SyncComplete(height=5)]
        assert any(isinstance(e, PeerConnected) and e.peer_count == 1 for e in events)

        progress = service.sync.progress()
        assert progress.synced
        assert progress.blocks_remaining == 0
        assert progress.connected_peers == 1
        assert progress.best_height == 5

    @pytest.mark.asyncio
    async def test_empty_chain(self, service):
        await service.start()
        assert await service.sync.wait_until_synced(5)
        assert service.store.tip_height is None
        assert service.sync.progress().synced

    @pytest.mark.asyncio
    async def test_many_blocks_bounded_in_flight(self, service, chain, node):
        chain.mine_many(3 * MAX_BLOCKS_IN_FLIGHT + 5)
        await service.start()
        assert await service.sync.wait_until_synced(10)
        assert service.store.tip_height == chain.height

        for command, payload in node.connections[0].sent:
            if command == "getdata":
                assert payload[0] <= MAX_BLOCKS_IN_FLIGHT

    @pytest.mark.asyncio
    async def test_download_peer_idle_after_sync(self, service, chain):
        chain.mine_many(2)
        await service.start()
        await service.sync.wait_until_synced(5)
        (peer,) = service.sync.connected_peers()
        assert peer.state == PeerState.IDLE

    @pytest.mark.asyncio
    async def test_scan_from_height(self, regtest_settings, test_seed, node, chain):
        settings = regtest_settings.model_copy(update={"scan_from_height": 3})
        service = WalletService(settings, test_seed, connection_factory=node.connect)
        early = make_funding_tx(service.keychain.receive_address().scriptpubkey, 1_000)
        chain.mine([early])
        chain.mine_many(3)
        try:
            await service.start()
            assert await service.sync.wait_until_synced(5)
            assert service.store.tip_height == 4
            assert service.store.balance().total == 0
        finally:
            await service.stop()


class TestFollowingTheChain:
    @pytest.mark.asyncio
    async def test_announced_block(self, service, chain, node):
        chain.mine_many(2)
        completions = _collect(service, SyncComplete)
        await service.start()
        await service.sync.wait_until_synced(5)

        funding = make_funding_tx(service.keychain.receive_address().scriptpubkey, 42_000)
        chain.mine([funding])
        node.announce_tip()

        await wait_until(lambda: service.store.tip_height == 3)
        await wait_until(lambda: service.sync.synced)
        assert service.store.balance().confirmed == 42_000
        await service.events.drain()
        assert completions == [SyncComplete(height=2), SyncComplete(height=3)]

    @pytest.mark.asyncio
    async def test_duplicate_headers_do_not_resignal(self, service, chain, node):
        chain.mine_many(2)
        completions = _collect(service, SyncComplete)
        await service.start()
        await service.sync.wait_until_synced(5)

        known = HeadersMessage([b.header for b in chain.blocks])
        node.connections[0].push("headers", known.to_payload())
        await asyncio.sleep(0.05)
        await service.events.drain()
        assert completions == [SyncComplete(height=2)]

    @pytest.mark.asyncio
    async def test_relayed_unconfirmed_payment(self, service, node):
        await service.start()
        await service.sync.wait_until_synced(5)

        funding = make_funding_tx(service.keychain.receive_address().scriptpubkey, 9_000)
        node.relay_tx(funding)
        await wait_until(lambda: service.store.balance().unconfirmed == 9_000)
        assert not service.store.history()[0].confirmed

    @pytest.mark.asyncio
    async def test_bad_merkle_block_refetched(self, service, chain, node):
        chain.mine_many(2)
        await service.start()
        await service.sync.wait_until_synced(5)

        good = chain.mine()
        service.sync.chain.add_headers([good.header])
        coinbase = deserialize_transaction(good.transactions[0].serialize())
        coinbase.outputs[0].value -= 1
        bad = Block(good.header, [coinbase])

        peer = service.sync.connected_peers()[0]
        await service.sync.on_block(peer, bad)
        await wait_until(lambda: service.store.tip_height == 3)
        assert service.store.tip_hash == good.hash

    @pytest.mark.asyncio
    async def test_non_linking_headers_drop_peer(self, service, chain, node, monkeypatch):
        chain.mine_many(2)
        await service.start()
        await service.sync.wait_until_synced(5)
        monkeypatch.setattr(node, "handle", lambda *_args: None)

        stray = ChainBuilder(start_time=1_600_000_000).mine_many(2)[1].header
        peer = service.sync.connected_peers()[0]
        conn = node.connections[0]
        before = conn.commands_sent().count("getheaders")

        await service.sync.on_headers(peer, HeadersMessage([stray]))
        await service.sync.on_headers(peer, HeadersMessage([stray]))
        assert conn.commands_sent().count("getheaders") == before + 2
        with pytest.raises(ProtocolError):
            await service.sync.on_headers(peer, HeadersMessage([stray]))
        assert service.sync.chain.tip_height == 2


class TestPersistence:
    @pytest.mark.asyncio
    async def test_resume_from_stored_tip(self, regtest_settings, test_seed, node, chain):
        first = WalletService(regtest_settings, test_seed, connection_factory=node.connect)
        funding = make_funding_tx(first.keychain.receive_address().scriptpubkey, 70_000)
        chain.mine([funding])
        chain.mine_many(2)
        await first.start()
        assert await first.sync.wait_until_synced(5)
        await first.stop()

        chain.mine_many(2)
        second = WalletService(regtest_settings, test_seed, connection_factory=node.connect)
        assert second.store.tip_height == 3
        assert second.store.balance().confirmed == 70_000
        heights = _collect(second, BlockReceived)
        try:
            await second.start()
            assert await second.sync.wait_until_synced(5)
            await second.events.drain()
            assert [e.height for e in heights] == [4, 5]
            assert second.store.tip_height == 5
        finally:
            await second.stop()


class TestConnections:
    @pytest.mark.asyncio
    async def test_reconnects_after_drop(self, service, node):
        connected = _collect(service, PeerConnected, PeerDisconnected)
        await service.start()
        await service.sync.wait_until_synced(5)

        node.drop_all()
        await wait_until(lambda: len(node.open_connections) == 1)
        await wait_until(lambda: len(service.sync.connected_peers()) == 1)
        await service.events.drain()
        kinds = [type(e) for e in connected]
        assert kinds[:3] == [PeerConnected, PeerDisconnected, PeerConnected]

    @pytest.mark.asyncio
    async def test_peers_exhausted(self, service, node):
        node.fail_connects = 100
        exhausted = _collect(service, PeersExhausted)
        await service.start()
        await wait_until(lambda: len(exhausted) == 1)
        assert exhausted == [PeersExhausted(attempted=1)]
        assert node.connect_attempts == 3
        assert not await service.sync.wait_until_synced(0.05)

    @pytest.mark.asyncio
    async def test_shutdown_timeout(self, regtest_settings, test_seed):
        async def hanging(host, port, magic, timeout):
            await asyncio.Event().wait()

        service = WalletService(regtest_settings, test_seed, connection_factory=hanging)
        timed_out = _collect(service, ShutdownTimedOut)
        await service.start()
        await asyncio.sleep(0.05)

        assert not await service.sync.stop(grace_period=0.1)
        await service.events.drain()
        assert timed_out == [ShutdownTimedOut(pending_tasks=1, grace_period=0.1)]
        await service.stop()

    @pytest.mark.asyncio
    async def test_clean_shutdown(self, regtest_settings, test_seed, node):
        service = WalletService(regtest_settings, test_seed, connection_factory=node.connect)
        await service.start()
        await service.sync.wait_until_synced(5)
        assert await service.stop()
        assert node.open_connections == []
        assert not service.sync.running

    @pytest.mark.asyncio
    async def test_no_targets(self, tmp_path, test_seed):
        async def no_peers(params):
            return []

        settings = get_settings(network=NetworkType.TESTNET, data_dir=tmp_path)
        service = WalletService(settings, test_seed, discovery=no_peers)
        exhausted = _collect(service, PeersExhausted)
        await service.start()
        await service.events.drain()
        assert exhausted == [PeersExhausted(attempted=0)]
        await service.stop()

    @pytest.mark.asyncio
    async def test_broadcast_without_peers(self, service):
        funding = make_funding_tx(b"\x00\x14" + bytes(20), 1_000)
        with pytest.raises(NoPeersError):
            service.sync.broadcast_transaction(funding)
