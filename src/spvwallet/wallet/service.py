"""
Wallet service: explicitly owned wiring of keychain, store, sync engine and sender.
"""

from __future__ import annotations

from loguru import logger

from spvwallet.config import WalletSettings
from spvwallet.events import EventBus
from spvwallet.models import default_coin_type
from spvwallet.p2p.network import discover_peers, open_connection
from spvwallet.p2p.peer import ConnectionFactory
from spvwallet.p2p.sync import PeerDiscovery, SyncEngine
from spvwallet.wallet.commands import WalletCommands
from spvwallet.wallet.keychain import KeyChain
from spvwallet.wallet.mnemonic import derive_seed_async
from spvwallet.wallet.sender import TransactionSender
from spvwallet.wallet.storage import JsonWalletStorage
from spvwallet.wallet.store import WalletStateStore


class WalletService:
    """
    One wallet on one network.

    Derivation path: m/{84 or 44}'/{coin_type}'/0'/{chain}/{index}, by settings.script_type
    State is persisted under settings.wallet_file and reloaded on creation.
    """

    def __init__(
        self,
        settings: WalletSettings,
        seed: bytes,
        events: EventBus | None = None,
        connection_factory: ConnectionFactory = open_connection,
        discovery: PeerDiscovery = discover_peers,
        persist: bool = True,
    ):
        self.settings = settings
        self.params = settings.params
        self.events = events if events is not None else EventBus()

        coin_type = settings.coin_type
        if coin_type is None:
            coin_type = default_coin_type(settings.network)
        self.keychain = KeyChain(
            seed,
            self.params,
            coin_type,
            lookahead=settings.lookahead,
            script_type=settings.script_type,
        )
        self.storage = JsonWalletStorage(settings.wallet_file) if persist else None
        self.store = WalletStateStore(
            self.keychain, self.params, settings.wallet_id, self.events, self.storage
        )
        # Must happen before the engine reads the processed tip
        self.store.load()

        self.sync = SyncEngine(
            settings,
            self.store,
            self.events,
            connection_factory=connection_factory,
            discovery=discovery,
        )
        self.sender = TransactionSender(
            self.store,
            self.keychain,
            self.sync,
            self.params,
            fee_rate=settings.fee_rate,
            dust_threshold=settings.dust_threshold,
            send_timeout=settings.send_timeout,
            include_unconfirmed=settings.include_unconfirmed,
        )
        self.commands = WalletCommands(self.store, self.keychain, self.sender, self.sync)

        logger.info(
            f"Initialized wallet '{settings.wallet_id}' on {self.params.network.value} "
            f"(account {self.keychain.account_path})"
        )

    @classmethod
    async def create(
        cls,
        settings: WalletSettings,
        mnemonic: str,
        passphrase: str = "",
        **kwargs: object,
    ) -> WalletService:
        """Validate the mnemonic and derive the seed off the event loop."""
        seed = await derive_seed_async(mnemonic, passphrase)
        return cls(settings, seed, **kwargs)  # type: ignore[arg-type]

    async def start(self) -> None:
        await self.sync.start()

    async def stop(self, grace_period: float | None = None) -> bool:
        clean = await self.sync.stop(grace_period)
        await self.sender.wait_background()
        await self.events.drain()
        await self.events.close()
        return clean
