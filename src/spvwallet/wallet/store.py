"""
Wallet state store: UTXO set, pending spends, history and processed tip.

Every mutation runs under a single asyncio.Lock and is computed on a copy of
the state which is then swapped in, so readers never observe a half-applied
block or transaction.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime

from loguru import logger

from spvwallet.events import CoinsReceived, CoinsSent, EventBus, WalletEvent
from spvwallet.models import NetworkParams
from spvwallet.wallet.address import scriptpubkey_to_address
from spvwallet.wallet.keychain import KeyChain
from spvwallet.wallet.models import (
    Balance,
    CoinSelection,
    HistoryEntry,
    Outpoint,
    UTXOInfo,
    WalletSnapshot,
)
from spvwallet.wallet.storage import JsonWalletStorage
from spvwallet.wallet.transaction import Transaction

CoinSelector = Callable[[list[UTXOInfo]], CoinSelection]


class WalletStateError(Exception):
    pass


class OutOfOrderBlockError(WalletStateError):
    def __init__(self, height: int, expected_height: int | None):
        self.height = height
        self.expected_height = expected_height
        super().__init__(f"Block at height {height} does not extend tip (expected {expected_height})")


@dataclass
class _WalletState:
    tip_height: int | None = None
    tip_hash: str | None = None
    utxos: dict[Outpoint, UTXOInfo] = field(default_factory=dict)
    pending: dict[Outpoint, UTXOInfo] = field(default_factory=dict)
    history: list[HistoryEntry] = field(default_factory=list)
    history_index: dict[str, int] = field(default_factory=dict)

    def copy(self) -> _WalletState:
        return _WalletState(
            tip_height=self.tip_height,
            tip_hash=self.tip_hash,
            utxos=dict(self.utxos),
            pending=dict(self.pending),
            history=list(self.history),
            history_index=dict(self.history_index),
        )


class WalletStateStore:
    def __init__(
        self,
        keychain: KeyChain,
        params: NetworkParams,
        wallet_id: str = "default",
        events: EventBus | None = None,
        storage: JsonWalletStorage | None = None,
    ):
        self.keychain = keychain
        self.params = params
        self.wallet_id = wallet_id
        self.events = events
        self.storage = storage
        self._state = _WalletState()
        self._lock = asyncio.Lock()

    # Loading / persistence

    def load(self) -> bool:
        """Restore state from storage. Returns False when there is nothing stored."""
        if self.storage is None:
            return False
        snapshot = self.storage.load()
        if snapshot is None:
            return False
        self.restore(snapshot)
        return True

    def restore(self, snapshot: WalletSnapshot) -> None:
        if snapshot.network != self.params.network:
            raise WalletStateError(
                f"Stored wallet is for {snapshot.network.value}, not {self.params.network.value}"
            )
        if snapshot.script_type != self.keychain.script_type:
            raise WalletStateError(
                f"Stored wallet uses {snapshot.script_type.value} addresses, "
                f"not {self.keychain.script_type.value}"
            )
        self.keychain.restore_indices(snapshot.address_indices)
        for utxo in [*snapshot.utxos, *snapshot.pending]:
            self.keychain.mark_used(bytes.fromhex(utxo.scriptpubkey))

        self._state = _WalletState(
            tip_height=snapshot.tip_height,
            tip_hash=snapshot.tip_hash,
            utxos={u.outpoint: u for u in snapshot.utxos},
            pending={u.outpoint: u for u in snapshot.pending},
            history=list(snapshot.history),
            history_index={h.txid: i for i, h in enumerate(snapshot.history)},
        )
        logger.info(
            f"Restored wallet state at height {snapshot.tip_height}: "
            f"{len(snapshot.utxos)} utxos, {len(snapshot.pending)} pending"
        )

    def snapshot(self, state: _WalletState | None = None) -> WalletSnapshot:
        if state is None:
            state = self._state
        return WalletSnapshot(
            network=self.params.network,
            script_type=self.keychain.script_type,
            wallet_id=self.wallet_id,
            tip_height=state.tip_height,
            tip_hash=state.tip_hash,
            utxos=list(state.utxos.values()),
            pending=list(state.pending.values()),
            history=list(state.history),
            address_indices=self.keychain.address_indices,
        )

    async def _commit(self, state: _WalletState) -> None:
        """Write `state` to storage, then make it current. A failed write changes nothing."""
        if self.storage is not None:
            await asyncio.to_thread(self.storage.save, self.snapshot(state))
        self._state = state

    # Queries

    @property
    def tip_height(self) -> int | None:
        return self._state.tip_height

    @property
    def tip_hash(self) -> str | None:
        return self._state.tip_hash

    def balance(self) -> Balance:
        state = self._state
        return Balance(
            confirmed=sum(u.value for u in state.utxos.values() if u.height is not None),
            unconfirmed=sum(u.value for u in state.utxos.values() if u.height is None),
            pending_spent=sum(u.value for u in state.pending.values()),
        )

    def spendable_utxos(self, include_unconfirmed: bool = True) -> list[UTXOInfo]:
        return [
            u for u in self._state.utxos.values() if include_unconfirmed or u.height is not None
        ]

    def pending_utxos(self) -> list[UTXOInfo]:
        return list(self._state.pending.values())

    def is_pending_spent(self, outpoint: Outpoint) -> bool:
        return outpoint in self._state.pending

    def history(self) -> list[HistoryEntry]:
        return list(self._state.history)

    def has_transaction(self, txid: str) -> bool:
        return txid in self._state.history_index

    def is_relevant(self, tx: Transaction) -> bool:
        """Whether a transaction pays a watched script or spends a tracked outpoint."""
        state = self._state
        if any(self.keychain.is_mine(out.script) for out in tx.outputs):
            return True
        return any(
            inp.outpoint in state.utxos or inp.outpoint in state.pending for inp in tx.inputs
        )

    # Mutations

    async def apply_block(
        self,
        block_hash: str,
        height: int,
        prev_hash: str,
        transactions: Iterable[Transaction],
        timestamp: datetime | None = None,
    ) -> bool:
        """
        Apply a block that extends the processed tip.

        Returns False for blocks at or below the tip (already applied).

        Raises:
            OutOfOrderBlockError: the block does not connect to the processed tip
        """
        async with self._lock:
            current = self._state
            if current.tip_height is not None:
                if height <= current.tip_height:
                    logger.debug(f"Ignoring already processed block at height {height}")
                    return False
                if height != current.tip_height + 1 or prev_hash != current.tip_hash:
                    raise OutOfOrderBlockError(height, current.tip_height + 1)

            state = current.copy()
            pending_events: list[tuple[type, str, int]] = []
            for tx in transactions:
                pending_events.extend(self._process_transaction(state, tx, height, timestamp))

            state.tip_height = height
            state.tip_hash = block_hash
            await self._commit(state)

        self._publish(pending_events)
        return True

    async def apply_transaction(
        self,
        tx: Transaction,
        height: int | None = None,
        timestamp: datetime | None = None,
    ) -> bool:
        """Apply a loose (usually unconfirmed) transaction. Returns whether it affected us."""
        async with self._lock:
            state = self._state.copy()
            pending_events = self._process_transaction(state, tx, height, timestamp)
            if state == self._state:
                return False
            await self._commit(state)

        self._publish(pending_events)
        return True

    async def reserve_coins(
        self, selector: CoinSelector, include_unconfirmed: bool = False
    ) -> CoinSelection:
        """
        Select coins and move them to the pending set in one atomic step.

        The selector runs under the store lock, so two concurrent callers can
        never be handed the same outputs. Selector errors leave state untouched.
        """
        async with self._lock:
            candidates = self.spendable_utxos(include_unconfirmed)
            selection = selector(candidates)

            state = self._state.copy()
            for utxo in selection.utxos:
                if utxo.outpoint not in state.utxos:
                    raise WalletStateError(f"Selected coin {utxo.txid}:{utxo.vout} is not spendable")
                state.pending[utxo.outpoint] = state.utxos.pop(utxo.outpoint)
            await self._commit(state)

        logger.debug(f"Reserved {len(selection.utxos)} coins ({selection.total_value} sats)")
        return selection

    async def release(self, outpoints: Iterable[Outpoint]) -> None:
        """Return reserved coins to the spendable set."""
        async with self._lock:
            state = self._state.copy()
            released = 0
            for outpoint in outpoints:
                utxo = state.pending.pop(outpoint, None)
                if utxo is not None:
                    state.utxos[outpoint] = utxo.model_copy(update={"spent_by": None})
                    released += 1
            if not released:
                return
            await self._commit(state)
        logger.debug(f"Released {released} reserved coins")

    async def commit_spend(self, tx: Transaction) -> None:
        """Record our own broadcast transaction (spent inputs, change, history)."""
        await self.apply_transaction(tx)

    async def abandon_transaction(self, tx: Transaction) -> bool:
        """
        Forget an unconfirmed local spend that never reached the network.

        Its outputs and history entry are removed and the inputs it held
        become spendable again. Confirmed or unknown transactions are left
        alone; returns whether anything changed.
        """
        txid = tx.txid
        async with self._lock:
            index = self._state.history_index.get(txid)
            if index is None or self._state.history[index].height is not None:
                return False

            state = self._state.copy()
            for vout in range(len(tx.outputs)):
                state.utxos.pop((txid, vout), None)
                state.pending.pop((txid, vout), None)
            for inp in tx.inputs:
                utxo = state.pending.get(inp.outpoint)
                if utxo is not None and utxo.spent_by == txid:
                    del state.pending[inp.outpoint]
                    state.utxos[inp.outpoint] = utxo.model_copy(update={"spent_by": None})
            del state.history[index]
            state.history_index = {h.txid: i for i, h in enumerate(state.history)}
            await self._commit(state)

        logger.warning(f"Abandoned unconfirmed transaction {txid}, its inputs are spendable again")
        return True

    def _process_transaction(
        self,
        state: _WalletState,
        tx: Transaction,
        height: int | None,
        timestamp: datetime | None,
    ) -> list[tuple[type, str, int]]:
        txid = tx.txid

        existing = state.history_index.get(txid)
        if existing is not None:
            self._upgrade_known(state, tx, existing, height, timestamp)
            return []

        spent_value = 0
        inputs_ours = 0
        addresses: list[str] = []
        for inp in tx.inputs:
            outpoint = inp.outpoint
            utxo = state.utxos.pop(outpoint, None) or state.pending.pop(outpoint, None)
            if utxo is None:
                continue
            inputs_ours += 1
            spent_value += utxo.value
            if utxo.address not in addresses:
                addresses.append(utxo.address)
            if height is None:
                state.pending[outpoint] = utxo.model_copy(update={"spent_by": txid})

        received = 0
        counterparties: list[str] = []
        for vout, out in enumerate(tx.outputs):
            derived = self.keychain.lookup_script(out.script)
            if derived is None:
                address = scriptpubkey_to_address(out.script, self.params)
                if address is not None:
                    counterparties.append(address)
                continue
            if out.value <= 0:
                continue
            self.keychain.mark_used(out.script)
            received += out.value
            if derived.address not in addresses:
                addresses.append(derived.address)
            state.utxos[(txid, vout)] = UTXOInfo(
                txid=txid,
                vout=vout,
                value=out.value,
                address=derived.address,
                scriptpubkey=out.script.hex(),
                path=derived.path,
                height=height,
            )

        if inputs_ours == 0 and received == 0:
            return []

        fee = None
        if inputs_ours and inputs_ours == len(tx.inputs):
            fee = spent_value - sum(out.value for out in tx.outputs)

        net_value = received - spent_value
        state.history_index[txid] = len(state.history)
        state.history.append(
            HistoryEntry(
                txid=txid,
                net_value=net_value,
                fee=fee,
                height=height,
                timestamp=timestamp,
                addresses=addresses,
                counterparties=counterparties if inputs_ours else [],
            )
        )
        logger.info(
            f"Transaction {txid} {'confirmed at ' + str(height) if height else 'unconfirmed'}: "
            f"net {net_value:+d} sats"
        )

        if net_value > 0:
            return [(CoinsReceived, txid, net_value)]
        if net_value < 0:
            return [(CoinsSent, txid, -net_value)]
        return []

    def _upgrade_known(
        self,
        state: _WalletState,
        tx: Transaction,
        index: int,
        height: int | None,
        timestamp: datetime | None,
    ) -> None:
        if height is None:
            return
        txid = tx.txid

        entry = state.history[index]
        if entry.height is None:
            state.history[index] = entry.model_copy(
                update={"height": height, "timestamp": timestamp or entry.timestamp}
            )

        # Our spend confirmed: the inputs are gone for good
        for inp in tx.inputs:
            state.pending.pop(inp.outpoint, None)

        for vout in range(len(tx.outputs)):
            outpoint = (txid, vout)
            for pool in (state.utxos, state.pending):
                utxo = pool.get(outpoint)
                if utxo is not None and utxo.height is None:
                    pool[outpoint] = utxo.model_copy(update={"height": height})

    def _publish(self, pending_events: list[tuple[type, str, int]]) -> None:
        if self.events is None or not pending_events:
            return
        new_balance = self.balance().total
        for event_type, txid, amount in pending_events:
            event: WalletEvent = event_type(txid=txid, amount=amount, new_balance=new_balance)
            self.events.publish(event)
