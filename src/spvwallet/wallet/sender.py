"""
Outbound payments: validate, reserve coins, sign, broadcast, await acceptance.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass

from loguru import logger

from spvwallet.constants import MAX_MONEY
from spvwallet.models import NetworkParams
from spvwallet.wallet.address import AddressError, address_to_scriptpubkey
from spvwallet.wallet.bip32 import DerivationError
from spvwallet.wallet.errors import (
    AddressInvalidError,
    AmountInvalidError,
    InsufficientFundsError,
    SendTimeoutError,
    SubmissionError,
)
from spvwallet.wallet.keychain import KeyChain
from spvwallet.wallet.models import CoinSelection
from spvwallet.wallet.signing import TransactionSigningError
from spvwallet.wallet.store import WalletStateStore
from spvwallet.wallet.transaction import Transaction
from spvwallet.wallet.tx_builder import PaymentTxBuilder, select_coins


class BroadcastError(Exception):
    pass


class NoPeersError(BroadcastError):
    pass


class BroadcastRejected(BroadcastError):
    # Reject reasons meaning our inputs are gone (already spent or unknown)
    MISSING_INPUT_REASONS = (
        "missing-inputs",
        "missingorspent",
        "inputs-spent",
        "txn-mempool-conflict",
    )

    def __init__(self, txid: str, reason: str, ccode: int = 0):
        self.txid = txid
        self.reason = reason
        self.ccode = ccode
        super().__init__(f"Transaction {txid} rejected: {reason} (code {ccode:#04x})")

    @property
    def missing_inputs(self) -> bool:
        return any(marker in self.reason for marker in self.MISSING_INPUT_REASONS)


class Broadcaster(ABC):
    """Something that can hand a transaction to the network."""

    @abstractmethod
    def broadcast_transaction(self, tx: Transaction) -> asyncio.Future[str]:
        """
        Announce a transaction.

        Returns a future resolving to the txid once a peer accepted it, or
        failing with BroadcastRejected. Raises NoPeersError synchronously when
        nothing can be announced.
        """


@dataclass
class SubmittedTransaction:
    txid: str
    amount: int
    fee: int
    change_address: str | None
    raw_hex: str


class TransactionSender:
    def __init__(
        self,
        store: WalletStateStore,
        keychain: KeyChain,
        broadcaster: Broadcaster,
        params: NetworkParams,
        fee_rate: int,
        dust_threshold: int,
        send_timeout: float,
        include_unconfirmed: bool = False,
    ):
        self.store = store
        self.keychain = keychain
        self.broadcaster = broadcaster
        self.params = params
        self.fee_rate = fee_rate
        self.dust_threshold = dust_threshold
        self.send_timeout = send_timeout
        self.include_unconfirmed = include_unconfirmed
        self.builder = PaymentTxBuilder(keychain)
        self._background: set[asyncio.Task[bool]] = set()

    def validate_amount(self, amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise AmountInvalidError(f"Amount must be an integer number of satoshis: {amount!r}")
        if amount <= 0:
            raise AmountInvalidError("Amount must be positive")
        if amount > MAX_MONEY:
            raise AmountInvalidError(f"Amount exceeds maximum of {MAX_MONEY} sats")

    def validate_destination(self, destination: str) -> bytes:
        try:
            return address_to_scriptpubkey(destination, self.params)
        except AddressError as e:
            raise AddressInvalidError(str(e)) from e

    async def send(
        self, destination: str, amount: int, fee_rate: int | None = None
    ) -> SubmittedTransaction:
        """
        Pay `amount` satoshis to `destination`.

        Raises:
            AmountInvalidError, AddressInvalidError: before any state is touched
            InsufficientFundsError: not enough spendable coins, or peers report
                our inputs as missing/spent
            SendTimeoutError: no acceptance within send_timeout; the spend is
                recorded and stays pending
            SubmissionError: any other failure
        """
        self.validate_amount(amount)
        destination_script = self.validate_destination(destination)

        available = sum(u.value for u in self.store.spendable_utxos(self.include_unconfirmed))
        if available < amount:
            raise InsufficientFundsError(
                f"Insufficient funds: need {amount} sats, have {available}",
                available=available,
                required=amount,
            )

        rate = fee_rate or self.fee_rate
        selection = await self.store.reserve_coins(
            lambda utxos: select_coins(
                utxos, amount, rate, self.dust_threshold, self.keychain.script_type
            ),
            include_unconfirmed=self.include_unconfirmed,
        )

        change_address = None
        try:
            change_script = None
            if selection.change_value > 0:
                change = self.keychain.next_change_address()
                change_address = change.address
                change_script = change.scriptpubkey
            tx = self.builder.build_signed(selection, destination_script, amount, change_script)
        except (DerivationError, TransactionSigningError, ValueError) as e:
            await self.store.release(selection.outpoints)
            raise SubmissionError(f"Failed to build transaction: {e}") from e

        txid = tx.txid
        logger.info(f"Broadcasting {txid}: {amount} sats to {destination}, fee {selection.fee}")

        try:
            ack = self.broadcaster.broadcast_transaction(tx)
        except BroadcastError as e:
            await self.store.release(selection.outpoints)
            raise SubmissionError(f"Failed to broadcast {txid}: {e}") from e
        except Exception:
            await self.store.release(selection.outpoints)
            raise

        try:
            await asyncio.wait_for(asyncio.shield(ack), timeout=self.send_timeout)
        except TimeoutError:
            await self._keep_pending(tx, ack)
            logger.warning(f"No acceptance for {txid} within {self.send_timeout}s")
            raise SendTimeoutError(
                f"Timed out after {self.send_timeout}s waiting for {txid} to be accepted",
                txid=txid,
            ) from None
        except asyncio.CancelledError:
            # The announcement is already out, so the spend stays recorded
            await self._keep_pending(tx, ack)
            raise
        except BroadcastRejected as e:
            await self.store.release(selection.outpoints)
            if e.missing_inputs:
                raise InsufficientFundsError(str(e), available=available, required=amount) from e
            raise SubmissionError(str(e)) from e
        except BroadcastError as e:
            await self.store.release(selection.outpoints)
            raise SubmissionError(f"Broadcast of {txid} failed: {e}") from e
        except Exception:
            await self.store.release(selection.outpoints)
            raise

        await self.store.commit_spend(tx)
        logger.info(f"Transaction {txid} accepted by the network")
        return self._result(tx, amount, selection, change_address)

    async def _keep_pending(self, tx: Transaction, ack: asyncio.Future[str]) -> None:
        """Record a spend whose broadcast is still open; undo it if the broadcast fails later."""
        await self.store.commit_spend(tx)
        ack.add_done_callback(lambda done: self._on_late_outcome(tx, done))

    def _on_late_outcome(self, tx: Transaction, ack: asyncio.Future[str]) -> None:
        if ack.cancelled() or ack.exception() is None:
            return
        logger.warning(f"Broadcast of {tx.txid} failed after the sender stopped waiting: "
                       f"{ack.exception()}")
        task = asyncio.get_running_loop().create_task(self.store.abandon_transaction(tx))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_background(self) -> None:
        """Wait for follow-up work on broadcasts that outlived their send call."""
        # Let done-callbacks of just-failed broadcasts schedule their work
        await asyncio.sleep(0)
        if self._background:
            await asyncio.gather(*list(self._background))

    @staticmethod
    def _result(
        tx: Transaction, amount: int, selection: CoinSelection, change_address: str | None
    ) -> SubmittedTransaction:
        return SubmittedTransaction(
            txid=tx.txid,
            amount=amount,
            fee=selection.fee,
            change_address=change_address,
            raw_hex=tx.hex(),
        )
