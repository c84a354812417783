"""
Command and query interface for UI or API layers.

Amounts cross this boundary as decimal BTC strings; everything below it
works in integer satoshis.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Protocol

from loguru import logger
from pydantic import BaseModel

from spvwallet.constants import MAX_MONEY, SATOSHIS_PER_BTC
from spvwallet.p2p.sync import SyncProgress
from spvwallet.wallet.errors import AmountInvalidError, ErrorCode, SendError
from spvwallet.wallet.keychain import KeyChain
from spvwallet.wallet.models import Balance, HistoryEntry
from spvwallet.wallet.sender import TransactionSender
from spvwallet.wallet.store import WalletStateStore


class ProgressSource(Protocol):
    def progress(self) -> SyncProgress: ...


class SendResponse(BaseModel):
    transaction_id: str
    amount_sent: str
    fee: str


class ErrorResponse(BaseModel):
    code: ErrorCode
    message: str


def parse_amount(amount: str) -> int:
    """Parse a decimal BTC string (at most 8 decimals) into satoshis."""
    try:
        value = Decimal(amount.strip())
    except (InvalidOperation, AttributeError) as e:
        raise AmountInvalidError(f"Not a decimal amount: {amount!r}") from e

    if not value.is_finite():
        raise AmountInvalidError(f"Not a finite amount: {amount!r}")
    if value <= 0:
        raise AmountInvalidError("Amount must be positive")

    sats = value * SATOSHIS_PER_BTC
    if sats != sats.to_integral_value():
        raise AmountInvalidError("Amount has more than 8 decimal places")
    if sats > MAX_MONEY:
        raise AmountInvalidError("Amount exceeds the maximum supply")
    return int(sats)


def format_btc(sats: int) -> str:
    return f"{Decimal(sats) / SATOSHIS_PER_BTC:.8f}"


class WalletCommands:
    def __init__(
        self,
        store: WalletStateStore,
        keychain: KeyChain,
        sender: TransactionSender,
        progress_source: ProgressSource,
    ):
        self.store = store
        self.keychain = keychain
        self.sender = sender
        self.progress_source = progress_source

    def get_balance(self) -> Balance:
        return self.store.balance()

    def get_transactions(self) -> list[HistoryEntry]:
        """Newest first."""
        return list(reversed(self.store.history()))

    def get_sync_progress(self) -> SyncProgress:
        return self.progress_source.progress()

    def get_receive_address(self) -> str:
        return self.keychain.receive_address().address

    async def send(self, address: str, amount: str) -> SendResponse | ErrorResponse:
        try:
            sats = parse_amount(amount)
            result = await self.sender.send(address, sats)
        except SendError as e:
            logger.warning(f"Send failed [{e.code.value}]: {e}")
            return ErrorResponse(code=e.code, message=str(e))
        except Exception as e:
            logger.exception("Unexpected error while sending")
            return ErrorResponse(code=ErrorCode.INTERNAL_ERROR, message=str(e))

        return SendResponse(
            transaction_id=result.txid,
            amount_sent=format_btc(result.amount),
            fee=format_btc(result.fee),
        )
