"""
Wallet data models.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from spvwallet.models import NetworkType, ScriptType

Outpoint = tuple[str, int]


class UTXOInfo(BaseModel):
    """Extended UTXO information with wallet context"""

    txid: str = Field(..., min_length=64, max_length=64)
    vout: int = Field(..., ge=0)
    value: int = Field(..., gt=0)
    address: str
    scriptpubkey: str
    path: str
    height: int | None = None  # None while unconfirmed
    spent_by: str | None = None  # txid of our own pending spend

    @property
    def outpoint(self) -> Outpoint:
        return self.txid, self.vout

    @property
    def confirmed(self) -> bool:
        return self.height is not None

    def confirmations(self, tip_height: int | None) -> int:
        if self.height is None or tip_height is None:
            return 0
        return max(tip_height - self.height + 1, 0)


class CoinSelection(BaseModel):
    """Result of coin selection"""

    utxos: list[UTXOInfo]
    total_value: int
    change_value: int
    fee: int

    @property
    def outpoints(self) -> list[Outpoint]:
        return [u.outpoint for u in self.utxos]


class HistoryEntry(BaseModel):
    txid: str
    net_value: int  # signed balance delta in satoshis
    fee: int | None = None  # known only for our own spends
    height: int | None = None
    timestamp: datetime | None = None
    addresses: list[str] = Field(default_factory=list)
    counterparties: list[str] = Field(default_factory=list)

    @property
    def confirmed(self) -> bool:
        return self.height is not None


class Balance(BaseModel):
    confirmed: int = 0
    unconfirmed: int = 0
    # Outputs reserved or spent by our own unconfirmed transactions; not part of total
    pending_spent: int = 0

    @property
    def total(self) -> int:
        return self.confirmed + self.unconfirmed


class WalletSnapshot(BaseModel):
    """Everything the store persists; enough to rebuild state without rescanning."""

    version: int = 1
    network: NetworkType
    # Older files predate legacy support and are always native segwit
    script_type: ScriptType = ScriptType.P2WPKH
    wallet_id: str
    tip_height: int | None = None
    tip_hash: str | None = None
    utxos: list[UTXOInfo] = Field(default_factory=list)
    pending: list[UTXOInfo] = Field(default_factory=list)
    history: list[HistoryEntry] = Field(default_factory=list)
    # chain -> highest issued address index
    address_indices: dict[int, int] = Field(default_factory=dict)
