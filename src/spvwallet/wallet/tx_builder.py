"""
Payment transaction construction: coin selection, fee estimate and signing.
"""

from __future__ import annotations

import random

from loguru import logger

from spvwallet.models import ScriptType
from spvwallet.wallet.errors import InsufficientFundsError
from spvwallet.wallet.keychain import KeyChain
from spvwallet.wallet.models import CoinSelection, UTXOInfo
from spvwallet.wallet.signing import sign_p2pkh_input, sign_p2wpkh_input
from spvwallet.wallet.transaction import Transaction, TxInput, TxOutput


# (input, output, overhead) vbytes
TX_SIZES = {
    ScriptType.P2WPKH: (68, 31, 11),
    ScriptType.P2PKH: (148, 34, 10),
}


def estimate_tx_fee(
    num_inputs: int,
    num_outputs: int,
    fee_rate: int,
    script_type: ScriptType = ScriptType.P2WPKH,
) -> int:
    """
    Calculate transaction fee based on estimated vsize.

    SegWit P2WPKH inputs: ~68 vbytes each, outputs 31, overhead ~11
    Legacy P2PKH inputs: ~148 bytes each, outputs 34, overhead ~10
    """
    input_size, output_size, overhead = TX_SIZES[script_type]
    vsize = num_inputs * input_size + num_outputs * output_size + overhead
    return vsize * fee_rate


def select_coins(
    utxos: list[UTXOInfo],
    amount: int,
    fee_rate: int,
    dust_threshold: int,
    script_type: ScriptType = ScriptType.P2WPKH,
) -> CoinSelection:
    """
    Select UTXOs covering amount plus fee.
    Uses simple greedy largest-first selection; dust change goes to the fee.

    Raises:
        InsufficientFundsError: the candidates cannot cover amount plus fee
    """
    eligible = sorted(utxos, key=lambda u: (u.value, u.txid, u.vout), reverse=True)

    selected: list[UTXOInfo] = []
    total = 0

    for utxo in eligible:
        selected.append(utxo)
        total += utxo.value

        fee_with_change = estimate_tx_fee(len(selected), 2, fee_rate, script_type)
        change = total - amount - fee_with_change
        if change >= dust_threshold and change > 0:
            return CoinSelection(
                utxos=selected, total_value=total, change_value=change, fee=fee_with_change
            )

        fee_without_change = estimate_tx_fee(len(selected), 1, fee_rate, script_type)
        if total >= amount + fee_without_change:
            return CoinSelection(
                utxos=selected, total_value=total, change_value=0, fee=total - amount
            )

    required = amount + estimate_tx_fee(max(len(eligible), 1), 1, fee_rate, script_type)
    raise InsufficientFundsError(
        f"Insufficient funds: need {required} sats, have {total}",
        available=total,
        required=required,
    )


class PaymentTxBuilder:
    """Builds and signs a single-payment transaction with optional change."""

    def __init__(self, keychain: KeyChain):
        self.keychain = keychain

    def build_unsigned(
        self,
        selection: CoinSelection,
        destination_script: bytes,
        amount: int,
        change_script: bytes | None = None,
    ) -> Transaction:
        inputs = [TxInput(txid=u.txid, vout=u.vout) for u in selection.utxos]
        outputs = [TxOutput(value=amount, script=destination_script)]
        if selection.change_value > 0:
            if change_script is None:
                raise ValueError("Selection has change but no change script was given")
            outputs.append(TxOutput(value=selection.change_value, script=change_script))

        random.shuffle(outputs)
        return Transaction(inputs=inputs, outputs=outputs, version=2)

    def sign(self, tx: Transaction, selection: CoinSelection) -> None:
        by_outpoint = {u.outpoint: u for u in selection.utxos}
        for index, inp in enumerate(tx.inputs):
            utxo = by_outpoint[inp.outpoint]
            private_key = self.keychain.private_key_for(utxo.path)
            if self.keychain.script_type is ScriptType.P2PKH:
                sign_p2pkh_input(tx, index, private_key)
            else:
                sign_p2wpkh_input(tx, index, utxo.value, private_key)
            del private_key

    def build_signed(
        self,
        selection: CoinSelection,
        destination_script: bytes,
        amount: int,
        change_script: bytes | None = None,
    ) -> Transaction:
        tx = self.build_unsigned(selection, destination_script, amount, change_script)
        self.sign(tx, selection)
        logger.debug(
            f"Built transaction {tx.txid}: {len(tx.inputs)} inputs, "
            f"{len(tx.outputs)} outputs, fee {selection.fee} sats, vsize {tx.vsize}"
        )
        return tx
