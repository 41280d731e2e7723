"""
Transaction builder: coin selection, fee/change computation and signing.

Fees use a fixed-size estimate for P2PKH transactions::

    size = TX_OVERHEAD_BYTES + inputs * P2PKH_INPUT_BYTES + outputs * P2PKH_OUTPUT_BYTES
    fee  = ceil(size * fee_rate)

Selection is largest-first and always budgets for two outputs (payment and
change).  If the change then comes out at zero, the change output is simply
omitted and the fee stays as estimated.

``build`` is all-or-nothing: it either returns a fully signed transaction
or raises, and it never broadcasts.  Inputs carry their parent transaction
and the key's unlocking template; the SDK computes the FORKID sighash and
signs them.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from bsv import Transaction, TransactionInput, TransactionOutput

from x402_wallet.chain_client import Utxo
from x402_wallet.crypto_utils import decode_address
from x402_wallet.errors import (
    ChainDataError,
    InsufficientFunds,
    ValidationError,
    WalletError,
)
from x402_wallet.keys import SigningKey
from x402_wallet.networks import get_network
from x402_wallet.transaction import SEQUENCE_FINAL, p2pkh_lock, parse_transaction, same_script

if TYPE_CHECKING:
    from x402_wallet.chain_client import ChainClient

logger = logging.getLogger("x402_wallet.tx_builder")

TX_OVERHEAD_BYTES = 10
P2PKH_INPUT_BYTES = 148
P2PKH_OUTPUT_BYTES = 34
DEFAULT_FEE_RATE = 0.5  # sat/byte
SELECTION_OUTPUTS = 2


@dataclass
class UtxoWithParent(Utxo):
    """A spendable output plus the raw hex of the transaction that created it."""

    parent_hex: str = ""


@dataclass
class Selection:
    selected: list[Utxo]
    total_value: int
    change: int
    fee: int


@dataclass
class SignedTransaction:
    hex: str
    txid: str
    size: int
    inputs: int
    outputs: int
    fee: int
    change: int
    total_input: int
    amount: int = 0
    spent: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "txid": self.txid,
            "hex": self.hex,
            "size": self.size,
            "inputs": self.inputs,
            "outputs": self.outputs,
            "fee": self.fee,
            "change": self.change,
            "totalInput": self.total_input,
            "amount": self.amount,
        }


# ===================================================================
#  Fee & selection
# ===================================================================

def estimate_fee(num_inputs: int, num_outputs: int, fee_rate: float = DEFAULT_FEE_RATE) -> int:
    if num_inputs < 0 or num_outputs < 0:
        raise ValidationError("Input and output counts must be non-negative")
    if fee_rate <= 0:
        raise ValidationError("Fee rate must be positive")
    size = TX_OVERHEAD_BYTES + num_inputs * P2PKH_INPUT_BYTES + num_outputs * P2PKH_OUTPUT_BYTES
    return math.ceil(size * fee_rate)


def select_outputs(
    available: list[Utxo], target: int, fee_rate: float = DEFAULT_FEE_RATE
) -> Selection:
    """Pick outputs largest-first until ``total >= target + fee``.

    Raises ``InsufficientFunds`` carrying the requirement computed with every
    available output selected.
    """
    if not isinstance(target, int) or isinstance(target, bool) or target <= 0:
        raise ValidationError("Amount must be a positive integer number of satoshis")
    if fee_rate <= 0:
        raise ValidationError("Fee rate must be positive")
    if not available:
        raise ValidationError("No spendable outputs available")

    ordered = sorted(available, key=lambda u: u.value, reverse=True)
    selected: list[Utxo] = []
    total = 0
    fee = 0
    for utxo in ordered:
        selected.append(utxo)
        total += utxo.value
        fee = estimate_fee(len(selected), SELECTION_OUTPUTS, fee_rate)
        if total >= target + fee:
            return Selection(selected, total, total - target - fee, fee)

    raise InsufficientFunds(required=target + fee, available=total)


# ===================================================================
#  Parents
# ===================================================================

async def fetch_parent_transactions(
    utxos: list[Utxo], chain_client: ChainClient
) -> list[UtxoWithParent]:
    """Attach the raw parent transaction to every output, in order.

    Any failure aborts the whole batch, naming the offending outpoint.
    """
    result: list[UtxoWithParent] = []
    for utxo in utxos:
        try:
            parent_hex = await chain_client.get_raw_transaction(utxo.txid)
        except WalletError as exc:
            raise ChainDataError(
                f"Could not fetch parent transaction for {utxo.txid}:{utxo.vout}: {exc}"
            ) from exc
        result.append(
            UtxoWithParent(
                txid=utxo.txid,
                vout=utxo.vout,
                value=utxo.value,
                height=utxo.height,
                parent_hex=parent_hex,
            )
        )
    return result


def _source_output(utxo: UtxoWithParent) -> tuple[Transaction, TransactionOutput]:
    """Parse the parent of *utxo* and cross-check the output it spends."""
    if not utxo.parent_hex:
        raise ValidationError(f"Output {utxo.outpoint} has no parent transaction")
    parent = parse_transaction(utxo.parent_hex)
    if parent.txid() != utxo.txid:
        raise ChainDataError(f"Parent transaction for {utxo.outpoint} has a different txid")
    if not 0 <= utxo.vout < len(parent.outputs):
        raise ChainDataError(f"Parent transaction has no output {utxo.outpoint}")
    output = parent.outputs[utxo.vout]
    if output.satoshis != utxo.value:
        raise ChainDataError(
            f"Value mismatch for {utxo.outpoint}: indexer reports {utxo.value}, "
            f"parent output holds {output.satoshis}"
        )
    return parent, output


def _check_address(address: str, network: str, role: str) -> None:
    addr_network, _ = decode_address(address)
    if addr_network != network:
        raise ValidationError(f"{role} address belongs to {addr_network}, not {network}")


# ===================================================================
#  Build
# ===================================================================

def build(
    key: SigningKey,
    utxos_with_parents: list[UtxoWithParent],
    destination: str,
    amount: int,
    change_address: str | None = None,
    fee_rate: float = DEFAULT_FEE_RATE,
    network: str | None = None,
) -> SignedTransaction:
    """Build and sign a payment of *amount* satoshis to *destination*."""
    network = get_network(network or key.network).name
    if key.network != network:
        raise ValidationError(f"Signing key belongs to {key.network}, not {network}")
    _check_address(destination, network, "Destination")
    own_address = key.derive_public_identity()
    change_address = change_address or own_address
    _check_address(change_address, network, "Change")

    selection = select_outputs(list(utxos_with_parents), amount, fee_rate)
    own_script = p2pkh_lock(own_address)

    inputs: list[TransactionInput] = []
    total_input = 0
    for utxo in selection.selected:
        parent, source = _source_output(utxo)  # type: ignore[arg-type]
        if not same_script(source.locking_script, own_script):
            raise ValidationError(f"Output {utxo.outpoint} is not spendable by this key")
        inputs.append(
            TransactionInput(
                source_transaction=parent,
                source_txid=utxo.txid,
                source_output_index=utxo.vout,
                unlocking_script_template=key.unlocker(),
                sequence=SEQUENCE_FINAL,
            )
        )
        total_input += source.satoshis

    outputs = [TransactionOutput(locking_script=p2pkh_lock(destination), satoshis=amount)]
    if selection.change > 0:
        outputs.append(
            TransactionOutput(locking_script=p2pkh_lock(change_address), satoshis=selection.change)
        )

    fee = total_input - sum(out.satoshis for out in outputs)
    if fee < 0 or total_input != selection.total_value:
        raise ChainDataError("Selected inputs do not balance against the outputs")

    tx = Transaction(inputs, outputs)
    tx.sign()

    raw = tx.hex()
    signed = SignedTransaction(
        hex=raw,
        txid=tx.txid(),
        size=len(raw) // 2,
        inputs=len(inputs),
        outputs=len(outputs),
        fee=fee,
        change=selection.change,
        total_input=total_input,
        amount=amount,
        spent=[u.outpoint for u in selection.selected],
    )
    logger.info(
        f"Built tx {signed.txid}: {amount} sat to {destination}, fee {fee}, "
        f"change {signed.change}, {signed.inputs} input(s)"
    )
    return signed


async def build_from_chain(
    key: SigningKey,
    destination: str,
    amount: int,
    network: str,
    chain_client: ChainClient,
    change_address: str | None = None,
    fee_rate: float = DEFAULT_FEE_RATE,
) -> SignedTransaction:
    """Fetch the key's spendable outputs and their parents, then :func:`build`.

    Parents are only fetched for the outputs the selection actually uses.
    """
    address = key.derive_public_identity()
    utxos = await chain_client.get_spendable_outputs(address)
    if not utxos:
        raise InsufficientFunds(required=amount, available=0)
    selection = select_outputs(utxos, amount, fee_rate)
    with_parents = await fetch_parent_transactions(selection.selected, chain_client)
    return build(key, with_parents, destination, amount, change_address, fee_rate, network)
