"""
Public wallet operations.

Each operation takes a :class:`~x402_wallet.context.WalletContext` and a
parameter object, and returns an :class:`~x402_wallet.errors.OperationResult`.
Nothing raises past this layer: our own errors keep their curated message
and code, anything unexpected is logged with its traceback and reported by
class name only.  Passphrases are masked in every message.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from x402_wallet import payment_proof, tx_builder
from x402_wallet.chain_client import BroadcastResult, HistoryEntry
from x402_wallet.crypto_utils import is_valid_address
from x402_wallet.context import WalletContext
from x402_wallet.errors import OperationResult, ValidationError, WalletError, describe, error_code_of
from x402_wallet.manager import WalletManager
from x402_wallet.networks import get_network
from x402_wallet.storage import LocalTransactionRecord, utc_now_iso

logger = logging.getLogger("x402_wallet.payments")

SATOSHIS_PER_BSV = 100_000_000
GENESIS_TIMESTAMP = 1231006505  # block 0, 2009-01-03 18:15:05 UTC
AVERAGE_BLOCK_SECONDS = 600
MAX_HISTORY_LIMIT = 1000


# ===================================================================
#  Parameters
# ===================================================================

def _require_positive_int(value: Any, name: str) -> None:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer number of satoshis")


def _require_address(address: Optional[str], name: str) -> None:
    if not address:
        raise ValidationError(f"{name} is required")
    if not is_valid_address(address):
        raise ValidationError(f"{name} is not a valid address: {address}")


@dataclass
class CreatePaymentParams:
    wallet_id: str
    passphrase: str = field(repr=False)
    pay_to: str
    amount: int
    network: Optional[str] = None
    change_address: Optional[str] = None
    fee_rate: Optional[float] = None
    language: Optional[str] = None
    cognitive_level: Optional[str] = None
    audio_friendly: Optional[bool] = None
    resource_url: Optional[str] = None

    def validate(self) -> None:
        if not self.wallet_id:
            raise ValidationError("wallet_id is required")
        if not self.passphrase:
            raise ValidationError("passphrase is required")
        _require_address(self.pay_to, "pay_to")
        _require_positive_int(self.amount, "amount")
        if self.network is not None:
            get_network(self.network)
        if self.change_address is not None:
            _require_address(self.change_address, "change_address")
        if self.fee_rate is not None and self.fee_rate <= 0:
            raise ValidationError("fee_rate must be positive")

    def accessibility(self) -> Optional[payment_proof.Accessibility]:
        if self.language is None and self.cognitive_level is None and self.audio_friendly is None:
            return None
        return payment_proof.Accessibility(
            language=self.language,
            cognitive_level=self.cognitive_level,
            audio_friendly=self.audio_friendly,
        )


@dataclass
class SendTransactionParams:
    wallet_id: str
    passphrase: str = field(repr=False)
    to_address: str
    amount: int
    change_address: Optional[str] = None
    fee_rate: Optional[float] = None

    def validate(self) -> None:
        if not self.wallet_id:
            raise ValidationError("wallet_id is required")
        if not self.passphrase:
            raise ValidationError("passphrase is required")
        _require_address(self.to_address, "to_address")
        _require_positive_int(self.amount, "amount")
        if self.change_address is not None:
            _require_address(self.change_address, "change_address")
        if self.fee_rate is not None and self.fee_rate <= 0:
            raise ValidationError("fee_rate must be positive")


# ===================================================================
#  Boundary
# ===================================================================

def _operation(name: str) -> Callable:
    """Turn exceptions from *fn* into failed ``OperationResult`` objects."""

    def decorator(fn: Callable[..., Awaitable[OperationResult]]) -> Callable[..., Awaitable[OperationResult]]:
        @functools.wraps(fn)
        async def wrapper(ctx: WalletContext, *args: Any, **kwargs: Any) -> OperationResult:
            secrets = [getattr(a, "passphrase", "") for a in args]
            try:
                return await fn(ctx, *args, **kwargs)
            except WalletError as exc:
                logger.info(f"{name} failed: {exc.__class__.__name__}")
                return OperationResult(
                    success=False,
                    error=describe(exc, secrets),
                    error_code=error_code_of(exc),
                )
            except Exception as exc:
                logger.exception(f"{name} failed unexpectedly")
                return OperationResult(
                    success=False,
                    error=describe(exc, secrets),
                    error_code=error_code_of(exc),
                )

        return wrapper

    return decorator


def _record_sent(
    ctx: WalletContext,
    wallet_id: str,
    network: str,
    signed: tx_builder.SignedTransaction,
    to_address: str,
    purpose: str,
    x402: bool,
) -> None:
    metadata: dict[str, Any] = {
        "changeAmount": signed.change,
        "inputs": signed.inputs,
        "outputs": signed.outputs,
    }
    if x402:
        metadata["x402"] = True
    ctx.history.append(
        LocalTransactionRecord(
            txid=signed.txid,
            wallet_id=wallet_id,
            timestamp=utc_now_iso(),
            type="sent",
            amount=signed.amount,
            fee=signed.fee,
            to_address=to_address,
            network=network,
            purpose=purpose,
            metadata=metadata,
        )
    )


# ===================================================================
#  Operations
# ===================================================================

@_operation("create_payment")
async def create_payment(ctx: WalletContext, params: CreatePaymentParams) -> OperationResult:
    """Build and sign a payment and wrap it as an x402 proof. Does not broadcast."""
    params.validate()
    manager = WalletManager(ctx)
    wallet = await manager.unlock(params.wallet_id, params.passphrase)
    network = params.network or wallet.network
    if network != wallet.network:
        raise ValidationError(
            f"Wallet is configured for {wallet.network} but {network} was requested"
        )

    async with ctx.chain_client(network) as chain:
        signed = await tx_builder.build_from_chain(
            wallet.key,
            params.pay_to,
            params.amount,
            network,
            chain,
            change_address=params.change_address,
            fee_rate=params.fee_rate or ctx.fee_rate,
        )

    envelope = payment_proof.encode(signed.hex, network, params.accessibility())
    _record_sent(ctx, wallet.id, network, signed, params.pay_to, "x402 payment", x402=True)

    return OperationResult(
        success=True,
        message=f"Payment of {signed.amount} satoshis to {params.pay_to} created",
        data={
            "paymentPayload": envelope,
            "txid": signed.txid,
            "amount": signed.amount,
            "fee": signed.fee,
            "change": signed.change,
            "inputs": signed.inputs,
            "outputs": signed.outputs,
            "size": signed.size,
            "network": network,
            "instructions": payment_proof.usage_instructions(envelope, params.resource_url),
        },
    )


@_operation("send_transaction")
async def send_transaction(ctx: WalletContext, params: SendTransactionParams) -> OperationResult:
    """Build, sign and broadcast a plain payment."""
    params.validate()
    manager = WalletManager(ctx)
    wallet = await manager.unlock(params.wallet_id, params.passphrase)

    async with ctx.chain_client(wallet.network) as chain:
        signed = await tx_builder.build_from_chain(
            wallet.key,
            params.to_address,
            params.amount,
            wallet.network,
            chain,
            change_address=params.change_address,
            fee_rate=params.fee_rate or ctx.fee_rate,
        )
        result: BroadcastResult = await chain.broadcast(signed.hex)

    data = {
        "txid": signed.txid,
        "amount": signed.amount,
        "fee": signed.fee,
        "change": signed.change,
        "toAddress": params.to_address,
        "fromAddress": wallet.address,
        "network": wallet.network,
        "inputs": signed.inputs,
        "outputs": signed.outputs,
        "size": signed.size,
        "status": result.status,
    }

    if result.status == "accepted":
        _record_sent(ctx, wallet.id, wallet.network, signed, params.to_address, "transfer", x402=False)
        return OperationResult(
            success=True,
            message=f"Sent {signed.amount} satoshis to {params.to_address}",
            data={**data, "broadcasted": True},
        )
    if result.status == "already-broadcast":
        _record_sent(ctx, wallet.id, wallet.network, signed, params.to_address, "transfer", x402=False)
        return OperationResult(
            success=False,
            message="Transaction was already broadcast",
            data={**data, "broadcasted": True},
            error="already broadcast",
            error_code="already_broadcast",
        )
    if result.status == "stale-inputs":
        return OperationResult(
            success=False,
            message="Inputs are already spent or unknown; refresh and retry",
            data={**data, "broadcasted": False},
            error=result.error,
            error_code="stale_inputs",
        )
    return OperationResult(
        success=False,
        message="Broadcast rejected by the indexer",
        data={**data, "broadcasted": False},
        error=result.error,
        error_code="broadcast_rejected",
    )


@_operation("get_balance")
async def get_balance(
    ctx: WalletContext, wallet_id: str, include_utxos: bool = False
) -> OperationResult:
    meta = WalletManager(ctx).metadata(wallet_id)
    async with ctx.chain_client(meta.network) as chain:
        utxos = await chain.get_spendable_outputs(meta.address)

    balance = sum(u.value for u in utxos)
    confirmed = sum(u.value for u in utxos if u.confirmed)
    data: dict[str, Any] = {
        "walletId": meta.id,
        "address": meta.address,
        "network": meta.network,
        "balance": balance,
        "balanceBSV": balance / SATOSHIS_PER_BSV,
        "confirmed": confirmed,
        "unconfirmed": balance - confirmed,
        "utxoCount": len(utxos),
    }
    if include_utxos:
        data["utxos"] = [u.to_dict() for u in utxos]
    return OperationResult(success=True, message=f"Balance: {balance} satoshis", data=data)


# ===================================================================
#  History enrichment
# ===================================================================

def estimate_timestamp(height: int) -> str:
    ts = GENESIS_TIMESTAMP + height * AVERAGE_BLOCK_SECONDS
    return (
        datetime.fromtimestamp(ts, tz=timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def _output_addresses(vout: dict) -> list[str]:
    return list((vout.get("scriptPubKey") or {}).get("addresses") or [])


def classify_transaction(details: dict, address: str) -> str:
    """``sent``, ``received`` or ``self`` from the wallet's point of view."""
    in_inputs = any(v.get("address") == address for v in details.get("vin", []))
    in_outputs = any(address in _output_addresses(v) for v in details.get("vout", []))
    if in_inputs and in_outputs:
        return "self"
    if in_inputs:
        return "sent"
    return "received"


def _to_sats(value: Any) -> int:
    # The indexer reports output values in BSV, not satoshis
    if isinstance(value, float):
        return round(value * SATOSHIS_PER_BSV)
    return int(value or 0)


def details_fee(details: dict) -> int:
    total_in = sum(_to_sats(v.get("value")) for v in details.get("vin", []))
    total_out = sum(_to_sats(v.get("value")) for v in details.get("vout", []))
    return total_in - total_out


def net_amount(details: dict, address: str, tx_type: str) -> int:
    received = sum(
        _to_sats(v.get("value"))
        for v in details.get("vout", [])
        if address in _output_addresses(v)
    )
    spent = sum(
        _to_sats(v.get("value"))
        for v in details.get("vin", [])
        if v.get("address") == address
    )
    if tx_type == "received":
        return received
    if tx_type == "sent":
        return -(spent - received)
    return -details_fee(details)


def counterparties(details: dict, address: str) -> dict[str, list[str]]:
    sources: list[str] = []
    targets: list[str] = []
    for v in details.get("vin", []):
        a = v.get("address")
        if a and a != address and a not in sources:
            sources.append(a)
    for v in details.get("vout", []):
        for a in _output_addresses(v):
            if a != address and a not in targets:
                targets.append(a)
    return {"from": sources, "to": targets}


@_operation("list_transactions")
async def list_transactions(
    ctx: WalletContext, wallet_id: str, limit: int = 100
) -> OperationResult:
    """Chain history for the wallet, enriched with details and the local log.

    A transaction whose details cannot be fetched is logged and left out.
    """
    if not isinstance(limit, int) or not 0 < limit <= MAX_HISTORY_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_HISTORY_LIMIT}")
    meta = WalletManager(ctx).metadata(wallet_id)
    base = {"walletId": meta.id, "address": meta.address, "network": meta.network}

    async with ctx.chain_client(meta.network) as chain:
        history: list[HistoryEntry] = await chain.get_history(meta.address)
        if not history:
            return OperationResult(
                success=True, message="No transactions", data={**base, "transactions": [], "total": 0}
            )
        local = ctx.history.load(wallet_id)
        height = await chain.get_chain_height()

        enriched: list[dict[str, Any]] = []
        for entry in history:
            try:
                details = await chain.get_transaction_details(entry.txid)
            except WalletError as exc:
                logger.warning(f"Skipping {entry.txid} in history of {wallet_id}: {exc}")
                continue

            tx_type = classify_transaction(details, meta.address)
            record = ctx.history.find(entry.txid, local)
            if record is not None:
                fee: Optional[int] = record.fee
            elif tx_type in ("sent", "self"):
                fee = details_fee(details)
            else:
                fee = None

            if record is not None and record.timestamp:
                timestamp = record.timestamp
            elif entry.height:
                timestamp = estimate_timestamp(entry.height)
            else:
                timestamp = utc_now_iso()

            enriched.append({
                "txid": entry.txid,
                "timestamp": timestamp,
                "height": entry.height,
                "confirmations": height - entry.height + 1 if entry.height else 0,
                "type": tx_type,
                "amount": net_amount(details, meta.address, tx_type),
                "fee": fee,
                "addresses": counterparties(details, meta.address),
                "isLocal": record is not None,
                "purpose": record.purpose if record is not None else None,
            })

    enriched.sort(key=lambda t: t["timestamp"], reverse=True)
    limited = enriched[:limit]
    return OperationResult(
        success=True,
        message=f"{len(limited)} transaction(s)",
        data={**base, "transactions": limited, "total": len(limited)},
    )
