"""
End-to-end tests for x402_wallet.payments against the in-process indexer.

Covers:
  - create_payment: x402 envelope, fee/change, local history, no broadcast
  - send_transaction: accepted / already broadcast / stale inputs
  - get_balance and list_transactions enrichment
  - error boundary: typed codes, masked passphrases, internal errors
"""

from __future__ import annotations

from contextlib import asynccontextmanager

import pytest
from aiohttp.test_utils import TestServer

from x402_wallet import payment_proof, payments
from x402_wallet.chain_client import ChainClient
from x402_wallet.context import WalletContext
from x402_wallet.crypto_utils import encode_wif
from x402_wallet.manager import WalletManager
from x402_wallet.payments import CreatePaymentParams, SendTransactionParams
from x402_wallet.transaction import txid_of

KEY_ONE = (1).to_bytes(32, "big")
PASSPHRASE = "correct horse battery"


@asynccontextmanager
async def running(indexer, wallet_config, sleep):
    """A context whose chain clients talk to *indexer*."""
    async with TestServer(indexer.app) as server:
        base_url = str(server.make_url("")).rstrip("/")
        ctx = WalletContext(
            wallet_config,
            chain_client_factory=lambda net: ChainClient(net, base_url=base_url, sleep=sleep),
        )
        ctx.bootstrap()
        yield ctx


async def _funded_wallet(ctx, indexer, key, funding_tx, values=(50_000, 30_000, 20_000)):
    info = await WalletManager(ctx).import_wif(
        "agent", encode_wif(KEY_ONE, "testnet"), "testnet", PASSPHRASE
    )
    for salt, value in enumerate(values):
        indexer.fund(key.address, funding_tx(key.address, [value], salt=salt + 1))
    return info.id


# ═══════════════════════════════════════════════════════════════════
#  create_payment
# ═══════════════════════════════════════════════════════════════════

class TestCreatePayment:
    @pytest.mark.asyncio
    async def test_creates_envelope(
        self, indexer, wallet_config, fast_kdf, recording_sleep, key, merchant, funding_tx
    ):
        async with running(indexer, wallet_config, recording_sleep) as ctx:
            wallet_id = await _funded_wallet(ctx, indexer, key, funding_tx)
            result = await payments.create_payment(ctx, CreatePaymentParams(
                wallet_id=wallet_id,
                passphrase=PASSPHRASE,
                pay_to=merchant.address,
                amount=40_000,
                language="es",
                resource_url="https://api.example.com/weather",
            ))

        assert result.success, result.error
        data = result.data
        assert data["fee"] == 113
        assert data["change"] == 9_887
        assert data["inputs"] == 1
        assert data["network"] == "testnet"
        assert "https://api.example.com/weather" in data["instructions"]

        envelope = payment_proof.decode(data["paymentPayload"])
        assert envelope.network == "bsv-testnet"
        assert envelope.accessibility.language == "es"
        assert txid_of(envelope.transaction) == data["txid"]

        assert indexer.broadcasts == []
        local = ctx.history.load(wallet_id)
        assert [r.txid for r in local] == [data["txid"]]
        assert local[0].metadata["x402"] is True
        assert local[0].purpose == "x402 payment"

    @pytest.mark.asyncio
    async def test_wrong_passphrase_is_masked(
        self, indexer, wallet_config, fast_kdf, recording_sleep, key, merchant, funding_tx
    ):
        async with running(indexer, wallet_config, recording_sleep) as ctx:
            wallet_id = await _funded_wallet(ctx, indexer, key, funding_tx)
            result = await payments.create_payment(ctx, CreatePaymentParams(
                wallet_id=wallet_id, passphrase="wrong-password",
                pay_to=merchant.address, amount=1_000,
            ))
        assert not result.success
        assert result.error_code == "authentication_failed"
        assert "wrong-password" not in result.to_dict()["error"]

    @pytest.mark.asyncio
    async def test_network_mismatch(
        self, indexer, wallet_config, fast_kdf, recording_sleep, key, merchant, funding_tx
    ):
        async with running(indexer, wallet_config, recording_sleep) as ctx:
            wallet_id = await _funded_wallet(ctx, indexer, key, funding_tx)
            result = await payments.create_payment(ctx, CreatePaymentParams(
                wallet_id=wallet_id, passphrase=PASSPHRASE,
                pay_to=merchant.address, amount=1_000, network="mainnet",
            ))
        assert result.error_code == "validation_error"

    @pytest.mark.asyncio
    async def test_insufficient_funds(
        self, indexer, wallet_config, fast_kdf, recording_sleep, key, merchant, funding_tx
    ):
        async with running(indexer, wallet_config, recording_sleep) as ctx:
            wallet_id = await _funded_wallet(ctx, indexer, key, funding_tx, values=(500,))
            result = await payments.create_payment(ctx, CreatePaymentParams(
                wallet_id=wallet_id, passphrase=PASSPHRASE,
                pay_to=merchant.address, amount=10_000,
            ))
        assert not result.success
        assert result.error_code == "insufficient_funds"
        assert "Insufficient funds" in result.error

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount,pay_to", [
        (0, "mrCDrCybB6J1vRfbwM5hemdJz73FwDBC8r"),
        (1.5, "mrCDrCybB6J1vRfbwM5hemdJz73FwDBC8r"),
        (1_000, "not-an-address"),
    ])
    async def test_invalid_params(self, context, amount, pay_to):
        result = await payments.create_payment(context, CreatePaymentParams(
            wallet_id="w1", passphrase=PASSPHRASE, pay_to=pay_to, amount=amount,
        ))
        assert result.error_code == "validation_error"

    @pytest.mark.asyncio
    async def test_unknown_wallet(self, context, merchant):
        result = await payments.create_payment(context, CreatePaymentParams(
            wallet_id="missing", passphrase=PASSPHRASE, pay_to=merchant.address, amount=1_000,
        ))
        assert result.error_code == "not_found"

    @pytest.mark.asyncio
    async def test_unexpected_error_reports_class_only(
        self, wallet_config, fast_kdf, key, merchant
    ):
        def exploding_factory(network):
            raise RuntimeError(f"boom {PASSPHRASE}")

        ctx = WalletContext(wallet_config, chain_client_factory=exploding_factory)
        ctx.bootstrap()
        info = await WalletManager(ctx).import_wif(
            "agent", encode_wif(KEY_ONE, "testnet"), "testnet", PASSPHRASE
        )
        result = await payments.create_payment(ctx, CreatePaymentParams(
            wallet_id=info.id, passphrase=PASSPHRASE, pay_to=merchant.address, amount=1_000,
        ))
        assert not result.success
        assert result.error == "Internal error (RuntimeError)"
        assert result.error_code == "internal_error"


# ═══════════════════════════════════════════════════════════════════
#  send_transaction
# ═══════════════════════════════════════════════════════════════════

class TestSendTransaction:
    @pytest.mark.asyncio
    async def test_accepted(
        self, indexer, wallet_config, fast_kdf, recording_sleep, key, merchant, funding_tx
    ):
        async with running(indexer, wallet_config, recording_sleep) as ctx:
            wallet_id = await _funded_wallet(ctx, indexer, key, funding_tx)
            result = await payments.send_transaction(ctx, SendTransactionParams(
                wallet_id=wallet_id, passphrase=PASSPHRASE,
                to_address=merchant.address, amount=25_000,
            ))
        assert result.success
        assert result.data["status"] == "accepted"
        assert result.data["broadcasted"] is True
        assert len(indexer.broadcasts) == 1
        assert txid_of(indexer.broadcasts[0]) == result.data["txid"]
        assert ctx.history.load(wallet_id)[0].purpose == "transfer"

    @pytest.mark.asyncio
    async def test_already_broadcast(
        self, indexer, wallet_config, fast_kdf, recording_sleep, key, merchant, funding_tx
    ):
        indexer.broadcast_answer = (400, "txn-already-known")
        async with running(indexer, wallet_config, recording_sleep) as ctx:
            wallet_id = await _funded_wallet(ctx, indexer, key, funding_tx)
            result = await payments.send_transaction(ctx, SendTransactionParams(
                wallet_id=wallet_id, passphrase=PASSPHRASE,
                to_address=merchant.address, amount=25_000,
            ))
        assert not result.success
        assert result.error == "already broadcast"
        assert result.error_code == "already_broadcast"
        assert len(ctx.history.load(wallet_id)) == 1

    @pytest.mark.asyncio
    async def test_stale_inputs(
        self, indexer, wallet_config, fast_kdf, recording_sleep, key, merchant, funding_tx
    ):
        indexer.broadcast_answer = (400, "Missing inputs")
        async with running(indexer, wallet_config, recording_sleep) as ctx:
            wallet_id = await _funded_wallet(ctx, indexer, key, funding_tx)
            result = await payments.send_transaction(ctx, SendTransactionParams(
                wallet_id=wallet_id, passphrase=PASSPHRASE,
                to_address=merchant.address, amount=25_000,
            ))
        assert result.error_code == "stale_inputs"
        assert result.data["broadcasted"] is False
        assert ctx.history.load(wallet_id) == []

    @pytest.mark.asyncio
    async def test_rejected(
        self, indexer, wallet_config, fast_kdf, recording_sleep, key, merchant, funding_tx
    ):
        indexer.broadcast_answer = (400, "mandatory-script-verify-flag-failed")
        async with running(indexer, wallet_config, recording_sleep) as ctx:
            wallet_id = await _funded_wallet(ctx, indexer, key, funding_tx)
            result = await payments.send_transaction(ctx, SendTransactionParams(
                wallet_id=wallet_id, passphrase=PASSPHRASE,
                to_address=merchant.address, amount=25_000,
            ))
        assert result.error_code == "broadcast_rejected"


# ═══════════════════════════════════════════════════════════════════
#  Balance & history
# ═══════════════════════════════════════════════════════════════════

class TestBalance:
    @pytest.mark.asyncio
    async def test_balance(self, indexer, wallet_config, fast_kdf, recording_sleep, key, funding_tx):
        async with running(indexer, wallet_config, recording_sleep) as ctx:
            wallet_id = await _funded_wallet(ctx, indexer, key, funding_tx, values=(1_000, 2_000))
            indexer.fund(key.address, funding_tx(key.address, [500], salt=99), height=0)
            result = await payments.get_balance(ctx, wallet_id, include_utxos=True)
        assert result.success
        assert result.data["balance"] == 3_500
        assert result.data["confirmed"] == 3_000
        assert result.data["unconfirmed"] == 500
        assert result.data["utxoCount"] == 3
        assert result.data["balanceBSV"] == 0.000035
        assert len(result.data["utxos"]) == 3

    @pytest.mark.asyncio
    async def test_unknown_wallet(self, context):
        result = await payments.get_balance(context, "missing")
        assert result.error_code == "not_found"


class TestHistoryEnrichment:
    def test_estimate_timestamp(self):
        assert payments.estimate_timestamp(0) == "2009-01-03T18:15:05.000Z"

    def test_classify(self):
        me, other = "me", "other"
        sent = {"vin": [{"address": me}], "vout": [{"scriptPubKey": {"addresses": [other]}}]}
        received = {"vin": [{"address": other}], "vout": [{"scriptPubKey": {"addresses": [me]}}]}
        to_self = {"vin": [{"address": me}], "vout": [{"scriptPubKey": {"addresses": [me]}}]}
        assert payments.classify_transaction(sent, me) == "sent"
        assert payments.classify_transaction(received, me) == "received"
        assert payments.classify_transaction(to_self, me) == "self"

    def test_amounts_in_bsv_are_converted(self):
        details = {
            "vin": [{"address": "me", "value": 0.0005}],
            "vout": [
                {"value": 0.0003, "scriptPubKey": {"addresses": ["other"]}},
                {"value": 0.00019887, "scriptPubKey": {"addresses": ["me"]}},
            ],
        }
        assert payments.details_fee(details) == 113
        assert payments.net_amount(details, "me", "sent") == -30_113
        assert payments.counterparties(details, "me") == {"from": [], "to": ["other"]}

    @pytest.mark.asyncio
    async def test_list_transactions(
        self, indexer, wallet_config, fast_kdf, recording_sleep, key, merchant
    ):
        sent_id, received_id, broken_id = "aa" * 32, "bb" * 32, "cc" * 32
        indexer.history[key.address] = [
            {"tx_hash": received_id, "height": 100},
            {"tx_hash": sent_id, "height": 0},
            {"tx_hash": broken_id, "height": 50},
        ]
        indexer.details[received_id] = {
            "vin": [{"address": merchant.address, "value": 0.001}],
            "vout": [{"value": 0.0009, "scriptPubKey": {"addresses": [key.address]}}],
        }
        indexer.details[sent_id] = {
            "vin": [{"address": key.address, "value": 0.0009}],
            "vout": [
                {"value": 0.0004, "scriptPubKey": {"addresses": [merchant.address]}},
                {"value": 0.0004995, "scriptPubKey": {"addresses": [key.address]}},
            ],
        }

        async with running(indexer, wallet_config, recording_sleep) as ctx:
            info = await WalletManager(ctx).import_wif(
                "agent", encode_wif(KEY_ONE, "testnet"), "testnet", PASSPHRASE
            )
            result = await payments.list_transactions(ctx, info.id, limit=10)

        assert result.success
        txs = {t["txid"]: t for t in result.data["transactions"]}
        assert set(txs) == {sent_id, received_id}
        assert txs[received_id]["type"] == "received"
        assert txs[received_id]["amount"] == 90_000
        assert txs[received_id]["fee"] is None
        assert txs[received_id]["confirmations"] == indexer.height - 100 + 1
        assert txs[sent_id]["type"] == "self"
        assert txs[sent_id]["confirmations"] == 0
        assert txs[sent_id]["fee"] == 50
        assert txs[sent_id]["addresses"]["to"] == [merchant.address]

    @pytest.mark.asyncio
    async def test_empty_history(self, indexer, wallet_config, fast_kdf, recording_sleep):
        async with running(indexer, wallet_config, recording_sleep) as ctx:
            info = await WalletManager(ctx).import_wif(
                "agent", encode_wif(KEY_ONE, "testnet"), "testnet", PASSPHRASE
            )
            result = await payments.list_transactions(ctx, info.id)
        assert result.success
        assert result.data["transactions"] == []
        assert result.data["total"] == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, 1001, -1])
    async def test_limit_bounds(self, context, limit):
        result = await payments.list_transactions(context, "w1", limit=limit)
        assert result.error_code == "validation_error"
