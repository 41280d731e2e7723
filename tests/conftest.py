"""
Shared pytest fixtures for the x402 wallet test suite.
"""

from __future__ import annotations

import pytest
from aiohttp import web
from bsv import Script, Transaction, TransactionInput, TransactionOutput

from x402_wallet import vault
from x402_wallet.config import WalletConfig
from x402_wallet.context import WalletContext
from x402_wallet.keys import P2PKHKey
from x402_wallet.transaction import p2pkh_lock, same_script, txid_of

# secp256k1 private key 1: the textbook test vector
KEY_ONE = (1).to_bytes(32, "big")
MERCHANT_KEY = (2).to_bytes(32, "big")


@pytest.fixture
def fast_kdf(monkeypatch):
    """Cheaper scrypt cost for tests that only need the vault to work."""
    monkeypatch.setattr(vault, "SCRYPT_N", 2**10)


@pytest.fixture
def key():
    """Deterministic testnet signing key."""
    return P2PKHKey.from_bytes(KEY_ONE, "testnet")


@pytest.fixture
def merchant():
    return P2PKHKey.from_bytes(MERCHANT_KEY, "testnet")


def make_funding_tx(address: str, values: list[int], salt: int = 0) -> Transaction:
    """A parent transaction paying each of *values* to *address*."""
    inputs = [
        TransactionInput(
            source_txid=f"{salt:064x}", source_output_index=0, unlocking_script=Script("00")
        )
    ]
    outputs = [
        TransactionOutput(locking_script=p2pkh_lock(address), satoshis=value) for value in values
    ]
    return Transaction(inputs, outputs)


@pytest.fixture
def funding_tx():
    return make_funding_tx


@pytest.fixture
def wallet_config(tmp_path):
    cfg = WalletConfig()
    cfg.storage.wallets_dir = str(tmp_path / "wallets")
    cfg.network = "testnet"
    return cfg


@pytest.fixture
def context(wallet_config, fast_kdf):
    ctx = WalletContext(wallet_config)
    ctx.bootstrap()
    return ctx


class FakeIndexer:
    """In-memory WhatsOnChain stand-in served by ``aiohttp.web``.

    ``failures`` maps a route name to a list of ``(status, body)`` answers
    that are served (and consumed) before the normal response; a ``bytes``
    body is sent undecoded.
    """

    def __init__(self):
        self.utxos: dict[str, list[dict]] = {}
        self.raw: dict[str, str] = {}
        self.details: dict[str, dict] = {}
        self.history: dict[str, list[dict]] = {}
        self.height = 1000
        self.broadcasts: list[str] = []
        self.broadcast_answer: tuple[int, str] | None = None
        self.failures: dict[str, list[tuple[int, str]]] = {}
        self.calls: dict[str, int] = {}
        self.app = web.Application()
        self.app.router.add_get("/address/{address}/unspent", self._unspent)
        self.app.router.add_get("/address/{address}/history", self._history)
        self.app.router.add_get("/tx/hash/{txid}", self._details)
        self.app.router.add_get("/tx/{txid}/hex", self._hex)
        self.app.router.add_post("/tx/raw", self._broadcast)
        self.app.router.add_get("/chain/info", self._chain_info)

    def fund(self, address: str, tx: Transaction, height: int = 900) -> None:
        """Register every output of *tx* paying *address* as unspent."""
        self.raw[tx.txid()] = tx.hex()
        script = p2pkh_lock(address)
        for vout, out in enumerate(tx.outputs):
            if same_script(out.locking_script, script):
                self.utxos.setdefault(address, []).append(
                    {"tx_hash": tx.txid(), "tx_pos": vout, "value": out.satoshis, "height": height}
                )

    def _fail(self, name: str) -> web.Response | None:
        self.calls[name] = self.calls.get(name, 0) + 1
        queue = self.failures.get(name)
        if queue:
            status, body = queue.pop(0)
            if isinstance(body, bytes):
                return web.Response(status=status, body=body, content_type="text/plain", charset="utf-8")
            return web.Response(status=status, text=body)
        return None

    async def _unspent(self, request):
        if (resp := self._fail("unspent")) is not None:
            return resp
        address = request.match_info["address"]
        return web.json_response(self.utxos.get(address, []))

    async def _history(self, request):
        if (resp := self._fail("history")) is not None:
            return resp
        address = request.match_info["address"]
        if address not in self.history:
            return web.Response(status=404, text="Not Found")
        return web.json_response(self.history[address])

    async def _details(self, request):
        if (resp := self._fail("details")) is not None:
            return resp
        txid = request.match_info["txid"]
        if txid not in self.details:
            return web.Response(status=404, text="Not Found")
        return web.json_response(self.details[txid])

    async def _hex(self, request):
        if (resp := self._fail("hex")) is not None:
            return resp
        txid = request.match_info["txid"]
        if txid not in self.raw:
            return web.Response(status=404, text="Not Found")
        return web.Response(text=self.raw[txid])

    async def _broadcast(self, request):
        if (resp := self._fail("broadcast")) is not None:
            return resp
        body = await request.json()
        self.broadcasts.append(body["txhex"])
        if self.broadcast_answer is not None:
            status, text = self.broadcast_answer
            return web.Response(status=status, text=text)
        txid = txid_of(body["txhex"])
        return web.Response(text=f'"{txid}"')

    async def _chain_info(self, request):
        if (resp := self._fail("chain_info")) is not None:
            return resp
        return web.json_response({"chain": "test", "blocks": self.height})


@pytest.fixture
def indexer():
    return FakeIndexer()


class RecordingSleep:
    """Drop-in for ``asyncio.sleep`` that records delays instead of waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def recording_sleep():
    return RecordingSleep()
