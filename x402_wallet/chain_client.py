"""
Async client for a WhatsOnChain-compatible chain indexer.

All remote calls share one retry loop:

  * transport failures (``aiohttp.ClientError``, timeouts), HTTP 5xx and
    HTTP 429 are retried with exponential back-off
    ``min(initial_delay * 2**attempt, max_delay)``;
  * any other 4xx surfaces immediately as :class:`ChainAPIError`;
  * when every attempt fails, :class:`MaxRetriesExceeded` is raised.

Broadcast additionally inspects the provider's error text before deciding
whether to retry, because "already known" and "inputs spent" answers are
final no matter which status code carries them.

Usage:
    async with ChainClient("testnet") as chain:
        utxos = await chain.get_spendable_outputs(address)
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from x402_wallet.errors import (
    ChainAPIError,
    ChainDataError,
    MaxRetriesExceeded,
    NotFound,
    TransientNetwork,
    ValidationError,
)
from x402_wallet.networks import get_network
from x402_wallet.transaction import is_hex, txid_of

logger = logging.getLogger("x402_wallet.chain_client")

CHAIN_API_URLS: dict[str, str] = {
    "mainnet": "https://api.whatsonchain.com/v1/bsv/main",
    "testnet": "https://api.whatsonchain.com/v1/bsv/test",
}

DEFAULT_TIMEOUT = 30.0

ALREADY_KNOWN_MARKERS = (
    "Transaction already in the mempool",
    "txn-already-known",
    "Transaction already exists",
    "already in block chain",
)
STALE_INPUT_MARKERS = (
    "Missing inputs",
    "bad-txns-inputs-spent",
    "txn-mempool-conflict",
)

SleepFn = Callable[[float], Awaitable[Any]]


# ===================================================================
#  Data types
# ===================================================================

@dataclass
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0

    def delay_for(self, attempt: int) -> float:
        return min(self.initial_delay * (2 ** attempt), self.max_delay)

    @property
    def attempts(self) -> int:
        return self.max_retries + 1


@dataclass
class Utxo:
    """An unspent output as reported by the indexer."""

    txid: str
    vout: int
    value: int
    height: Optional[int] = None

    @property
    def confirmed(self) -> bool:
        return bool(self.height)

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"

    def to_dict(self) -> dict[str, Any]:
        return {"txid": self.txid, "vout": self.vout, "value": self.value, "height": self.height}


@dataclass
class HistoryEntry:
    txid: str
    height: Optional[int] = None


@dataclass
class BroadcastResult:
    """Outcome of a broadcast.

    ``status`` is one of ``accepted``, ``already-broadcast``,
    ``stale-inputs`` or ``rejected``.
    """

    success: bool
    status: str
    txid: Optional[str] = None
    error: Optional[str] = None


@dataclass
class Reply:
    """A final indexer answer: 2xx, 404, or a verdict reached by inspection."""

    status: int
    body: str
    verdict: Optional[BroadcastResult] = None


def _local_txid(raw_hex: str) -> Optional[str]:
    try:
        return txid_of(raw_hex)
    except ValidationError:
        return None


def classify_broadcast_error(status: int, body: str, raw_hex: str = "") -> Optional[BroadcastResult]:
    """Map a failed broadcast answer to a final result, or ``None`` to retry."""
    text = body.strip().strip('"')
    if any(marker in text for marker in ALREADY_KNOWN_MARKERS):
        return BroadcastResult(
            success=False,
            status="already-broadcast",
            txid=_local_txid(raw_hex),
            error="already broadcast",
        )
    if any(marker in text for marker in STALE_INPUT_MARKERS):
        return BroadcastResult(success=False, status="stale-inputs", error=text)
    if 400 <= status < 500 and status != 429:
        return BroadcastResult(success=False, status="rejected", error=text or f"HTTP {status}")
    return None


# ===================================================================
#  Client
# ===================================================================

class ChainClient:
    """Read chain state and broadcast transactions for one network."""

    def __init__(
        self,
        network: str,
        base_url: str | None = None,
        retry: RetryPolicy | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        sleep: SleepFn | None = None,
        session: aiohttp.ClientSession | None = None,
    ):
        self.network = get_network(network).name
        self.base_url = (base_url or CHAIN_API_URLS[self.network]).rstrip("/")
        self.retry = retry or RetryPolicy()
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._sleep: SleepFn = sleep or asyncio.sleep
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> ChainClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    # ---- retry loop ----

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json_body: Any = None,
        inspect: Callable[[int, str], Optional[BroadcastResult]] | None = None,
    ) -> Reply:
        """Issue a request under the retry policy.

        404 is returned to the caller rather than raised.  *inspect* sees
        every other failing answer first; a non-``None`` verdict ends the
        loop and comes back on the reply.
        """
        url = f"{self.base_url}{path}"
        session = self._get_session()
        last_error: Exception | None = None

        for attempt in range(self.retry.attempts):
            try:
                async with session.request(
                    method, url, json=json_body, timeout=self._timeout
                ) as resp:
                    status = resp.status
                    body = await resp.text()
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                last_error = TransientNetwork(f"{operation}: {exc.__class__.__name__}")
            except UnicodeDecodeError as exc:
                raise ChainDataError(f"{operation}: undecodable response") from exc
            else:
                if status < 400 or status == 404:
                    return Reply(status, body)
                if inspect is not None:
                    verdict = inspect(status, body)
                    if verdict is not None:
                        return Reply(status, body, verdict)
                if status == 429 or status >= 500:
                    last_error = TransientNetwork(
                        f"{operation}: HTTP {status}", status=status, body=body
                    )
                else:
                    raise ChainAPIError(status, body, url)

            if attempt < self.retry.attempts - 1:
                delay = self.retry.delay_for(attempt)
                logger.warning(
                    f"{operation} failed (attempt {attempt + 1}/{self.retry.attempts}): "
                    f"{last_error}; retrying in {delay:.1f}s"
                )
                await self._sleep(delay)

        raise MaxRetriesExceeded(operation, self.retry.attempts, last_error)

    @staticmethod
    def _parse_json(body: str, operation: str) -> Any:
        try:
            return json.loads(body)
        except ValueError as exc:
            raise ChainDataError(f"{operation}: indexer returned invalid JSON") from exc

    # ---- queries ----

    async def get_spendable_outputs(self, address: str) -> list[Utxo]:
        operation = f"get_spendable_outputs({address})"
        reply = await self._request("GET", f"/address/{address}/unspent", operation)
        if reply.status == 404:
            return []
        data = self._parse_json(reply.body, operation)
        if not isinstance(data, list):
            raise ChainDataError(f"{operation}: expected a list of outputs")
        try:
            return [
                Utxo(
                    txid=str(item["tx_hash"]),
                    vout=int(item["tx_pos"]),
                    value=int(item["value"]),
                    height=int(item["height"]) if item.get("height") is not None else None,
                )
                for item in data
            ]
        except (KeyError, TypeError, ValueError) as exc:
            raise ChainDataError(f"{operation}: malformed output entry") from exc

    async def get_balance(self, address: str) -> int:
        return sum(u.value for u in await self.get_spendable_outputs(address))

    async def get_raw_transaction(self, txid: str) -> str:
        operation = f"get_raw_transaction({txid})"
        reply = await self._request("GET", f"/tx/{txid}/hex", operation)
        if reply.status == 404:
            raise NotFound(f"Transaction not found: {txid}")
        raw = reply.body.strip().strip('"')
        if not raw:
            raise ChainDataError(f"{operation}: empty response")
        if not is_hex(raw):
            raise ChainDataError(f"{operation}: response is not transaction hex")
        return raw

    async def transaction_exists(self, txid: str) -> bool:
        try:
            await self.get_raw_transaction(txid)
        except NotFound:
            return False
        return True

    async def get_chain_height(self) -> int:
        operation = "get_chain_height"
        reply = await self._request("GET", "/chain/info", operation)
        if reply.status == 404:
            raise ChainDataError(f"{operation}: chain info endpoint not found")
        data = self._parse_json(reply.body, operation)
        try:
            return int(data["blocks"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ChainDataError(f"{operation}: missing block height") from exc

    async def get_history(self, address: str, limit: int | None = None) -> list[HistoryEntry]:
        operation = f"get_history({address})"
        reply = await self._request("GET", f"/address/{address}/history", operation)
        if reply.status == 404:
            return []
        data = self._parse_json(reply.body, operation)
        if not isinstance(data, list):
            raise ChainDataError(f"{operation}: expected a list of entries")
        try:
            entries = [
                HistoryEntry(
                    txid=str(item["tx_hash"]),
                    height=int(item["height"]) if item.get("height") else None,
                )
                for item in data
            ]
        except (KeyError, TypeError, ValueError) as exc:
            raise ChainDataError(f"{operation}: malformed history entry") from exc
        if limit is not None and limit > 0:
            return entries[:limit]
        return entries

    async def get_transaction_details(self, txid: str) -> dict[str, Any]:
        operation = f"get_transaction_details({txid})"
        reply = await self._request("GET", f"/tx/hash/{txid}", operation)
        if reply.status == 404:
            raise NotFound(f"Transaction not found: {txid}")
        data = self._parse_json(reply.body, operation)
        if not isinstance(data, dict):
            raise ChainDataError(f"{operation}: expected an object")
        return data

    # ---- broadcast ----

    async def broadcast(self, raw_hex: str) -> BroadcastResult:
        """Submit a signed transaction.

        Known provider answers come back as a :class:`BroadcastResult`;
        only exhausted retries raise.
        """
        if not isinstance(raw_hex, str) or not raw_hex.strip():
            raise ValidationError("Transaction hex is required")
        raw_hex = raw_hex.strip()
        if _local_txid(raw_hex) is None:
            raise ValidationError("Transaction hex is not a valid transaction")

        reply = await self._request(
            "POST",
            "/tx/raw",
            "broadcast",
            json_body={"txhex": raw_hex},
            inspect=lambda s, b: classify_broadcast_error(s, b, raw_hex),
        )
        if reply.verdict is not None:
            logger.info(f"Broadcast not accepted ({reply.verdict.status}): {reply.verdict.error}")
            return reply.verdict
        if reply.status == 404:
            return BroadcastResult(success=False, status="rejected", error="broadcast endpoint not found")

        txid = reply.body.strip().strip('"') or _local_txid(raw_hex)
        logger.info(f"Broadcast accepted: {txid}")
        return BroadcastResult(success=True, status="accepted", txid=txid)
