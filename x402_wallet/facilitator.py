"""
Client for an x402 settlement facilitator.

The facilitator receives the decoded envelope together with the merchant's
payment requirements and either verifies it (``/verify``) or verifies and
broadcasts it (``/settle``).  Every call returns a result object with a
``success`` flag; transport problems and error answers become an
``error`` string rather than an exception.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import aiohttp

from x402_wallet import payment_proof
from x402_wallet.errors import MalformedEnvelope, ValidationError

logger = logging.getLogger("x402_wallet.facilitator")

AVAILABILITY_TIMEOUT = 5.0
DEFAULT_RESOURCE = "https://example.com/resource"
DEFAULT_MAX_TIMEOUT_SECONDS = 300


@dataclass
class PaymentRequirements:
    pay_to: str
    max_amount_required: str
    network: str
    resource: str = DEFAULT_RESOURCE
    description: str = ""
    scheme: str = payment_proof.SCHEME
    max_timeout_seconds: int = DEFAULT_MAX_TIMEOUT_SECONDS

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "scheme": self.scheme,
            "network": self.network,
            "maxAmountRequired": self.max_amount_required,
            "resource": self.resource,
            "payTo": self.pay_to,
            "maxTimeoutSeconds": self.max_timeout_seconds,
        }
        if self.description:
            out["description"] = self.description
        return out


def make_requirements(
    pay_to: str,
    amount: int,
    network: str = "testnet",
    resource: str = DEFAULT_RESOURCE,
    description: str = "Payment for resource",
) -> PaymentRequirements:
    """Requirements for a single exact payment.

    *network* may be a wallet network (``testnet``) or an envelope tag
    (``bsv-testnet``).
    """
    if network in payment_proof.NETWORK_MAP:
        network = payment_proof.NETWORK_MAP[network]
    elif payment_proof.wallet_network(network) is None:
        raise ValidationError(f"Unknown network {network!r}")
    return PaymentRequirements(
        pay_to=pay_to,
        max_amount_required=str(amount),
        network=network,
        resource=resource,
        description=description,
    )


@dataclass
class VerifyResult:
    success: bool
    valid: Optional[bool] = None
    invalid_reason: Optional[str] = None
    payer: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SettleResult:
    success: bool
    txid: Optional[str] = None
    payer: Optional[str] = None
    network: Optional[str] = None
    error: Optional[str] = None


@dataclass
class NetworksResult:
    success: bool
    networks: list[str] = field(default_factory=list)
    error: Optional[str] = None


def _error_text(data: Any, fallback: str) -> str:
    if isinstance(data, dict):
        for key in ("errorReason", "error", "message"):
            if data.get(key):
                value = data[key]
                return value if isinstance(value, str) else json.dumps(value)
    if isinstance(data, str) and data.strip():
        return data.strip()
    return fallback


class FacilitatorClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ):
        if not base_url:
            raise ValidationError("Facilitator URL is required")
        self.base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> FacilitatorClient:
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

    async def _call(
        self, method: str, path: str, body: Any = None, timeout: float | None = None
    ) -> tuple[int, Any]:
        kwargs: dict[str, Any] = {"json": body} if body is not None else {}
        if timeout is not None:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=timeout)
        async with self._get_session().request(method, f"{self.base_url}{path}", **kwargs) as resp:
            text = await resp.text()
        try:
            data = json.loads(text) if text else None
        except ValueError:
            data = text
        return resp.status, data

    async def _post_envelope(
        self, path: str, envelope_text: str, requirements: PaymentRequirements
    ) -> tuple[int, Any]:
        envelope = payment_proof.decode(envelope_text)
        body = {"payload": envelope.to_dict(), "paymentRequirements": requirements.to_dict()}
        return await self._call("POST", path, body)

    async def verify(self, envelope_text: str, requirements: PaymentRequirements) -> VerifyResult:
        """Ask the facilitator to check the payment without broadcasting it."""
        try:
            status, data = await self._post_envelope("/verify", envelope_text, requirements)
        except MalformedEnvelope as exc:
            return VerifyResult(success=False, error=str(exc))
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning(f"Facilitator verify failed: {exc.__class__.__name__}")
            return VerifyResult(success=False, error=f"Facilitator unreachable ({exc.__class__.__name__})")

        if status != 200 or not isinstance(data, dict):
            return VerifyResult(success=False, error=_error_text(data, f"Unexpected status: {status}"))
        return VerifyResult(
            success=True,
            valid=bool(data.get("isValid")),
            invalid_reason=data.get("invalidReason"),
            payer=data.get("payer"),
        )

    async def settle(self, envelope_text: str, requirements: PaymentRequirements) -> SettleResult:
        """Verify and broadcast through the facilitator."""
        try:
            status, data = await self._post_envelope("/settle", envelope_text, requirements)
        except MalformedEnvelope as exc:
            return SettleResult(success=False, error=str(exc))
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning(f"Facilitator settle failed: {exc.__class__.__name__}")
            return SettleResult(success=False, error=f"Facilitator unreachable ({exc.__class__.__name__})")

        if status != 200 or not isinstance(data, dict):
            return SettleResult(success=False, error=_error_text(data, f"Unexpected status: {status}"))
        result = SettleResult(
            success=bool(data.get("success")),
            txid=data.get("transaction"),
            payer=data.get("payer"),
            network=data.get("network"),
            error=data.get("errorReason"),
        )
        if result.success:
            logger.info(f"Facilitator settled {result.txid} on {result.network}")
        return result

    async def supported_networks(self) -> NetworksResult:
        try:
            status, data = await self._call("GET", "/networks")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            return NetworksResult(success=False, error=f"Facilitator unreachable ({exc.__class__.__name__})")
        if status != 200 or not isinstance(data, dict):
            return NetworksResult(success=False, error=_error_text(data, f"Unexpected status: {status}"))
        return NetworksResult(success=True, networks=list(data.get("networks") or []))

    async def is_available(self) -> bool:
        try:
            status, _ = await self._call("GET", "/networks", timeout=AVAILABILITY_TIMEOUT)
        except (aiohttp.ClientError, asyncio.TimeoutError):
            return False
        return status == 200
