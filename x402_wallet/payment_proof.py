"""
x402 payment proof envelope.

Wire format: base64 of compact UTF-8 JSON::

    {"x402Version":1,"scheme":"exact","network":"bsv-testnet",
     "payload":{"transaction":"<hex>"},"accessibility":{...}}

The transaction hex is carried verbatim.  The facilitator recomputes
hashes against that literal string, so it is never parsed, re-encoded or
case-normalised on the way in or out.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Optional

from x402_wallet.errors import MalformedEnvelope, ValidationError
from x402_wallet.transaction import is_hex

X402_VERSION = 1
SCHEME = "exact"

# wallet network -> envelope network tag
NETWORK_MAP: dict[str, str] = {
    "mainnet": "bsv-mainnet",
    "testnet": "bsv-testnet",
}

PAYMENT_HEADER = "X-PAYMENT"


def envelope_network(network: str) -> str:
    try:
        return NETWORK_MAP[network]
    except KeyError:
        raise ValidationError(
            f"Unknown network {network!r}; expected one of {', '.join(NETWORK_MAP)}"
        ) from None


def wallet_network(tag: str) -> Optional[str]:
    """Inverse of :func:`envelope_network`; ``None`` for an unknown tag."""
    return next((net for net, t in NETWORK_MAP.items() if t == tag), None)


@dataclass
class Accessibility:
    """Presentation hints for the paying agent; no effect on settlement."""

    language: Optional[str] = None
    cognitive_level: Optional[str] = None
    audio_friendly: Optional[bool] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.language is not None:
            out["language"] = self.language
        if self.cognitive_level is not None:
            out["cognitiveLevel"] = self.cognitive_level
        if self.audio_friendly is not None:
            out["audioFriendly"] = self.audio_friendly
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Accessibility:
        return cls(
            language=data.get("language"),
            cognitive_level=data.get("cognitiveLevel"),
            audio_friendly=data.get("audioFriendly"),
        )


@dataclass
class PaymentEnvelope:
    x402_version: int
    scheme: str
    network: str
    transaction: str
    accessibility: Optional[Accessibility] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "x402Version": self.x402_version,
            "scheme": self.scheme,
            "network": self.network,
            "payload": {"transaction": self.transaction},
        }
        if self.accessibility is not None:
            out["accessibility"] = self.accessibility.to_dict()
        return out


@dataclass
class EnvelopeReport:
    valid: bool
    errors: list[str] = field(default_factory=list)
    envelope: Optional[PaymentEnvelope] = None


# ===================================================================
#  Codec
# ===================================================================

def encode(
    tx_hex: str,
    network: str,
    accessibility: Accessibility | dict | None = None,
) -> str:
    """Wrap *tx_hex* (kept byte-for-byte) into envelope text."""
    if not isinstance(tx_hex, str) or not tx_hex:
        raise ValidationError("Transaction hex is required")
    if isinstance(accessibility, dict):
        accessibility = Accessibility.from_dict(accessibility)
    envelope = PaymentEnvelope(
        x402_version=X402_VERSION,
        scheme=SCHEME,
        network=envelope_network(network),
        transaction=tx_hex,
        accessibility=accessibility,
    )
    text = json.dumps(envelope.to_dict(), separators=(",", ":"), ensure_ascii=False)
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def _decode_json(text: str) -> Any:
    if not isinstance(text, str) or not text.strip():
        raise MalformedEnvelope("Envelope is empty")
    try:
        raw = base64.b64decode(text.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedEnvelope("Envelope is not valid base64") from exc
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedEnvelope("Envelope does not contain valid JSON") from exc


def decode(text: str) -> PaymentEnvelope:
    """Parse envelope text. Raises ``MalformedEnvelope`` on bad structure.

    Field *values* (version, scheme, network) are checked by
    :func:`validate`, not here.
    """
    data = _decode_json(text)
    if not isinstance(data, dict):
        raise MalformedEnvelope("Envelope JSON is not an object")

    version = data.get("x402Version")
    if not isinstance(version, int) or isinstance(version, bool):
        raise MalformedEnvelope("Envelope field x402Version must be an integer")
    for name in ("scheme", "network"):
        if not isinstance(data.get(name), str):
            raise MalformedEnvelope(f"Envelope field {name} must be a string")
    payload = data.get("payload")
    if not isinstance(payload, dict):
        raise MalformedEnvelope("Envelope field payload must be an object")
    transaction = payload.get("transaction")
    if not isinstance(transaction, str):
        raise MalformedEnvelope("Envelope field payload.transaction must be a string")

    accessibility = None
    if "accessibility" in data:
        if not isinstance(data["accessibility"], dict):
            raise MalformedEnvelope("Envelope field accessibility must be an object")
        accessibility = Accessibility.from_dict(data["accessibility"])

    return PaymentEnvelope(
        x402_version=version,
        scheme=data["scheme"],
        network=data["network"],
        transaction=transaction,
        accessibility=accessibility,
    )


def extract_transaction(text: str) -> str:
    return decode(text).transaction


def validate(text: str) -> EnvelopeReport:
    """Collect every problem with *text*; never raises."""
    try:
        envelope = decode(text)
    except MalformedEnvelope as exc:
        return EnvelopeReport(valid=False, errors=[str(exc)])

    errors: list[str] = []
    if envelope.x402_version != X402_VERSION:
        errors.append(f"Unsupported x402 version: {envelope.x402_version}")
    if envelope.scheme != SCHEME:
        errors.append(f"Unsupported scheme: {envelope.scheme}")
    if wallet_network(envelope.network) is None:
        errors.append(f"Invalid network: {envelope.network}")
    if not envelope.transaction:
        errors.append("Transaction is empty")
    elif not is_hex(envelope.transaction):
        errors.append("Transaction is not valid hexadecimal")
    return EnvelopeReport(valid=not errors, errors=errors, envelope=envelope)


# ===================================================================
#  Helpers for callers
# ===================================================================

def payload_info(text: str) -> dict[str, Any]:
    envelope = decode(text)
    return {
        "version": envelope.x402_version,
        "scheme": envelope.scheme,
        "network": envelope.network,
        "transactionSize": len(envelope.transaction) // 2,
        "payloadSize": len(text),
    }


def usage_instructions(text: str, resource_url: str | None = None) -> str:
    """Human-readable instructions for attaching the proof to a request."""
    lines = [
        "Add the following header to your HTTP request:",
        "",
        f"{PAYMENT_HEADER}: {text}",
        "",
    ]
    if resource_url:
        lines += [
            "Example with curl:",
            "",
            f'curl -H "{PAYMENT_HEADER}: {text}" \\',
            f"  {resource_url}",
            "",
        ]
    lines += [
        "Example with Python (aiohttp):",
        "",
        f"async with session.get(url, headers={{'{PAYMENT_HEADER}': proof}}) as resp:",
        "    ...",
    ]
    return "\n".join(lines)
