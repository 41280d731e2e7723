"""
Error taxonomy and structured results for the x402 wallet core.

Components raise the typed exceptions below; the public operations layer
(:mod:`x402_wallet.payments`) converts them into :class:`OperationResult`
objects so that callers always receive a success flag and a readable
message instead of raw exception text.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional


class WalletError(Exception):
    """Base class for every error raised by the wallet core."""

    code = "wallet_error"


class ValidationError(WalletError):
    """Bad caller input. Never retried."""

    code = "validation_error"


class AuthenticationFailed(WalletError):
    """Wrong passphrase or tampered ciphertext.

    The message is deliberately generic and never says which part failed.
    """

    code = "authentication_failed"

    def __init__(self, message: str = "Wrong passphrase or corrupted data"):
        super().__init__(message)


class UnsupportedAlgorithm(WalletError):
    """The encrypted secret uses an algorithm tag this vault does not know."""

    code = "unsupported_algorithm"


class NotFound(WalletError):
    """A wallet or transaction does not exist."""

    code = "not_found"


class Corrupt(WalletError):
    """Persisted data is malformed or inconsistent."""

    code = "corrupt"

    def __init__(self, message: str, source: str | None = None):
        super().__init__(message)
        self.source = source


class InsufficientFunds(WalletError):
    """The spendable set cannot cover amount + fee."""

    code = "insufficient_funds"

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient funds: need {required} satoshis, only {available} "
            f"available (short by {required - available})"
        )


class ChainDataError(WalletError):
    """Chain state could not be retrieved or was inconsistent."""

    code = "chain_data_error"


class ChainAPIError(ChainDataError):
    """The indexer answered with a non-retryable HTTP error."""

    code = "chain_api_error"

    def __init__(self, status: int, body: str = "", url: str = ""):
        self.status = status
        self.body = body
        self.url = url
        detail = f": {body.strip()[:200]}" if body and body.strip() else ""
        super().__init__(f"Indexer returned HTTP {status}{detail}")


class TransientNetwork(ChainDataError):
    """Transport failure, 5xx or 429. Retried by the chain client."""

    code = "transient_network"

    def __init__(self, message: str, status: int | None = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class MaxRetriesExceeded(TransientNetwork):
    """A remote call still failed after exhausting every retry."""

    code = "max_retries_exceeded"

    def __init__(self, operation: str, attempts: int, last_error: Exception | None = None):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        reason = f" (last error: {last_error})" if last_error else ""
        status = getattr(last_error, "status", None)
        super().__init__(
            f"Max retries exceeded for {operation} after {attempts} attempts{reason}",
            status=status,
        )


class MalformedEnvelope(WalletError):
    """A payment proof envelope failed structural decoding."""

    code = "malformed_envelope"


# ===================================================================
#  Structured results
# ===================================================================

@dataclass
class OperationResult:
    """What the command surface receives from every public operation."""

    success: bool
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.message:
            out["message"] = self.message
        out.update(self.data)
        if self.error is not None:
            out["error"] = self.error
        if self.error_code is not None:
            out["errorCode"] = self.error_code
        return out


def error_code_of(exc: BaseException) -> str:
    return getattr(exc, "code", "internal_error")


def describe(exc: BaseException, secrets: Iterable[str] = ()) -> str:
    """Turn *exc* into a message that is safe to show at the boundary.

    Our own exceptions carry curated messages. Anything else is reduced to
    its class name so third-party text (which may quote inputs) never leaks.
    Any value in *secrets* is masked regardless.
    """
    if isinstance(exc, WalletError):
        message = str(exc) or exc.__class__.__name__
    else:
        message = f"Internal error ({exc.__class__.__name__})"
    for secret in secrets:
        if secret:
            message = message.replace(secret, "***")
    return message
