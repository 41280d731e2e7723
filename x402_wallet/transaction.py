"""
Raw transaction handling on top of the BSV SDK (``bsv``).

The SDK parser is lenient: it returns ``None`` for garbage and quietly
ignores trailing bytes.  :func:`parse_transaction` only accepts hex that
re-serialises to exactly the same bytes, so a txid computed here is always
the txid of the literal string that was handed in.
"""

from __future__ import annotations

import re

from bsv import P2PKH, Script, Transaction

from x402_wallet.crypto_utils import decode_address
from x402_wallet.errors import ValidationError

SEQUENCE_FINAL = 0xFFFFFFFF
SIGHASH_ALL_FORKID = 0x41

_HEX_RE = re.compile(r"(?:[0-9a-fA-F]{2})+")


def is_hex(text: str) -> bool:
    """Whole bytes of hex digits, nothing else (no whitespace, no prefix)."""
    return isinstance(text, str) and _HEX_RE.fullmatch(text) is not None


def parse_transaction(raw_hex: str) -> Transaction:
    """Parse a raw transaction. Raises ``ValidationError`` on bad data."""
    if not isinstance(raw_hex, str) or not is_hex(raw_hex.strip()):
        raise ValidationError("Transaction hex is not valid hexadecimal")
    canonical = raw_hex.strip().lower()
    try:
        tx = Transaction.from_hex(canonical)
    except (ValueError, TypeError, IndexError) as exc:
        raise ValidationError("Transaction data could not be parsed") from exc
    if tx is None:
        raise ValidationError("Transaction data could not be parsed")
    if tx.hex() != canonical:
        raise ValidationError("Transaction data is truncated or has trailing bytes")
    return tx


def txid_of(raw_hex: str) -> str:
    return parse_transaction(raw_hex).txid()


def p2pkh_lock(address: str) -> Script:
    """Locking script paying *address*; the address is validated first."""
    decode_address(address)
    return P2PKH().lock(address)


def same_script(a: Script, b: Script) -> bool:
    return a.hex() == b.hex()
