"""
Sign and verify arbitrary messages with a wallet key.

The message (UTF-8 text or hex bytes) is hashed once with SHA-256 and the
digest is signed as-is, so signatures are plain DER ECDSA and not the
compact recoverable form used by some wallets' "signmessage".
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass

from x402_wallet.crypto_utils import decode_address, pubkey_to_address, sha256
from x402_wallet.errors import ValidationError
from x402_wallet.keys import SigningKey, verify_digest

BITCOIN_MESSAGE_PREFIX = "Bitcoin Signed Message:\n"
ENCODINGS = ("utf8", "hex")


@dataclass
class SignedMessage:
    message: str
    signature: str      # base64 DER
    public_key: str     # hex
    address: str
    message_hash: str   # hex

    def to_dict(self) -> dict[str, str]:
        return {
            "message": self.message,
            "signature": self.signature,
            "publicKey": self.public_key,
            "address": self.address,
            "messageHash": self.message_hash,
        }


def _message_bytes(message: str, encoding: str) -> bytes:
    if encoding not in ENCODINGS:
        raise ValidationError(f"Unknown message encoding {encoding!r}")
    if encoding == "hex":
        if len(message) % 2:
            raise ValidationError("Hex message must have an even length")
        try:
            return bytes.fromhex(message)
        except ValueError:
            raise ValidationError("Message is not valid hexadecimal") from None
    return message.encode("utf-8")


def sign_message(key: SigningKey, message: str, encoding: str = "utf8") -> SignedMessage:
    digest = sha256(_message_bytes(message, encoding))
    signature = key.sign(digest)
    return SignedMessage(
        message=message,
        signature=base64.b64encode(signature).decode("ascii"),
        public_key=key.public_key_bytes().hex(),
        address=key.derive_public_identity(),
        message_hash=digest.hex(),
    )


def verify_signature(
    public_key_hex: str, message: str, signature_b64: str, encoding: str = "utf8"
) -> bool:
    """True if *signature_b64* signs *message* under *public_key_hex*."""
    try:
        digest = sha256(_message_bytes(message, encoding))
        public_key = bytes.fromhex(public_key_hex)
        signature = base64.b64decode(signature_b64, validate=True)
    except (ValidationError, ValueError, binascii.Error):
        return False
    return verify_digest(public_key, digest, signature)


def verify_signature_with_address(
    address: str,
    message: str,
    signature_b64: str,
    public_key_hex: str,
    encoding: str = "utf8",
) -> bool:
    """Like :func:`verify_signature`, and the key must also hash to *address*."""
    try:
        network, _ = decode_address(address)
        derived = pubkey_to_address(bytes.fromhex(public_key_hex), network)
    except (ValidationError, ValueError):
        return False
    if derived != address:
        return False
    return verify_signature(public_key_hex, message, signature_b64, encoding)


def prefixed_message(message: str) -> str:
    return BITCOIN_MESSAGE_PREFIX + message


def sign_prefixed_message(key: SigningKey, message: str) -> SignedMessage:
    signed = sign_message(key, prefixed_message(message))
    signed.message = message
    return signed


def verify_prefixed_signature(public_key_hex: str, message: str, signature_b64: str) -> bool:
    return verify_signature(public_key_hex, prefixed_message(message), signature_b64)
