"""
Signing keys behind a narrow capability interface.

The transaction builder and message signer only ever see
:class:`SigningKey`: ``sign(digest)``, ``derive_public_identity()``,
``to_portable_format()`` and ``unlocker()``, the SDK unlocking template
the builder attaches to each input.  :class:`P2PKHKey` is the secp256k1 /
P2PKH implementation; another script type would add a sibling class.
"""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from typing import cast

from bsv import P2PKH, PrivateKey, UnlockingScriptTemplate
from ecdsa import SECP256k1, BadSignatureError, MalformedPointError
from ecdsa import SigningKey as _ECSigningKey
from ecdsa import VerifyingKey
from ecdsa.der import UnexpectedDER
from ecdsa.util import sigdecode_der, sigencode_der_canonize
from mnemonic import Mnemonic

from x402_wallet.crypto_utils import decode_wif
from x402_wallet.errors import ValidationError
from x402_wallet.networks import get_network

MNEMONIC_STRENGTH = 128  # 12 words


class SigningKey(ABC):
    """Capability interface for anything that can unlock an output."""

    network: str

    @abstractmethod
    def sign(self, digest: bytes) -> bytes:
        """Sign a 32-byte digest, returning a DER signature."""

    @abstractmethod
    def derive_public_identity(self) -> str:
        """The address that this key spends from."""

    @abstractmethod
    def to_portable_format(self) -> str:
        """Single-line text form of the key (WIF)."""

    @abstractmethod
    def public_key_bytes(self) -> bytes:
        """Serialized public key as it appears in unlocking scripts."""

    @abstractmethod
    def unlocker(self) -> UnlockingScriptTemplate:
        """Template that signs a transaction input spending this key's outputs."""


class P2PKHKey(SigningKey):
    """Compressed secp256k1 key spending pay-to-public-key-hash outputs."""

    def __init__(self, private_key: bytes, network: str):
        sdk_network = get_network(network).sdk
        if len(private_key) != 32:
            raise ValidationError("Private key must be 32 bytes")
        secret = int.from_bytes(private_key, "big")
        if not 0 < secret < SECP256k1.order:
            raise ValidationError("Private key is out of range for secp256k1")
        self._sk = _ECSigningKey.from_string(private_key, curve=SECP256k1)
        self._key = PrivateKey(bytes(private_key), sdk_network)
        self.network = network

    # ---- factory methods ----

    @classmethod
    def generate(cls, network: str) -> P2PKHKey:
        sk = _ECSigningKey.generate(curve=SECP256k1)
        return cls(sk.to_string(), network)

    @classmethod
    def from_bytes(cls, private_key: bytes, network: str) -> P2PKHKey:
        return cls(bytes(private_key), network)

    @classmethod
    def from_wif(cls, wif: str, network: str | None = None) -> P2PKHKey:
        """Parse a compressed WIF key. If *network* is given it must match the prefix."""
        key, wif_network, compressed = decode_wif(wif)
        if not compressed:
            raise ValidationError("Uncompressed WIF keys are not supported")
        if network is not None and wif_network != network:
            raise ValidationError(
                f"WIF belongs to {wif_network}, expected {network}"
            )
        return cls(key, wif_network)

    @classmethod
    def from_mnemonic(cls, phrase: str, network: str, passphrase: str = "") -> P2PKHKey:
        """Derive the key from a BIP39 phrase (first 32 bytes of the seed)."""
        phrase = " ".join(phrase.strip().split())
        if not validate_mnemonic(phrase):
            raise ValidationError("Invalid mnemonic")
        seed = Mnemonic.to_seed(phrase, passphrase=passphrase)
        return cls(seed[:32], network)

    def for_network(self, network: str) -> P2PKHKey:
        """Same secret, addressed on *network*."""
        if network == self.network:
            return self
        return P2PKHKey(self._sk.to_string(), network)

    # ---- capability interface ----

    def sign(self, digest: bytes) -> bytes:
        if len(digest) != 32:
            raise ValidationError("Digest must be 32 bytes")
        return self._sk.sign_digest_deterministic(
            digest, hashfunc=hashlib.sha256, sigencode=sigencode_der_canonize
        )

    def derive_public_identity(self) -> str:
        return self._key.address()

    @property
    def address(self) -> str:
        return self.derive_public_identity()

    def to_portable_format(self) -> str:
        return self._key.wif()

    def public_key_bytes(self) -> bytes:
        return self._key.public_key().serialize()

    def unlocker(self) -> UnlockingScriptTemplate:
        return cast(UnlockingScriptTemplate, P2PKH().unlock(self._key))

    def __repr__(self) -> str:
        return f"P2PKHKey({self.address}, {self.network})"


def verify_digest(public_key: bytes, digest: bytes, signature: bytes) -> bool:
    """Check a DER signature over *digest* against a serialized public key."""
    try:
        vk = VerifyingKey.from_string(public_key, curve=SECP256k1)
        return vk.verify_digest(signature, digest, sigdecode=sigdecode_der)
    except (BadSignatureError, MalformedPointError, UnexpectedDER, ValueError):
        return False


def generate_mnemonic(strength: int = MNEMONIC_STRENGTH) -> str:
    return Mnemonic("english").generate(strength=strength)


def validate_mnemonic(phrase: str) -> bool:
    try:
        return Mnemonic("english").check(phrase)
    except (ValueError, LookupError):
        return False
