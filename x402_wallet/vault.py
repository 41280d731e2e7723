"""
Credential vault: passphrase-based encryption of a single signing secret.

AES-256-GCM authenticated encryption with a scrypt-derived key.  Salt and
IV are drawn fresh on every call, so encrypting the same secret twice
never yields the same blob.  Decryption goes through
``decrypt_and_verify`` and only returns plaintext once the tag checks out.

Persistence format (all values base64)::

    {"algorithm": "aes-256-gcm", "salt": ..., "iv": ..., "authTag": ..., "data": ...}
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import os
from dataclasses import dataclass
from typing import Any

from Crypto.Cipher import AES
from Crypto.Protocol.KDF import scrypt

from x402_wallet.errors import AuthenticationFailed, UnsupportedAlgorithm, ValidationError

ALGORITHM = "aes-256-gcm"

# scrypt cost parameters; retune here, the persisted blob does not record them
SCRYPT_N = 2**15
SCRYPT_R = 8
SCRYPT_P = 1
KEY_LENGTH = 32

SALT_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16

_FIELDS = ("algorithm", "salt", "iv", "authTag", "data")


@dataclass(frozen=True)
class EncryptedSecret:
    """An encrypted secret as stored inside a wallet record."""

    algorithm: str
    salt: str
    iv: str
    auth_tag: str
    data: str

    def to_dict(self) -> dict[str, str]:
        return {
            "algorithm": self.algorithm,
            "salt": self.salt,
            "iv": self.iv,
            "authTag": self.auth_tag,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> EncryptedSecret:
        if not validate(raw):
            raise ValidationError("Encrypted secret is missing fields or has wrong types")
        return cls(
            algorithm=raw["algorithm"],
            salt=raw["salt"],
            iv=raw["iv"],
            auth_tag=raw["authTag"],
            data=raw["data"],
        )


def _derive_key(passphrase: str, salt: bytes) -> bytes:
    return scrypt(
        passphrase.encode("utf-8"), salt, KEY_LENGTH, N=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P
    )


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def encrypt(secret: str, passphrase: str) -> EncryptedSecret:
    """Encrypt *secret* under *passphrase*.

    Raises ``ValidationError`` if either argument is empty.
    """
    if not isinstance(secret, str) or not secret.strip():
        raise ValidationError("Secret must not be empty")
    if not isinstance(passphrase, str) or not passphrase:
        raise ValidationError("Passphrase must not be empty")

    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    key = _derive_key(passphrase, salt)
    cipher = AES.new(key, AES.MODE_GCM, nonce=iv, mac_len=TAG_LENGTH)
    ciphertext, tag = cipher.encrypt_and_digest(secret.encode("utf-8"))

    return EncryptedSecret(
        algorithm=ALGORITHM,
        salt=_b64(salt),
        iv=_b64(iv),
        auth_tag=_b64(tag),
        data=_b64(ciphertext),
    )


def decrypt(data: EncryptedSecret | dict, passphrase: str) -> str:
    """Decrypt and authenticate *data*.

    Raises ``UnsupportedAlgorithm`` for an unknown algorithm tag and
    ``AuthenticationFailed`` for a wrong passphrase or any tampering.
    """
    if isinstance(data, dict):
        algorithm = data.get("algorithm")
        if isinstance(algorithm, str) and algorithm != ALGORITHM:
            raise UnsupportedAlgorithm(f"Unsupported algorithm: {algorithm}")
        data = EncryptedSecret.from_dict(data)
    if data.algorithm != ALGORITHM:
        raise UnsupportedAlgorithm(f"Unsupported algorithm: {data.algorithm}")
    if not isinstance(passphrase, str) or not passphrase:
        raise AuthenticationFailed()

    try:
        salt = base64.b64decode(data.salt, validate=True)
        iv = base64.b64decode(data.iv, validate=True)
        tag = base64.b64decode(data.auth_tag, validate=True)
        ciphertext = base64.b64decode(data.data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise AuthenticationFailed() from exc
    if len(tag) != TAG_LENGTH or not iv:
        raise AuthenticationFailed()

    key = _derive_key(passphrase, salt)
    try:
        cipher = AES.new(key, AES.MODE_GCM, nonce=iv, mac_len=TAG_LENGTH)
        plaintext = cipher.decrypt_and_verify(ciphertext, tag)
        return plaintext.decode("utf-8")
    except (ValueError, KeyError) as exc:
        # MAC check failure; UnicodeDecodeError is a ValueError too
        raise AuthenticationFailed() from exc


def validate(data: Any) -> bool:
    """Shape check only: no key derivation, no decryption."""
    if isinstance(data, EncryptedSecret):
        data = data.to_dict()
    if not isinstance(data, dict):
        return False
    if data.get("algorithm") != ALGORITHM:
        return False
    return all(isinstance(data.get(name), str) for name in _FIELDS)


async def encrypt_async(secret: str, passphrase: str) -> EncryptedSecret:
    """Run :func:`encrypt` on a worker thread; scrypt is memory-hard."""
    return await asyncio.to_thread(encrypt, secret, passphrase)


async def decrypt_async(data: EncryptedSecret | dict, passphrase: str) -> str:
    return await asyncio.to_thread(decrypt, data, passphrase)
