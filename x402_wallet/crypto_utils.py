"""
Address and WIF helpers over the BSV SDK.

The SDK answers in its own ``Network`` enum and raises plain ``ValueError``;
these wrappers speak network names and ``ValidationError`` instead, and
never echo a WIF in an error message.
"""

from __future__ import annotations

from bsv import PrivateKey, PublicKey
from bsv.hash import hash160, hash256, sha256
from bsv.utils import decode_address as sdk_decode_address
from bsv.utils import decode_wif as sdk_decode_wif

from x402_wallet.errors import ValidationError
from x402_wallet.networks import get_network, network_for_sdk

__all__ = [
    "decode_address",
    "decode_wif",
    "encode_wif",
    "hash160",
    "hash256",
    "is_valid_address",
    "pubkey_to_address",
    "sha256",
]


# ===================================================================
#  Addresses
# ===================================================================

def pubkey_to_address(public_key: bytes, network: str) -> str:
    """Derive the P2PKH address for a serialized public key."""
    sdk_network = get_network(network).sdk
    try:
        return PublicKey(public_key).address(network=sdk_network)
    except (ValueError, TypeError) as exc:
        raise ValidationError("Invalid public key") from exc


def decode_address(address: str) -> tuple[str, bytes]:
    """Return ``(network_name, pubkey_hash)`` for a P2PKH address.

    Raises ``ValidationError`` on bad characters, checksum, length or an
    unknown version byte.
    """
    if not isinstance(address, str) or not address.strip():
        raise ValidationError("Address is required")
    try:
        pubkey_hash, sdk_network = sdk_decode_address(address.strip())
    except (ValueError, TypeError) as exc:
        raise ValidationError(f"Invalid address: {address}") from exc
    net = network_for_sdk(sdk_network)
    if net is None or len(pubkey_hash) != 20:
        raise ValidationError(f"Unsupported address: {address}")
    return net.name, pubkey_hash


def is_valid_address(address: str, network: str | None = None) -> bool:
    try:
        net, _ = decode_address(address)
    except ValidationError:
        return False
    return network is None or net == network


# ===================================================================
#  WIF
# ===================================================================

def encode_wif(private_key: bytes, network: str) -> str:
    """Compressed WIF for a 32-byte secret on *network*."""
    sdk_network = get_network(network).sdk
    if len(private_key) != 32:
        raise ValidationError("Private key must be 32 bytes")
    try:
        return PrivateKey(bytes(private_key), sdk_network).wif()
    except ValueError as exc:
        raise ValidationError("Private key is out of range for secp256k1") from exc


def decode_wif(wif: str) -> tuple[bytes, str, bool]:
    """Return ``(private_key, network_name, compressed)``."""
    if not isinstance(wif, str) or not wif.strip():
        raise ValidationError("WIF is required")
    try:
        private_key, compressed, sdk_network = sdk_decode_wif(wif.strip())
    except (ValueError, TypeError, IndexError):
        raise ValidationError("Invalid WIF") from None
    net = network_for_sdk(sdk_network)
    if net is None:
        raise ValidationError("Invalid WIF: unknown network prefix")
    if len(private_key) != 32:
        raise ValidationError("Invalid WIF: bad key length")
    return private_key, net.name, compressed
