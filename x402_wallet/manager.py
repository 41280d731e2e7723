"""
Wallet lifecycle: create, import, unlock, export, re-key and remove.

The manager is the only place where a passphrase meets a stored record.
It keeps no state of its own: every call loads the record, decrypts what
it needs, and lets the plaintext go when the call returns.  Nothing is
cached between calls.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Optional

from x402_wallet import vault
from x402_wallet.context import WalletContext
from x402_wallet.errors import (
    AuthenticationFailed,
    Corrupt,
    ValidationError,
)
from x402_wallet.keys import P2PKHKey, SigningKey, generate_mnemonic
from x402_wallet.networks import get_network
from x402_wallet.storage import WalletMetadata, WalletRecord, utc_now_iso

logger = logging.getLogger("x402_wallet.manager")

MIN_PASSPHRASE_LENGTH = 8
MAX_NAME_LENGTH = 100


@dataclass
class WalletInfo:
    """Returned by create/import. ``mnemonic`` is only set on create."""

    id: str
    name: str
    address: str
    network: str
    created_at: str
    mnemonic: Optional[str] = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        out = {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "network": self.network,
            "createdAt": self.created_at,
        }
        if self.mnemonic:
            out["mnemonic"] = self.mnemonic
        return out


@dataclass
class UnlockedWallet:
    id: str
    name: str
    network: str
    address: str
    key: SigningKey = field(repr=False)


def generate_wallet_id() -> str:
    return secrets.token_hex(16)


def _validate_name(name: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Wallet name is required")
    name = name.strip()
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"Wallet name must be at most {MAX_NAME_LENGTH} characters")
    return name


def _validate_passphrase(passphrase: str) -> None:
    if not isinstance(passphrase, str) or len(passphrase) < MIN_PASSPHRASE_LENGTH:
        raise ValidationError(
            f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters"
        )


class WalletManager:
    def __init__(self, context: WalletContext):
        self.context = context
        self.store = context.store

    # ---- creation ----

    async def _persist(self, name: str, key: P2PKHKey, passphrase: str) -> WalletRecord:
        encrypted = await vault.encrypt_async(key.to_portable_format(), passphrase)
        record = WalletRecord(
            id=generate_wallet_id(),
            name=name,
            network=key.network,
            address=key.address,
            created_at=utc_now_iso(),
            encrypted=encrypted,
        )
        self.store.save(record)
        logger.info(f"Stored wallet {record.id} ({record.network}) at {record.address}")
        return record

    async def create_wallet(self, name: str, network: str, passphrase: str) -> WalletInfo:
        """Create a wallet from a fresh 12-word mnemonic.

        The mnemonic is returned here and never again.
        """
        name = _validate_name(name)
        network = get_network(network).name
        _validate_passphrase(passphrase)

        mnemonic = generate_mnemonic()
        key = P2PKHKey.from_mnemonic(mnemonic, network)
        record = await self._persist(name, key, passphrase)
        info = self._info(record)
        info.mnemonic = mnemonic
        return info

    async def import_wif(self, name: str, wif: str, network: str, passphrase: str) -> WalletInfo:
        """Import a WIF key.

        The WIF's own prefix is not required to match *network*; the key is
        re-encoded for the wallet's network before it is stored.
        """
        name = _validate_name(name)
        network = get_network(network).name
        _validate_passphrase(passphrase)
        if not isinstance(wif, str) or not wif.strip():
            raise ValidationError("WIF is required")

        key = P2PKHKey.from_wif(wif.strip()).for_network(network)
        record = await self._persist(name, key, passphrase)
        return self._info(record)

    async def import_mnemonic(
        self, name: str, mnemonic: str, network: str, passphrase: str
    ) -> WalletInfo:
        name = _validate_name(name)
        network = get_network(network).name
        _validate_passphrase(passphrase)
        if not isinstance(mnemonic, str) or not mnemonic.strip():
            raise ValidationError("Mnemonic is required")

        key = P2PKHKey.from_mnemonic(mnemonic, network)
        record = await self._persist(name, key, passphrase)
        return self._info(record)

    # ---- access ----

    async def _decrypt(self, record: WalletRecord, passphrase: str) -> str:
        if not isinstance(passphrase, str) or not passphrase:
            raise ValidationError("Passphrase is required")
        return await vault.decrypt_async(record.encrypted, passphrase)

    async def unlock(self, wallet_id: str, passphrase: str) -> UnlockedWallet:
        """Decrypt the wallet key and check it against the stored address.

        Raises ``AuthenticationFailed`` for a wrong passphrase and ``Corrupt``
        if the decrypted key does not derive the recorded address.
        """
        record = self.store.load(wallet_id)
        wif = await self._decrypt(record, passphrase)
        try:
            key = P2PKHKey.from_wif(wif).for_network(record.network)
        except ValidationError as exc:
            raise Corrupt(f"Wallet {wallet_id} holds an unreadable key", wallet_id) from exc
        if key.address != record.address:
            raise Corrupt(
                f"Wallet {wallet_id}: stored address {record.address} does not match its key",
                wallet_id,
            )
        return UnlockedWallet(
            id=record.id,
            name=record.name,
            network=record.network,
            address=record.address,
            key=key,
        )

    def list_wallets(self) -> list[WalletMetadata]:
        return self.store.list()

    def metadata(self, wallet_id: str) -> WalletMetadata:
        return self.store.load(wallet_id).metadata()

    def exists(self, wallet_id: str) -> bool:
        return self.store.exists(wallet_id)

    async def export_wif(self, wallet_id: str, passphrase: str) -> str:
        wallet = await self.unlock(wallet_id, passphrase)
        logger.warning(f"Private key of wallet {wallet_id} exported")
        return wallet.key.to_portable_format()

    # ---- mutation ----

    async def change_passphrase(self, wallet_id: str, old: str, new: str) -> None:
        _validate_passphrase(new)
        record = self.store.load(wallet_id)
        wif = await self._decrypt(record, old)
        record.encrypted = await vault.encrypt_async(wif, new)
        self.store.save(record)
        logger.info(f"Passphrase changed for wallet {wallet_id}")

    async def remove_wallet(self, wallet_id: str, passphrase: str | None = None) -> None:
        """Delete a wallet. If *passphrase* is given it must unlock the wallet."""
        if passphrase is not None:
            try:
                await self.unlock(wallet_id, passphrase)
            except AuthenticationFailed:
                logger.warning(f"Refused to delete wallet {wallet_id}: wrong passphrase")
                raise
        self.store.delete(wallet_id)
        self.context.history.delete(wallet_id)

    @staticmethod
    def _info(record: WalletRecord) -> WalletInfo:
        return WalletInfo(
            id=record.id,
            name=record.name,
            address=record.address,
            network=record.network,
            created_at=record.created_at,
        )
