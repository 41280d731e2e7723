"""
File-based persistence for wallet records.

One JSON file per wallet (``<wallets_dir>/<id>.json``).  The directory is
kept at mode 0700 and every record file at 0600; both are re-applied on
every bootstrap and every save because an outside tool may have loosened
them since the last run.  Files are replaced atomically (temp file in the
same directory, fsync, ``os.replace``) so a reader never sees half a
record.

Usage:
    store = WalletStore("~/.bsv-wallets")
    store.save(record)
    record = store.load(record.id)
    for meta in store.list():
        ...
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from x402_wallet import vault
from x402_wallet.errors import Corrupt, NotFound, ValidationError
from x402_wallet.networks import NETWORKS
from x402_wallet.vault import EncryptedSecret

logger = logging.getLogger("x402_wallet.storage")

RECORD_VERSION = "1.0"
DIR_MODE = 0o700
FILE_MODE = 0o600

_WALLET_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_REQUIRED_FIELDS = ("version", "id", "name", "network", "address", "createdAt", "encrypted")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse the ISO-8601 timestamps we write (trailing ``Z`` included)."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ===================================================================
#  Records
# ===================================================================

@dataclass
class WalletMetadata:
    """The non-secret part of a wallet record."""

    id: str
    name: str
    address: str
    network: str
    created_at: str

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "network": self.network,
            "createdAt": self.created_at,
        }


@dataclass
class WalletRecord:
    id: str
    name: str
    network: str
    address: str
    created_at: str
    encrypted: EncryptedSecret
    version: str = RECORD_VERSION

    def metadata(self) -> WalletMetadata:
        return WalletMetadata(self.id, self.name, self.address, self.network, self.created_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "id": self.id,
            "name": self.name,
            "network": self.network,
            "address": self.address,
            "createdAt": self.created_at,
            "encrypted": self.encrypted.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Any, source: str = "") -> WalletRecord:
        """Build a record from parsed JSON. Raises ``Corrupt`` on bad shape."""
        if not isinstance(data, dict):
            raise Corrupt(f"Wallet file {source} is not a JSON object", source)
        missing = [f for f in _REQUIRED_FIELDS if not data.get(f)]
        if missing:
            raise Corrupt(
                f"Wallet file {source} is missing fields: {', '.join(missing)}", source
            )
        if data["network"] not in NETWORKS:
            raise Corrupt(f"Wallet file {source} has unknown network {data['network']!r}", source)
        if not vault.validate(data["encrypted"]):
            raise Corrupt(f"Wallet file {source} has a malformed encrypted block", source)
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            network=data["network"],
            address=str(data["address"]),
            created_at=str(data["createdAt"]),
            encrypted=EncryptedSecret.from_dict(data["encrypted"]),
            version=str(data["version"]),
        )


# ===================================================================
#  Filesystem helpers
# ===================================================================

def _chmod(path: Path, mode: int) -> None:
    try:
        os.chmod(path, mode)
    except OSError as exc:
        # Some platforms (e.g. Windows) cannot express POSIX modes
        logger.warning(f"Could not set mode {oct(mode)} on {path}: {exc}")


def ensure_private_dir(path: Path) -> None:
    """Create *path* if needed and (re)apply owner-only permissions."""
    path.mkdir(parents=True, exist_ok=True, mode=DIR_MODE)
    _chmod(path, DIR_MODE)


def atomic_write_json(path: Path, data: Any) -> None:
    """Write *data* as JSON to *path* via temp-file + rename, mode 0600."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)
            fh.flush()
            os.fsync(fh.fileno())
        _chmod(Path(tmp_name), FILE_MODE)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    _chmod(path, FILE_MODE)


def validate_wallet_id(wallet_id: str) -> str:
    if not isinstance(wallet_id, str) or not _WALLET_ID_RE.match(wallet_id):
        raise ValidationError(f"Invalid wallet id: {wallet_id!r}")
    return wallet_id


# ===================================================================
#  Store
# ===================================================================

class WalletStore:
    """Directory of wallet record files."""

    def __init__(self, wallets_dir: str | Path):
        self.wallets_dir = Path(wallets_dir).expanduser()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, wallet_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(wallet_id, threading.Lock())

    def _path(self, wallet_id: str) -> Path:
        return self.wallets_dir / f"{validate_wallet_id(wallet_id)}.json"

    def ensure_dir(self) -> None:
        ensure_private_dir(self.wallets_dir)

    # ---- CRUD ----

    def save(self, record: WalletRecord) -> None:
        path = self._path(record.id)
        self.ensure_dir()
        with self._lock_for(record.id):
            atomic_write_json(path, record.to_dict())
        logger.debug(f"Saved wallet {record.id} ({record.network})")

    def load(self, wallet_id: str) -> WalletRecord:
        path = self._path(wallet_id)
        if not path.exists():
            raise NotFound(f"Wallet not found: {wallet_id}")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise Corrupt(f"Wallet file {path.name} is not valid JSON", str(path)) from exc
        record = WalletRecord.from_dict(data, source=path.name)
        if record.id != wallet_id:
            raise Corrupt(
                f"Wallet file {path.name} contains id {record.id!r}", str(path)
            )
        return record

    def exists(self, wallet_id: str) -> bool:
        try:
            return self._path(wallet_id).exists()
        except ValidationError:
            return False

    def delete(self, wallet_id: str) -> None:
        """Remove a wallet file. Irreversible."""
        path = self._path(wallet_id)
        with self._lock_for(wallet_id):
            if not path.exists():
                raise NotFound(f"Wallet not found: {wallet_id}")
            path.unlink()
        logger.info(f"Deleted wallet {wallet_id}")

    def list(self) -> list[WalletMetadata]:
        """Metadata of every readable wallet, most recent first.

        Unreadable or corrupt files are logged and skipped.
        """
        self.ensure_dir()
        wallets: list[WalletMetadata] = []
        for path in sorted(self.wallets_dir.glob("*.json")):
            if not path.is_file():
                continue
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                wallets.append(WalletRecord.from_dict(data, source=path.name).metadata())
            except (OSError, json.JSONDecodeError, UnicodeDecodeError, Corrupt) as exc:
                logger.warning(f"Skipping unreadable wallet file {path.name}: {exc}")

        def _sort_key(meta: WalletMetadata) -> datetime:
            try:
                return parse_timestamp(meta.created_at)
            except ValueError:
                return datetime.min.replace(tzinfo=timezone.utc)

        wallets.sort(key=_sort_key, reverse=True)
        return wallets

    def count(self) -> int:
        if not self.wallets_dir.is_dir():
            return 0
        return sum(1 for p in self.wallets_dir.glob("*.json") if p.is_file())


# ===================================================================
#  Local transaction history
# ===================================================================

@dataclass
class LocalTransactionRecord:
    """A transaction this wallet produced, as remembered locally.

    The chain is authoritative; this log only adds context the chain does
    not carry (purpose, x402 flag, intended recipient).
    """

    txid: str
    wallet_id: str
    timestamp: str
    type: str
    amount: int
    fee: int
    to_address: str
    network: str
    purpose: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "txid": self.txid,
            "walletId": self.wallet_id,
            "timestamp": self.timestamp,
            "type": self.type,
            "amount": self.amount,
            "fee": self.fee,
            "toAddress": self.to_address,
            "network": self.network,
            "purpose": self.purpose,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LocalTransactionRecord:
        return cls(
            txid=str(data["txid"]),
            wallet_id=str(data["walletId"]),
            timestamp=str(data.get("timestamp", "")),
            type=str(data.get("type", "sent")),
            amount=int(data.get("amount", 0)),
            fee=int(data.get("fee", 0)),
            to_address=str(data.get("toAddress", "")),
            network=str(data.get("network", "")),
            purpose=str(data.get("purpose", "")),
            metadata=dict(data.get("metadata") or {}),
        )


class TransactionHistory:
    """Per-wallet append log under ``<wallets_dir>/transactions/``.

    Best-effort: a failed write is logged and never fails the payment
    that produced it.
    """

    def __init__(self, wallets_dir: str | Path):
        self.dir = Path(wallets_dir).expanduser() / "transactions"
        self._lock = threading.Lock()

    def _path(self, wallet_id: str) -> Path:
        return self.dir / f"{validate_wallet_id(wallet_id)}-transactions.json"

    def _read_entries(self, path: Path) -> list[Any]:
        """Raw log entries. Raises ``Corrupt`` if the file is not a JSON list."""
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise Corrupt(f"Unreadable transaction log {path.name}: {exc}") from exc
        if not isinstance(raw, list):
            raise Corrupt(f"Transaction log {path.name} is not a list")
        return raw

    @staticmethod
    def _parse_entry(entry: Any) -> LocalTransactionRecord | None:
        try:
            return LocalTransactionRecord.from_dict(entry)
        except (ValueError, TypeError, KeyError, AttributeError):
            return None

    def load(self, wallet_id: str) -> list[LocalTransactionRecord]:
        """Every readable record; malformed entries are skipped one by one."""
        path = self._path(wallet_id)
        if not path.exists():
            return []
        try:
            entries = self._read_entries(path)
        except Corrupt as exc:
            logger.warning(f"Ignoring {exc}")
            return []
        records = []
        for index, entry in enumerate(entries):
            record = self._parse_entry(entry)
            if record is None:
                logger.warning(f"Skipping malformed entry {index} in {path.name}")
                continue
            records.append(record)
        return records

    def append(self, record: LocalTransactionRecord) -> bool:
        """Add *record* unless its txid is already present. Returns success.

        Existing entries are written back as found, malformed ones included.
        A log that cannot be read as a whole is left alone and the append
        fails.
        """
        try:
            path = self._path(record.wallet_id)
            ensure_private_dir(self.dir.parent)
            ensure_private_dir(self.dir)
            with self._lock:
                entries = self._read_entries(path) if path.exists() else []
                for entry in entries:
                    existing = self._parse_entry(entry)
                    if existing is not None and existing.txid == record.txid:
                        return True
                entries.append(record.to_dict())
                atomic_write_json(path, entries)
            logger.debug(f"Recorded {record.type} tx {record.txid} for {record.wallet_id}")
            return True
        except (OSError, TypeError, ValidationError, Corrupt) as exc:
            logger.warning(f"Could not record transaction {record.txid}: {exc}")
            return False

    def delete(self, wallet_id: str) -> None:
        self._path(wallet_id).unlink(missing_ok=True)

    @staticmethod
    def find(txid: str, records: list[LocalTransactionRecord]) -> LocalTransactionRecord | None:
        return next((r for r in records if r.txid == txid), None)
