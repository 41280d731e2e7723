"""
TOML-based configuration for the x402 wallet.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.  Nothing here is
a process-wide singleton: callers build a :class:`WalletConfig` and hand
it to :class:`~x402_wallet.context.WalletContext`.

Usage:
    from x402_wallet.config import load_config
    cfg = load_config("x402-wallet.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore[import,no-redef]

from x402_wallet.chain_client import CHAIN_API_URLS, DEFAULT_TIMEOUT
from x402_wallet.errors import ValidationError
from x402_wallet.networks import NETWORKS

DEFAULT_WALLETS_DIR = "~/.bsv-wallets"
DEFAULT_FACILITATOR_URL = "https://facilitador-bsv-x402.workers.dev"
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class StorageConfig:
    """Where wallet records and transaction logs live."""
    wallets_dir: str = DEFAULT_WALLETS_DIR

    @property
    def path(self) -> Path:
        return Path(self.wallets_dir).expanduser()


@dataclass
class ChainConfig:
    """Chain indexer endpoints and retry settings."""
    mainnet_url: str = CHAIN_API_URLS["mainnet"]
    testnet_url: str = CHAIN_API_URLS["testnet"]
    timeout: float = DEFAULT_TIMEOUT      # overall deadline per HTTP call (seconds)
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0

    def url_for(self, network: str) -> str:
        return {"mainnet": self.mainnet_url, "testnet": self.testnet_url}[network]


@dataclass
class FacilitatorConfig:
    url: str = DEFAULT_FACILITATOR_URL
    timeout: float = 30.0


@dataclass
class PaymentConfig:
    """Defaults applied when a payment request does not say otherwise."""
    fee_rate: float = 0.5   # sat/byte


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class WalletConfig:
    """Top-level configuration container."""
    network: str = "testnet"
    storage: StorageConfig = field(default_factory=StorageConfig)
    chain: ChainConfig = field(default_factory=ChainConfig)
    facilitator: FacilitatorConfig = field(default_factory=FacilitatorConfig)
    payments: PaymentConfig = field(default_factory=PaymentConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _float_env(name: str, value: str) -> float:
    try:
        return float(value)
    except ValueError:
        raise ValidationError(f"{name} must be a number, got {value!r}") from None


def _normalise(cfg: WalletConfig) -> WalletConfig:
    cfg.network = str(cfg.network).strip().lower()
    if cfg.network not in NETWORKS:
        raise ValidationError(
            f"Invalid BSV_NETWORK: {cfg.network}. Must be 'mainnet' or 'testnet'"
        )
    level = str(cfg.logging.level).upper()
    if level == "WARN":
        level = "WARNING"
    cfg.logging.level = level if level in _LOG_LEVELS else "INFO"
    return cfg


def load_config(path: str | None = None) -> WalletConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    The TOML file may set ``network`` at top level plus ``[storage]``,
    ``[chain]``, ``[facilitator]``, ``[payments]`` and ``[logging]``
    tables.

    Env-var mapping:
        BSV_NETWORK             -> network
        WALLETS_DIR             -> storage.wallets_dir
        FACILITATOR_URL         -> facilitator.url
        LOG_LEVEL               -> logging.level
        LOG_FORMAT              -> logging.format
        X402_CHAIN_MAINNET_URL  -> chain.mainnet_url
        X402_CHAIN_TESTNET_URL  -> chain.testnet_url
        X402_HTTP_TIMEOUT       -> chain.timeout, facilitator.timeout
        X402_FEE_RATE           -> payments.fee_rate

    Raises ``ValidationError`` for an unknown network.  An unknown log level
    falls back to INFO.
    """
    cfg = WalletConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path).expanduser()
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            if "network" in data:
                cfg.network = data["network"]
            for section_name, section_dc in [
                ("storage", cfg.storage),
                ("chain", cfg.chain),
                ("facilitator", cfg.facilitator),
                ("payments", cfg.payments),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("BSV_NETWORK"):
        cfg.network = v
    if v := os.environ.get("WALLETS_DIR"):
        cfg.storage.wallets_dir = v
    if v := os.environ.get("FACILITATOR_URL"):
        cfg.facilitator.url = v
    if v := os.environ.get("LOG_LEVEL"):
        cfg.logging.level = v
    if v := os.environ.get("LOG_FORMAT"):
        cfg.logging.format = v
    if v := os.environ.get("X402_CHAIN_MAINNET_URL"):
        cfg.chain.mainnet_url = v
    if v := os.environ.get("X402_CHAIN_TESTNET_URL"):
        cfg.chain.testnet_url = v
    if v := os.environ.get("X402_HTTP_TIMEOUT"):
        cfg.chain.timeout = cfg.facilitator.timeout = _float_env("X402_HTTP_TIMEOUT", v)
    if v := os.environ.get("X402_FEE_RATE"):
        cfg.payments.fee_rate = _float_env("X402_FEE_RATE", v)

    return _normalise(cfg)


def validate_config(cfg: WalletConfig) -> None:
    """Raise ``ValidationError`` if a required setting is empty or out of range."""
    if not cfg.storage.wallets_dir:
        raise ValidationError("WALLETS_DIR is required")
    if not cfg.facilitator.url:
        raise ValidationError("FACILITATOR_URL is required")
    if cfg.network not in NETWORKS:
        raise ValidationError(f"Invalid network: {cfg.network}")
    if cfg.payments.fee_rate <= 0:
        raise ValidationError("Fee rate must be positive")
    if cfg.chain.timeout <= 0:
        raise ValidationError("HTTP timeout must be positive")
    if cfg.chain.max_retries < 0:
        raise ValidationError("max_retries must not be negative")
