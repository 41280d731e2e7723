"""
Tests for x402_wallet.config — TOML configuration and environment overrides.

Covers:
  - Default values for all dataclass sections
  - TOML parsing and section merging
  - Environment variable overrides (precedence over TOML)
  - Network / log level normalisation
  - validate_config
"""

from __future__ import annotations

import os
import tempfile
import textwrap
import unittest
from pathlib import Path
from unittest.mock import patch

from x402_wallet.config import (
    DEFAULT_FACILITATOR_URL,
    ChainConfig,
    StorageConfig,
    WalletConfig,
    _merge,
    load_config,
    validate_config,
)
from x402_wallet.errors import ValidationError

_OUR_VARS = {
    "BSV_NETWORK", "WALLETS_DIR", "FACILITATOR_URL", "LOG_LEVEL", "LOG_FORMAT",
    "X402_CHAIN_MAINNET_URL", "X402_CHAIN_TESTNET_URL", "X402_HTTP_TIMEOUT", "X402_FEE_RATE",
}


def env(**values: str):
    """Patch os.environ with only *values* among the wallet's variables."""
    base = {k: v for k, v in os.environ.items() if k not in _OUR_VARS}
    base.update(values)
    return patch.dict(os.environ, base, clear=True)


def _write_toml(body: str) -> str:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".toml", delete=False) as f:
        f.write(textwrap.dedent(body))
    return f.name


# ═══════════════════════════════════════════════════════════════════
#  Defaults
# ═══════════════════════════════════════════════════════════════════

class TestDefaults(unittest.TestCase):

    def test_wallet_defaults(self):
        cfg = WalletConfig()
        self.assertEqual(cfg.network, "testnet")
        self.assertEqual(cfg.storage.wallets_dir, "~/.bsv-wallets")
        self.assertEqual(cfg.facilitator.url, DEFAULT_FACILITATOR_URL)
        self.assertEqual(cfg.payments.fee_rate, 0.5)
        self.assertEqual(cfg.logging.level, "INFO")
        self.assertEqual(cfg.logging.format, "human")
        self.assertIsNone(cfg.logging.file)

    def test_chain_defaults(self):
        c = ChainConfig()
        self.assertEqual(c.max_retries, 3)
        self.assertEqual(c.initial_delay, 1.0)
        self.assertEqual(c.max_delay, 10.0)
        self.assertEqual(c.timeout, 30.0)
        self.assertIn("whatsonchain", c.url_for("mainnet"))
        self.assertTrue(c.url_for("testnet").endswith("/test"))

    def test_storage_path_expands_user(self):
        self.assertFalse(str(StorageConfig().path).startswith("~"))

    def test_no_file_no_env(self):
        with env():
            cfg = load_config(None)
        self.assertEqual(cfg.network, "testnet")

    def test_missing_file_uses_defaults(self):
        with env():
            cfg = load_config("/nonexistent/x402-wallet.toml")
        self.assertEqual(cfg.payments.fee_rate, 0.5)


# ═══════════════════════════════════════════════════════════════════
#  TOML
# ═══════════════════════════════════════════════════════════════════

class TestToml(unittest.TestCase):

    def setUp(self):
        self.path = _write_toml("""
            network = "mainnet"

            [storage]
            wallets-dir = "/srv/wallets"

            [chain]
            max_retries = 5
            testnet_url = "http://localhost:9999"

            [payments]
            fee_rate = 1.0

            [logging]
            level = "debug"
            format = "json"
            unknown_key = "ignored"
        """)

    def tearDown(self):
        Path(self.path).unlink(missing_ok=True)

    def test_sections_merged(self):
        with env():
            cfg = load_config(self.path)
        self.assertEqual(cfg.network, "mainnet")
        self.assertEqual(cfg.storage.wallets_dir, "/srv/wallets")
        self.assertEqual(cfg.chain.max_retries, 5)
        self.assertEqual(cfg.chain.url_for("testnet"), "http://localhost:9999")
        self.assertEqual(cfg.payments.fee_rate, 1.0)
        self.assertEqual(cfg.logging.level, "DEBUG")
        self.assertEqual(cfg.logging.format, "json")
        self.assertFalse(hasattr(cfg.logging, "unknown_key"))

    def test_env_beats_toml(self):
        with env(BSV_NETWORK="testnet", X402_FEE_RATE="2.5"):
            cfg = load_config(self.path)
        self.assertEqual(cfg.network, "testnet")
        self.assertEqual(cfg.payments.fee_rate, 2.5)
        self.assertEqual(cfg.chain.max_retries, 5)


class TestMerge(unittest.TestCase):

    def test_hyphens_and_unknown_keys(self):
        s = StorageConfig()
        _merge(s, {"wallets-dir": "/a", "nope": 1})
        self.assertEqual(s.wallets_dir, "/a")
        self.assertFalse(hasattr(s, "nope"))


# ═══════════════════════════════════════════════════════════════════
#  Environment
# ═══════════════════════════════════════════════════════════════════

class TestEnvironment(unittest.TestCase):

    def test_overrides(self):
        with env(
            BSV_NETWORK="MAINNET",
            WALLETS_DIR="/tmp/w",
            FACILITATOR_URL="http://fac.local",
            LOG_FORMAT="json",
            X402_CHAIN_MAINNET_URL="http://main.local",
            X402_HTTP_TIMEOUT="7",
        ):
            cfg = load_config()
        self.assertEqual(cfg.network, "mainnet")
        self.assertEqual(cfg.storage.wallets_dir, "/tmp/w")
        self.assertEqual(cfg.facilitator.url, "http://fac.local")
        self.assertEqual(cfg.logging.format, "json")
        self.assertEqual(cfg.chain.url_for("mainnet"), "http://main.local")
        self.assertEqual(cfg.chain.timeout, 7.0)
        self.assertEqual(cfg.facilitator.timeout, 7.0)

    def test_invalid_network(self):
        with env(BSV_NETWORK="regtest"):
            with self.assertRaises(ValidationError):
                load_config()

    def test_warn_maps_to_warning(self):
        with env(LOG_LEVEL="warn"):
            self.assertEqual(load_config().logging.level, "WARNING")

    def test_unknown_level_falls_back(self):
        with env(LOG_LEVEL="chatty"):
            self.assertEqual(load_config().logging.level, "INFO")

    def test_non_numeric_timeout(self):
        with env(X402_HTTP_TIMEOUT="soon"):
            with self.assertRaises(ValidationError):
                load_config()


class TestValidateConfig(unittest.TestCase):

    def test_defaults_pass(self):
        validate_config(WalletConfig())

    def test_rejects(self):
        cases = [
            ("storage", "wallets_dir", ""),
            ("facilitator", "url", ""),
            ("payments", "fee_rate", 0),
            ("chain", "timeout", -1),
            ("chain", "max_retries", -1),
        ]
        for section, name, value in cases:
            with self.subTest(field=name):
                cfg = WalletConfig()
                setattr(getattr(cfg, section), name, value)
                with self.assertRaises(ValidationError):
                    validate_config(cfg)

    def test_rejects_network(self):
        cfg = WalletConfig()
        cfg.network = "regtest"
        with self.assertRaises(ValidationError):
            validate_config(cfg)


if __name__ == "__main__":
    unittest.main()
