"""
Tests for x402_wallet.transaction — strict parsing, txid and P2PKH scripts.
"""

import unittest

from x402_wallet.errors import ValidationError
from x402_wallet.keys import P2PKHKey
from x402_wallet.transaction import (
    is_hex,
    p2pkh_lock,
    parse_transaction,
    same_script,
    txid_of,
)

# Coinbase transaction of block 1
BLOCK1_COINBASE = (
    "01000000010000000000000000000000000000000000000000000000000000000000000000"
    "ffffffff0704ffff001d0104ffffffff0100f2052a0100000043410496b538e853519c726a"
    "2c91e61ec11600ae1390813a627c66fb8be7947be63c52da7589379515d4e0a604f8141781"
    "e62294721166bf621e73a82cbf2342c858eeac00000000"
)
BLOCK1_TXID = "0e3e2357e806b6cdb1f70b54c3a3a17b6714ee1f0e68bebb44a74b1efd512098"

MAINNET_ADDR = "1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH"
TESTNET_ADDR = "mrCDrCybB6J1vRfbwM5hemdJz73FwDBC8r"


class TestIsHex(unittest.TestCase):

    def test_accepts_whole_bytes(self):
        self.assertTrue(is_hex("00"))
        self.assertTrue(is_hex("aBcD"))

    def test_rejects(self):
        for text in ["", "a", "0x00", "00 11", "00\n", "zz", None, b"00"]:
            with self.subTest(text=text):
                self.assertFalse(is_hex(text))


class TestParse(unittest.TestCase):

    def test_block1_coinbase(self):
        tx = parse_transaction(BLOCK1_COINBASE)
        self.assertEqual(tx.version, 1)
        self.assertEqual(len(tx.inputs), 1)
        self.assertEqual(len(tx.outputs), 1)
        self.assertEqual(tx.outputs[0].satoshis, 50 * 100_000_000)
        self.assertEqual(tx.hex(), BLOCK1_COINBASE)

    def test_txid(self):
        self.assertEqual(txid_of(BLOCK1_COINBASE), BLOCK1_TXID)

    def test_mixed_case_and_whitespace(self):
        self.assertEqual(txid_of("  " + BLOCK1_COINBASE.upper() + "\n"), BLOCK1_TXID)

    def test_trailing_bytes_rejected(self):
        with self.assertRaises(ValidationError):
            parse_transaction(BLOCK1_COINBASE + "00")

    def test_truncated_rejected(self):
        with self.assertRaises(ValidationError):
            parse_transaction(BLOCK1_COINBASE[:-10])

    def test_non_hex_rejected(self):
        for text in ["zz", "", "0100 0000", None]:
            with self.subTest(text=text):
                with self.assertRaises(ValidationError):
                    parse_transaction(text)


class TestScripts(unittest.TestCase):

    def test_locking_script_layout(self):
        self.assertEqual(
            p2pkh_lock(MAINNET_ADDR).hex(),
            "76a914751e76e8199196d454941c45d1b3a323f1433bd688ac",
        )

    def test_same_hash_on_both_networks(self):
        self.assertTrue(same_script(p2pkh_lock(MAINNET_ADDR), p2pkh_lock(TESTNET_ADDR)))

    def test_different_addresses(self):
        other = P2PKHKey.from_bytes((2).to_bytes(32, "big"), "testnet").address
        self.assertFalse(same_script(p2pkh_lock(TESTNET_ADDR), p2pkh_lock(other)))

    def test_invalid_address(self):
        with self.assertRaises(ValidationError):
            p2pkh_lock("1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMX")


if __name__ == "__main__":
    unittest.main()
