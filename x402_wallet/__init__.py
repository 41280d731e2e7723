"""
x402 BSV wallet - custody and spending for autonomous agents.

Key features:
- Passphrase-encrypted key vault (scrypt + AES-256-GCM)
- One JSON record per wallet with owner-only permissions
- Async WhatsOnChain client with retry and broadcast classification
- P2PKH transaction building with largest-first coin selection
- x402 payment proof envelopes for settlement facilitators
"""

__version__ = "1.0.0"
__all__ = [
    "errors",
    "networks",
    "crypto_utils",
    "vault",
    "keys",
    "storage",
    "chain_client",
    "transaction",
    "tx_builder",
    "payment_proof",
    "facilitator",
    "message_signer",
    "manager",
    "payments",
    "context",
    "config",
    "logging_config",
    "cli",
]
