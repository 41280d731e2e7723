"""Chain environment definitions for the two supported BSV networks."""

from __future__ import annotations

from dataclasses import dataclass

from bsv import Network as SdkNetwork

from x402_wallet.errors import ValidationError


@dataclass(frozen=True)
class Network:
    """A BSV chain environment and the SDK enum it maps to."""

    name: str
    sdk: SdkNetwork


NETWORKS: dict[str, Network] = {
    "mainnet": Network(name="mainnet", sdk=SdkNetwork.MAINNET),
    "testnet": Network(name="testnet", sdk=SdkNetwork.TESTNET),
}


def get_network(name: str) -> Network:
    """Get a network by name. Raises ``ValidationError`` if unknown."""
    if name not in NETWORKS:
        raise ValidationError(
            f"Unknown network '{name}'. Available: {list_network_names()}"
        )
    return NETWORKS[name]


def list_network_names() -> list[str]:
    """Return the names of all supported networks."""
    return list(NETWORKS.keys())


def network_for_sdk(sdk_network: SdkNetwork | None) -> Network | None:
    for net in NETWORKS.values():
        if net.sdk == sdk_network:
            return net
    return None
