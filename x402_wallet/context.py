"""
Explicit wiring of the wallet's collaborators.

A :class:`WalletContext` is built once from a :class:`WalletConfig` and
passed to whatever needs storage, chain access or the facilitator.  Tests
build their own context on a temporary directory and may swap in a fake
chain client factory.
"""

from __future__ import annotations

from typing import Callable, Optional

from x402_wallet.chain_client import ChainClient, RetryPolicy, SleepFn
from x402_wallet.config import WalletConfig, load_config
from x402_wallet.facilitator import FacilitatorClient
from x402_wallet.networks import get_network
from x402_wallet.storage import TransactionHistory, WalletStore

ChainClientFactory = Callable[[str], ChainClient]


class WalletContext:
    def __init__(
        self,
        config: WalletConfig | None = None,
        chain_client_factory: Optional[ChainClientFactory] = None,
        sleep: SleepFn | None = None,
    ):
        self.config = config or WalletConfig()
        self.store = WalletStore(self.config.storage.path)
        self.history = TransactionHistory(self.config.storage.path)
        self.retry = RetryPolicy(
            max_retries=self.config.chain.max_retries,
            initial_delay=self.config.chain.initial_delay,
            max_delay=self.config.chain.max_delay,
        )
        self._chain_client_factory = chain_client_factory
        self._sleep = sleep

    @classmethod
    def from_config_file(cls, path: str | None = None) -> WalletContext:
        return cls(load_config(path))

    @property
    def network(self) -> str:
        return self.config.network

    @property
    def fee_rate(self) -> float:
        return self.config.payments.fee_rate

    def bootstrap(self) -> None:
        """Create the wallets directory and (re)apply its permissions."""
        self.store.ensure_dir()

    def chain_client(self, network: str | None = None) -> ChainClient:
        """A new client for *network*; the caller closes it."""
        network = get_network(network or self.network).name
        if self._chain_client_factory is not None:
            return self._chain_client_factory(network)
        return ChainClient(
            network,
            base_url=self.config.chain.url_for(network),
            retry=self.retry,
            timeout=self.config.chain.timeout,
            sleep=self._sleep,
        )

    def facilitator(self) -> FacilitatorClient:
        return FacilitatorClient(
            self.config.facilitator.url, timeout=self.config.facilitator.timeout
        )
