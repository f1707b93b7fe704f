"""Key fleet: the operator's signing addresses and their balances.

Keys are read once from ``WALLET_<address>=<private key>`` environment
variables and are immutable for the life of the process. Private keys
never leave this object except to sign a transaction.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Mapping

from web3 import Web3

from bitfleet.config import ChainConfig
from bitfleet.connectors.chain import ChainClient
from bitfleet.observability.logger import get_logger

log = get_logger(__name__)

WALLET_ENV_PREFIX = "WALLET_"


def normalize_address(address: str) -> str:
    return Web3.to_checksum_address(address) if Web3.is_address(address) else address


def load_keys_from_env(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    environ = os.environ if environ is None else environ
    keys: dict[str, str] = {}
    for name, value in environ.items():
        if name.startswith(WALLET_ENV_PREFIX) and value:
            keys[normalize_address(name[len(WALLET_ENV_PREFIX):])] = value
    return keys


class KeyFleet:
    """Fixed set of signing addresses, in configuration order."""

    def __init__(
        self,
        chain: ChainClient,
        config: ChainConfig,
        keys: Mapping[str, str] | None = None,
    ):
        self.chain = chain
        self.config = config
        source = load_keys_from_env() if keys is None else keys
        self._keys = {normalize_address(a): k for a, k in source.items()}
        self._lower = {a.lower(): a for a in self._keys}
        log.info("fleet.loaded", size=len(self._keys))

    def get_all_addresses(self) -> list[str]:
        return list(self._keys)

    def is_member(self, address: str) -> bool:
        return address.lower() in self._lower

    def get_key(self, address: str) -> str:
        canonical = self._lower.get(address.lower())
        if canonical is None:
            raise KeyError(f"{address} is not a fleet address")
        return self._keys[canonical]

    def export_addresses(self, path: str | Path) -> None:
        with open(path, "w") as f:
            json.dump({"holderAddresses": self.get_all_addresses()}, f, indent=2)

    # ── Balances ─────────────────────────────────────────────────────

    async def get_gas_balance(self, address: str) -> int:
        return await self.chain.get_balance(address)

    async def get_token_balance(self, address: str) -> int:
        return await self.chain.get_token_balance(self.config.erc20_buyer_token, address)

    async def meets_minimum_gas(self, address: str) -> bool:
        """Gas balance against the fixed configured floor."""
        try:
            balance = await self.get_gas_balance(address)
        except Exception as e:
            log.error("fleet.gas_balance_error", holder=address, error=str(e))
            return False
        return balance >= self.config.min_gas_fees_balance_wei

    async def meets_minimum_gas_for(
        self, address: str, gas_limit: int, gas_price: int | None = None,
    ) -> bool:
        """Gas balance against current gas price times ``gas_limit``.

        Errors propagate: the caller decides whether to skip the order.
        """
        if gas_price is None:
            gas_price = await self.chain.get_gas_price()
        balance = await self.get_gas_balance(address)
        return balance >= gas_price * gas_limit

    async def meets_minimum_token(self, address: str) -> bool:
        try:
            balance = await self.get_token_balance(address)
        except Exception as e:
            log.error("fleet.token_balance_error", holder=address, error=str(e))
            return False
        return balance >= self.config.min_erc20_balance_wei
