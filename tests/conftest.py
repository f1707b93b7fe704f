"""Shared test fixtures."""

from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

# Ensure bitfleet is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from bitfleet.config import BotConfig, ChainConfig, JobsConfig, StorageConfig  # noqa: E402
from bitfleet.fleet.key_fleet import KeyFleet  # noqa: E402
from bitfleet.fleet.proposals import ProposalStore  # noqa: E402
from bitfleet.fleet.slot_coordinator import SlotCoordinator  # noqa: E402
from bitfleet.storage.ledger import PositionLedger  # noqa: E402
from bitfleet.storage.tx_history import TxHistoryStore  # noqa: E402
from bitfleet.trade.trade_util import TradeUtil  # noqa: E402

HOLDERS = ["HOLDER_A", "HOLDER_B", "HOLDER_C"]
GAMER = "GAMER_1"

ONE_ETH = 10**18


@pytest.fixture()
def config(tmp_path) -> BotConfig:
    return BotConfig(
        chain=ChainConfig(provider_url="http://localhost:8545", start_block=1),
        jobs=JobsConfig(pre_select_slot_sleep_ms=0, function_delay_ms=0),
        storage=StorageConfig(data_dir=str(tmp_path)),
    )


@pytest.fixture()
def chain() -> AsyncMock:
    """Chain client double: funded holders, nonce 5, gas price 1 wei."""
    fake = AsyncMock()
    fake.get_balance.return_value = ONE_ETH
    fake.get_token_balance.return_value = 100 * ONE_ETH
    fake.get_transaction_count.return_value = 5
    fake.get_gas_price.return_value = 1
    fake.get_block_timestamp.return_value = 1_700_000_000
    return fake


@pytest.fixture()
def fleet(chain, config) -> KeyFleet:
    return KeyFleet(chain, config.chain, {h: f"key-{h}" for h in HOLDERS})


@pytest.fixture()
def ledger(tmp_path) -> PositionLedger:
    return PositionLedger(tmp_path)


@pytest.fixture()
def proposals(tmp_path) -> ProposalStore:
    return ProposalStore(tmp_path)


@pytest.fixture()
def slots(fleet, chain, tmp_path) -> SlotCoordinator:
    return SlotCoordinator(fleet, chain, tmp_path, max_pending_secs=120)


@pytest.fixture()
def tx_history(tmp_path) -> TxHistoryStore:
    return TxHistoryStore(tmp_path, max_age_hours=12)


@pytest.fixture()
def trade_util(ledger, proposals, slots, fleet) -> TradeUtil:
    return TradeUtil(ledger, proposals, slots, fleet)
