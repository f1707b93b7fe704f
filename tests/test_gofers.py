"""Tests for the buy and sell execution gofers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from bitfleet.engine.gofers import SIMULATED_TX_HASH, BuyGofer, SellGofer, TradeGofer
from bitfleet.errors import ChainError
from bitfleet.fleet.proposals import BUY, SELL


G = "GAMER_1"
H = "HOLDER_A"
ONE_ETH = 10**18


def _gofers(proposals, slots, fleet, chain, config, simulation=True):
    alerts = AsyncMock()
    args = (proposals, slots, fleet, chain, config)
    buy = BuyGofer(*args, alerts=alerts, simulation=simulation)
    sell = SellGofer(*args, alerts=alerts, simulation=simulation)
    return buy, sell, alerts


# ─── sell ───────────────────────────────────────────────────────────────

class TestSellGofer:
    @pytest.mark.asyncio
    async def test_clamps_to_chain_balance(self, proposals, slots, fleet, chain, config):
        _, sell, alerts = _gofers(proposals, slots, fleet, chain, config)
        proposals.propose(G, SELL, 10, "r", "x", holder=H)
        chain.get_bits_balance.return_value = 3

        assert await sell.process() == 1

        order = slots.read_pending_order(H)
        assert order.number_of_bits == 3
        assert order.tx_hash == SIMULATED_TX_HASH
        assert proposals.list_proposals(G, SELL) == []
        alerts.warning.assert_awaited_once()
        assert alerts.warning.await_args.args[0] == "Ledger divergence"

    @pytest.mark.asyncio
    async def test_full_quantity_when_balance_covers(self, proposals, slots, fleet, chain, config):
        _, sell, alerts = _gofers(proposals, slots, fleet, chain, config)
        proposals.propose(G, SELL, 4, "r", "x", holder=H)
        chain.get_bits_balance.return_value = 9
        await sell.process()
        assert slots.read_pending_order(H).number_of_bits == 4
        alerts.warning.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_zero_balance_dropped(self, proposals, slots, fleet, chain, config):
        _, sell, alerts = _gofers(proposals, slots, fleet, chain, config)
        proposals.propose(G, SELL, 5, "r", "x", holder=H)
        chain.get_bits_balance.return_value = 0
        assert await sell.process() == 0
        assert not slots.has_pending(H)
        assert proposals.list_proposals(G, SELL) == []
        assert alerts.warning.await_args.args[0] == "Zero bits balance"

    @pytest.mark.asyncio
    async def test_busy_holder_waits(self, proposals, slots, fleet, chain, config):
        _, sell, _ = _gofers(proposals, slots, fleet, chain, config)
        await slots.record_pending_order(G, BUY, 1, H, "0xinflight")
        proposals.propose(G, SELL, 5, "r", "x", holder=H)
        assert await sell.process() == 0
        # Left for a later cycle
        assert len(proposals.list_proposals(G, SELL)) == 1
        assert G in sell.work

    @pytest.mark.asyncio
    async def test_low_gas_caches_holder(self, proposals, slots, fleet, chain, config):
        _, sell, alerts = _gofers(proposals, slots, fleet, chain, config)
        proposals.propose(G, SELL, 5, "r", "x", holder=H)
        chain.get_bits_balance.return_value = 5
        chain.get_gas_price.return_value = ONE_ETH
        assert await sell.process() == 0
        assert slots.is_low_balance(H)
        assert not slots.has_pending(H)
        assert alerts.warning.await_args.args[0] == "Insufficient gas balance"
        assert alerts.warning.await_args.kwargs["cooldown_key"] == f"gas:{H}"

    @pytest.mark.asyncio
    async def test_stale_never_executed(self, proposals, slots, fleet, chain, config):
        _, sell, alerts = _gofers(proposals, slots, fleet, chain, config)
        old = datetime.now(timezone.utc) - timedelta(minutes=config.jobs.stale_sell_order_minutes + 1)
        proposals.propose(G, SELL, 5, "r", "x", holder=H, now=old)
        chain.get_bits_balance.return_value = 5

        assert await sell.process() == 0
        assert proposals.list_proposals(G, SELL) == []
        assert not slots.has_pending(H)
        chain.get_bits_balance.assert_not_awaited()
        alerts.warning.assert_awaited_once()
        assert alerts.warning.await_args.args[0] == "Stale proposal dropped"
        assert alerts.warning.await_args.kwargs["cooldown_key"] == f"stale:SELL:{G}"

    @pytest.mark.asyncio
    async def test_missing_holder_dropped(self, proposals, slots, fleet, chain, config):
        _, sell, _ = _gofers(proposals, slots, fleet, chain, config)
        proposals.propose(G, SELL, 5, "r", "x")
        assert await sell.process() == 0
        assert proposals.list_proposals(G, SELL) == []


# ─── buy ────────────────────────────────────────────────────────────────

class TestBuyGofer:
    @pytest.mark.asyncio
    async def test_buys_with_selected_slot(self, proposals, slots, fleet, chain, config):
        buy, _, _ = _gofers(proposals, slots, fleet, chain, config)
        proposals.propose(G, BUY, 2, "r", "x")
        chain.get_buy_price.return_value = 10

        assert await buy.process() == 1

        holder = slots.addresses[1]
        order = slots.read_pending_order(holder)
        assert (order.gamer, order.order_type, order.number_of_bits) == (G, BUY, 2)
        assert proposals.list_proposals(G, BUY) == []

    @pytest.mark.asyncio
    async def test_insufficient_token_balance_discards(self, proposals, slots, fleet, chain, config):
        buy, _, alerts = _gofers(proposals, slots, fleet, chain, config)
        proposals.propose(G, BUY, 2, "r", "x")
        chain.get_buy_price.return_value = 100 * ONE_ETH

        assert await buy.process() == 0
        assert proposals.list_proposals(G, BUY) == []
        assert not any(slots.has_pending(h) for h in slots.addresses)
        alerts.warning.assert_awaited_once()
        assert alerts.warning.await_args.args[0] == "Insufficient token balance"

    @pytest.mark.asyncio
    async def test_no_free_slot_keeps_proposal(self, proposals, slots, fleet, chain, config):
        buy, _, _ = _gofers(proposals, slots, fleet, chain, config)
        for i, holder in enumerate(slots.addresses):
            await slots.record_pending_order(G, BUY, 1, holder, f"0x{i}")
        proposals.propose(G, BUY, 2, "r", "x")

        assert await buy.process() == 0
        assert len(proposals.list_proposals(G, BUY)) == 1

    @pytest.mark.asyncio
    async def test_halt_stops_cycle(self, proposals, slots, fleet, chain, config):
        buy, _, alerts = _gofers(proposals, slots, fleet, chain, config)
        proposals.set_halt(BUY)
        proposals.propose(G, BUY, 2, "r", "x")

        assert await buy.process() == 0
        assert len(proposals.list_proposals(G, BUY)) == 1
        assert await buy.process() == 0
        # Reported once per warning interval
        alerts.warning.assert_awaited_once()
        assert alerts.warning.await_args.args[0] == "BUY orders halted"

        proposals.clear_halt(BUY)
        chain.get_buy_price.return_value = 1
        assert await buy.process() == 1

    @pytest.mark.asyncio
    async def test_stale_buy_dropped(self, proposals, slots, fleet, chain, config):
        buy, _, _ = _gofers(proposals, slots, fleet, chain, config)
        old = datetime.now(timezone.utc) - timedelta(minutes=config.jobs.stale_buy_order_minutes + 1)
        proposals.propose(G, BUY, 2, "r", "x", now=old)
        assert await buy.process() == 0
        assert proposals.list_proposals(G, BUY) == []
        chain.get_buy_price.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_order_error_does_not_stop_cycle(self, proposals, slots, fleet, chain, config):
        buy, _, _ = _gofers(proposals, slots, fleet, chain, config)
        proposals.propose(G, BUY, 1, "r", "x")
        proposals.propose("GAMER_2", BUY, 1, "r", "x")
        chain.get_buy_price.side_effect = [ChainError("price call failed"), 1]

        assert await buy.process() == 1

    @pytest.mark.asyncio
    async def test_drops_reach_the_alert_sink(self, proposals, slots, fleet, chain, config):
        buy, sell, alerts = _gofers(proposals, slots, fleet, chain, config)
        old = datetime.now(timezone.utc) - timedelta(minutes=config.jobs.stale_sell_order_minutes + 1)
        proposals.propose(G, SELL, 5, "r", "x", holder=H, now=old)
        proposals.propose(G, BUY, 2, "r", "x")
        chain.get_buy_price.return_value = 100 * ONE_ETH

        await sell.process()
        await buy.process()

        titles = [c.args[0] for c in alerts.warning.await_args_list]
        assert titles == ["Stale proposal dropped", "Insufficient token balance"]


# ─── live dispatch ──────────────────────────────────────────────────────

class TestLiveDispatch:
    @pytest.mark.asyncio
    async def test_pending_recorded_from_submission_callback(
        self, proposals, slots, fleet, chain, config,
    ):
        _, sell, _ = _gofers(proposals, slots, fleet, chain, config, simulation=False)
        proposals.propose(G, SELL, 2, "r", "x", holder=H)
        chain.get_bits_balance.return_value = 2

        async def sell_bits(key, holder, gamer, amount, on_submitted):
            assert key == f"key-{H}"
            await on_submitted("0xaccepted")
            return "0xaccepted"

        chain.sell_bits.side_effect = sell_bits
        assert await sell.process() == 1
        await sell.wait_inflight()
        assert slots.read_pending_order(H).tx_hash == "0xaccepted"

    @pytest.mark.asyncio
    async def test_failure_after_acceptance_is_contained(
        self, proposals, slots, fleet, chain, config,
    ):
        _, sell, alerts = _gofers(proposals, slots, fleet, chain, config, simulation=False)
        proposals.propose(G, SELL, 2, "r", "x", holder=H)
        chain.get_bits_balance.return_value = 2

        async def sell_bits(key, holder, gamer, amount, on_submitted):
            await on_submitted("0xreverted")
            raise ChainError("transaction 0xreverted reverted")

        chain.sell_bits.side_effect = sell_bits
        assert await sell.process() == 1
        await sell.wait_inflight()
        assert slots.has_pending(H)
        alerts.critical.assert_awaited_once()
        assert alerts.critical.await_args.args[0] == "Transaction failed"
        assert "reverted" in alerts.critical.await_args.args[1]

    @pytest.mark.asyncio
    async def test_rejected_before_acceptance(self, proposals, slots, fleet, chain, config):
        buy, _, alerts = _gofers(proposals, slots, fleet, chain, config, simulation=False)
        proposals.propose(G, BUY, 1, "r", "x")
        chain.get_buy_price.return_value = 1
        chain.buy_bits.side_effect = ChainError("signature service down")

        assert await buy.process() == 0
        assert not any(slots.has_pending(h) for h in slots.addresses)
        await buy.wait_inflight()
        alerts.critical.assert_awaited_once()
        assert alerts.warning.await_args.args[0] == "BUY order failed"


class TestTradeGofer:
    @pytest.mark.asyncio
    async def test_cycle_runs_buys_then_sells(self, proposals, slots, fleet, chain, config):
        buy, sell, _ = _gofers(proposals, slots, fleet, chain, config)
        proposals.propose(G, BUY, 1, "r", "x")
        proposals.propose(G, SELL, 1, "r", "x", holder=H)
        chain.get_buy_price.return_value = 1
        chain.get_bits_balance.return_value = 1

        result = await TradeGofer(buy, sell, interval_secs=0).run_cycle()
        assert result == {"bought": 1, "sold": 1}
