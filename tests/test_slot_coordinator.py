"""Tests for the transaction slot coordinator."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from bitfleet.fleet.key_fleet import KeyFleet
from bitfleet.fleet.slot_coordinator import NO_FREE_SLOT, PendingStatus, SlotCoordinator
from bitfleet.observability.metrics import metrics


G = "GAMER_1"
ONE_ETH = 10**18


class _Clock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def clock() -> _Clock:
    return _Clock()


@pytest.fixture()
def coordinator(fleet, chain, tmp_path, clock) -> SlotCoordinator:
    return SlotCoordinator(fleet, chain, tmp_path, max_pending_secs=120, now=clock)


# ─── selection ──────────────────────────────────────────────────────────

class TestSelectFreeSlot:
    @pytest.mark.asyncio
    async def test_starts_after_cursor_and_skips_busy(self, coordinator):
        # Fleet [A, B, C] with the cursor on A
        first = await coordinator.select_free_slot()
        assert first == 1
        await coordinator.record_pending_order(G, "BUY", 1, coordinator.addresses[first], "0x1")
        assert await coordinator.select_free_slot() == 2

    @pytest.mark.asyncio
    async def test_round_robin_visits_everyone(self, coordinator):
        picks = [await coordinator.select_free_slot() for _ in range(4)]
        assert picks == [1, 2, 0, 1]

    @pytest.mark.asyncio
    async def test_busy_holder_never_selected(self, coordinator):
        busy = coordinator.addresses[1]
        await coordinator.record_pending_order(G, "SELL", 2, busy, "0xbusy")
        for _ in range(6):
            index = await coordinator.select_free_slot()
            assert coordinator.addresses[index] != busy

    @pytest.mark.asyncio
    async def test_all_busy(self, coordinator):
        for i, holder in enumerate(coordinator.addresses):
            await coordinator.record_pending_order(G, "BUY", 1, holder, f"0x{i}")
        assert await coordinator.select_free_slot() == NO_FREE_SLOT
        assert await coordinator.select_free_holder() is None

    @pytest.mark.asyncio
    async def test_second_pass_reclaims_mined_slot(self, coordinator):
        for i, holder in enumerate(coordinator.addresses):
            await coordinator.record_pending_order(G, "BUY", 1, holder, f"0x{i}")
        coordinator.mark_mined(coordinator.addresses[0], "0x0")
        assert await coordinator.select_free_slot() == 0
        assert not coordinator.has_pending(coordinator.addresses[0])

    @pytest.mark.asyncio
    async def test_empty_fleet(self, chain, config, tmp_path):
        empty = KeyFleet(chain, config.chain, {})
        coordinator = SlotCoordinator(empty, chain, tmp_path)
        assert await coordinator.select_free_slot() == NO_FREE_SLOT

    @pytest.mark.asyncio
    async def test_low_token_balance_cached(self, coordinator, chain):
        poor = coordinator.addresses[1]

        async def token_balance(token, address):
            return 0 if address == poor else 100 * ONE_ETH

        chain.get_token_balance.side_effect = token_balance
        assert await coordinator.select_free_slot() == 2
        assert coordinator.is_low_balance(poor)

        calls_before = chain.get_token_balance.await_count
        coordinator.last_chosen_index = 0
        assert await coordinator.select_free_slot() == 2
        # The cached holder was not queried again
        assert chain.get_token_balance.await_count == calls_before + 1


# ─── pending order lifecycle ────────────────────────────────────────────

class TestPendingOrders:
    @pytest.mark.asyncio
    async def test_record_writes_nonce_and_status(self, coordinator):
        holder = coordinator.addresses[0]
        order = await coordinator.record_pending_order(G, "BUY", 3, holder, "0xabc")
        assert order.nonce == 5
        stored = coordinator.read_pending_order(holder)
        assert stored.status == PendingStatus.PENDING
        assert stored.number_of_bits == 3
        assert stored.tx_hash == "0xabc"

    @pytest.mark.asyncio
    async def test_still_pending(self, coordinator):
        holder = coordinator.addresses[0]
        await coordinator.record_pending_order(G, "BUY", 1, holder, "0xabc")
        order = await coordinator.refresh_pending_order(holder)
        assert order is not None
        assert coordinator.has_pending(holder)

    @pytest.mark.asyncio
    async def test_mined_mark_frees_on_refresh(self, coordinator):
        holder = coordinator.addresses[0]
        await coordinator.record_pending_order(G, "BUY", 1, holder, "0xABC")
        assert coordinator.mark_mined(holder, "0xabc") is True
        # Marked, not yet deleted
        assert coordinator.has_pending(holder)
        assert coordinator.is_pending_order_complete(holder)
        assert await coordinator.refresh_pending_order(holder) is None
        assert not coordinator.has_pending(holder)

    @pytest.mark.asyncio
    async def test_mark_mined_ignores_other_hash(self, coordinator):
        holder = coordinator.addresses[0]
        await coordinator.record_pending_order(G, "BUY", 1, holder, "0xabc")
        assert coordinator.mark_mined(holder, "0xdef") is False
        assert coordinator.read_pending_order(holder).status == PendingStatus.PENDING

    @pytest.mark.asyncio
    async def test_expired_order_reclaimed(self, coordinator, clock):
        holder = coordinator.addresses[0]
        await coordinator.record_pending_order(G, "SELL", 1, holder, "0xabc")
        clock.advance(seconds=121)
        before = metrics.counter("slots.reclaimed", reason="expired")
        assert await coordinator.refresh_pending_order(holder) is None
        assert not coordinator.has_pending(holder)
        assert not coordinator.pending_path(holder).exists()
        assert metrics.counter("slots.reclaimed", reason="expired") == before + 1

    def test_only_stored_statuses_exist(self):
        assert {s.value for s in PendingStatus} == {"Pending", "Mined"}

    @pytest.mark.asyncio
    async def test_nonce_advance_reclaims(self, coordinator, chain):
        holder = coordinator.addresses[0]
        await coordinator.record_pending_order(G, "SELL", 1, holder, "0xabc")
        chain.get_transaction_count.return_value = 6
        assert await coordinator.refresh_pending_order(holder) is None

    @pytest.mark.asyncio
    async def test_update_pending_order_removes_matching_hash(self, coordinator):
        holder = coordinator.addresses[0]
        await coordinator.record_pending_order(G, "BUY", 1, holder, "0xabc")
        await coordinator.update_pending_order("0xother", holder)
        assert coordinator.has_pending(holder)
        await coordinator.update_pending_order("0xABC", holder)
        assert not coordinator.has_pending(holder)

    @pytest.mark.asyncio
    async def test_no_pending_order(self, coordinator):
        assert coordinator.read_pending_order("HOLDER_A") is None
        assert await coordinator.refresh_pending_order("HOLDER_A") is None
        assert coordinator.mark_mined("HOLDER_A", "0xabc") is False
