"""Quantity bookkeeping shared by the rule actions.

Every target amount is computed from three local sources, never from
the chain: ledger holdings, the holder's in-flight pending order, and
proposals not yet picked up by a gofer.
"""

from __future__ import annotations

from typing import Any

from bitfleet.fleet.key_fleet import KeyFleet
from bitfleet.fleet.proposals import BUY, SELL, ProposalStore
from bitfleet.fleet.slot_coordinator import PendingStatus, SlotCoordinator
from bitfleet.reports.pnl import compute_pnl
from bitfleet.storage.ledger import PositionLedger


class TradeUtil:
    def __init__(
        self,
        ledger: PositionLedger,
        proposals: ProposalStore,
        slots: SlotCoordinator,
        fleet: KeyFleet,
    ):
        self.ledger = ledger
        self.proposals = proposals
        self.slots = slots
        self.fleet = fleet

    def get_bit_balance_in_store(self, holder: str, gamer: str) -> int:
        return self.ledger.get_held_quantity(holder, gamer)

    def get_largest_fleet_owner_of_gamer(self, gamer: str) -> str | None:
        """Fleet address holding the most of ``gamer`` (first wins ties)."""
        largest, max_balance = None, 0
        for holder in self.fleet.get_all_addresses():
            balance = self.get_bit_balance_in_store(holder, gamer)
            if balance > max_balance:
                largest, max_balance = holder, balance
        return largest

    def get_proposed_sum(self, gamer: str, order_type: str, holder: str | None = None) -> int:
        return self.proposals.proposed_sum(gamer, order_type, holder)

    def get_amount_pending(self, gamer: str, holder: str, order_type: str) -> int:
        """Quantity of the holder's in-flight order on ``gamer``, if it matches."""
        order = self.slots.read_pending_order(holder)
        if order is None or order.status != PendingStatus.PENDING:
            return 0
        if order.gamer.lower() == gamer.lower() and order.order_type == order_type:
            return order.number_of_bits
        return 0

    def adjust_sell_target_amount(self, gamer: str, holder: str, max_bits_to_sell: int) -> int:
        balance = self.get_bit_balance_in_store(holder, gamer)
        committed = (
            self.get_amount_pending(gamer, holder, SELL)
            + self.get_proposed_sum(gamer, SELL, holder)
        )
        if committed >= balance:
            return 0
        return min(max_bits_to_sell, balance - committed)

    def adjust_buy_target_amount(self, gamer: str, max_bits_to_own: int) -> int:
        """How many more to buy so fleet holdings reach ``max_bits_to_own``."""
        owned = 0
        pending = 0
        for holder in self.fleet.get_all_addresses():
            owned += self.get_bit_balance_in_store(holder, gamer)
            if owned >= max_bits_to_own:
                return 0
            pending += self.get_amount_pending(gamer, holder, BUY)
            if owned + pending >= max_bits_to_own:
                return 0

        committed = owned + pending + self.get_proposed_sum(gamer, BUY)
        return max(0, max_bits_to_own - committed)

    def compute_pnl(self, snapshot: dict[str, Any], start_block: int | None = None) -> dict[str, Any]:
        return compute_pnl(snapshot, start_block)
