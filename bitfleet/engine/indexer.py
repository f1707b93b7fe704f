"""Chain indexer: replays Trade events into the position ledger.

Catch-up starts one block past the newest block recorded in the
ledger, so the resume point always matches what was durably written.
Once a fetch ends close enough to the chain head the indexer is live
for good, and every applied event is also handed to the buy and sell
rules.

Any failure while fetching or applying events is fatal: the indexer
raises FatalIndexerError and the hosting process restarts from the
ledger instead of retrying from uncertain in-memory state.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from bitfleet.config import ChainConfig
from bitfleet.connectors.chain import ChainClient, TradeEvent
from bitfleet.errors import FatalIndexerError, InsufficientLotBalance
from bitfleet.fleet.key_fleet import KeyFleet
from bitfleet.fleet.slot_coordinator import SlotCoordinator
from bitfleet.observability.logger import get_logger
from bitfleet.observability.metrics import metrics
from bitfleet.rules.engine import CHAIN_INDEXER, CompiledRule, RuleContext
from bitfleet.rules.invoker import RuleInvoker
from bitfleet.storage.ledger import Lot, PositionLedger
from bitfleet.storage.tx_history import TxHistoryStore

log = get_logger(__name__)


def split_proceeds(total: int, quantities: list[int]) -> list[int]:
    """Split ``total`` across ``quantities`` pro rata; the last part takes the remainder."""
    sold = sum(quantities)
    if sold == 0:
        return [0] * len(quantities)
    parts = [total * q // sold for q in quantities]
    if parts:
        parts[-1] += total - sum(parts)
    return parts


class ChainIndexer:
    def __init__(
        self,
        chain: ChainClient,
        ledger: PositionLedger,
        tx_history: TxHistoryStore,
        fleet: KeyFleet,
        slots: SlotCoordinator,
        invoker: RuleInvoker,
        config: ChainConfig,
        buy_rules: list[CompiledRule] | None = None,
        sell_rules: list[CompiledRule] | None = None,
    ):
        self.chain = chain
        self.ledger = ledger
        self.tx_history = tx_history
        self.fleet = fleet
        self.slots = slots
        self.invoker = invoker
        self.config = config
        self.buy_rules = buy_rules or []
        self.sell_rules = sell_rules or []
        self.caught_up = False
        self.last_end_block: int | None = None
        self._block_timestamps: dict[int, int] = {}

    def resume_block(self) -> int:
        latest = self.ledger.get_latest_indexed_block()
        return max(latest + 1, self.config.start_block)

    # ── Applying events ──────────────────────────────────────────────

    async def _block_timestamp(self, block_number: int) -> int:
        if block_number not in self._block_timestamps:
            self._block_timestamps.clear()
            self._block_timestamps[block_number] = await self.chain.get_block_timestamp(block_number)
        return self._block_timestamps[block_number]

    def _apply_buy(self, event: TradeEvent) -> None:
        lot = Lot(
            initial_amount=event.bit_amount,
            remaining_amount=event.bit_amount,
            purchase_price=event.total_cost,
            purchase_block=event.block_number,
            peak_supply=str(event.supply),
        )
        self.ledger.add_lot(event.trader, event.gamer, lot)

    def _apply_sell(self, event: TradeEvent) -> None:
        """Consume lots oldest first, crediting each with its share of the proceeds."""
        held = self.ledger.get_held_quantity(event.trader, event.gamer)
        if held < event.bit_amount:
            raise InsufficientLotBalance(
                f"{event.trader} sold {event.bit_amount} of {event.gamer} but holds {held}"
            )

        plan: list[tuple[int, int]] = []
        to_deduct = event.bit_amount
        for lot in self.ledger.list_lots_ascending(event.trader, event.gamer):
            if to_deduct == 0:
                break
            take = min(lot.remaining_amount, to_deduct)
            if take:
                plan.append((lot.seq, take))
                to_deduct -= take

        proceeds = split_proceeds(event.eth_amount, [qty for _, qty in plan])
        for (seq, qty), share in zip(plan, proceeds):
            self.ledger.consume_lot(
                event.trader, event.gamer, seq, qty, event.block_number, sale_proceeds=share,
            )

    async def apply_event(self, event: TradeEvent) -> None:
        if event.bit_amount == 0:
            log.debug("indexer.skip_zero_amount", gamer=event.gamer, holder=event.trader)
            return

        self.ledger.add_holder(event.trader)
        if event.is_buy:
            self._apply_buy(event)
        else:
            self._apply_sell(event)
        metrics.incr("indexer.events_applied", side="buy" if event.is_buy else "sell")

        timestamp = await self._block_timestamp(event.block_number)
        self.tx_history.record(
            event.gamer, event.trader, event.is_buy, event.block_number, timestamp,
        )

        if self.fleet.is_member(event.trader):
            self.slots.mark_mined(event.trader, event.tx_hash)

        if self.caught_up:
            await self._invoke_rules(event)

    def _context(self, event: TradeEvent) -> RuleContext:
        return RuleContext(
            invoked_by=CHAIN_INDEXER,
            holder=event.trader,
            gamer=event.gamer,
            bit_amount=event.bit_amount,
            is_buy=event.is_buy,
            block_number=event.block_number,
        )

    async def _invoke_rules(self, event: TradeEvent) -> None:
        if self.buy_rules:
            await self.invoker.submit(self._context(event), self.buy_rules, label="buy")
        if self.sell_rules:
            await self.invoker.submit(self._context(event), self.sell_rules, label="sell")

    # ── Fetching ─────────────────────────────────────────────────────

    async def fetch_events(self, start_block: int, end_block: int) -> int:
        """Apply every event in ``[start_block, end_block]``; returns the count."""
        applied = 0
        batch = max(1, self.config.batch_size)
        for from_block in range(start_block, end_block + 1, batch):
            to_block = min(from_block + batch - 1, end_block)
            events = await self.chain.query_trade_events(from_block, to_block)
            log.info("indexer.batch_fetched", from_block=from_block, to_block=to_block,
                     events=len(events))
            for event in events:
                await self.apply_event(event)
                applied += 1
        return applied

    async def catch_up(self) -> int:
        """Index from the resume block to the current head; returns the head."""
        start = self.resume_block()
        head = await self.chain.get_block_number()
        log.info("indexer.catch_up_started", start_block=start, head=head,
                 network=self.config.network)
        await self.fetch_events(start, head)
        self.last_end_block = head
        return head

    async def poll(self) -> bool:
        """One periodic fetch; returns whether the indexer is live."""
        if self.last_end_block is None:
            await self.catch_up()

        start = self.last_end_block + 1
        head = await self.chain.get_block_number()
        if start <= head:
            await self.fetch_events(start, head)
            if head - start < self.config.catch_up_delta and not self.caught_up:
                self.caught_up = True
                log.info("indexer.live")
            self.last_end_block = head
        elif not self.caught_up:
            self.caught_up = True
            log.info("indexer.live")

        metrics.gauge("indexer.last_block", self.last_end_block)
        return self.caught_up

    async def run_cycle(self, on_caught_up: Callable[[], Awaitable[Any]] | None = None) -> None:
        try:
            live = await self.poll()
        except Exception as e:
            metrics.incr("indexer.fatal")
            log.error("indexer.fatal", error=str(e), error_type=type(e).__name__,
                      last_end_block=self.last_end_block)
            raise FatalIndexerError(f"indexing stopped: {e}") from e
        if live and on_caught_up is not None:
            await on_caught_up()
