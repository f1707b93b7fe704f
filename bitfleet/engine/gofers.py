"""Execution gofers: drain proposals into transactions.

Each cycle collects alert markers into a work set of gamers, then walks
that gamer's proposals oldest first. Gofers hold their work set across
cycles, so a gamer whose proposals could not all be executed is
revisited until its alert goes stale.

A transaction counts as dispatched once the node accepts it: the
pending-order record is written from the submission callback, the
gofer moves on, and the receipt is awaited in a background task.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from bitfleet.config import BotConfig, is_simulation
from bitfleet.connectors.chain import ChainClient
from bitfleet.fleet.key_fleet import KeyFleet
from bitfleet.fleet.proposals import BUY, SELL, ProposalStore, ProposedOrder
from bitfleet.fleet.slot_coordinator import NO_FREE_SLOT, SlotCoordinator
from bitfleet.observability.alerts import AlertManager
from bitfleet.observability.logger import get_logger
from bitfleet.observability.metrics import metrics

log = get_logger(__name__)

Submitter = Callable[[Callable[[str], Awaitable[None]]], Awaitable[str]]

SIMULATED_TX_HASH = "0x"


class _Gofer:
    order_type = ""

    def __init__(
        self,
        proposals: ProposalStore,
        slots: SlotCoordinator,
        fleet: KeyFleet,
        chain: ChainClient,
        config: BotConfig,
        alerts: AlertManager | None = None,
        simulation: bool | None = None,
        now: Callable[[], datetime] | None = None,
    ):
        self.proposals = proposals
        self.slots = slots
        self.fleet = fleet
        self.chain = chain
        self.config = config
        self.alerts = alerts
        self.simulation = is_simulation(config) if simulation is None else simulation
        self.work: dict[str, datetime] = {}
        self.executed = 0
        self._last_halt_log: datetime | None = None
        self._inflight: set[asyncio.Task] = set()
        self._now = now or (lambda: datetime.now(timezone.utc))

    @property
    def stale_minutes(self) -> float:
        raise NotImplementedError

    # ── Shared steps ─────────────────────────────────────────────────

    async def _warn(self, title: str, message: str, cooldown_key: str, **data: Any) -> None:
        if self.alerts is not None:
            await self.alerts.warning(title, message, cooldown_key=cooldown_key, **data)

    async def _warn_gas(self, holder: str, gamer: str) -> None:
        await self._warn(
            "Insufficient gas balance",
            f"{holder} cannot pay gas for a {self.order_type} of {gamer}",
            cooldown_key=f"gas:{holder}",
            holder=holder, gamer=gamer,
        )

    async def _halted(self) -> bool:
        if not self.proposals.is_halted(self.order_type):
            return False
        now = self._now()
        interval = timedelta(minutes=self.config.jobs.warning_log_interval_minutes)
        if self._last_halt_log is None or now - self._last_halt_log > interval:
            log.warning("gofer.halted", order_type=self.order_type)
            self._last_halt_log = now
            await self._warn(
                f"{self.order_type} orders halted",
                "Halt marker present; proposals stay queued until it is removed",
                cooldown_key=f"halt:{self.order_type}",
            )
        return True

    async def _drop_if_stale(self, order: ProposedOrder) -> bool:
        if not order.is_stale(self.stale_minutes, now=self._now()):
            return False
        self.proposals.remove_proposal(order)
        self.work.pop(order.gamer, None)
        metrics.incr("gofer.dropped", order_type=self.order_type, reason="stale")
        log.warning(
            f"gofer.stale_{self.order_type.lower()}_order",
            gamer=order.gamer, holder=order.holder, quantity=order.quantity,
            created_at=order.created_at.isoformat(), rule_id=order.rule_id,
        )
        await self._warn(
            "Stale proposal dropped",
            f"{self.order_type} {order.quantity} of {order.gamer} older than {self.stale_minutes} minutes",
            cooldown_key=f"stale:{self.order_type}:{order.gamer}",
            gamer=order.gamer, holder=order.holder, rule_id=order.rule_id,
        )
        return True

    def _collect_work(self) -> None:
        for gamer, alert_time in self.proposals.take_alerts(self.order_type).items():
            previous = self.work.get(gamer)
            if previous is None or alert_time > previous:
                self.work[gamer] = alert_time

    def _expire_work(self, gamer: str) -> None:
        alert_time = self.work.get(gamer)
        if alert_time is not None and self._now() - alert_time > timedelta(minutes=self.stale_minutes):
            del self.work[gamer]

    async def _pre_select_pause(self) -> None:
        await asyncio.sleep(self.config.jobs.pre_select_slot_sleep_ms / 1000)

    async def _record(self, order: ProposedOrder, holder: str, quantity: int, tx_hash: str) -> None:
        await self.slots.record_pending_order(order.gamer, self.order_type, quantity, holder, tx_hash)

    async def _dispatch(self, order: ProposedOrder, holder: str, quantity: int, submit: Submitter) -> None:
        """Run ``submit`` until the node accepts the transaction.

        The receipt wait continues in the background; a failure before
        acceptance propagates to the caller.
        """
        accepted: asyncio.Future = asyncio.get_running_loop().create_future()

        async def on_submitted(tx_hash: str) -> None:
            await self._record(order, holder, quantity, tx_hash)
            if not accepted.done():
                accepted.set_result(tx_hash)

        task = asyncio.create_task(submit(on_submitted))
        self._inflight.add(task)
        task.add_done_callback(self._on_tx_done)
        await asyncio.wait({task, accepted}, return_when=asyncio.FIRST_COMPLETED)
        if not accepted.done():
            # Finished without ever reaching the node.
            await task

    def _on_tx_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            metrics.incr("gofer.tx_failed", order_type=self.order_type)
            log.error("gofer.tx_failed", order_type=self.order_type, error=str(error))
            if self.alerts is not None:
                alert = asyncio.get_running_loop().create_task(self.alerts.critical(
                    "Transaction failed", f"{self.order_type}: {error}",
                    cooldown_key=f"tx_failed:{self.order_type}", order_type=self.order_type,
                ))
                self._inflight.add(alert)
                alert.add_done_callback(self._inflight.discard)

    async def _execute(
        self, order: ProposedOrder, holder: str, quantity: int, total_cost: int = 0,
    ) -> None:
        if self.simulation:
            log.info(
                f"gofer.dummy_{self.order_type.lower()}",
                gamer=order.gamer, holder=holder, quantity=quantity, rule_id=order.rule_id,
            )
            await self._record(order, holder, quantity, SIMULATED_TX_HASH)
        else:
            submit = self._submitter(order, holder, quantity, total_cost)
            await self._dispatch(order, holder, quantity, submit)
        self.executed += 1
        metrics.incr("gofer.executed", order_type=self.order_type)

    def _submitter(
        self, order: ProposedOrder, holder: str, quantity: int, total_cost: int,
    ) -> Submitter:
        raise NotImplementedError

    async def _process_order(self, order: ProposedOrder) -> bool:
        """Handle one proposal; returning False stops this cycle."""
        raise NotImplementedError

    # ── Cycle ────────────────────────────────────────────────────────

    async def process(self) -> int:
        """One pass over the work set; returns transactions dispatched."""
        before = self.executed
        self._collect_work()
        for gamer in list(self.work):
            if not self.proposals.proposals_dir(self.order_type, gamer).is_dir():
                self.work.pop(gamer, None)
                continue

            for order in self.proposals.list_proposals(gamer, self.order_type):
                try:
                    if not await self._process_order(order):
                        return self.executed - before
                except Exception as e:
                    metrics.incr("gofer.order_error", order_type=self.order_type)
                    log.error(
                        f"gofer.{self.order_type.lower()}_error",
                        gamer=gamer, holder=order.holder, error=str(e),
                        error_type=type(e).__name__,
                    )
                    await self._warn(
                        f"{self.order_type} order failed", str(e),
                        cooldown_key=f"order_error:{self.order_type}:{gamer}",
                        gamer=gamer, holder=order.holder,
                    )
            self._expire_work(gamer)
        return self.executed - before

    async def wait_inflight(self) -> None:
        # A failed transaction adds its alert task while we wait.
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)


class BuyGofer(_Gofer):
    order_type = BUY

    @property
    def stale_minutes(self) -> float:
        return self.config.jobs.stale_buy_order_minutes

    def _submitter(
        self, order: ProposedOrder, holder: str, quantity: int, total_cost: int,
    ) -> Submitter:
        key = self.fleet.get_key(holder)

        def submit(on_submitted: Callable[[str], Awaitable[None]]) -> Awaitable[str]:
            return self.chain.buy_bits(key, holder, order.gamer, quantity, total_cost, on_submitted)

        return submit

    async def _process_order(self, order: ProposedOrder) -> bool:
        if await self._halted():
            return False
        if await self._drop_if_stale(order):
            return True

        await self._pre_select_pause()
        index = await self.slots.select_free_slot()
        if index == NO_FREE_SLOT:
            log.info("gofer.no_free_slot", gamer=order.gamer, quantity=order.quantity)
            return True
        holder = self.slots.addresses[index]

        price = await self.chain.get_buy_price(order.gamer, order.quantity)
        total_cost = price * order.quantity
        balance = await self.fleet.get_token_balance(holder)
        if balance < total_cost:
            self.proposals.remove_proposal(order)
            metrics.incr("gofer.dropped", order_type=BUY, reason="token_balance")
            symbol = self.config.chain.payment_token_symbol
            log.warning(
                "gofer.insufficient_token_balance",
                holder=holder, gamer=order.gamer, quantity=order.quantity,
                total_cost=total_cost, balance=balance, token_symbol=symbol,
            )
            await self._warn(
                "Insufficient token balance",
                f"{holder} holds {balance} {symbol}; "
                f"{order.quantity} of {order.gamer} costs {total_cost}",
                cooldown_key=f"token_balance:{holder}",
                holder=holder, gamer=order.gamer,
            )
            return True

        self.proposals.remove_proposal(order)
        if not await self.fleet.meets_minimum_gas_for(holder, self.config.chain.buy_gas_limit):
            metrics.incr("gofer.dropped", order_type=BUY, reason="gas")
            log.warning("gofer.insufficient_gas_balance", holder=holder, gamer=order.gamer,
                        quantity=order.quantity)
            await self._warn_gas(holder, order.gamer)
            return True

        await self._execute(order, holder, order.quantity, total_cost)
        return True


class SellGofer(_Gofer):
    order_type = SELL

    @property
    def stale_minutes(self) -> float:
        return self.config.jobs.stale_sell_order_minutes

    def _submitter(
        self, order: ProposedOrder, holder: str, quantity: int, total_cost: int,
    ) -> Submitter:
        key = self.fleet.get_key(holder)

        def submit(on_submitted: Callable[[str], Awaitable[None]]) -> Awaitable[str]:
            return self.chain.sell_bits(key, holder, order.gamer, quantity, on_submitted)

        return submit

    async def _report_divergence(self, order: ProposedOrder, holder: str, balance: int) -> None:
        log.warning(
            "gofer.ledger_divergence",
            holder=holder, gamer=order.gamer, proposed=order.quantity, on_chain=balance,
        )
        if self.alerts is not None:
            await self.alerts.warning(
                "Ledger divergence",
                f"{holder} holds {balance} of {order.gamer} on chain, fewer than proposed",
                cooldown_key=f"divergence:{holder}:{order.gamer}",
                holder=holder, gamer=order.gamer, proposed=order.quantity, on_chain=balance,
            )

    async def _process_order(self, order: ProposedOrder) -> bool:
        if await self._halted():
            return False
        if await self._drop_if_stale(order):
            return True

        holder = order.holder
        if not holder:
            self.proposals.remove_proposal(order)
            log.warning("gofer.sell_without_holder", gamer=order.gamer, rule_id=order.rule_id)
            await self._warn(
                "Sell proposal without holder",
                f"SELL {order.quantity} of {order.gamer} names no holder",
                cooldown_key=f"no_holder:{order.gamer}",
                gamer=order.gamer, rule_id=order.rule_id,
            )
            return True

        if self.slots.has_pending(holder):
            if await self.slots.refresh_pending_order(holder) is not None:
                return True
        if self.slots.is_low_balance(holder):
            return True

        await self._pre_select_pause()
        self.proposals.remove_proposal(order)

        quantity = order.quantity
        balance = await self.chain.get_bits_balance(order.gamer, holder)
        if balance == 0:
            metrics.incr("gofer.dropped", order_type=SELL, reason="zero_balance")
            log.warning("gofer.zero_bits_balance", holder=holder, gamer=order.gamer,
                        quantity=quantity)
            await self._warn(
                "Zero bits balance",
                f"{holder} holds none of {order.gamer} on chain; SELL {quantity} dropped",
                cooldown_key=f"zero_balance:{holder}:{order.gamer}",
                holder=holder, gamer=order.gamer,
            )
            return True
        if balance < quantity:
            metrics.incr("gofer.clamped")
            await self._report_divergence(order, holder, balance)
            quantity = balance

        if not await self.fleet.meets_minimum_gas_for(holder, self.config.chain.sell_gas_limit):
            self.slots.cache_low_balance(holder)
            metrics.incr("gofer.dropped", order_type=SELL, reason="gas")
            log.warning("gofer.insufficient_gas_balance", holder=holder, gamer=order.gamer,
                        quantity=quantity)
            await self._warn_gas(holder, order.gamer)
            return True

        await self._execute(order, holder, quantity)
        return True


class TradeGofer:
    """Execution process loop: buys, then sells, then a fixed pause."""

    def __init__(self, buy: BuyGofer, sell: SellGofer, interval_secs: float = 5):
        self.buy = buy
        self.sell = sell
        self.interval_secs = interval_secs

    async def run_cycle(self) -> dict[str, Any]:
        bought = await self.buy.process()
        sold = await self.sell.process()
        if bought or sold:
            log.info("gofer.cycle", bought=bought, sold=sold)
        return {"bought": bought, "sold": sold}
