"""Process wiring for the two long-running roles.

``Investor`` is the indexing process: it replays the chain into the
ledger and, once live, also polls the new-gamer feed and sweeps held
positions. ``Executor`` is the execution process that runs the trade
gofers. The two share nothing in memory; they meet only in the data
directory.
"""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass

from bitfleet.config import BotConfig, is_simulation
from bitfleet.connectors.chain import ChainClient
from bitfleet.connectors.player_feed import PlayerFeedClient
from bitfleet.engine.full_sweep import FullSweep
from bitfleet.engine.gofers import BuyGofer, SellGofer, TradeGofer
from bitfleet.engine.indexer import ChainIndexer
from bitfleet.engine.new_gamer_feed import NewGamerFeed
from bitfleet.engine.scheduler import PeriodicTask
from bitfleet.errors import FatalIndexerError
from bitfleet.fleet.key_fleet import KeyFleet
from bitfleet.fleet.proposals import ProposalStore
from bitfleet.fleet.slot_coordinator import SlotCoordinator
from bitfleet.observability.alerts import AlertManager
from bitfleet.observability.logger import get_logger
from bitfleet.rules.actions import RuleActions
from bitfleet.rules.catalog import build_registry
from bitfleet.rules.conditions import RuleConditions
from bitfleet.rules.engine import (
    CHAIN_INDEXER, FULL_SWEEP, NEW_GAMER_FEED, CompiledRule, load_rules,
)
from bitfleet.rules.invoker import RuleInvoker
from bitfleet.rules.registry import FunctionRegistry
from bitfleet.storage.ledger import PositionLedger
from bitfleet.storage.tx_history import TxHistoryStore
from bitfleet.trade.trade_util import TradeUtil

log = get_logger(__name__)


@dataclass
class Services:
    """Everything one process needs, built once from the config."""
    config: BotConfig
    chain: ChainClient
    feed: PlayerFeedClient
    ledger: PositionLedger
    tx_history: TxHistoryStore
    fleet: KeyFleet
    proposals: ProposalStore
    slots: SlotCoordinator
    trade_util: TradeUtil
    registry: FunctionRegistry
    invoker: RuleInvoker
    alerts: AlertManager

    @classmethod
    def build(cls, config: BotConfig, fleet_keys: dict[str, str] | None = None) -> Services:
        data_dir = config.storage.data_path
        chain = ChainClient(config.chain, config.feeds)
        feed = PlayerFeedClient(config.feeds)
        ledger = PositionLedger(data_dir)
        tx_history = TxHistoryStore(data_dir, config.chain.age_of_oldest_tx_hours)
        fleet = KeyFleet(chain, config.chain, fleet_keys)
        proposals = ProposalStore(data_dir)
        slots = SlotCoordinator(
            fleet, chain, data_dir,
            max_pending_secs=config.chain.max_pending_secs,
            low_balance_ttl_secs=config.jobs.low_bal_cache_ttl_minutes * 60,
        )
        trade_util = TradeUtil(ledger, proposals, slots, fleet)
        conditions = RuleConditions(
            chain, ledger, tx_history, fleet, trade_util, feed,
            whitelist_dir=config.storage.whitelist_path,
            movement_ttl_secs=config.jobs.buy_sell_mem_cache_ttl_secs,
        )
        registry = build_registry(conditions, RuleActions(trade_util, proposals))
        return cls(
            config=config, chain=chain, feed=feed, ledger=ledger,
            tx_history=tx_history, fleet=fleet, proposals=proposals, slots=slots,
            trade_util=trade_util, registry=registry, invoker=RuleInvoker(),
            alerts=AlertManager(config.alerts),
        )

    def rules_for(self, role: str) -> tuple[list[CompiledRule], list[CompiledRule]]:
        """(buy rules, sell rules) listing ``role`` in ``invokeBy``."""
        rules = self.config.rules
        return (
            load_rules(rules.resolve(rules.buy_rules_path), role, self.registry),
            load_rules(rules.resolve(rules.sell_rules_path), role, self.registry),
        )

    async def close(self) -> None:
        await self.invoker.stop()
        await self.chain.close()
        await self.feed.close()
        await self.alerts.close()


class _Process:
    def __init__(self) -> None:
        self._tasks: list[PeriodicTask] = []

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                pass  # Windows or non-main thread

    def _handle_signal(self, sig: signal.Signals) -> None:
        log.info("process.signal_received", signal=sig.name)
        self.stop()

    def stop(self) -> None:
        for task in self._tasks:
            task.stop()


class Investor(_Process):
    def __init__(self, services: Services):
        super().__init__()
        self.services = services
        config = services.config
        buy, sell = services.rules_for(CHAIN_INDEXER)
        self.indexer = ChainIndexer(
            services.chain, services.ledger, services.tx_history, services.fleet,
            services.slots, services.invoker, config.chain, buy_rules=buy, sell_rules=sell,
        )
        feed_buy, _ = services.rules_for(NEW_GAMER_FEED)
        self.new_gamer_feed = NewGamerFeed(
            services.feed, services.invoker, feed_buy,
            page_throttle_secs=config.feeds.page_fetch_throttle_ms / 1000,
        )
        sweep_buy, sweep_sell = services.rules_for(FULL_SWEEP)
        self.full_sweep = FullSweep(
            services.fleet, services.ledger, services.invoker,
            sell_rules=sweep_sell, buy_rules=sweep_buy,
            function_delay_secs=config.jobs.function_delay_ms / 1000,
        )
        self.index_task = PeriodicTask(
            "chain-indexer",
            config.chain.block_fetch_frequency_ms / 1000,
            lambda: self.indexer.run_cycle(self._on_caught_up),
            fatal=(FatalIndexerError,),
        )
        self._tasks.append(self.index_task)
        self._started_followers = False

    async def _on_caught_up(self) -> None:
        if self._started_followers:
            return
        self._started_followers = True
        config = self.services.config
        feed_task = PeriodicTask(
            "new-gamer-feed", config.feeds.interval_ms / 1000, self.new_gamer_feed.poll,
        )
        sweep_task = PeriodicTask(
            "full-sweep", config.jobs.full_sweep_interval_ms / 1000, self.full_sweep.run_once,
        )
        for task in (feed_task, sweep_task):
            self._tasks.append(task)
            task.start()
        log.info("investor.followers_started")

    async def run(self) -> None:
        """Run until stopped; FatalIndexerError propagates to the caller."""
        self._install_signal_handlers()
        log.info("investor.starting", simulation=is_simulation(self.services.config),
                 fleet_size=len(self.services.fleet.get_all_addresses()))
        try:
            await self.index_task.start()
        except FatalIndexerError as e:
            await self.services.alerts.critical(
                "Chain indexer stopped", str(e),
                restart_delay_secs=self.services.config.chain.restart_delay_secs,
            )
            raise
        finally:
            self.stop()
            for task in self._tasks[1:]:
                await task.join()
            await self.services.close()
        log.info("investor.stopped")


class Executor(_Process):
    def __init__(self, services: Services):
        super().__init__()
        self.services = services
        config = services.config
        args = (services.proposals, services.slots, services.fleet, services.chain, config)
        self.gofer = TradeGofer(
            BuyGofer(*args, alerts=services.alerts),
            SellGofer(*args, alerts=services.alerts),
            interval_secs=config.jobs.trade_gofer_interval_secs,
        )
        self.task = PeriodicTask("trade-gofer", self.gofer.interval_secs, self.gofer.run_cycle)
        self._tasks.append(self.task)

    async def run(self) -> None:
        self._install_signal_handlers()
        log.info("gofer.starting", simulation=self.gofer.buy.simulation,
                 fleet_size=len(self.services.fleet.get_all_addresses()))
        try:
            await self.task.start()
        finally:
            await self.gofer.buy.wait_inflight()
            await self.gofer.sell.wait_inflight()
            await self.services.close()
        log.info("gofer.stopped")
