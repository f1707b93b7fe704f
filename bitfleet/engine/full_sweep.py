"""Full sweep: re-run sell and buy rules over every held position.

Event-driven evaluation only fires when something trades. The sweep
covers time-based rules (lot age, profit thresholds) for positions
whose gamer has gone quiet.
"""

from __future__ import annotations

import asyncio

from bitfleet.fleet.key_fleet import KeyFleet
from bitfleet.observability.logger import get_logger
from bitfleet.observability.metrics import metrics
from bitfleet.rules.engine import FULL_SWEEP, CompiledRule, RuleContext
from bitfleet.rules.invoker import RuleInvoker
from bitfleet.storage.ledger import PositionLedger

log = get_logger(__name__)


class FullSweep:
    def __init__(
        self,
        fleet: KeyFleet,
        ledger: PositionLedger,
        invoker: RuleInvoker,
        sell_rules: list[CompiledRule],
        buy_rules: list[CompiledRule],
        function_delay_secs: float = 1.0,
    ):
        self.fleet = fleet
        self.ledger = ledger
        self.invoker = invoker
        self.sell_rules = sell_rules
        self.buy_rules = buy_rules
        self.function_delay_secs = function_delay_secs

    def _context(self, holder: str, gamer: str) -> RuleContext:
        return RuleContext(invoked_by=FULL_SWEEP, holder=holder, gamer=gamer)

    async def run_once(self) -> int:
        """Sweep every fleet position once; returns positions visited."""
        visited = 0
        for holder in self.fleet.get_all_addresses():
            self.ledger.add_holder(holder)
            for gamer in self.ledger.list_gamers(holder):
                log.debug("sweep.position", holder=holder, gamer=gamer)
                if self.sell_rules:
                    await self.invoker.submit(self._context(holder, gamer), self.sell_rules, "sell")
                if self.buy_rules:
                    await self.invoker.submit(self._context(holder, gamer), self.buy_rules, "buy")
                visited += 1
                await asyncio.sleep(self.function_delay_secs)

        metrics.incr("sweep.completed")
        log.info("sweep.completed", positions=visited)
        return visited
