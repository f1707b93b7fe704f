"""Rule actions: turn a satisfied rule into an order proposal.

Actions never trade. They size the order against ledger holdings,
in-flight pending orders and outstanding proposals, then write a
proposal for the gofers. When nothing is left to propose but older
proposals are still waiting, the alert is raised again so the gofer
looks at them.
"""

from __future__ import annotations

from bitfleet.errors import InvalidParameterError
from bitfleet.fleet.proposals import BUY, SELL, ProposalStore
from bitfleet.observability.logger import get_logger
from bitfleet.rules.conditions import parse_int_arg
from bitfleet.rules.engine import RuleContext
from bitfleet.trade.trade_util import TradeUtil

log = get_logger(__name__)


class RuleActions:
    def __init__(self, trade_util: TradeUtil, proposals: ProposalStore):
        self.trade_util = trade_util
        self.proposals = proposals

    @staticmethod
    def _rule_id(ctx: RuleContext) -> str:
        return ctx.rule.rule_id if ctx.rule is not None else ""

    async def buy_up_to(self, ctx: RuleContext, quantity: str) -> None:
        """Propose a BUY so fleet holdings of the gamer reach ``quantity``."""
        ctx.require("gamer")
        target = parse_int_arg("quantity", quantity)

        adjusted = self.trade_util.adjust_buy_target_amount(ctx.gamer, target)
        if adjusted > 0:
            self.proposals.propose(
                ctx.gamer, BUY, adjusted,
                rule_id=self._rule_id(ctx), invoked_by=ctx.invoked_by,
            )
            log.info(
                "actions.proposed", action="buyUpTo", gamer=ctx.gamer,
                quantity=adjusted, rule_id=self._rule_id(ctx), invoked_by=ctx.invoked_by,
            )
            return

        if self.trade_util.get_proposed_sum(ctx.gamer, BUY) > 0:
            self.proposals.raise_alert(ctx.gamer, BUY)
        log.debug("actions.nothing_to_buy", gamer=ctx.gamer, target=target)

    async def _propose_sell(self, ctx: RuleContext, holder: str, quantity: int, action: str) -> None:
        adjusted = self.trade_util.adjust_sell_target_amount(ctx.gamer, holder, quantity)
        if adjusted > 0:
            self.proposals.propose(
                ctx.gamer, SELL, adjusted,
                rule_id=self._rule_id(ctx), invoked_by=ctx.invoked_by, holder=holder,
            )
            log.info(
                "actions.proposed", action=action, gamer=ctx.gamer, holder=holder,
                quantity=adjusted, rule_id=self._rule_id(ctx), invoked_by=ctx.invoked_by,
            )
            return

        if self.trade_util.get_proposed_sum(ctx.gamer, SELL, holder) > 0:
            self.proposals.raise_alert(ctx.gamer, SELL)
        log.debug("actions.nothing_to_sell", gamer=ctx.gamer, holder=holder)

    async def sell_bit(self, ctx: RuleContext) -> None:
        """Sell the quantity computed by the rule's quantity function."""
        if not ctx.quantity:
            return
        ctx.require("gamer", "holder")
        if not self.trade_util.fleet.is_member(ctx.holder):
            # Indexed trades from outside the fleet cannot be signed for.
            log.debug("actions.holder_not_in_fleet", gamer=ctx.gamer, holder=ctx.holder)
            return
        await self._propose_sell(ctx, ctx.holder, ctx.quantity, "sellBit")

    async def sell_bit_from_auto_selected_fleet_key(self, ctx: RuleContext, amount: str) -> None:
        """Sell ``amount`` from whichever fleet address holds the most of the gamer."""
        quantity = parse_int_arg("amount", amount)
        if not ctx.gamer:
            raise InvalidParameterError("the context must have a gamer")
        if quantity == 0:
            return

        holder = self.trade_util.get_largest_fleet_owner_of_gamer(ctx.gamer)
        if holder is None:
            log.debug("actions.no_fleet_owner", gamer=ctx.gamer)
            return
        await self._propose_sell(ctx, holder, quantity, "sellBitFromAutoSelectedFleetKey")
