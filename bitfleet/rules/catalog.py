"""Names that rule files may use, mapped onto their implementations."""

from __future__ import annotations

from bitfleet.rules.actions import RuleActions
from bitfleet.rules.conditions import RuleConditions
from bitfleet.rules.registry import FunctionRegistry


def build_registry(conditions: RuleConditions, actions: RuleActions) -> FunctionRegistry:
    registry = FunctionRegistry()

    # Predicates
    registry.predicate("gamerWithinMaxAge", conditions.gamer_within_max_age)
    registry.predicate("gamerTotalBitsInCirculation", conditions.gamer_total_bits_in_circulation)
    registry.predicate(
        "gamerTotalBitsInCirculationExcludeOwnStake",
        conditions.gamer_total_bits_in_circulation_exclude_own_stake,
    )
    registry.predicate("gamerBitsWithinMaxIdleTime", conditions.gamer_bits_within_max_idle_time)
    registry.predicate("gamerBitWithinMaxBuyPrice", conditions.gamer_bit_within_max_buy_price)
    registry.predicate("gamerWinRate", conditions.gamer_win_rate)
    registry.predicate("gamerSumKills", conditions.gamer_sum_kills)
    registry.predicate("gamesPlayed", conditions.games_played)
    registry.predicate("gamerSupplyUpTick", conditions.gamer_supply_up_tick)
    registry.predicate("gamerSupplyDownTick", conditions.gamer_supply_down_tick)
    registry.predicate("gamerBuys", conditions.gamer_buys)
    registry.predicate("gamerSells", conditions.gamer_sells)
    registry.predicate("isGamerInWhitelist", conditions.is_gamer_in_whitelist)
    registry.predicate("isGamerNotInWhitelist", conditions.is_gamer_not_in_whitelist)

    # Quantity functions
    registry.quantity("holderOwnedBitAge", conditions.holder_owned_bit_age)
    registry.quantity("bitProfitThreshold", conditions.bit_profit_threshold)

    # Actions
    registry.action("buyUpTo", actions.buy_up_to)
    registry.action("sellBit", actions.sell_bit)
    registry.action("sellBitFromAutoSelectedFleetKey", actions.sell_bit_from_auto_selected_fleet_key)

    return registry
