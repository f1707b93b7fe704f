"""Predicate and quantity functions available to rule files.

Every function takes the rule context first and then its rule-file
arguments as strings. Argument validation happens on each call and
raises InvalidParameterError; external failures propagate so the
invoker logs the broken rule batch.
"""

from __future__ import annotations

import json
import operator
import re
import time
from datetime import datetime, timezone
from decimal import InvalidOperation
from pathlib import Path
from typing import Any, Callable

from bitfleet.config import parse_ether
from bitfleet.connectors.chain import ChainClient
from bitfleet.connectors.player_feed import PlayerFeedClient
from bitfleet.errors import InvalidParameterError, PlayerStatsError
from bitfleet.fleet.key_fleet import KeyFleet
from bitfleet.observability.logger import get_logger
from bitfleet.rules.engine import RuleContext
from bitfleet.storage.cache import TTLCache
from bitfleet.storage.ledger import PositionLedger
from bitfleet.storage.tx_history import TxHistoryStore
from bitfleet.trade.trade_util import TradeUtil

log = get_logger(__name__)

_INT_RE = re.compile(r"^\d+$")

OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    ">": operator.gt,
    ">=": operator.ge,
    "<=": operator.le,
    "<": operator.lt,
}


def validate_operator(op: str) -> Callable[[Any, Any], bool]:
    fn = OPERATORS.get(op.strip())
    if fn is None:
        raise InvalidParameterError(f"invalid operator: {op!r}")
    return fn


def compare(op: str, left: Any, right: Any) -> bool:
    return validate_operator(op)(left, right)


def parse_int_arg(name: str, raw: str) -> int:
    if not isinstance(raw, str) or not _INT_RE.match(raw.strip()):
        raise InvalidParameterError(
            f"the {name} parameter must be a string representation of an integer"
        )
    return int(raw.strip())


def _parse_datetime(raw: Any) -> datetime:
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(raw, tz=timezone.utc)
    when = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    return when if when.tzinfo else when.replace(tzinfo=timezone.utc)


class RuleConditions:
    """Predicates and quantity functions bound to the process's stores."""

    def __init__(
        self,
        chain: ChainClient,
        ledger: PositionLedger,
        tx_history: TxHistoryStore,
        fleet: KeyFleet,
        trade_util: TradeUtil,
        feed: PlayerFeedClient,
        whitelist_dir: str | Path,
        movement_ttl_secs: float = 3600,
        now: Callable[[], datetime] | None = None,
        clock: Callable[[], float] = time.time,
        block_cache_size: int = 4096,
    ):
        self.chain = chain
        self.ledger = ledger
        self.tx_history = tx_history
        self.fleet = fleet
        self.trade_util = trade_util
        self.feed = feed
        self.whitelist_dir = Path(whitelist_dir)
        self.buy_movements = TTLCache(default_ttl_secs=movement_ttl_secs, clock=clock)
        self.sell_movements = TTLCache(default_ttl_secs=movement_ttl_secs, clock=clock)
        # Block timestamps never change; the cap only bounds memory.
        self._block_timestamps = TTLCache(
            default_ttl_secs=24 * 3600, max_entries=block_cache_size, clock=clock,
        )
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._clock = clock

    async def _block_timestamp(self, block_number: int) -> int:
        key = str(block_number)
        timestamp = self._block_timestamps.get(key)
        if timestamp is None:
            timestamp = await self.chain.get_block_timestamp(block_number)
            self._block_timestamps.put(key, timestamp)
        return timestamp

    # ── Quantity functions ───────────────────────────────────────────

    async def holder_owned_bit_age(self, ctx: RuleContext, op: str, minutes: str) -> int:
        """Remaining quantity in the holder's lots whose age satisfies ``op minutes``."""
        ctx.require("gamer", "holder")
        age_secs = parse_int_arg("ageInMinutes", minutes) * 60
        validate_operator(op)

        now = int(self._now().timestamp())
        total = 0
        for lot in self.ledger.list_lots_ascending(ctx.holder, ctx.gamer):
            bought_at = await self._block_timestamp(lot.purchase_block)
            if compare(op, now - bought_at, age_secs):
                total += lot.remaining_amount
        return total

    async def bit_profit_threshold(self, ctx: RuleContext, percent: str) -> int:
        """Remaining quantity in lots whose unit sell price beats cost by ``percent``."""
        ctx.require("gamer", "holder")
        pct = parse_int_arg("percent", percent)

        sell_price = await self.chain.get_sell_price(ctx.gamer, 1)
        total = 0
        for lot in self.ledger.list_lots_ascending(ctx.holder, ctx.gamer):
            threshold = lot.price_per_unit * (100 + pct) // 100
            if sell_price >= threshold:
                total += lot.remaining_amount
        return total

    # ── Player stats ─────────────────────────────────────────────────

    async def gamer_within_max_age(self, ctx: RuleContext, minutes: str) -> bool:
        ctx.require("gamer")
        max_secs = parse_int_arg("minutes", minutes) * 60

        stats = await self.feed.get_player_stats(ctx.gamer)
        raw = stats.get("wallet_created_at")
        if not raw:
            log.warning("conditions.wallet_created_at_missing", gamer=ctx.gamer)
            return False
        created = _parse_datetime(raw)
        now = self._now()
        if created > now:
            raise PlayerStatsError("wallet_created_at is in the future")
        return (now - created).total_seconds() < max_secs

    async def _stat(self, ctx: RuleContext, key: str) -> Any:
        if ctx.stats.get(key) is not None:
            return ctx.stats[key]
        stats = await self.feed.get_player_stats(ctx.gamer)
        return stats.get(key)

    async def _compare_stat(self, ctx: RuleContext, key: str, param: str, op: str, raw: str) -> bool:
        ctx.require("gamer")
        target = parse_int_arg(param, raw)
        validate_operator(op)
        value = await self._stat(ctx, key)
        if value is None:
            log.warning("conditions.stat_missing", gamer=ctx.gamer, stat=key)
            return False
        return compare(op, float(value), target)

    async def gamer_win_rate(self, ctx: RuleContext, op: str, win_rate: str) -> bool:
        return await self._compare_stat(ctx, "win_rate", "winRate", op, win_rate)

    async def gamer_sum_kills(self, ctx: RuleContext, op: str, sum_kills: str) -> bool:
        return await self._compare_stat(ctx, "sum_kills", "sumKills", op, sum_kills)

    async def games_played(self, ctx: RuleContext, op: str, games: str) -> bool:
        return await self._compare_stat(ctx, "games_played", "gamesPlayed", op, games)

    # ── Supply and price ─────────────────────────────────────────────

    async def gamer_total_bits_in_circulation(self, ctx: RuleContext, op: str, amount: str) -> bool:
        ctx.require("gamer")
        target = parse_int_arg("amount", amount)
        validate_operator(op)
        supply = await self.chain.get_bits_supply(ctx.gamer)
        return compare(op, supply, target)

    async def gamer_total_bits_in_circulation_exclude_own_stake(
        self, ctx: RuleContext, op: str, amount: str,
    ) -> bool:
        """Same as the supply check, less what the fleet holds per the ledger."""
        ctx.require("gamer")
        target = parse_int_arg("amount", amount)
        validate_operator(op)
        supply = await self.chain.get_bits_supply(ctx.gamer)
        own = sum(
            self.trade_util.get_bit_balance_in_store(holder, ctx.gamer)
            for holder in self.fleet.get_all_addresses()
        )
        return compare(op, max(0, supply - own), target)

    async def gamer_bit_within_max_buy_price(self, ctx: RuleContext, price: str) -> bool:
        ctx.require("gamer")
        try:
            max_wei = parse_ether(price)
        except (InvalidOperation, ValueError, OverflowError) as e:
            raise InvalidParameterError(
                "the price parameter must be a string representation of a number"
            ) from e
        buy_price = await self.chain.get_buy_price(ctx.gamer, 1)
        return buy_price <= max_wei

    async def gamer_bits_within_max_idle_time(self, ctx: RuleContext, minutes: str) -> bool:
        """True when the gamer last traded less than ``minutes`` ago."""
        ctx.require("gamer")
        max_secs = parse_int_arg("minutes", minutes) * 60
        now = self._now()
        last = self.tx_history.get_last(ctx.gamer, now=now)
        if last is None:
            return False
        last_date = _parse_datetime(last["last_tx_date"])
        if last_date > now:
            return False
        return (now - last_date).total_seconds() < max_secs

    # ── Movements from the indexer ───────────────────────────────────

    async def gamer_supply_up_tick(self, ctx: RuleContext, amount: str) -> bool:
        ctx.require("holder")
        if not ctx.is_buy or not ctx.bit_amount:
            return False
        target = parse_int_arg("amount", amount)
        return ctx.bit_amount >= target and not self.fleet.is_member(ctx.holder)

    async def gamer_supply_down_tick(self, ctx: RuleContext, amount: str) -> bool:
        ctx.require("holder", "gamer")
        if ctx.is_buy or not ctx.bit_amount:
            return False
        target = parse_int_arg("amount", amount)
        if ctx.bit_amount < target:
            return False
        return self.trade_util.get_largest_fleet_owner_of_gamer(ctx.gamer) is not None

    def _movements_reach(
        self, cache: TTLCache, ctx: RuleContext, amount: str, period_minutes: str,
    ) -> bool:
        target = parse_int_arg("amount", amount)
        period_secs = parse_int_arg("periodInMinutes", period_minutes) * 60

        now = self._clock()
        window = [m for m in cache.get(ctx.gamer, []) if now - m[1] <= period_secs]
        window.append((ctx.bit_amount, now))
        cache.put(ctx.gamer, window)

        reached = sum(qty for qty, _ in window) >= target
        if reached:
            gamer = ctx.gamer

            async def reset_window() -> None:
                cache.put(gamer, [])

            ctx.callback = reset_window
        return reached

    async def gamer_buys(self, ctx: RuleContext, amount: str, period_minutes: str) -> bool:
        """Non-fleet buys of ``gamer`` add up to ``amount`` within the period."""
        ctx.require("holder", "gamer")
        if not ctx.is_buy or not ctx.bit_amount or self.fleet.is_member(ctx.holder):
            return False
        return self._movements_reach(self.buy_movements, ctx, amount, period_minutes)

    async def gamer_sells(self, ctx: RuleContext, amount: str, period_minutes: str) -> bool:
        ctx.require("holder", "gamer")
        if ctx.is_buy or not ctx.bit_amount or self.fleet.is_member(ctx.holder):
            return False
        return self._movements_reach(self.sell_movements, ctx, amount, period_minutes)

    # ── Whitelists ───────────────────────────────────────────────────

    def _whitelist(self, name: str) -> list[str] | None:
        path = self.whitelist_dir / f"{name}.json"
        try:
            with open(path) as f:
                entries = json.load(f)
        except (OSError, ValueError) as e:
            log.error("conditions.whitelist_unreadable", path=str(path), error=str(e))
            return None
        return [str(e).lower() for e in entries]

    async def is_gamer_in_whitelist(self, ctx: RuleContext, name: str) -> bool:
        ctx.require("gamer")
        entries = self._whitelist(name)
        return entries is not None and ctx.gamer.lower() in entries

    async def is_gamer_not_in_whitelist(self, ctx: RuleContext, name: str) -> bool:
        ctx.require("gamer")
        entries = self._whitelist(name)
        return entries is not None and ctx.gamer.lower() not in entries
