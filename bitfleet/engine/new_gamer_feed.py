"""New gamer feed: run buy rules for players who joined since the last poll.

The player feed is sorted newest first. Each poll walks pages from 1
until it meets a record at or before the floor time, then moves the
floor up to the newest creation time it saw.
"""

from __future__ import annotations

import asyncio
import os
from datetime import datetime, timezone
from typing import Any

from bitfleet.connectors.player_feed import PlayerFeedClient
from bitfleet.observability.logger import get_logger
from bitfleet.observability.metrics import metrics
from bitfleet.rules.engine import NEW_GAMER_FEED, CompiledRule, RuleContext
from bitfleet.rules.invoker import RuleInvoker

log = get_logger(__name__)

BACK_IN_TIME_ENV = "NEW_GAMER_BACK_IN_TIME_TEST"
STAT_KEYS = ("win_rate", "sum_kills", "games_played", "wallet_created_at")


def _to_datetime(raw: Any) -> datetime:
    when = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    return when if when.tzinfo else when.replace(tzinfo=timezone.utc)


def initial_floor_time() -> datetime:
    raw = os.environ.get(BACK_IN_TIME_ENV)
    return _to_datetime(raw) if raw else datetime.now(timezone.utc)


class NewGamerFeed:
    def __init__(
        self,
        feed: PlayerFeedClient,
        invoker: RuleInvoker,
        buy_rules: list[CompiledRule],
        page_throttle_secs: float = 0.2,
        floor_time: datetime | None = None,
    ):
        self.feed = feed
        self.invoker = invoker
        self.buy_rules = buy_rules
        self.page_throttle_secs = page_throttle_secs
        self.floor_time = floor_time or initial_floor_time()
        log.info("feed.floor_time", floor_time=self.floor_time.isoformat())

    async def _process_record(self, record: dict[str, Any]) -> bool:
        wallet = record.get("wallet_address")
        if not wallet:
            log.warning("feed.record_without_wallet", record=record)
            return False
        ctx = RuleContext(
            invoked_by=NEW_GAMER_FEED,
            gamer=wallet,
            stats={k: record[k] for k in STAT_KEYS if k in record},
        )
        log.info("feed.new_gamer", gamer=wallet, username=record.get("username"))
        await self.invoker.submit(ctx, self.buy_rules, label="buy")
        return True

    async def poll(self) -> int:
        """Process every record newer than the floor; returns how many."""
        page = 1
        processed = 0
        newest = self.floor_time
        while True:
            await asyncio.sleep(self.page_throttle_secs)
            records = await self.feed.fetch_page(page)
            if not records:
                break

            reached_floor = False
            for record in records:
                try:
                    created = _to_datetime(record["wallet_created_at"])
                except (KeyError, ValueError) as e:
                    log.error("feed.bad_record", error=str(e), record=record)
                    continue
                if created <= self.floor_time:
                    reached_floor = True
                    break
                try:
                    if await self._process_record(record):
                        processed += 1
                except Exception as e:
                    log.error("feed.record_failed", gamer=record.get("wallet_address"),
                              error=str(e))
                newest = max(newest, created)

            if reached_floor:
                break
            page += 1

        self.floor_time = newest
        if processed:
            metrics.incr("feed.new_gamers", processed)
            log.info("feed.polled", new_gamers=processed, pages=page,
                     floor_time=newest.isoformat())
        return processed
