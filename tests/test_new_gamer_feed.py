"""Tests for the new-gamer feed poller and the player feed client."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import httpx
import pytest

from bitfleet.config import FeedsConfig
from bitfleet.connectors.player_feed import PlayerFeedClient
from bitfleet.engine.new_gamer_feed import NewGamerFeed
from bitfleet.errors import PlayerStatsError
from bitfleet.rules.engine import NEW_GAMER_FEED


FLOOR = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _player(wallet: str, created: str, **stats) -> dict:
    return {"wallet_address": wallet, "wallet_created_at": created, **stats}


def _feed(*pages) -> AsyncMock:
    fake = AsyncMock()
    fake.fetch_page.side_effect = list(pages) + [[]]
    return fake


# ─── poller ─────────────────────────────────────────────────────────────

class TestNewGamerFeed:
    @pytest.mark.asyncio
    async def test_processes_until_floor(self):
        feed = _feed(
            [_player("0xC", "2024-05-01T12:30:00Z"), _player("0xB", "2024-05-01T12:20:00Z")],
            [_player("0xA", "2024-05-01T12:10:00Z"), _player("0xOLD", "2024-05-01T11:00:00Z")],
        )
        invoker = AsyncMock()
        poller = NewGamerFeed(feed, invoker, ["buy"], page_throttle_secs=0, floor_time=FLOOR)

        assert await poller.poll() == 3
        gamers = [c.args[0].gamer for c in invoker.submit.await_args_list]
        assert gamers == ["0xC", "0xB", "0xA"]
        assert poller.floor_time == datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
        assert feed.fetch_page.await_count == 2

    @pytest.mark.asyncio
    async def test_second_poll_sees_only_newer(self):
        feed = _feed([_player("0xA", "2024-05-01T12:10:00Z")])
        invoker = AsyncMock()
        poller = NewGamerFeed(feed, invoker, ["buy"], page_throttle_secs=0, floor_time=FLOOR)
        await poller.poll()

        feed.fetch_page.side_effect = [[
            _player("0xB", "2024-05-01T12:15:00Z"), _player("0xA", "2024-05-01T12:10:00Z"),
        ]]
        assert await poller.poll() == 1
        assert invoker.submit.await_args_list[-1].args[0].gamer == "0xB"

    @pytest.mark.asyncio
    async def test_record_stats_travel_in_context(self):
        feed = _feed([_player("0xA", "2024-05-01T12:10:00Z", win_rate=61, username="ace")])
        invoker = AsyncMock()
        poller = NewGamerFeed(feed, invoker, ["buy"], page_throttle_secs=0, floor_time=FLOOR)
        await poller.poll()

        ctx = invoker.submit.await_args.args[0]
        assert ctx.invoked_by == NEW_GAMER_FEED
        assert ctx.stats == {"win_rate": 61, "wallet_created_at": "2024-05-01T12:10:00Z"}

    @pytest.mark.asyncio
    async def test_bad_records_skipped(self):
        feed = _feed([
            {"wallet_address": "0xNODATE"},
            _player("", "2024-05-01T12:20:00Z"),
            _player("0xA", "2024-05-01T12:10:00Z"),
        ])
        invoker = AsyncMock()
        poller = NewGamerFeed(feed, invoker, ["buy"], page_throttle_secs=0, floor_time=FLOOR)
        assert await poller.poll() == 1
        assert [c.args[0].gamer for c in invoker.submit.await_args_list] == ["0xA"]

    @pytest.mark.asyncio
    async def test_floor_from_environment(self, monkeypatch):
        monkeypatch.setenv("NEW_GAMER_BACK_IN_TIME_TEST", "2024-01-01T00:00:00Z")
        poller = NewGamerFeed(_feed(), AsyncMock(), [], page_throttle_secs=0)
        assert poller.floor_time == datetime(2024, 1, 1, tzinfo=timezone.utc)


# ─── client ─────────────────────────────────────────────────────────────

def _client(handler) -> PlayerFeedClient:
    transport = httpx.MockTransport(handler)
    return PlayerFeedClient(FeedsConfig(), client=httpx.AsyncClient(transport=transport))


class TestPlayerFeedClient:
    @pytest.mark.asyncio
    async def test_fetch_page(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url).endswith("page=2")
            return httpx.Response(200, json={"data": [_player("0xA", "2024-05-01T12:10:00Z")]})

        client = _client(handler)
        records = await client.fetch_page(2)
        await client.close()
        assert records[0]["wallet_address"] == "0xA"

    @pytest.mark.asyncio
    async def test_unexpected_page_shape(self):
        client = _client(lambda request: httpx.Response(200, json={"data": "nope"}))
        assert await client.fetch_page(1) == []
        await client.close()

    @pytest.mark.asyncio
    async def test_player_stats(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["wallet"] == "0xA"
            return httpx.Response(200, json={"message": "success", "data": {"win_rate": 40}})

        client = _client(handler)
        assert await client.get_player_stats("0xA") == {"win_rate": 40}
        await client.close()

    @pytest.mark.asyncio
    async def test_player_stats_failure(self):
        client = _client(lambda request: httpx.Response(200, json={"message": "not found"}))
        with pytest.raises(PlayerStatsError):
            await client.get_player_stats("0xA")

        client = _client(lambda request: httpx.Response(502, text="bad gateway"))
        with pytest.raises(PlayerStatsError, match="502"):
            await client.get_player_stats("0xA")
