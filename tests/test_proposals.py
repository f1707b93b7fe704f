"""Tests for the order proposal store."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from bitfleet.fleet.proposals import BUY, SELL, format_timestamp, parse_timestamp


G = "GAMER_1"
T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class TestPropose:
    def test_writes_proposal_and_alert(self, proposals):
        order = proposals.propose(G, BUY, 3, rule_id="r1", invoked_by="chainIndexer", now=T0)
        assert order.path.exists()
        assert order.path.name == "2024-05-01T12:00:00.000Z.json"
        alerts = proposals.list_alerts(BUY)
        assert [(a.gamer, a.created_at) for a in alerts] == [(G, T0)]

    def test_round_trips_fields(self, proposals):
        proposals.propose(G, SELL, 4, rule_id="r2", invoked_by="sweep", holder="HOLDER_A", now=T0)
        [order] = proposals.list_proposals(G, SELL)
        assert order.quantity == 4
        assert order.rule_id == "r2"
        assert order.invoked_by == "sweep"
        assert order.holder == "HOLDER_A"
        assert order.created_at == T0

    def test_same_instant_gets_distinct_files(self, proposals):
        first = proposals.propose(G, BUY, 1, "r", "x", now=T0)
        second = proposals.propose(G, BUY, 1, "r", "x", now=T0)
        assert first.path != second.path
        assert len(proposals.list_proposals(G, BUY)) == 2

    def test_listed_oldest_first(self, proposals):
        proposals.propose(G, BUY, 2, "r", "x", now=T0 + timedelta(seconds=5))
        proposals.propose(G, BUY, 1, "r", "x", now=T0)
        assert [o.quantity for o in proposals.list_proposals(G, BUY)] == [1, 2]

    def test_order_type_case_insensitive(self, proposals):
        order = proposals.propose(G, "buy", 1, "r", "x")
        assert order.order_type == BUY

    def test_unknown_order_type(self, proposals):
        with pytest.raises(ValueError):
            proposals.propose(G, "HOLD", 1, "r", "x")


class TestConsume:
    def test_take_alerts_keeps_newest_and_deletes(self, proposals):
        proposals.raise_alert(G, BUY, now=T0)
        proposals.raise_alert(G, BUY, now=T0 + timedelta(minutes=1))
        proposals.raise_alert("GAMER_2", BUY, now=T0)

        taken = proposals.take_alerts(BUY)
        assert taken == {G: T0 + timedelta(minutes=1), "GAMER_2": T0}
        assert proposals.list_alerts(BUY) == []

    def test_sell_alerts_are_separate(self, proposals):
        proposals.raise_alert(G, SELL, now=T0)
        assert proposals.take_alerts(BUY) == {}
        assert list(proposals.take_alerts(SELL)) == [G]

    def test_remove_proposal(self, proposals):
        order = proposals.propose(G, BUY, 1, "r", "x")
        proposals.remove_proposal(order)
        proposals.remove_proposal(order)
        assert proposals.list_proposals(G, BUY) == []

    def test_unreadable_proposal_skipped(self, proposals):
        proposals.propose(G, BUY, 1, "r", "x", now=T0)
        bad = proposals.proposals_dir(BUY, G) / "not-a-timestamp.json"
        bad.write_text("{}")
        assert len(proposals.list_proposals(G, BUY)) == 1

    def test_proposed_sum_by_holder(self, proposals):
        proposals.propose(G, SELL, 2, "r", "x", holder="HOLDER_A")
        proposals.propose(G, SELL, 3, "r", "x", holder="HOLDER_B")
        assert proposals.proposed_sum(G, SELL) == 5
        assert proposals.proposed_sum(G, SELL, "holder_a") == 2

    def test_counts_and_gamers(self, proposals):
        proposals.propose(G, BUY, 1, "r", "x")
        proposals.propose("GAMER_2", BUY, 1, "r", "x")
        assert proposals.count_proposals(BUY) == 2
        assert proposals.count_proposals(SELL) == 0
        assert proposals.list_gamers(BUY) == [G, "GAMER_2"]


class TestStaleness:
    def test_is_stale(self, proposals):
        order = proposals.propose(G, BUY, 1, "r", "x", now=T0)
        assert not order.is_stale(5, now=T0 + timedelta(minutes=4))
        assert order.is_stale(5, now=T0 + timedelta(minutes=6))

    def test_timestamp_format_round_trip(self):
        stamp = format_timestamp(T0)
        assert stamp == "2024-05-01T12:00:00.000Z"
        assert parse_timestamp(stamp) == T0


class TestHalt:
    def test_halt_and_resume(self, proposals):
        assert not proposals.is_halted(BUY)
        proposals.set_halt("buy")
        assert proposals.is_halted(BUY)
        assert not proposals.is_halted(SELL)
        assert proposals.halt_path(BUY).name == "haultBuy"
        proposals.clear_halt(BUY)
        proposals.clear_halt(BUY)
        assert not proposals.is_halted(BUY)
