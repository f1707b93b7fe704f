"""Order proposal store: a file mailbox between rule evaluation and the gofers.

Layout under ``orders/``:
  proposedOrders/buy/<gamer>/<ISO timestamp>.json    one proposal per file
  proposedOrders/buyAlerts/alert_<gamer>_<ISO timestamp>
  proposedOrders/sell/...  and  proposedOrders/sellAlerts/...
  haultBuy, haultSell                                operator halt markers

The proposal file is always written before its alert marker, so a
consumer that sees an alert can always read the proposal behind it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from bitfleet.observability.logger import get_logger
from bitfleet.observability.metrics import metrics
from bitfleet.storage.ledger import write_json_atomic

log = get_logger(__name__)

BUY = "BUY"
SELL = "SELL"
ORDER_TYPES = (BUY, SELL)

_ALERT_PREFIX = "alert_"
_HALT_MARKERS = {BUY: "haultBuy", SELL: "haultSell"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(when: datetime) -> str:
    return when.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(raw: str) -> datetime:
    return datetime.fromisoformat(raw.replace("Z", "+00:00"))


def _check_type(order_type: str) -> str:
    order_type = order_type.upper()
    if order_type not in ORDER_TYPES:
        raise ValueError(f"unknown order type {order_type!r}")
    return order_type


@dataclass
class ProposedOrder:
    gamer: str
    order_type: str
    quantity: int
    rule_id: str
    invoked_by: str
    created_at: datetime
    holder: str | None = None
    path: Path | None = field(default=None, repr=False)

    def age(self, now: datetime | None = None) -> timedelta:
        return (now or _utcnow()) - self.created_at

    def is_stale(self, max_age_minutes: float, now: datetime | None = None) -> bool:
        return self.age(now) > timedelta(minutes=max_age_minutes)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "ruleId": self.rule_id,
            "invokedBy": self.invoked_by,
            "quantity": self.quantity,
        }
        if self.holder:
            data["holderAddress"] = self.holder
        return data


@dataclass
class AlertMarker:
    gamer: str
    created_at: datetime
    path: Path


class ProposalStore:
    """Filesystem mailbox of proposed BUY/SELL orders."""

    def __init__(self, data_dir: str | Path):
        self.orders_dir = Path(data_dir) / "orders"
        self.root = self.orders_dir / "proposedOrders"
        for order_type in ORDER_TYPES:
            self.proposals_dir(order_type).mkdir(parents=True, exist_ok=True)
            self.alerts_dir(order_type).mkdir(parents=True, exist_ok=True)

    def proposals_dir(self, order_type: str, gamer: str | None = None) -> Path:
        base = self.root / _check_type(order_type).lower()
        return base / gamer if gamer else base

    def alerts_dir(self, order_type: str) -> Path:
        return self.root / f"{_check_type(order_type).lower()}Alerts"

    # ── Producers ────────────────────────────────────────────────────

    def propose(
        self,
        gamer: str,
        order_type: str,
        quantity: int,
        rule_id: str,
        invoked_by: str,
        holder: str | None = None,
        now: datetime | None = None,
    ) -> ProposedOrder:
        order_type = _check_type(order_type)
        when = now or _utcnow()
        order_dir = self.proposals_dir(order_type, gamer)
        order_dir.mkdir(parents=True, exist_ok=True)

        path = order_dir / f"{format_timestamp(when)}.json"
        while path.exists():
            when += timedelta(milliseconds=1)
            path = order_dir / f"{format_timestamp(when)}.json"

        order = ProposedOrder(
            gamer=gamer, order_type=order_type, quantity=int(quantity),
            rule_id=rule_id, invoked_by=invoked_by, created_at=when,
            holder=holder, path=path,
        )
        write_json_atomic(path, order.to_dict())
        self.raise_alert(gamer, order_type, now=when)

        metrics.incr("proposals.created", order_type=order_type)
        log.info(
            "proposals.created",
            gamer=gamer, order_type=order_type, quantity=order.quantity,
            rule_id=rule_id, invoked_by=invoked_by, holder=holder,
        )
        return order

    def raise_alert(self, gamer: str, order_type: str, now: datetime | None = None) -> Path:
        alert_dir = self.alerts_dir(order_type)
        alert_dir.mkdir(parents=True, exist_ok=True)
        path = alert_dir / f"{_ALERT_PREFIX}{gamer}_{format_timestamp(now or _utcnow())}"
        path.touch(exist_ok=True)
        return path

    # ── Consumers ────────────────────────────────────────────────────

    def list_alerts(self, order_type: str) -> list[AlertMarker]:
        alerts: list[AlertMarker] = []
        for path in sorted(self.alerts_dir(order_type).iterdir()):
            if not path.name.startswith(_ALERT_PREFIX):
                continue
            gamer, sep, stamp = path.name[len(_ALERT_PREFIX):].rpartition("_")
            if not sep:
                continue
            try:
                created = parse_timestamp(stamp)
            except ValueError:
                log.warning("proposals.bad_alert_name", path=str(path))
                continue
            alerts.append(AlertMarker(gamer=gamer, created_at=created, path=path))
        return alerts

    def remove_alert(self, alert: AlertMarker) -> None:
        alert.path.unlink(missing_ok=True)

    def take_alerts(self, order_type: str) -> dict[str, datetime]:
        """Collect alerts into ``{gamer: newest alert time}`` and delete them."""
        pending: dict[str, datetime] = {}
        for alert in self.list_alerts(order_type):
            previous = pending.get(alert.gamer)
            if previous is None or alert.created_at > previous:
                pending[alert.gamer] = alert.created_at
            self.remove_alert(alert)
        return pending

    def list_proposals(self, gamer: str, order_type: str) -> list[ProposedOrder]:
        order_type = _check_type(order_type)
        order_dir = self.proposals_dir(order_type, gamer)
        if not order_dir.is_dir():
            return []
        orders: list[ProposedOrder] = []
        for path in sorted(order_dir.glob("*.json")):
            try:
                with open(path) as f:
                    data = json.load(f)
                created = parse_timestamp(path.stem)
            except (OSError, ValueError) as e:
                log.error("proposals.unreadable", path=str(path), error=str(e))
                continue
            orders.append(ProposedOrder(
                gamer=gamer,
                order_type=order_type,
                quantity=int(data.get("quantity", 0)),
                rule_id=str(data.get("ruleId", "")),
                invoked_by=str(data.get("invokedBy", "")),
                created_at=created,
                holder=data.get("holderAddress"),
                path=path,
            ))
        return orders

    def list_gamers(self, order_type: str) -> list[str]:
        base = self.proposals_dir(order_type)
        return sorted(p.name for p in base.iterdir() if p.is_dir())

    def remove_proposal(self, order: ProposedOrder) -> None:
        if order.path is not None:
            order.path.unlink(missing_ok=True)

    def proposed_sum(self, gamer: str, order_type: str, holder: str | None = None) -> int:
        """Total quantity proposed for ``gamer``, optionally for one holder."""
        return sum(
            order.quantity
            for order in self.list_proposals(gamer, order_type)
            if holder is None or (order.holder or "").lower() == holder.lower()
        )

    def count_proposals(self, order_type: str) -> int:
        return sum(1 for _ in self.proposals_dir(order_type).glob("*/*.json"))

    # ── Halt markers ─────────────────────────────────────────────────

    def halt_path(self, order_type: str) -> Path:
        return self.orders_dir / _HALT_MARKERS[_check_type(order_type)]

    def is_halted(self, order_type: str) -> bool:
        return self.halt_path(order_type).exists()

    def set_halt(self, order_type: str) -> None:
        self.halt_path(order_type).touch(exist_ok=True)
        log.warning("proposals.halted", order_type=order_type.upper())

    def clear_halt(self, order_type: str) -> None:
        self.halt_path(order_type).unlink(missing_ok=True)
        log.info("proposals.resumed", order_type=order_type.upper())
