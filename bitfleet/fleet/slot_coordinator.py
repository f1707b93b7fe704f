"""Transaction slot coordinator.

A fleet address is a *slot*. A slot is busy while its
``orders/<holder>/pendingOrder.json`` record exists and has not been
reconciled; only one transaction per holder may be in flight.

Reconciliation (``refresh_pending_order``) frees a slot when any of:
  - the indexer marked the record Mined after seeing its tx hash
  - the record is older than ``max_pending_secs`` (an expired record is
    deleted, not rewritten, so only Pending and Mined are ever stored)
  - the holder's on-chain nonce moved past the recorded nonce

Slot selection walks the fleet round-robin starting after the last
chosen index, first over slots that look free, then again reconciling
busy ones. Addresses that fail a balance check are parked in a short
TTL cache so the chain is not queried for them on every pass.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

from bitfleet.connectors.chain import ChainClient
from bitfleet.errors import LedgerReadError
from bitfleet.fleet.key_fleet import KeyFleet
from bitfleet.observability.logger import get_logger
from bitfleet.observability.metrics import metrics
from bitfleet.storage.cache import TTLCache
from bitfleet.storage.ledger import write_json_atomic

log = get_logger(__name__)

PENDING_ORDER_FILE = "pendingOrder.json"
NO_FREE_SLOT = -1


class PendingStatus(str, enum.Enum):
    PENDING = "Pending"
    MINED = "Mined"


@dataclass
class PendingOrder:
    gamer: str
    order_type: str
    number_of_bits: int
    tx_hash: str
    nonce: int
    timestamp: datetime
    status: PendingStatus = PendingStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "gamerAddress": self.gamer,
            "orderType": self.order_type,
            "numberOfBits": self.number_of_bits,
            "txHash": self.tx_hash,
            "nonce": self.nonce,
            "timestamp": self.timestamp.isoformat(),
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingOrder:
        return cls(
            gamer=data["gamerAddress"],
            order_type=data["orderType"],
            number_of_bits=int(data["numberOfBits"]),
            tx_hash=data["txHash"],
            nonce=int(data["nonce"]),
            timestamp=datetime.fromisoformat(data["timestamp"].replace("Z", "+00:00")),
            status=PendingStatus(data.get("status", PendingStatus.PENDING.value)),
        )


class SlotCoordinator:
    """Owns the round-robin cursor and the low-balance cache for one process."""

    def __init__(
        self,
        fleet: KeyFleet,
        chain: ChainClient,
        data_dir: str | Path,
        max_pending_secs: float = 120,
        low_balance_ttl_secs: float = 300,
        now: Callable[[], datetime] | None = None,
    ):
        self.fleet = fleet
        self.chain = chain
        self.orders_dir = Path(data_dir) / "orders"
        self.orders_dir.mkdir(parents=True, exist_ok=True)
        self.max_pending = timedelta(seconds=max_pending_secs)
        self.low_balance = TTLCache(default_ttl_secs=low_balance_ttl_secs)
        self.last_chosen_index = 0
        self._now = now or (lambda: datetime.now(timezone.utc))

    @property
    def addresses(self) -> list[str]:
        return self.fleet.get_all_addresses()

    def pending_path(self, holder: str) -> Path:
        return self.orders_dir / holder / PENDING_ORDER_FILE

    # ── Pending order records ────────────────────────────────────────

    def has_pending(self, holder: str) -> bool:
        return self.pending_path(holder).exists()

    def read_pending_order(self, holder: str) -> PendingOrder | None:
        path = self.pending_path(holder)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return PendingOrder.from_dict(json.load(f))
        except (OSError, ValueError, KeyError) as e:
            raise LedgerReadError(f"unreadable pending order {path}: {e}") from e

    async def record_pending_order(
        self,
        gamer: str,
        order_type: str,
        number_of_bits: int,
        holder: str,
        tx_hash: str,
    ) -> PendingOrder:
        """Mark ``holder`` busy. Called before the transaction is mined."""
        nonce = await self.chain.get_transaction_count(holder)
        order = PendingOrder(
            gamer=gamer,
            order_type=order_type,
            number_of_bits=int(number_of_bits),
            tx_hash=tx_hash,
            nonce=nonce,
            timestamp=self._now(),
        )
        write_json_atomic(self.pending_path(holder), order.to_dict())
        metrics.incr("slots.pending_recorded", order_type=order_type)
        log.info(
            "slots.pending_recorded",
            holder=holder, gamer=gamer, order_type=order_type,
            quantity=order.number_of_bits, tx_hash=tx_hash, nonce=nonce,
        )
        return order

    def mark_mined(self, holder: str, tx_hash: str) -> bool:
        """Flag the holder's pending order Mined if its hash matches."""
        order = self.read_pending_order(holder)
        if order is None or order.tx_hash.lower() != tx_hash.lower():
            return False
        order.status = PendingStatus.MINED
        write_json_atomic(self.pending_path(holder), order.to_dict())
        log.info("slots.pending_mined", holder=holder, tx_hash=tx_hash)
        return True

    def is_pending_order_complete(self, holder: str) -> bool:
        order = self.read_pending_order(holder)
        return order is None or order.status != PendingStatus.PENDING

    def _remove_pending(self, holder: str) -> None:
        self.pending_path(holder).unlink(missing_ok=True)

    async def refresh_pending_order(self, holder: str) -> PendingOrder | None:
        """Reconcile the holder's pending order; None means the slot is free."""
        order = self.read_pending_order(holder)
        if order is None:
            return None

        if order.status == PendingStatus.MINED:
            self._remove_pending(holder)
            metrics.incr("slots.reclaimed", reason="mined")
            log.info("slots.order_mined_confirmed", holder=holder, tx_hash=order.tx_hash)
            return None

        if self._now() - order.timestamp > self.max_pending:
            self._remove_pending(holder)
            metrics.incr("slots.reclaimed", reason="expired")
            log.warning("slots.order_expired", holder=holder, **order.to_dict())
            return None

        current_nonce = await self.chain.get_transaction_count(holder)
        if current_nonce > order.nonce:
            self._remove_pending(holder)
            metrics.incr("slots.reclaimed", reason="nonce")
            log.info(
                "slots.nonce_advanced",
                holder=holder, recorded=order.nonce, current=current_nonce,
            )
            return None

        return order

    async def update_pending_order(self, tx_hash: str, holder: str) -> None:
        order = await self.refresh_pending_order(holder)
        if order is not None and order.tx_hash.lower() == tx_hash.lower():
            self._remove_pending(holder)

    # ── Low-balance cache ────────────────────────────────────────────

    def is_low_balance(self, holder: str) -> bool:
        return holder in self.low_balance

    def cache_low_balance(self, holder: str) -> None:
        self.low_balance.put(holder)

    # ── Selection ────────────────────────────────────────────────────

    async def _has_minimum_balances(self, holder: str) -> bool:
        has_token = await self.fleet.meets_minimum_token(holder)
        has_gas = await self.fleet.meets_minimum_gas(holder)
        if has_token and has_gas:
            return True

        self.cache_low_balance(holder)
        reasons = []
        if not has_token:
            reasons.append("insufficient ERC20 balance")
        if not has_gas:
            reasons.append("insufficient gas balance")
        log.warning("slots.insufficient_balance", holder=holder, reasons=reasons)
        return False

    async def select_free_slot(self) -> int:
        """Index of a free, funded fleet address, or ``NO_FREE_SLOT``."""
        addresses = self.addresses
        if not addresses:
            return NO_FREE_SLOT

        start = self.last_chosen_index
        for reconcile in (False, True):
            index = start
            for _ in range(len(addresses)):
                index = (index + 1) % len(addresses)
                holder = addresses[index]

                if reconcile:
                    if await self.refresh_pending_order(holder) is not None:
                        continue
                elif self.has_pending(holder):
                    continue

                if self.is_low_balance(holder):
                    continue
                if await self._has_minimum_balances(holder):
                    self.last_chosen_index = index
                    metrics.incr("slots.selected")
                    return index

        metrics.incr("slots.none_free")
        return NO_FREE_SLOT

    async def select_free_holder(self) -> str | None:
        index = await self.select_free_slot()
        return None if index == NO_FREE_SLOT else self.addresses[index]
