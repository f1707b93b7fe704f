"""Position ledger: file-addressed purchase lots per (holder, gamer).

Layout under the data directory:
  holders/<holder>/<gamer>/batch_<n>.json   active lots
  archive/<holder>/<gamer>/batch_<n>.json   fully sold lots

The ledger is a derived cache of the chain's trade events and can be
wiped and rebuilt by replaying them. Every mutation is written to a
temporary file and atomically renamed into place so a crash never
leaves a truncated lot behind.
"""

from __future__ import annotations

import json
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from bitfleet.errors import (
    InsufficientLotBalance,
    InvalidBlockOrder,
    LedgerReadError,
    LotNotFound,
)
from bitfleet.observability.logger import get_logger

log = get_logger(__name__)

_BATCH_RE = re.compile(r"^batch_(\d+)\.json$")


# ── Data Models ──────────────────────────────────────────────────────

@dataclass
class Lot:
    """One purchase event's remaining unsold quantity."""
    initial_amount: int
    remaining_amount: int
    purchase_price: int  # wei, total cost of the purchase
    purchase_block: int
    peak_supply: str = "0"
    sale_block: int | None = None
    sell_price: int | None = None  # wei, cumulative proceeds
    seq: int = 0

    @property
    def sold_amount(self) -> int:
        return self.initial_amount - self.remaining_amount

    @property
    def price_per_unit(self) -> int:
        if self.initial_amount == 0:
            return 0
        return self.purchase_price // self.initial_amount

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "InitialBatchAmount": self.initial_amount,
            "remainingBatchAmount": self.remaining_amount,
            "purchasePrice": str(self.purchase_price),
            "BlockNumOnWhichBitsWereBought": self.purchase_block,
            "peakSupply": str(self.peak_supply),
        }
        if self.sale_block is not None:
            data["BlockNumberOnWhichBitsWereSold"] = self.sale_block
        if self.sell_price is not None:
            data["sellPrice"] = str(self.sell_price)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], seq: int = 0) -> Lot:
        sale_block = data.get("BlockNumberOnWhichBitsWereSold")
        sell_price = data.get("sellPrice")
        return cls(
            initial_amount=int(data["InitialBatchAmount"]),
            remaining_amount=int(data["remainingBatchAmount"]),
            purchase_price=int(data["purchasePrice"]),
            purchase_block=int(data["BlockNumOnWhichBitsWereBought"]),
            peak_supply=str(data.get("peakSupply", "0")),
            sale_block=int(sale_block) if sale_block is not None else None,
            sell_price=int(sell_price) if sell_price not in (None, "") else None,
            seq=seq,
        )


def batch_seq(filename: str) -> int | None:
    match = _BATCH_RE.match(filename)
    return int(match.group(1)) if match else None


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to a temp file beside ``path`` and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    try:
        with open(tmp, "w") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


# ── Ledger ───────────────────────────────────────────────────────────

class PositionLedger:
    """Lot-based accounting of bought-not-yet-sold quantities."""

    def __init__(self, data_dir: str | Path):
        self._data_dir = Path(data_dir)
        self.holders_dir = self._data_dir / "holders"
        self.archive_dir = self._data_dir / "archive"
        self.holders_dir.mkdir(parents=True, exist_ok=True)
        self.archive_dir.mkdir(parents=True, exist_ok=True)

    # ── Paths ────────────────────────────────────────────────────────

    def holder_path(self, holder: str) -> Path:
        return self.holders_dir / holder

    def gamer_path(self, holder: str, gamer: str) -> Path:
        return self.holder_path(holder) / gamer

    def lot_path(self, holder: str, gamer: str, seq: int) -> Path:
        return self.gamer_path(holder, gamer) / f"batch_{seq}.json"

    def archive_path(self, holder: str, gamer: str) -> Path:
        return self.archive_dir / holder / gamer

    # ── Writes ───────────────────────────────────────────────────────

    def add_holder(self, holder: str) -> None:
        """Idempotently create the holder's namespace."""
        self.holder_path(holder).mkdir(parents=True, exist_ok=True)

    def add_lot(self, holder: str, gamer: str, lot: Lot) -> int:
        """Append a lot with the next sequence number and return it."""
        gamer_dir = self.gamer_path(holder, gamer)
        gamer_dir.mkdir(parents=True, exist_ok=True)

        # Archived lots keep their numbers, so new lots never reuse them.
        active = self._sequence_numbers(gamer_dir)
        seqs = active + self._sequence_numbers(self.archive_path(holder, gamer))
        if seqs:
            last_seq = max(seqs)
            last = (
                self.get_lot(holder, gamer, last_seq) if last_seq in active
                else self._read_lot(self.archive_path(holder, gamer) / f"batch_{last_seq}.json",
                                    last_seq)
            )
            if lot.purchase_block < last.purchase_block:
                raise InvalidBlockOrder(
                    f"purchase block {lot.purchase_block} precedes previous lot "
                    f"block {last.purchase_block} for {holder}/{gamer}"
                )

        seq = max(seqs) + 1 if seqs else 1
        lot.seq = seq
        write_json_atomic(self.lot_path(holder, gamer, seq), lot.to_dict())
        log.info(
            "ledger.lot_added",
            holder=holder, gamer=gamer, seq=seq,
            amount=lot.initial_amount, block=lot.purchase_block,
        )
        return seq

    def consume_lot(
        self,
        holder: str,
        gamer: str,
        seq: int,
        quantity: int,
        sale_block: int,
        sale_proceeds: int = 0,
    ) -> Lot:
        """Deduct ``quantity`` from a lot, archiving it when it empties."""
        path = self.lot_path(holder, gamer, seq)
        if not path.exists():
            raise LotNotFound(f"lot {path} does not exist")

        lot = self.get_lot(holder, gamer, seq)
        if lot.remaining_amount < quantity:
            raise InsufficientLotBalance(
                f"lot {seq} for {holder}/{gamer} holds {lot.remaining_amount}, "
                f"cannot deduct {quantity}"
            )
        if sale_block < lot.purchase_block:
            raise InvalidBlockOrder(
                f"sale block {sale_block} precedes purchase block {lot.purchase_block}"
            )
        if lot.sale_block is not None and lot.sale_block > sale_block:
            raise InvalidBlockOrder(
                f"sale block {sale_block} precedes recorded sale block {lot.sale_block}",
                code="BLOCK_NUMBER_NOT_INCREMENTED",
            )

        lot.remaining_amount -= quantity
        lot.sale_block = sale_block
        lot.sell_price = (lot.sell_price or 0) + sale_proceeds
        write_json_atomic(path, lot.to_dict())

        if lot.remaining_amount == 0:
            archive_dir = self.archive_path(holder, gamer)
            archive_dir.mkdir(parents=True, exist_ok=True)
            os.replace(path, archive_dir / path.name)
            log.info("ledger.lot_archived", holder=holder, gamer=gamer, seq=seq)
        else:
            log.info(
                "ledger.lot_consumed",
                holder=holder, gamer=gamer, seq=seq,
                quantity=quantity, remaining=lot.remaining_amount,
            )
        return lot

    # ── Reads ────────────────────────────────────────────────────────

    @staticmethod
    def _sequence_numbers(directory: Path) -> list[int]:
        if not directory.is_dir():
            return []
        seqs = (batch_seq(p.name) for p in directory.iterdir() if p.is_file())
        return [s for s in seqs if s is not None]

    @staticmethod
    def _read_lot(path: Path, seq: int) -> Lot:
        try:
            with open(path) as f:
                return Lot.from_dict(json.load(f), seq=seq)
        except (OSError, ValueError, KeyError) as e:
            raise LedgerReadError(f"failed to read lot {path}: {e}") from e

    def get_lot(self, holder: str, gamer: str, seq: int) -> Lot:
        path = self.lot_path(holder, gamer, seq)
        if not path.exists():
            raise LotNotFound(f"lot {path} does not exist")
        return self._read_lot(path, seq)

    def list_lots(self, holder: str, gamer: str) -> list[Lot]:
        """Active lots in sequence order (oldest first)."""
        return self.list_lots_ascending(holder, gamer)

    def list_lots_ascending(self, holder: str, gamer: str) -> list[Lot]:
        seqs = sorted(self._sequence_numbers(self.gamer_path(holder, gamer)))
        return [self.get_lot(holder, gamer, s) for s in seqs]

    def list_lots_descending(self, holder: str, gamer: str) -> list[Lot]:
        return list(reversed(self.list_lots_ascending(holder, gamer)))

    def list_lots_by_max_purchase_price(
        self, holder: str, gamer: str, max_price_per_unit: int,
    ) -> list[Lot]:
        return [
            lot for lot in self.list_lots_ascending(holder, gamer)
            if lot.price_per_unit <= max_price_per_unit
        ]

    def list_lots_by_max_block(self, holder: str, gamer: str, max_block: int) -> list[Lot]:
        return [
            lot for lot in self.list_lots_ascending(holder, gamer)
            if lot.purchase_block <= max_block
        ]

    def list_archived_lots(self, holder: str, gamer: str) -> list[Lot]:
        directory = self.archive_path(holder, gamer)
        return [
            self._read_lot(directory / f"batch_{s}.json", s)
            for s in sorted(self._sequence_numbers(directory))
        ]

    def list_holders(self) -> list[str]:
        return sorted(p.name for p in self.holders_dir.iterdir() if p.is_dir())

    def list_gamers(self, holder: str) -> list[str]:
        path = self.holder_path(holder)
        if not path.is_dir():
            return []
        return sorted(p.name for p in path.iterdir() if p.is_dir())

    def get_held_quantity(self, holder: str, gamer: str) -> int:
        return sum(lot.remaining_amount for lot in self.list_lots_ascending(holder, gamer))

    def get_latest_indexed_block(self) -> int:
        """Highest purchase or sale block across active and archived lots."""
        latest = 0
        for root in (self.holders_dir, self.archive_dir):
            for path in root.glob("*/*/batch_*.json"):
                seq = batch_seq(path.name)
                if seq is None:
                    continue
                lot = self._read_lot(path, seq)
                latest = max(latest, lot.purchase_block, lot.sale_block or 0)
        return latest

    def get_full_snapshot(self, holders: Iterable[str] | None = None) -> dict[str, Any]:
        """Materialize ``{"holders": ..., "archive": ...}`` as raw lot dicts."""
        holder_set = set(holders) if holders is not None else None
        return {
            "holders": self._tree(self.holders_dir, holder_set),
            "archive": self._tree(self.archive_dir, holder_set),
        }

    def _tree(self, root: Path, holder_set: set[str] | None) -> dict[str, Any]:
        tree: dict[str, Any] = {}
        if holder_set is not None:
            for holder in sorted(holder_set):
                tree[holder] = {}
        for holder_dir in sorted(p for p in root.iterdir() if p.is_dir()):
            if holder_set is not None and holder_dir.name not in holder_set:
                continue
            gamers: dict[str, Any] = {}
            for gamer_dir in sorted(p for p in holder_dir.iterdir() if p.is_dir()):
                lots: dict[str, Any] = {}
                for seq in sorted(self._sequence_numbers(gamer_dir)):
                    name = f"batch_{seq}.json"
                    lots[name] = self._read_lot(gamer_dir / name, seq).to_dict()
                gamers[gamer_dir.name] = lots
            tree[holder_dir.name] = gamers
        return tree


# ── Maintenance ──────────────────────────────────────────────────────

# Everything here is rebuilt by replaying the chain; whitelists are not.
DERIVED_DIRS = ("holders", "archive", "transactions", "orders")


def wipe_store(data_dir: str | Path) -> list[Path]:
    """Delete all chain-derived state under ``data_dir``.

    Stop both processes first. Returns the directories removed.
    """
    removed: list[Path] = []
    for name in DERIVED_DIRS:
        path = Path(data_dir) / name
        if path.is_dir():
            shutil.rmtree(path)
            removed.append(path)
            log.warning("ledger.wiped", path=str(path))
    return removed
