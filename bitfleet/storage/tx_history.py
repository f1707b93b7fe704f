"""Transaction-recency store: last observed trade per gamer.

One JSON file per gamer under ``transactions/``. Records older than the
configured age are pruned when read.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from bitfleet.errors import TxHistoryError
from bitfleet.observability.logger import get_logger
from bitfleet.storage.ledger import write_json_atomic

log = get_logger(__name__)


class TxHistoryStore:
    def __init__(self, data_dir: str | Path, max_age_hours: float = 12):
        self.root = Path(data_dir) / "transactions"
        self.root.mkdir(parents=True, exist_ok=True)
        self.max_age = timedelta(hours=max_age_hours)

    def _path(self, gamer: str) -> Path:
        return self.root / f"{gamer}.json"

    def record(
        self,
        gamer: str,
        holder: str,
        is_buy: bool,
        block_number: int,
        block_timestamp: int | float,
    ) -> None:
        when = datetime.fromtimestamp(block_timestamp, tz=timezone.utc)
        data = {
            "last_tx_date": when.isoformat(),
            "holder": holder,
            "is_buy": is_buy,
            "blockNumber": block_number,
        }
        try:
            write_json_atomic(self._path(gamer), data)
        except OSError as e:
            raise TxHistoryError(f"failed to update tx for {gamer}: {e}",
                                 code="UPDATE_TX_FAILED") from e

    def get_last(self, gamer: str, now: datetime | None = None) -> dict[str, Any] | None:
        """Last trade for ``gamer``, or None if absent or pruned as too old."""
        path = self._path(gamer)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                data = json.load(f)
            last = datetime.fromisoformat(data["last_tx_date"])
        except (OSError, ValueError, KeyError) as e:
            raise TxHistoryError(f"failed to read tx for {gamer}: {e}",
                                 code="GET_TX_FAILED") from e

        now = now or datetime.now(timezone.utc)
        if now - last > self.max_age:
            self._remove(path)
            log.info("tx_history.pruned", gamer=gamer, last_tx_date=data["last_tx_date"])
            return None
        return data

    def prune(self, now: datetime | None = None) -> int:
        """Remove every record older than the max age. Returns count removed."""
        removed = 0
        for path in list(self.root.glob("*.json")):
            before = path.exists()
            if self.get_last(path.stem, now=now) is None and before:
                removed += 1
        return removed

    @staticmethod
    def _remove(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise TxHistoryError(f"failed to prune {path}: {e}",
                                 code="PRUNE_TX_FAILED") from e
