"""Profit and loss over the position ledger.

Only the sold part of a lot counts: its cost basis is the lot's
purchase price scaled to the sold quantity, and its profit is the
accumulated sale proceeds minus that basis.
"""

from __future__ import annotations

import datetime as dt
import json
from decimal import ROUND_HALF_UP, Decimal, localcontext
from pathlib import Path
from typing import Any

from bitfleet.config import WEI_PER_ETHER
from bitfleet.observability.logger import get_logger

log = get_logger(__name__)

_FOUR_DP = Decimal("0.0001")
_WEI = Decimal(WEI_PER_ETHER)


def _fixed(value: Decimal) -> str:
    return str(value.quantize(_FOUR_DP, rounding=ROUND_HALF_UP))


def _sum_lots(gamers: dict[str, Any], start_block: int | None) -> tuple[Decimal, Decimal]:
    profit = Decimal(0)
    invested = Decimal(0)
    for lots in gamers.values():
        for lot in lots.values():
            if start_block and int(lot["BlockNumOnWhichBitsWereBought"]) < start_block:
                continue
            if not lot.get("sellPrice"):
                continue
            initial = Decimal(lot["InitialBatchAmount"])
            sold = initial - Decimal(lot["remainingBatchAmount"])
            if initial == 0 or sold == 0:
                continue
            basis = Decimal(lot["purchasePrice"]) / initial * sold
            profit += Decimal(lot["sellPrice"]) - basis
            invested += basis
    return profit, invested


def compute_pnl(snapshot: dict[str, Any], start_block: int | None = None) -> dict[str, Any]:
    """Per-holder and total P&L from a ledger snapshot.

    Args:
        snapshot: ``PositionLedger.get_full_snapshot()`` output.
        start_block: Lots bought before this block are left out.
    """
    result: dict[str, Any] = {"holders": {}, "total": {}}
    with localcontext() as ctx:
        ctx.prec = 60
        total_profit = Decimal(0)
        total_invested = Decimal(0)
        archive = snapshot.get("archive", {})

        for holder, gamers in snapshot.get("holders", {}).items():
            active_profit, active_invested = _sum_lots(gamers, start_block)
            archived_profit, archived_invested = _sum_lots(archive.get(holder, {}), start_block)
            profit = active_profit + archived_profit
            invested = active_invested + archived_invested

            result["holders"][holder] = {
                "absoluteProfit": _fixed(profit / _WEI),
                "percentProfit": "0" if invested == 0 else _fixed(profit / invested * 100),
                "adjustedInitialInvestment": _fixed(invested / _WEI),
            }
            total_profit += profit
            total_invested += invested

        result["total"] = {
            "absoluteProfit": _fixed(total_profit / _WEI),
            "percentProfit": (
                "0" if total_invested == 0 else _fixed(total_profit / total_invested * 100)
            ),
        }
    return result


def write_pnl_report(pnl: dict[str, Any], output_dir: str | Path = "reports/") -> Path:
    """Write a timestamped P&L JSON report and return its path."""
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    now = dt.datetime.now(dt.timezone.utc)
    report = {"generated_at": now.isoformat(), **pnl}

    filepath = out / f"pnl_{now.strftime('%Y%m%dT%H%M%SZ')}.json"
    with open(filepath, "w") as f:
        json.dump(report, f, indent=2)

    log.info("report.pnl_generated", path=str(filepath), holders=len(pnl["holders"]))
    return filepath
