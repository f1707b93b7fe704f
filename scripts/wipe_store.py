#!/usr/bin/env python3
"""Wipe the chain-derived data store so the indexer rebuilds it.

Usage:
  1. Stop the investor and gofer processes.
  2. python scripts/wipe_store.py
  3. Start both processes again; the investor re-indexes from the
     contract deployment block.
"""

from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from bitfleet.config import load_config  # noqa: E402
from bitfleet.storage.ledger import wipe_store  # noqa: E402


def main() -> None:
    data_dir = load_config().storage.data_path
    if not data_dir.exists():
        print("Data directory does not exist.")
        return
    for path in wipe_store(data_dir):
        print(f"Deleted: {path}")
    print("\nData store wiped. Restart the investor to re-index.")


if __name__ == "__main__":
    main()
