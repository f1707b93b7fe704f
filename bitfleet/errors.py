"""Exception taxonomy.

Resource shortfalls (low gas, low token balance, chain balance below a
proposal) are not exceptions: they are normal outcomes returned as
booleans or clamped values.
"""

from __future__ import annotations


class BitfleetError(Exception):
    """Base class for all bot errors."""


# ── Ledger ───────────────────────────────────────────────────────────

class LedgerError(BitfleetError):
    """A position-ledger consistency failure, tagged with a stable code."""

    code = "LEDGER_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        if code:
            self.code = code

    def __str__(self) -> str:
        return f"[{self.code}] {self.args[0]}"


class InvalidBlockOrder(LedgerError):
    code = "INVALID_BLOCK_NUMBER"


class InsufficientLotBalance(LedgerError):
    code = "INSUFFICIENT_BITS"


class LotNotFound(LedgerError):
    code = "BATCH_NOT_FOUND"


class LedgerReadError(LedgerError):
    code = "READ_BATCH_FAILED"


class TxHistoryError(LedgerError):
    code = "TX_HISTORY_ERROR"


# ── Rules ────────────────────────────────────────────────────────────

class RuleValidationError(BitfleetError):
    """A rule file or expression that must not reach evaluation."""


class InvalidParameterError(BitfleetError):
    """Bad operator, malformed argument or missing context field."""


# ── External services ────────────────────────────────────────────────

class PlayerStatsError(BitfleetError):
    """The player stats feed failed or returned a non-success payload."""


class ChainError(BitfleetError):
    """An RPC or contract call failed."""


class FatalIndexerError(BitfleetError):
    """Indexing cannot continue safely; the host process must restart.

    On restart the indexer re-derives its resume block from the ledger,
    so no other state needs to be handed over.
    """
