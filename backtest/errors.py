"""Exception taxonomy for the simulation core."""


class BacktestError(Exception):
    """Base exception for simulation failures."""


class StructuralError(BacktestError):
    """Strategy or request is malformed; the run cannot start."""


class DataError(BacktestError):
    """Price data is missing or unusable."""


class LedgerError(BacktestError):
    """A ledger mutation was rejected."""


class InsufficientBalance(LedgerError):
    """Raised when a debit exceeds the available balance."""

    def __init__(self, token: str, available: float, requested: float) -> None:
        super().__init__(f"Insufficient balance: {token}. Have {available}, need {requested}")
        self.token = token
        self.available = available
        self.requested = requested


class MissingPosition(LedgerError):
    """Raised when an operation references a position that does not exist."""


class OptimizationError(BacktestError):
    """Every walk-forward window failed for a candidate."""
