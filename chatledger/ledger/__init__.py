"""Ledger engine package: store, transfers, budgets and their errors."""

from chatledger.ledger.errors import (
    ClassifierUnavailableError,
    InvariantViolationError,
    LedgerError,
    MalformedIntentError,
)
from chatledger.ledger.store import LedgerStore
from chatledger.ledger.transfers import TransferDeletion, TransferEngine
from chatledger.ledger.budgets import BudgetTracker, month_bounds

__all__ = [
    "BudgetTracker",
    "ClassifierUnavailableError",
    "InvariantViolationError",
    "LedgerError",
    "LedgerStore",
    "MalformedIntentError",
    "TransferDeletion",
    "TransferEngine",
    "month_bounds",
]
