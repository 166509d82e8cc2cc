"""
Business-rule errors raised by the ledger engine.

Storage failures live in `chatledger.services.storage.interface`; the
errors here are the ones a caller answers by re-prompting the user
rather than retrying.
"""

from typing import Any, Optional


class LedgerError(Exception):
    """Base exception for ledger business-rule failures."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvariantViolationError(LedgerError):
    """Input would break a ledger invariant. Nothing was persisted."""
    pass


class MalformedIntentError(LedgerError):
    """Classifier output could not be turned into an Intent."""

    def __init__(self, message: str, raw: Any = None):
        super().__init__(message, {"raw": raw} if raw is not None else None)
        self.raw = raw


class ClassifierUnavailableError(LedgerError):
    """The intent classifier could not be reached. Safe to retry."""
    pass
