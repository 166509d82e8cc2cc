"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Swap Google Sheets for a real database later
2. Use in-memory storage for testing
3. Keep ledger logic decoupled from storage implementation

The interface is intentionally simple - we're not building a full ORM.
A backend only persists whole records for the four logical collections
(day records, transfers, budgets, chat history). Totals, locking and
every ledger rule live above this layer.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Optional
from uuid import UUID

from chatledger.models.audit import AuditEvent
from chatledger.models.ledger import Budget, ChatTurn, DayRecord, Transfer


class LedgerStorageInterface(ABC):
    """
    Abstract interface for ledger persistence.

    Any storage implementation (Google Sheets, in-memory, a database)
    must implement these methods. All data is scoped by user_id and a
    backend never returns another user's records.
    """

    # -------------------------------------------------------------------------
    # Day records
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_day_record(self, user_id: str, record_date: date) -> Optional[DayRecord]:
        """
        Retrieve the DayRecord for one (user, date).

        Returns:
            The record if it exists, None otherwise

        Raises:
            StorageError: If the backend cannot be read
        """
        pass

    @abstractmethod
    async def save_day_record(self, record: DayRecord) -> bool:
        """
        Insert or replace the DayRecord for (record.user_id, record.record_date).

        Args:
            record: The complete record, totals already recomputed

        Returns:
            True if saved successfully

        Raises:
            StorageError: If save fails
        """
        pass

    @abstractmethod
    async def list_day_records(
        self,
        user_id: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[DayRecord]:
        """
        List a user's DayRecords, newest date first.

        Args:
            user_id: Owner of the records
            date_from: Only records on or after this date
            date_to: Only records on or before this date

        Returns:
            Matching records, newest first
        """
        pass

    # -------------------------------------------------------------------------
    # Transfers
    # -------------------------------------------------------------------------

    @abstractmethod
    async def save_transfer(self, transfer: Transfer) -> bool:
        """
        Persist a new Transfer record.

        Raises:
            StorageError: If save fails
        """
        pass

    @abstractmethod
    async def get_transfer(self, user_id: str, transfer_id: UUID) -> Optional[Transfer]:
        """Retrieve a transfer by id, None if it does not exist."""
        pass

    @abstractmethod
    async def delete_transfer(self, user_id: str, transfer_id: UUID) -> bool:
        """
        Delete a transfer record.

        Returns:
            True if a record was deleted, False if there was none
        """
        pass

    @abstractmethod
    async def list_transfers(self, user_id: str) -> list[Transfer]:
        """List a user's transfers, newest first."""
        pass

    # -------------------------------------------------------------------------
    # Budgets
    # -------------------------------------------------------------------------

    @abstractmethod
    async def upsert_budget(self, budget: Budget) -> Budget:
        """
        Create or replace the budget for (budget.user_id, budget.category).

        An existing budget keeps its created_at.

        Returns:
            The stored budget
        """
        pass

    @abstractmethod
    async def get_budget(self, user_id: str, category: str) -> Optional[Budget]:
        pass

    @abstractmethod
    async def list_budgets(self, user_id: str) -> list[Budget]:
        pass

    @abstractmethod
    async def delete_budget(self, user_id: str, category: str) -> bool:
        """
        Delete a budget.

        Returns:
            True if a budget was deleted, False if there was none
        """
        pass

    # -------------------------------------------------------------------------
    # Chat history
    # -------------------------------------------------------------------------

    @abstractmethod
    async def append_chat_turn(self, user_id: str, turn: ChatTurn, keep_last: int) -> None:
        """
        Append a turn and drop everything but the last `keep_last` turns.
        """
        pass

    @abstractmethod
    async def get_chat_history(self, user_id: str, limit: Optional[int] = None) -> list[ChatTurn]:
        """
        Get the rolling chat history, oldest first.

        Args:
            user_id: Owner of the history
            limit: Only the last `limit` turns
        """
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Args:
            event: The audit event to log

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one chat message).

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Returns:
            List of recent events (newest first)
        """
        pass


class StorageError(Exception):
    """
    Base exception for storage operations.

    Carries the failing operation and key so callers can report
    what could not be read or written.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        key: Optional[Any] = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.key = key

    def __str__(self) -> str:
        context = []
        if self.operation:
            context.append(f"operation={self.operation}")
        if self.key is not None:
            context.append(f"key={self.key}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


class StorageNotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class StorageConnectionError(StorageError):
    """Could not reach the storage backend. Safe to retry the whole action."""
    pass
