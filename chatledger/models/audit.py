"""
Audit Models for ChatLedger

Every ledger mutation and every dispatched intent is logged for audit
purposes. This provides:
1. Complete traceability of what changed a user's balance
2. Debugging information when classification goes wrong
3. Ability to reconstruct history

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from chatledger.models.ledger import utc_now


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Each ledger operation and each dispatch outcome has its own event type.
    """
    # Entries
    ENTRY_SAVED = "entry_saved"
    ENTRY_UPDATED = "entry_updated"
    ENTRY_DELETED = "entry_deleted"
    ENTRIES_DROPPED = "entries_dropped"

    # Transfers
    TRANSFER_SAVED = "transfer_saved"
    TRANSFER_DELETED = "transfer_deleted"

    # Budgets
    BUDGET_SET = "budget_set"
    BUDGET_DELETED = "budget_deleted"
    BUDGET_ALERT = "budget_alert"

    # Intents
    INTENT_CLASSIFIED = "intent_classified"
    INTENT_MALFORMED = "intent_malformed"
    INTENT_REJECTED = "intent_rejected"

    # Queries
    QUERY_EXECUTED = "query_executed"
    EXPORT_REQUESTED = "export_requested"

    # System events
    STORAGE_ERROR = "storage_error"
    CLASSIFIER_UNAVAILABLE = "classifier_unavailable"
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    One row of the audit trail.

    Ledger mutations, dispatch outcomes and outages each produce one.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Event id, assigned once"
    )
    timestamp: datetime = Field(
        default_factory=utc_now,
        description="UTC time the event was recorded"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="What happened"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Log level the event is emitted at"
    )

    # Whose ledger this is about
    user_id: Optional[str] = Field(
        default=None,
        description="Owner of the affected ledger"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'entry', 'transfer', 'budget')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="Entry, transfer or query id, when there is one"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events of one chat message)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="One-line summary shown in the audit sheet"
    )

    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Amounts, categories and other structured context"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user message?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "user_id": self.user_id,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, user_id, entity_type,
         entity_id, correlation_id, description, details_json, error_message,
         is_user_action]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.user_id or "",
            self.entity_type or "",
            str(self.entity_id) if self.entity_id else "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_message or "",
            str(self.is_user_action),
        ]


def _money(value: Decimal) -> str:
    return f"{value:,.2f}"


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.entry_saved(user_id, entry_id, ...)
        event = AuditEventBuilder.transfer_deleted(user_id, transfer_id, ...)
    """

    @staticmethod
    def entry_saved(
        user_id: str,
        entry_id: UUID,
        sign: int,
        amount: Decimal,
        category: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        kind = "income" if sign > 0 else "expense"
        return AuditEvent(
            event_type=AuditEventType.ENTRY_SAVED,
            user_id=user_id,
            entity_type="entry",
            entity_id=entry_id,
            correlation_id=correlation_id,
            description=f"Saved {kind} {_money(amount)} ({category or 'uncategorized'})",
            details={
                "sign": sign,
                "amount": str(amount),
                "category": category,
            },
            is_user_action=True,
        )

    @staticmethod
    def entry_updated(
        user_id: str,
        entry_id: UUID,
        field: str,
        old_value: Any,
        new_value: Any,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ENTRY_UPDATED,
            user_id=user_id,
            entity_type="entry",
            entity_id=entry_id,
            correlation_id=correlation_id,
            description=f"Entry {field} changed",
            details={
                "field": field,
                "old_value": str(old_value),
                "new_value": str(new_value),
            },
            is_user_action=True,
        )

    @staticmethod
    def entries_deleted(
        user_id: str,
        entry_ids: list[UUID],
        removed: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ENTRY_DELETED,
            user_id=user_id,
            entity_type="entry",
            entity_id=entry_ids[0] if len(entry_ids) == 1 else None,
            correlation_id=correlation_id,
            description=f"Deleted {removed} of {len(entry_ids)} requested entries",
            details={
                "entry_ids": [str(i) for i in entry_ids],
                "removed": removed,
            },
            is_user_action=True,
        )

    @staticmethod
    def entries_dropped(
        user_id: str,
        dropped: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ENTRIES_DROPPED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"Dropped {dropped} entries without a positive amount",
            details={"dropped": dropped},
        )

    @staticmethod
    def transfer_saved(
        user_id: str,
        transfer_id: UUID,
        total_amount: Decimal,
        entry_count: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSFER_SAVED,
            user_id=user_id,
            entity_type="transfer",
            entity_id=transfer_id,
            correlation_id=correlation_id,
            description=f"Transfer of {_money(total_amount)} saved",
            details={
                "total_amount": str(total_amount),
                "entry_count": entry_count,
            },
            is_user_action=True,
        )

    @staticmethod
    def transfer_deleted(
        user_id: str,
        transfer_id: UUID,
        entries_removed: int,
        dates_touched: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSFER_DELETED,
            user_id=user_id,
            entity_type="transfer",
            entity_id=transfer_id,
            correlation_id=correlation_id,
            description=f"Transfer deleted, {entries_removed} entries removed",
            details={
                "entries_removed": entries_removed,
                "dates_touched": dates_touched,
            },
            is_user_action=True,
        )

    @staticmethod
    def budget_set(
        user_id: str,
        category: str,
        amount: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BUDGET_SET,
            user_id=user_id,
            entity_type="budget",
            correlation_id=correlation_id,
            description=f"Budget for {category} set to {_money(amount)}",
            details={"category": category, "amount": str(amount)},
            is_user_action=True,
        )

    @staticmethod
    def budget_deleted(
        user_id: str,
        category: str,
        existed: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BUDGET_DELETED,
            user_id=user_id,
            entity_type="budget",
            correlation_id=correlation_id,
            description=f"Budget for {category} deleted",
            details={"category": category, "existed": existed},
            is_user_action=True,
        )

    @staticmethod
    def budget_alert(
        user_id: str,
        category: str,
        level: str,
        percentage: float,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BUDGET_ALERT,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            entity_type="budget",
            correlation_id=correlation_id,
            description=f"Budget {level} for {category} at {percentage:.0f}%",
            details={
                "category": category,
                "level": level,
                "percentage": percentage,
            },
        )

    @staticmethod
    def intent_classified(
        user_id: str,
        action: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INTENT_CLASSIFIED,
            user_id=user_id,
            entity_type="intent",
            correlation_id=correlation_id,
            description=f"Message classified as '{action}'",
            details={"action": action},
            is_user_action=True,
        )

    @staticmethod
    def intent_malformed(
        user_id: str,
        error: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INTENT_MALFORMED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            entity_type="intent",
            correlation_id=correlation_id,
            description="Classifier output could not be parsed",
            error_code="MALFORMED_INTENT",
            error_message=error,
        )

    @staticmethod
    def intent_rejected(
        user_id: str,
        action: str,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INTENT_REJECTED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            entity_type="intent",
            correlation_id=correlation_id,
            description=f"'{action}' rejected: {reason}"[:500],
            details={"action": action},
            error_code="INVARIANT_VIOLATION",
            error_message=reason,
        )

    @staticmethod
    def query_executed(
        user_id: str,
        query_id: UUID,
        query_type: str,
        result_count: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.QUERY_EXECUTED,
            user_id=user_id,
            entity_type="query",
            entity_id=query_id,
            correlation_id=correlation_id,
            description=f"Query executed: {query_type} returned {result_count} results",
            details={
                "query_type": query_type,
                "result_count": result_count,
            },
        )

    @staticmethod
    def export_requested(
        user_id: str,
        export_format: str,
        days: int,
        handled: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPORT_REQUESTED,
            user_id=user_id,
            entity_type="export",
            correlation_id=correlation_id,
            description=f"{export_format} export of the last {days} days requested",
            details={
                "format": export_format,
                "days": days,
                "handled": handled,
            },
            is_user_action=True,
        )

    @staticmethod
    def storage_error(
        user_id: Optional[str],
        operation: str,
        error: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.STORAGE_ERROR,
            severity=AuditSeverity.ERROR,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"Storage failure during {operation}",
            details={"operation": operation},
            error_code="STORAGE_ERROR",
            error_message=error,
        )

    @staticmethod
    def classifier_unavailable(
        user_id: str,
        error: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CLASSIFIER_UNAVAILABLE,
            severity=AuditSeverity.ERROR,
            user_id=user_id,
            correlation_id=correlation_id,
            description="Intent classifier unavailable",
            error_code="CLASSIFIER_UNAVAILABLE",
            error_message=error,
        )
