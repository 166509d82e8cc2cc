"""
Audit Logger

DESIGN DECISION: Every ledger mutation and every dispatched intent is logged.
This provides:
1. Complete traceability of balance changes
2. Debugging capability when the classifier misbehaves
3. A history the user can inspect

The audit logger:
- Is async like the storage it writes to
- Reports a failed write as False instead of raising
- Supports correlation IDs to trace all events of one chat message
"""

import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

import structlog

from chatledger.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from chatledger.services.storage.interface import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def configure_logging(debug: bool = False) -> None:
    """Route structlog output through stdlib logging at the right level."""
    logging.basicConfig(
        format="%(message)s",
        level=logging.DEBUG if debug else logging.INFO,
    )


class AuditLogger:
    """
    Writes AuditEvents for the ledger.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence), when one is configured
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger(__name__)

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Audit persistence never breaks the main flow
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_entry_saved(
        self,
        user_id: str,
        entry_id: UUID,
        sign: int,
        amount: Decimal,
        category: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.entry_saved(
            user_id=user_id,
            entry_id=entry_id,
            sign=sign,
            amount=amount,
            category=category,
            correlation_id=correlation_id,
        ))

    async def log_entry_updated(
        self,
        user_id: str,
        entry_id: UUID,
        field: str,
        old_value,
        new_value,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.entry_updated(
            user_id=user_id,
            entry_id=entry_id,
            field=field,
            old_value=old_value,
            new_value=new_value,
            correlation_id=correlation_id,
        ))

    async def log_entries_deleted(
        self,
        user_id: str,
        entry_ids: list[UUID],
        removed: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.entries_deleted(
            user_id=user_id,
            entry_ids=entry_ids,
            removed=removed,
            correlation_id=correlation_id,
        ))

    async def log_entries_dropped(
        self,
        user_id: str,
        dropped: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log drafts discarded for having no positive amount."""
        await self.log(AuditEventBuilder.entries_dropped(
            user_id=user_id,
            dropped=dropped,
            correlation_id=correlation_id,
        ))

    async def log_transfer_saved(
        self,
        user_id: str,
        transfer_id: UUID,
        total_amount: Decimal,
        entry_count: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.transfer_saved(
            user_id=user_id,
            transfer_id=transfer_id,
            total_amount=total_amount,
            entry_count=entry_count,
            correlation_id=correlation_id,
        ))

    async def log_transfer_deleted(
        self,
        user_id: str,
        transfer_id: UUID,
        entries_removed: int,
        dates_touched: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.transfer_deleted(
            user_id=user_id,
            transfer_id=transfer_id,
            entries_removed=entries_removed,
            dates_touched=dates_touched,
            correlation_id=correlation_id,
        ))

    async def log_budget_set(
        self,
        user_id: str,
        category: str,
        amount: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.budget_set(
            user_id=user_id,
            category=category,
            amount=amount,
            correlation_id=correlation_id,
        ))

    async def log_budget_deleted(
        self,
        user_id: str,
        category: str,
        existed: bool,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.budget_deleted(
            user_id=user_id,
            category=category,
            existed=existed,
            correlation_id=correlation_id,
        ))

    async def log_budget_alert(
        self,
        user_id: str,
        category: str,
        level: str,
        percentage: float,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.budget_alert(
            user_id=user_id,
            category=category,
            level=level,
            percentage=percentage,
            correlation_id=correlation_id,
        ))

    async def log_intent_classified(
        self,
        user_id: str,
        action: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.intent_classified(
            user_id=user_id,
            action=action,
            correlation_id=correlation_id,
        ))

    async def log_intent_malformed(
        self,
        user_id: str,
        error: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.intent_malformed(
            user_id=user_id,
            error=error,
            correlation_id=correlation_id,
        ))

    async def log_intent_rejected(
        self,
        user_id: str,
        action: str,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.intent_rejected(
            user_id=user_id,
            action=action,
            reason=reason,
            correlation_id=correlation_id,
        ))

    async def log_query_executed(
        self,
        user_id: str,
        query_id: UUID,
        query_type: str,
        result_count: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.query_executed(
            user_id=user_id,
            query_id=query_id,
            query_type=query_type,
            result_count=result_count,
            correlation_id=correlation_id,
        ))

    async def log_export_requested(
        self,
        user_id: str,
        export_format: str,
        days: int,
        handled: bool,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.export_requested(
            user_id=user_id,
            export_format=export_format,
            days=days,
            handled=handled,
            correlation_id=correlation_id,
        ))

    async def log_storage_error(
        self,
        user_id: Optional[str],
        operation: str,
        error: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.storage_error(
            user_id=user_id,
            operation=operation,
            error=error,
            correlation_id=correlation_id,
        ))

    async def log_classifier_unavailable(
        self,
        user_id: str,
        error: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.classifier_unavailable(
            user_id=user_id,
            error=error,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new chat message and pass it through
    all subsequent operations.
    """
    return uuid4()
