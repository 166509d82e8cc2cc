"""
Main Orchestrator for ChatLedger

This module ties together all the components and defines the
end-to-end flow of one chat message:

    text -> LedgerContext -> classifier -> Intent -> dispatcher -> ledger

DESIGN DECISION: The orchestrator enforces the boundaries:
- The classifier only produces an Intent; only the dispatcher writes
- Malformed intents are never guessed at, the user is asked instead
- Business-rule rejections are answered, storage failures are retried
  by the user, and not-found is reported as success
- Every step is audited

This is the "glue" that keeps the ledger consistent even when the
classifier behaves unexpectedly.
"""

from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, NamedTuple, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from chatledger.agents.intent_classifier import (
    GeminiIntentClassifier,
    IntentClassifier,
    LedgerContextBuilder,
)
from chatledger.audit.logger import AuditLogger, configure_logging, create_correlation_id
from chatledger.config.settings import Settings, get_settings
from chatledger.ledger.budgets import BudgetTracker
from chatledger.ledger.errors import (
    ClassifierUnavailableError,
    InvariantViolationError,
    MalformedIntentError,
)
from chatledger.ledger.store import LedgerStore
from chatledger.ledger.transfers import TransferEngine
from chatledger.models.intent import (
    AnalyzeIntent,
    BalanceIntent,
    BudgetIntent,
    ChatIntent,
    ExportFormat,
    ExportIntent,
    Intent,
    NewEntriesIntent,
    SearchIntent,
    TransferIntent,
    UpdateField,
    UpdateIntent,
)
from chatledger.models.ledger import (
    BudgetAlert,
    ChatRole,
    ChatTurn,
    Entry,
    EntrySign,
    QueryResult,
    SearchHit,
)
from chatledger.queries.executor import QueryExecutor
from chatledger.services.storage.google_sheets import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsLedgerStorage,
)
from chatledger.services.storage.interface import (
    AuditStorageInterface,
    LedgerStorageInterface,
    StorageError,
)
from chatledger.services.storage.memory import InMemoryAuditStorage, InMemoryLedgerStorage


logger = structlog.get_logger(__name__)


CLARIFY_MESSAGE = (
    "Sorry, I couldn't work out what to record. "
    "Could you say it another way, e.g. 'spent 150 on food, cash'?"
)
STORAGE_FAILED_MESSAGE = (
    "Sorry, I couldn't reach your ledger just now. Nothing was changed, please try again."
)
CLASSIFIER_FAILED_MESSAGE = (
    "Sorry, the assistant is unavailable right now. Please try again in a moment."
)


class DispatchStatus(str, Enum):
    OK = "ok"                # action applied
    NOOP = "noop"            # nothing to do (already gone, nothing usable)
    REJECTED = "rejected"    # business rule violated, nothing persisted
    CLARIFY = "clarify"      # message not understood
    FAILED = "failed"        # transient outage, safe to retry


class DispatchResult(BaseModel):
    """What happened to one intent, for the presentation layer."""

    action: str
    status: DispatchStatus
    message: str = ""
    entry_ids: list[UUID] = Field(default_factory=list)
    transfer_id: Optional[UUID] = None
    alerts: list[BudgetAlert] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status in (DispatchStatus.OK, DispatchStatus.NOOP)


class ExportRequest(BaseModel):
    """A resolved export window, handed to an ExportHandler."""

    user_id: str
    export_format: ExportFormat
    days: int
    date_from: date
    date_to: date


class ExportHandler(ABC):
    """Renders ledger entries to a file. Layout is entirely up to the handler."""

    @abstractmethod
    async def export(self, request: ExportRequest, hits: list[SearchHit]) -> str:
        """
        Produce the export.

        Returns:
            A reference the user can follow (URL or path)
        """
        pass


class ActionDispatcher:
    """
    Routes each Intent to the ledger component that handles it.

    Invariant violations come back as REJECTED results. Storage errors
    propagate to the caller unchanged.
    """

    def __init__(
        self,
        store: LedgerStore,
        transfers: TransferEngine,
        budgets: BudgetTracker,
        queries: QueryExecutor,
        audit_logger: Optional[AuditLogger] = None,
        export_handler: Optional[ExportHandler] = None,
    ):
        self._store = store
        self._transfers = transfers
        self._budgets = budgets
        self._queries = queries
        self._audit_logger = audit_logger or AuditLogger()
        self._export_handler = export_handler

    async def dispatch(
        self,
        user_id: str,
        intent: Intent,
        correlation_id: Optional[UUID] = None,
    ) -> DispatchResult:
        """
        Apply one intent to the user's ledger.

        Raises:
            MalformedIntentError: the object is not a known intent
            StorageError: the ledger could not be read or written
        """
        correlation_id = correlation_id or create_correlation_id()
        action = getattr(intent, "action", type(intent).__name__)
        try:
            if isinstance(intent, NewEntriesIntent):
                return await self._handle_new(user_id, intent, correlation_id)
            elif isinstance(intent, UpdateIntent):
                return await self._handle_update(user_id, intent, correlation_id)
            elif isinstance(intent, TransferIntent):
                return await self._handle_transfer(user_id, intent, correlation_id)
            elif isinstance(intent, BalanceIntent):
                return await self._handle_balance(user_id, intent)
            elif isinstance(intent, (SearchIntent, AnalyzeIntent)):
                return await self._handle_query(user_id, intent, correlation_id)
            elif isinstance(intent, BudgetIntent):
                return await self._handle_budget(user_id, intent, correlation_id)
            elif isinstance(intent, ExportIntent):
                return await self._handle_export(user_id, intent, correlation_id)
            elif isinstance(intent, ChatIntent):
                return DispatchResult(action=intent.action, status=DispatchStatus.OK, message=intent.message)
            else:
                raise MalformedIntentError(f"Unsupported intent: {type(intent).__name__}")
        except InvariantViolationError as e:
            await self._audit_logger.log_intent_rejected(
                user_id=user_id,
                action=action,
                reason=e.message,
                correlation_id=correlation_id,
            )
            return DispatchResult(action=action, status=DispatchStatus.REJECTED, message=e.message)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def _handle_new(
        self,
        user_id: str,
        intent: NewEntriesIntent,
        correlation_id: UUID,
    ) -> DispatchResult:
        usable = [draft for draft in intent.entries if draft.is_usable]
        dropped = len(intent.entries) - len(usable)
        if dropped:
            # Zero or missing amounts are classifier noise, not user input
            await self._audit_logger.log_entries_dropped(user_id, dropped, correlation_id)
        if not usable:
            return DispatchResult(
                action=intent.action,
                status=DispatchStatus.NOOP,
                message="Nothing to record: no entry had an amount.",
            )

        # Budget alerts are projected before the save and never block it
        alerts = []
        pending: dict[str, Decimal] = {}
        for draft in usable:
            if draft.sign != EntrySign.EXPENSE:
                continue
            category = draft.category or self._store.settings.uncategorized_label
            incoming = pending.get(category, Decimal("0")) + draft.amount
            pending[category] = incoming
            alert = await self._budgets.check_budget_alert(user_id, category, incoming)
            if alert.should_alert:
                alerts = [a for a in alerts if a.category != category] + [alert]

        entries = [
            Entry(
                sign=draft.sign,
                amount=draft.amount,
                category=draft.category,
                description=draft.description,
                merchant=draft.merchant,
                payment=draft.payment,
            )
            for draft in usable
        ]
        entry_ids = await self._store.save_entries(user_id, self._store.today(), entries)

        for entry in entries:
            await self._audit_logger.log_entry_saved(
                user_id=user_id,
                entry_id=entry.id,
                sign=int(entry.sign),
                amount=entry.amount,
                category=entry.category,
                correlation_id=correlation_id,
            )
        for alert in alerts:
            await self._audit_logger.log_budget_alert(
                user_id=user_id,
                category=alert.category,
                level=alert.level.value,
                percentage=alert.percentage or 0.0,
                correlation_id=correlation_id,
            )

        message = intent.message or f"Recorded {len(entries)} entr{'y' if len(entries) == 1 else 'ies'}."
        if alerts:
            message = "\n".join([message, *(alert.message for alert in alerts)])
        return DispatchResult(
            action=intent.action,
            status=DispatchStatus.OK,
            message=message,
            entry_ids=entry_ids,
            alerts=alerts,
        )

    async def _handle_update(
        self,
        user_id: str,
        intent: UpdateIntent,
        correlation_id: UUID,
    ) -> DispatchResult:
        if intent.entry_id is not None:
            target = await self._store.get_entry(user_id, intent.entry_id)
        else:
            target = await self._store.get_last_entry(user_id)
        if target is None:
            return DispatchResult(
                action=intent.action,
                status=DispatchStatus.NOOP,
                message="There is no entry from today to change.",
            )

        if intent.field == UpdateField.AMOUNT:
            old_value = target.amount
            updated = await self._store.update_entry_amount(user_id, target.id, intent.amount)
            new_value = intent.amount
        else:
            old_value = target.payment.label()
            updated = await self._store.update_entry_payment_method(user_id, target.id, intent.payment)
            new_value = intent.payment.label()

        if updated is None:
            return DispatchResult(
                action=intent.action,
                status=DispatchStatus.NOOP,
                message="That entry is already gone.",
            )

        await self._audit_logger.log_entry_updated(
            user_id=user_id,
            entry_id=target.id,
            field=intent.field.value,
            old_value=old_value,
            new_value=new_value,
            correlation_id=correlation_id,
        )
        return DispatchResult(
            action=intent.action,
            status=DispatchStatus.OK,
            message=intent.message or f"Updated {intent.field.value}: {old_value} -> {new_value}.",
            entry_ids=[target.id],
        )

    async def _handle_transfer(
        self,
        user_id: str,
        intent: TransferIntent,
        correlation_id: UUID,
    ) -> DispatchResult:
        transfer_id, entry_ids = await self._transfers.save_transfer(
            user_id,
            intent.from_legs,
            intent.to_legs,
            intent.description,
        )
        total = sum((leg.amount for leg in intent.from_legs), Decimal("0"))
        await self._audit_logger.log_transfer_saved(
            user_id=user_id,
            transfer_id=transfer_id,
            total_amount=total,
            entry_count=len(entry_ids),
            correlation_id=correlation_id,
        )
        return DispatchResult(
            action=intent.action,
            status=DispatchStatus.OK,
            message=intent.message or f"Transferred {total:,.2f}.",
            entry_ids=entry_ids,
            transfer_id=transfer_id,
        )

    async def _handle_balance(self, user_id: str, intent: BalanceIntent) -> DispatchResult:
        summary = await self._store.get_balance_summary(user_id)
        balances = await self._store.get_balance_by_payment_method(user_id)
        wanted = intent.payment_filter
        if wanted is not None:
            balances = [
                b for b in balances
                if b.method == wanted.method
                and (not wanted.sub_identifier or b.sub_identifier.lower() == wanted.sub_identifier.lower())
            ]
        net_worth = await self._store.get_net_worth(user_id)

        if wanted is not None:
            net = sum((b.net_balance for b in balances), Decimal("0"))
            message = f"{wanted.label()} balance: {net:,.2f}"
        else:
            message = (
                f"Income {summary.total_income:,.2f}, expense {summary.total_expense:,.2f}, "
                f"balance {summary.balance:,.2f}. Net worth {net_worth.net_worth:,.2f}."
            )
        return DispatchResult(
            action=intent.action,
            status=DispatchStatus.OK,
            message=message,
            data={
                "summary": summary,
                "payment_balances": balances,
                "net_worth": net_worth,
            },
        )

    async def _handle_query(self, user_id: str, intent, correlation_id: UUID) -> DispatchResult:
        result = await self._queries.execute(user_id, intent)
        if isinstance(result, QueryResult):
            count = result.result_count
            query_type = result.kind
        else:
            count = result.entry_count
            query_type = f"analyze:{result.group_by}"

        await self._audit_logger.log_query_executed(
            user_id=user_id,
            query_id=result.query_id,
            query_type=query_type,
            result_count=count,
            correlation_id=correlation_id,
        )

        if count == 0:
            # Never let the classifier's message suggest data we don't have
            return DispatchResult(
                action=intent.action,
                status=DispatchStatus.OK,
                message="No matching entries found.",
                data={"result": result},
            )
        return DispatchResult(
            action=intent.action,
            status=DispatchStatus.OK,
            message=intent.message or f"Found {count} entries.",
            data={"result": result},
        )

    async def _handle_budget(
        self,
        user_id: str,
        intent: BudgetIntent,
        correlation_id: UUID,
    ) -> DispatchResult:
        if intent.delete:
            if not intent.category:
                raise InvariantViolationError("Which budget should be removed?")
            existed = await self._budgets.delete_budget(user_id, intent.category)
            await self._audit_logger.log_budget_deleted(user_id, intent.category, existed, correlation_id)
            return DispatchResult(
                action=intent.action,
                status=DispatchStatus.OK if existed else DispatchStatus.NOOP,
                message=f"Budget for {intent.category} removed.",
            )

        budget = await self._budgets.set_budget(user_id, intent.category, intent.amount)
        await self._audit_logger.log_budget_set(user_id, budget.category, budget.amount, correlation_id)
        status = next(
            (s for s in await self._budgets.get_budget_status(user_id) if s.category == budget.category),
            None,
        )
        return DispatchResult(
            action=intent.action,
            status=DispatchStatus.OK,
            message=intent.message or f"Monthly budget for {budget.category} set to {budget.amount:,.2f}.",
            data={"budget": budget, "status": status},
        )

    async def _handle_export(
        self,
        user_id: str,
        intent: ExportIntent,
        correlation_id: UUID,
    ) -> DispatchResult:
        days = intent.days or self._store.settings.default_lookback_days
        date_from, date_to = self._queries.lookback_window(days)
        request = ExportRequest(
            user_id=user_id,
            export_format=intent.export_format,
            days=days,
            date_from=date_from,
            date_to=date_to,
        )
        data: dict[str, Any] = {"request": request}
        message = intent.message or f"Preparing a {intent.export_format.value} export of the last {days} days."

        if self._export_handler is not None:
            hits = await self._queries.search_by_date_range(
                user_id,
                date_from,
                date_to,
                self._store.settings.max_query_limit,
            )
            data["reference"] = await self._export_handler.export(request, hits)
            data["entry_count"] = len(hits)

        await self._audit_logger.log_export_requested(
            user_id=user_id,
            export_format=intent.export_format.value,
            days=days,
            handled=self._export_handler is not None,
            correlation_id=correlation_id,
        )
        return DispatchResult(action=intent.action, status=DispatchStatus.OK, message=message, data=data)

    # -------------------------------------------------------------------------
    # Direct undo actions (buttons in the chat UI, no classifier involved)
    # -------------------------------------------------------------------------

    async def delete_entries(
        self,
        user_id: str,
        entry_ids: list[UUID],
        correlation_id: Optional[UUID] = None,
    ) -> DispatchResult:
        """Undo today's entries. Ids that are already gone are skipped."""
        removed = await self._store.delete_entries(user_id, entry_ids)
        await self._audit_logger.log_entries_deleted(user_id, entry_ids, removed, correlation_id)
        return DispatchResult(
            action="delete",
            status=DispatchStatus.OK if removed else DispatchStatus.NOOP,
            message=f"Deleted {removed} entr{'y' if removed == 1 else 'ies'}." if removed else "Already deleted.",
            entry_ids=entry_ids,
        )

    async def delete_transfer(
        self,
        user_id: str,
        transfer_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> DispatchResult:
        """Undo a transfer on whatever dates its entries live."""
        deletion = await self._transfers.delete_transfer(user_id, transfer_id)
        await self._audit_logger.log_transfer_deleted(
            user_id=user_id,
            transfer_id=transfer_id,
            entries_removed=deletion.entries_removed,
            dates_touched=[d.isoformat() for d in deletion.dates_touched],
            correlation_id=correlation_id,
        )
        done = deletion.entries_removed or deletion.record_deleted
        return DispatchResult(
            action="delete_transfer",
            status=DispatchStatus.OK if done else DispatchStatus.NOOP,
            message="Transfer deleted." if done else "Already deleted.",
            transfer_id=transfer_id,
        )


class ChatFlow:
    """
    Orchestrates one chat message end to end.

    FLOW:
    1. Build the LedgerContext from storage
    2. Record the user's turn
    3. Classify the message into an Intent
    4. Dispatch the Intent
    5. Record the assistant's reply

    Failures are turned into replies here and nowhere else.
    """

    def __init__(
        self,
        classifier: IntentClassifier,
        dispatcher: ActionDispatcher,
        context_builder: LedgerContextBuilder,
        store: LedgerStore,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._classifier = classifier
        self._dispatcher = dispatcher
        self._context_builder = context_builder
        self._store = store
        self._audit_logger = audit_logger or AuditLogger()

    async def _record_turn(self, user_id: str, role: ChatRole, content: str) -> None:
        await self._store.storage.append_chat_turn(
            user_id,
            ChatTurn(role=role, content=content),
            self._store.settings.chat_history_limit,
        )

    async def handle_message(self, user_id: str, text: str) -> DispatchResult:
        correlation_id = create_correlation_id()
        try:
            context = await self._context_builder.build(user_id)
            await self._record_turn(user_id, ChatRole.USER, text)
            intent = await self._classifier.classify(text, context)
            await self._audit_logger.log_intent_classified(user_id, intent.action, correlation_id)
            result = await self._dispatcher.dispatch(user_id, intent, correlation_id)
        except MalformedIntentError as e:
            await self._audit_logger.log_intent_malformed(user_id, e.message, correlation_id)
            result = DispatchResult(action="unknown", status=DispatchStatus.CLARIFY, message=CLARIFY_MESSAGE)
        except ClassifierUnavailableError as e:
            await self._audit_logger.log_classifier_unavailable(user_id, e.message, correlation_id)
            return DispatchResult(action="unknown", status=DispatchStatus.FAILED, message=CLASSIFIER_FAILED_MESSAGE)
        except StorageError as e:
            await self._audit_logger.log_storage_error(
                user_id=user_id,
                operation=e.operation or "handle_message",
                error=str(e),
                correlation_id=correlation_id,
            )
            return DispatchResult(action="unknown", status=DispatchStatus.FAILED, message=STORAGE_FAILED_MESSAGE)

        try:
            await self._record_turn(user_id, ChatRole.ASSISTANT, result.message)
        except StorageError as e:
            # The ledger change already happened; losing a history line is acceptable
            logger.warning("chat_history_write_failed", user_id=user_id, error=str(e))
        return result


class AppComponents(NamedTuple):
    store: LedgerStore
    transfers: TransferEngine
    budgets: BudgetTracker
    queries: QueryExecutor
    dispatcher: ActionDispatcher
    chat_flow: ChatFlow
    sheets_client: Optional[GoogleSheetsClient]


def create_app_components(
    settings: Optional[Settings] = None,
    storage: Optional[LedgerStorageInterface] = None,
    audit_storage: Optional[AuditStorageInterface] = None,
    classifier: Optional[IntentClassifier] = None,
    export_handler: Optional[ExportHandler] = None,
    clock: Optional[Callable[[], date]] = None,
) -> AppComponents:
    """
    Factory function to create all application components.

    Args:
        settings: Root settings (loaded from the environment if omitted)
        storage: Ledger backend; chosen from `storage_backend` if omitted
        audit_storage: Audit backend; follows the ledger backend if omitted
        classifier: Intent classifier; Gemini if omitted
        export_handler: Optional file export collaborator
        clock: Overrides "today" (tests)

    Returns:
        AppComponents with every ledger component wired together
    """
    settings = settings or get_settings()
    app_settings = settings.app
    ledger_settings = settings.ledger
    configure_logging(app_settings.debug_mode)

    sheets_client = None
    if storage is None:
        if app_settings.storage_backend == "google_sheets":
            sheets_client = GoogleSheetsClient(settings.google_sheets)
            storage = GoogleSheetsLedgerStorage(sheets_client)
            audit_storage = audit_storage or GoogleSheetsAuditStorage(sheets_client)
        else:
            logger.warning("Using in-memory storage; the ledger will not survive a restart")
            storage = InMemoryLedgerStorage()
            audit_storage = audit_storage or InMemoryAuditStorage()

    audit_logger = AuditLogger(audit_storage)

    store = LedgerStore(storage, ledger_settings, clock)
    transfers = TransferEngine(store)
    budgets = BudgetTracker(store)
    queries = QueryExecutor(store)
    dispatcher = ActionDispatcher(
        store,
        transfers,
        budgets,
        queries,
        audit_logger=audit_logger,
        export_handler=export_handler,
    )
    chat_flow = ChatFlow(
        classifier=classifier or GeminiIntentClassifier(settings.gemini),
        dispatcher=dispatcher,
        context_builder=LedgerContextBuilder(store, queries, budgets),
        store=store,
        audit_logger=audit_logger,
    )

    return AppComponents(store, transfers, budgets, queries, dispatcher, chat_flow, sheets_client)
