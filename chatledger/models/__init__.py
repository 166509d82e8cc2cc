"""Data models package."""

from chatledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from chatledger.models.intent import (
    AnalysisGroupBy,
    AnalyzeIntent,
    BalanceIntent,
    BudgetIntent,
    ChatIntent,
    EntryDraft,
    ExportFormat,
    ExportIntent,
    Intent,
    NewEntriesIntent,
    SearchIntent,
    TransferIntent,
    UpdateField,
    UpdateIntent,
    parse_intent,
)
from chatledger.models.ledger import (
    TRANSFER_CATEGORY,
    AnalysisGroup,
    AnalysisResult,
    BalanceSummary,
    Budget,
    BudgetAlert,
    BudgetAlertLevel,
    BudgetStatus,
    ChatRole,
    ChatTurn,
    DayRecord,
    Entry,
    EntrySign,
    NetWorth,
    PaymentBalance,
    PaymentMethod,
    PaymentMethodRef,
    QueryResult,
    SearchHit,
    Transfer,
    TransferLeg,
)

__all__ = [
    # Ledger models
    "TRANSFER_CATEGORY",
    "AnalysisGroup",
    "AnalysisResult",
    "BalanceSummary",
    "Budget",
    "BudgetAlert",
    "BudgetAlertLevel",
    "BudgetStatus",
    "ChatRole",
    "ChatTurn",
    "DayRecord",
    "Entry",
    "EntrySign",
    "NetWorth",
    "PaymentBalance",
    "PaymentMethod",
    "PaymentMethodRef",
    "QueryResult",
    "SearchHit",
    "Transfer",
    "TransferLeg",
    # Intent models
    "AnalysisGroupBy",
    "AnalyzeIntent",
    "BalanceIntent",
    "BudgetIntent",
    "ChatIntent",
    "EntryDraft",
    "ExportFormat",
    "ExportIntent",
    "Intent",
    "NewEntriesIntent",
    "SearchIntent",
    "TransferIntent",
    "UpdateField",
    "UpdateIntent",
    "parse_intent",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
