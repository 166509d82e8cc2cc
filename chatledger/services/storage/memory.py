"""
In-memory storage backend.

Used by the test suite and for local runs without Google credentials
(`storage_backend=memory`). Records are deep-copied on the way in and
out so callers can never mutate stored state by accident, which keeps
this backend honest about the whole-record semantics of the real one.
"""

from datetime import date
from typing import Optional
from uuid import UUID

from chatledger.models.audit import AuditEvent
from chatledger.models.ledger import Budget, ChatTurn, DayRecord, Transfer, utc_now
from chatledger.services.storage.interface import (
    AuditStorageInterface,
    LedgerStorageInterface,
)


class InMemoryLedgerStorage(LedgerStorageInterface):
    """Dict-backed implementation of LedgerStorageInterface."""

    def __init__(self):
        self._day_records: dict[tuple[str, date], DayRecord] = {}
        self._transfers: dict[tuple[str, UUID], Transfer] = {}
        self._budgets: dict[tuple[str, str], Budget] = {}
        self._chat: dict[str, list[ChatTurn]] = {}

    # Day records

    async def get_day_record(self, user_id: str, record_date: date) -> Optional[DayRecord]:
        record = self._day_records.get((user_id, record_date))
        return record.model_copy(deep=True) if record else None

    async def save_day_record(self, record: DayRecord) -> bool:
        self._day_records[(record.user_id, record.record_date)] = record.model_copy(deep=True)
        return True

    async def list_day_records(
        self,
        user_id: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[DayRecord]:
        records = [
            r for (owner, record_date), r in self._day_records.items()
            if owner == user_id
            and (date_from is None or record_date >= date_from)
            and (date_to is None or record_date <= date_to)
        ]
        records.sort(key=lambda r: r.record_date, reverse=True)
        return [r.model_copy(deep=True) for r in records]

    # Transfers

    async def save_transfer(self, transfer: Transfer) -> bool:
        self._transfers[(transfer.user_id, transfer.id)] = transfer.model_copy(deep=True)
        return True

    async def get_transfer(self, user_id: str, transfer_id: UUID) -> Optional[Transfer]:
        transfer = self._transfers.get((user_id, transfer_id))
        return transfer.model_copy(deep=True) if transfer else None

    async def delete_transfer(self, user_id: str, transfer_id: UUID) -> bool:
        return self._transfers.pop((user_id, transfer_id), None) is not None

    async def list_transfers(self, user_id: str) -> list[Transfer]:
        transfers = [t for (owner, _), t in self._transfers.items() if owner == user_id]
        transfers.sort(key=lambda t: (t.record_date, t.created_at), reverse=True)
        return [t.model_copy(deep=True) for t in transfers]

    # Budgets

    async def upsert_budget(self, budget: Budget) -> Budget:
        key = (budget.user_id, budget.category)
        existing = self._budgets.get(key)
        stored = budget.model_copy(deep=True)
        if existing is not None:
            stored.created_at = existing.created_at
            stored.updated_at = utc_now()
        self._budgets[key] = stored
        return stored.model_copy(deep=True)

    async def get_budget(self, user_id: str, category: str) -> Optional[Budget]:
        budget = self._budgets.get((user_id, category))
        return budget.model_copy(deep=True) if budget else None

    async def list_budgets(self, user_id: str) -> list[Budget]:
        budgets = [b for (owner, _), b in self._budgets.items() if owner == user_id]
        budgets.sort(key=lambda b: b.category)
        return [b.model_copy(deep=True) for b in budgets]

    async def delete_budget(self, user_id: str, category: str) -> bool:
        return self._budgets.pop((user_id, category), None) is not None

    # Chat history

    async def append_chat_turn(self, user_id: str, turn: ChatTurn, keep_last: int) -> None:
        history = self._chat.setdefault(user_id, [])
        history.append(turn.model_copy())
        del history[:-keep_last]

    async def get_chat_history(self, user_id: str, limit: Optional[int] = None) -> list[ChatTurn]:
        history = self._chat.get(user_id, [])
        if limit is not None:
            history = history[-limit:] if limit > 0 else []
        return [t.model_copy() for t in history]


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only list of audit events."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self.events.append(event)
        return True

    async def get_events_by_correlation_id(self, correlation_id: UUID) -> list[AuditEvent]:
        return [e for e in self.events if e.correlation_id == correlation_id]

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        return list(reversed(self.events))[:limit]
