"""
Ledger Store

Owns the per-user, per-day records and everything derived from them:
entry mutations, total recalculation and balance views.

DESIGN DECISION: Every mutation of a DayRecord is a read-modify-write of
the whole record performed under a per-(user, date) lock, and
every structural edit ends with `DayRecord.recompute_totals()`. The
cached totals are never incremented in place, so they cannot drift.

Update and delete by entry id only look at *today's* record. Older
entries are corrected by deleting the transfer they belong to or by a
new compensating entry.
"""

import asyncio
import threading
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import AsyncIterator, Callable, Optional, TypeVar
from uuid import UUID

import structlog

from chatledger.config.settings import LedgerSettings, get_settings
from chatledger.ledger.errors import InvariantViolationError
from chatledger.models.ledger import (
    ZERO,
    BalanceSummary,
    DayRecord,
    Entry,
    NetWorth,
    PaymentBalance,
    PaymentMethod,
    PaymentMethodRef,
)
from chatledger.services.storage.interface import LedgerStorageInterface


logger = structlog.get_logger(__name__)

T = TypeVar("T")

# How long a writer waits between attempts on a held day lock
LOCK_POLL_SECONDS = 0.005


class DayLocks:
    """
    Registry of per-(user, date) write locks.

    The locks are threading locks, so they also hold between Streamlit
    sessions, which share one LedgerStore but each run their own event
    loop on their own thread. A waiting coroutine polls with a short
    sleep instead of blocking its loop.

    A key's lock lives only while some writer holds or waits for it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, number of writers holding or waiting]
        self._slots: dict[tuple[str, date], list] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._slots)

    @asynccontextmanager
    async def hold(self, key: tuple[str, date]) -> AsyncIterator[None]:
        with self._guard:
            slot = self._slots.setdefault(key, [threading.Lock(), 0])
            slot[1] += 1
        lock = slot[0]
        try:
            while not lock.acquire(blocking=False):
                await asyncio.sleep(LOCK_POLL_SECONDS)
            try:
                yield
            finally:
                lock.release()
        finally:
            with self._guard:
                slot[1] -= 1
                if slot[1] == 0:
                    del self._slots[key]


class LedgerStore:
    """
    Ledger Store operations over a storage backend.

    Usage:
        store = LedgerStore(storage)
        entry_id = await store.save_entry(user_id, store.today(), entry)
        summary = await store.get_balance_summary(user_id)
    """

    def __init__(
        self,
        storage: LedgerStorageInterface,
        settings: Optional[LedgerSettings] = None,
        clock: Optional[Callable[[], date]] = None,
    ):
        """
        Args:
            storage: Backend holding the day records
            settings: Ledger settings, loaded from the environment if omitted
            clock: Returns "today"; defaults to the configured timezone's date
        """
        self._storage = storage
        self._settings = settings or get_settings().ledger
        self._clock = clock or self._local_today
        self._locks = DayLocks()

    def _local_today(self) -> date:
        return datetime.now(self._settings.tzinfo).date()

    @property
    def storage(self) -> LedgerStorageInterface:
        return self._storage

    @property
    def settings(self) -> LedgerSettings:
        return self._settings

    @property
    def transfer_category(self) -> str:
        return self._settings.transfer_category

    def today(self) -> date:
        return self._clock()

    def lock_for(self, user_id: str, record_date: date):
        """Async context manager serializing all writes to one DayRecord."""
        return self._locks.hold((user_id, record_date))

    def is_transfer_entry(self, entry: Entry) -> bool:
        return entry.category == self.transfer_category

    async def _mutate(
        self,
        user_id: str,
        record_date: date,
        mutation: Callable[[DayRecord], T],
        create: bool = False,
    ) -> Optional[T]:
        """
        Apply `mutation` to one DayRecord inside its critical section.

        The record is recomputed and saved only when the mutation
        reports a change (returns something other than None/0/False).
        Returns None when the record does not exist and `create` is off.
        """
        async with self.lock_for(user_id, record_date):
            record = await self._storage.get_day_record(user_id, record_date)
            if record is None:
                if not create:
                    return None
                record = DayRecord(user_id=user_id, record_date=record_date)
            result = mutation(record)
            if result:
                record.recompute_totals()
                await self._storage.save_day_record(record)
            return result

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def save_entry(self, user_id: str, record_date: date, entry: Entry) -> UUID:
        """
        Append an entry to the DayRecord of (user_id, record_date).

        The record is created on the first entry of a day. There is no
        uniqueness constraint on entry content.

        Raises:
            InvariantViolationError: amount is not positive
            StorageError: the record could not be read or written
        """
        ids = await self.save_entries(user_id, record_date, [entry])
        return ids[0]

    async def save_entries(self, user_id: str, record_date: date, entries: list[Entry]) -> list[UUID]:
        """Append several entries to one DayRecord in a single write."""
        for entry in entries:
            if entry.amount <= 0:
                raise InvariantViolationError(
                    f"Entry amount must be positive, got {entry.amount}",
                    {"entry_id": str(entry.id)},
                )
        if not entries:
            return []

        def append(record: DayRecord) -> list[UUID]:
            for entry in entries:
                record.list_for(entry.sign).append(entry)
            return [entry.id for entry in entries]

        ids = await self._mutate(user_id, record_date, append, create=True)
        logger.info(
            "entries_saved",
            user_id=user_id,
            date=record_date.isoformat(),
            entry_ids=[str(i) for i in ids],
        )
        return ids

    async def delete_entry(self, user_id: str, entry_id: UUID) -> bool:
        """
        Remove an entry from today's record.

        Deleting an id that is not there is a successful no-op.

        Returns:
            True if an entry was removed
        """
        return await self.delete_entries(user_id, [entry_id]) == 1

    async def delete_entries(self, user_id: str, entry_ids: list[UUID]) -> int:
        """Remove several entries from today's record; returns how many were removed."""
        today = self.today()

        def remove(record: DayRecord) -> int:
            return sum(1 for entry_id in entry_ids if record.remove_entry(entry_id) is not None)

        removed = await self._mutate(user_id, today, remove) or 0
        logger.info(
            "entries_deleted",
            user_id=user_id,
            date=today.isoformat(),
            requested=len(entry_ids),
            removed=removed,
        )
        return removed

    def _locate_for_update(self, record: DayRecord, entry_id: UUID) -> Optional[Entry]:
        # Income is searched before expense
        entry = record.find_entry(entry_id, income_first=True)
        if entry is not None and entry.transfer_id is not None:
            raise InvariantViolationError(
                "Entries created by a transfer cannot be edited; delete the transfer instead",
                {"entry_id": str(entry_id), "transfer_id": str(entry.transfer_id)},
            )
        return entry

    async def update_entry_amount(self, user_id: str, entry_id: UUID, new_amount: Decimal) -> Optional[Entry]:
        """
        Change the amount of one of today's entries.

        Returns:
            The updated entry, or None if today has no such entry

        Raises:
            InvariantViolationError: amount is not positive, or the entry
                belongs to a transfer
        """
        if new_amount <= 0:
            raise InvariantViolationError(
                f"Entry amount must be positive, got {new_amount}",
                {"entry_id": str(entry_id)},
            )

        def amend(record: DayRecord) -> Optional[Entry]:
            entry = self._locate_for_update(record, entry_id)
            if entry is not None:
                entry.amount = new_amount
            return entry

        updated = await self._mutate(user_id, self.today(), amend)
        if updated is not None:
            logger.info("entry_amount_updated", user_id=user_id, entry_id=str(entry_id), amount=str(new_amount))
        return updated

    async def update_entry_payment_method(
        self,
        user_id: str,
        entry_id: UUID,
        payment: PaymentMethodRef,
    ) -> Optional[Entry]:
        """
        Change the payment method of one of today's entries.

        Returns:
            The updated entry, or None if today has no such entry
        """
        def amend(record: DayRecord) -> Optional[Entry]:
            entry = self._locate_for_update(record, entry_id)
            if entry is not None:
                entry.payment = payment
            return entry

        updated = await self._mutate(user_id, self.today(), amend)
        if updated is not None:
            logger.info(
                "entry_payment_updated",
                user_id=user_id,
                entry_id=str(entry_id),
                payment=payment.label(),
            )
        return updated

    async def recalculate_totals(self, user_id: str, record_date: date) -> Optional[DayRecord]:
        """
        Re-sum both lists of a DayRecord and overwrite its cached totals.

        Returns:
            The recalculated record, or None if it does not exist
        """
        async with self.lock_for(user_id, record_date):
            record = await self._storage.get_day_record(user_id, record_date)
            if record is None:
                return None
            record.recompute_totals()
            await self._storage.save_day_record(record)
            return record

    async def remove_transfer_entries(self, user_id: str, record_date: date, transfer_id: UUID) -> int:
        """Drop every entry of one transfer from one DayRecord."""
        return await self._mutate(
            user_id,
            record_date,
            lambda record: record.remove_transfer_entries(transfer_id),
        ) or 0

    # =========================================================================
    # READS
    # =========================================================================

    async def get_day_record(self, user_id: str, record_date: date) -> Optional[DayRecord]:
        return await self._storage.get_day_record(user_id, record_date)

    async def list_day_records(
        self,
        user_id: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[DayRecord]:
        """A user's records, newest date first."""
        return await self._storage.list_day_records(user_id, date_from, date_to)

    async def get_entry(self, user_id: str, entry_id: UUID) -> Optional[Entry]:
        """Look up one of today's entries (expenses searched first)."""
        record = await self._storage.get_day_record(user_id, self.today())
        if record is None:
            return None
        return record.find_entry(entry_id, income_first=False)

    async def get_last_entry(self, user_id: str) -> Optional[Entry]:
        """Today's most recent expense, else today's most recent income."""
        record = await self._storage.get_day_record(user_id, self.today())
        if record is None:
            return None
        if record.expenses:
            return record.expenses[-1]
        if record.incomes:
            return record.incomes[-1]
        return None

    async def get_balance_summary(self, user_id: str) -> BalanceSummary:
        """
        Income and expense totals over every record, transfers excluded.
        """
        today = self.today()
        summary = BalanceSummary()
        for record in await self._storage.list_day_records(user_id):
            income = sum(
                (e.amount for e in record.incomes if not self.is_transfer_entry(e)), ZERO
            )
            expense = sum(
                (e.amount for e in record.expenses if not self.is_transfer_entry(e)), ZERO
            )
            summary.total_income += income
            summary.total_expense += expense
            if record.record_date == today:
                summary.today_income += income
                summary.today_expense += expense

        summary.balance = summary.total_income - summary.total_expense
        summary.today_balance = summary.today_income - summary.today_expense
        return summary

    async def get_balance_by_payment_method(self, user_id: str) -> list[PaymentBalance]:
        """
        Where the money sits: net balance per (method, sub-identifier).

        Transfer entries are included here, since they are what moves
        money between methods.
        """
        groups: dict[PaymentMethodRef, PaymentBalance] = {}
        for record in await self._storage.list_day_records(user_id):
            for entry in record.entries:
                group = groups.get(entry.payment)
                if group is None:
                    group = groups[entry.payment] = PaymentBalance(payment=entry.payment)
                if entry.is_income:
                    group.total_income += entry.amount
                else:
                    group.total_expense += entry.amount
                group.net_balance += entry.signed_amount

        return sorted(groups.values(), key=lambda g: g.payment.sort_key)

    async def get_net_worth(self, user_id: str) -> NetWorth:
        """cash + bank + credit card, where card balances are negative when owed."""
        totals: dict[PaymentMethod, Decimal] = defaultdict(lambda: ZERO)
        for balance in await self.get_balance_by_payment_method(user_id):
            totals[balance.method] += balance.net_balance

        worth = NetWorth(
            cash=totals[PaymentMethod.CASH],
            bank=totals[PaymentMethod.BANK],
            credit_card=totals[PaymentMethod.CREDIT_CARD],
        )
        worth.net_worth = worth.cash + worth.bank + worth.credit_card
        return worth
