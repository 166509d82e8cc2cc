"""
Transfer Engine

A transfer moves money between N source legs and M destination legs.
It is expanded into one expense entry per source leg and one income
entry per destination leg, all tagged with the reserved transfer
category and the transfer's id. Globally the pair nets to zero, so
transfers never show up in income/expense totals, but they do move
money between payment-method buckets.

DESIGN DECISION: Legs are validated before anything is written. If
writing the generated entries fails after the Transfer record was
stored, the engine deletes what it wrote and re-raises, so a failed
transfer leaves nothing behind.
"""

from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from chatledger.ledger.errors import InvariantViolationError
from chatledger.ledger.store import LedgerStore
from chatledger.models.ledger import (
    MAX_DESCRIPTION_LENGTH,
    Entry,
    EntrySign,
    Transfer,
    TransferLeg,
    money_sum,
)
from chatledger.services.storage.interface import StorageError


logger = structlog.get_logger(__name__)


class TransferDeletion(BaseModel):
    """What a transfer deletion actually removed."""

    transfer_id: UUID
    entries_removed: int = 0
    dates_touched: list[date] = Field(default_factory=list)
    record_deleted: bool = False


class TransferEngine:
    """Creates and reverses transfers on top of a LedgerStore."""

    def __init__(self, store: LedgerStore):
        self._store = store
        self._storage = store.storage
        self._settings = store.settings

    def validate_legs(self, from_legs: list[TransferLeg], to_legs: list[TransferLeg]) -> Decimal:
        """
        Check a transfer's legs before anything is persisted.

        Returns:
            The transfer total (sum of the source legs)

        Raises:
            InvariantViolationError: a side is empty, a leg is not positive,
                or the sides differ while balance enforcement is on
        """
        if not from_legs or not to_legs:
            raise InvariantViolationError(
                "A transfer needs at least one source and one destination",
                {"from_legs": len(from_legs), "to_legs": len(to_legs)},
            )
        for leg in [*from_legs, *to_legs]:
            if leg.amount <= 0:
                raise InvariantViolationError(
                    f"Transfer leg amounts must be positive, got {leg.amount}",
                    {"payment": leg.payment.label()},
                )

        total_from = money_sum(leg.amount for leg in from_legs)
        total_to = money_sum(leg.amount for leg in to_legs)
        if total_from != total_to:
            if self._settings.enforce_transfer_balance:
                raise InvariantViolationError(
                    f"Transfer sources ({total_from}) and destinations ({total_to}) do not match",
                    {"total_from": str(total_from), "total_to": str(total_to)},
                )
            logger.warning(
                "transfer_legs_unbalanced",
                total_from=str(total_from),
                total_to=str(total_to),
            )
        return total_from

    def _expand(self, transfer: Transfer) -> list[Entry]:
        description = transfer.description or self._settings.transfer_category
        legs = [(EntrySign.EXPENSE, leg) for leg in transfer.from_legs]
        legs += [(EntrySign.INCOME, leg) for leg in transfer.to_legs]
        return [
            Entry(
                sign=sign,
                amount=leg.amount,
                category=self._settings.transfer_category,
                description=description,
                payment=leg.payment,
                transfer_id=transfer.id,
            )
            for sign, leg in legs
        ]

    async def save_transfer(
        self,
        user_id: str,
        from_legs: list[TransferLeg],
        to_legs: list[TransferLeg],
        description: str = "",
        record_date: Optional[date] = None,
    ) -> tuple[UUID, list[UUID]]:
        """
        Persist a transfer and its generated entries.

        Args:
            user_id: Owner of the ledger
            from_legs: Where the money leaves
            to_legs: Where the money arrives
            description: Free text shown on every generated entry
            record_date: Day to book the entries on (today by default)

        Returns:
            (transfer id, ids of all generated entries, sources first)

        Raises:
            InvariantViolationError: legs are invalid or the description is too long; nothing was written
            StorageError: persistence failed; partial writes were undone
        """
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise InvariantViolationError(
                f"Transfer description is longer than {MAX_DESCRIPTION_LENGTH} characters",
                {"length": len(description)},
            )
        total = self.validate_legs(from_legs, to_legs)
        record_date = record_date or self._store.today()

        transfer = Transfer(
            user_id=user_id,
            record_date=record_date,
            description=description,
            from_legs=list(from_legs),
            to_legs=list(to_legs),
            total_amount=total,
        )
        await self._storage.save_transfer(transfer)

        try:
            entry_ids = await self._store.save_entries(user_id, record_date, self._expand(transfer))
        except StorageError as e:
            logger.error(
                "transfer_entries_failed",
                user_id=user_id,
                transfer_id=str(transfer.id),
                error=str(e),
            )
            try:
                await self.delete_transfer(user_id, transfer.id)
            except StorageError as cleanup_error:
                logger.error(
                    "transfer_rollback_failed",
                    user_id=user_id,
                    transfer_id=str(transfer.id),
                    error=str(cleanup_error),
                )
            raise

        logger.info(
            "transfer_saved",
            user_id=user_id,
            transfer_id=str(transfer.id),
            total=str(total),
            entries=len(entry_ids),
        )
        return transfer.id, entry_ids

    async def delete_transfer(self, user_id: str, transfer_id: UUID) -> TransferDeletion:
        """
        Remove every entry of a transfer, on any date, then the Transfer record.

        Each touched DayRecord is recalculated inside its own lock. The
        delete as a whole is not atomic across dates. Deleting a transfer
        that no longer exists is a successful no-op.
        """
        result = TransferDeletion(transfer_id=transfer_id)
        for record in await self._store.list_day_records(user_id):
            if not record.has_transfer(transfer_id):
                continue
            removed = await self._store.remove_transfer_entries(user_id, record.record_date, transfer_id)
            if removed:
                result.entries_removed += removed
                result.dates_touched.append(record.record_date)

        result.record_deleted = await self._storage.delete_transfer(user_id, transfer_id)
        logger.info(
            "transfer_deleted",
            user_id=user_id,
            transfer_id=str(transfer_id),
            entries_removed=result.entries_removed,
            record_deleted=result.record_deleted,
        )
        return result

    async def get_transfer(self, user_id: str, transfer_id: UUID) -> Optional[Transfer]:
        return await self._storage.get_transfer(user_id, transfer_id)

    async def list_transfers(self, user_id: str) -> list[Transfer]:
        return await self._storage.list_transfers(user_id)
