"""Tests for the Transfer Engine."""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from chatledger.config.settings import LedgerSettings
from chatledger.ledger.errors import InvariantViolationError
from chatledger.ledger.store import LedgerStore
from chatledger.ledger.transfers import TransferEngine
from chatledger.models.ledger import EntrySign, PaymentMethodRef
from chatledger.services.storage.interface import StorageConnectionError
from chatledger.services.storage.memory import InMemoryLedgerStorage

from conftest import TODAY, USER, bank, card, expense, income, leg, run


def net_by_label(store) -> dict:
    return {b.payment.label(): b.net_balance for b in run(store.get_balance_by_payment_method(USER))}


class FailingEntriesStorage(InMemoryLedgerStorage):
    """Accepts the Transfer record, then fails writing the day record."""

    async def save_day_record(self, record):
        raise StorageConnectionError("sheet unavailable", "save_day_record")


class TestSaveTransfer:
    """Tests for creating transfers."""

    def test_bank_to_bank(self, store, transfers):
        """Test one leg each side produces an expense and an income entry."""
        transfer_id, entry_ids = run(transfers.save_transfer(
            USER,
            [leg(1000, bank("BankA"))],
            [leg(1000, bank("BankB"))],
            "savings",
        ))
        assert len(entry_ids) == 2

        record = run(store.get_day_record(USER, TODAY))
        out, = record.expenses
        into, = record.incomes
        assert out.id == entry_ids[0] and into.id == entry_ids[1]
        assert out.category == into.category == "transfer"
        assert out.transfer_id == into.transfer_id == transfer_id
        assert out.payment == bank("BankA")
        assert into.description == "savings"

        saved = run(transfers.get_transfer(USER, transfer_id))
        assert saved.total_amount == Decimal("1000")
        assert len(saved.from_legs) == len(saved.to_legs) == 1

    def test_zero_sum(self, store, transfers):
        """Test a transfer leaves the balance summary alone but moves method balances."""
        run(store.save_entry(USER, TODAY, income(5000, payment=bank("BankA"))))
        run(store.save_entry(USER, TODAY, expense(150)))
        summary_before = run(store.get_balance_summary(USER))
        methods_before = net_by_label(store)

        run(transfers.save_transfer(
            USER,
            [leg(600, bank("BankA")), leg(400, PaymentMethodRef.cash())],
            [leg(1000, card("Visa"))],
        ))

        assert run(store.get_balance_summary(USER)) == summary_before
        methods_after = net_by_label(store)
        assert methods_after["bank:BankA"] - methods_before["bank:BankA"] == Decimal("-600")
        assert methods_after["cash"] - methods_before["cash"] == Decimal("-400")
        assert methods_after["creditCard:Visa"] == Decimal("1000")
        assert sum(methods_after.values(), Decimal("0")) == sum(methods_before.values(), Decimal("0"))

    def test_entries_on_given_date(self, store, transfers):
        """Test booking a transfer on another day."""
        day = TODAY - timedelta(days=5)
        run(transfers.save_transfer(USER, [leg(10, bank("A"))], [leg(10, bank("B"))], record_date=day))
        assert run(store.get_day_record(USER, TODAY)) is None
        assert len(run(store.get_day_record(USER, day)).entries) == 2

    @pytest.mark.parametrize("from_legs, to_legs", [
        ([], [leg(10, bank("B"))]),
        ([leg(10, bank("A"))], []),
        ([leg(0, bank("A"))], [leg(0, bank("B"))]),
        ([leg(-5, bank("A"))], [leg(-5, bank("B"))]),
        ([leg(100, bank("A"))], [leg(90, bank("B"))]),
    ])
    def test_invalid_legs_rejected(self, store, transfers, storage, from_legs, to_legs):
        """Test invalid transfers are rejected before anything is written."""
        with pytest.raises(InvariantViolationError):
            run(transfers.save_transfer(USER, from_legs, to_legs))
        assert run(storage.list_transfers(USER)) == []
        assert run(store.list_day_records(USER)) == []

    def test_unbalanced_allowed_when_not_enforced(self, storage, clock):
        """Test the permissive mode only logs a mismatch."""
        store = LedgerStore(storage, LedgerSettings(enforce_transfer_balance=False), clock)
        engine = TransferEngine(store)
        transfer_id, entry_ids = run(engine.save_transfer(USER, [leg(100, bank("A"))], [leg(90, bank("B"))]))
        assert len(entry_ids) == 2
        assert run(engine.get_transfer(USER, transfer_id)).total_amount == Decimal("100")

    def test_overlong_description_rejected(self, store, transfers, storage):
        """Test a description the ledger cannot store is rejected up front."""
        with pytest.raises(InvariantViolationError):
            run(transfers.save_transfer(USER, [leg(10, bank("A"))], [leg(10, bank("B"))], "d" * 501))
        assert run(storage.list_transfers(USER)) == []
        assert run(store.list_day_records(USER)) == []

    def test_failed_entries_roll_back_transfer(self, clock, settings):
        """Test a storage failure leaves no Transfer record behind."""
        storage = FailingEntriesStorage()
        engine = TransferEngine(LedgerStore(storage, settings, clock))
        with pytest.raises(StorageConnectionError):
            run(engine.save_transfer(USER, [leg(10, bank("A"))], [leg(10, bank("B"))]))
        assert run(storage.list_transfers(USER)) == []


class TestDeleteTransfer:
    """Tests for reversing transfers."""

    def test_reversal_restores_everything(self, store, transfers):
        """Test save then delete restores totals and method balances."""
        run(store.save_entry(USER, TODAY, income(2000, payment=bank("BankA"))))
        record_before = run(store.get_day_record(USER, TODAY))
        methods_before = net_by_label(store)

        transfer_id, _ = run(transfers.save_transfer(USER, [leg(1000, bank("BankA"))], [leg(1000, bank("BankB"))]))
        deletion = run(transfers.delete_transfer(USER, transfer_id))

        assert deletion.entries_removed == 2
        assert deletion.dates_touched == [TODAY]
        assert deletion.record_deleted is True
        record_after = run(store.get_day_record(USER, TODAY))
        assert record_after.total_income == record_before.total_income
        assert record_after.total_expense == record_before.total_expense
        methods_after = {k: v for k, v in net_by_label(store).items() if v != 0}
        assert methods_after == methods_before
        assert run(transfers.get_transfer(USER, transfer_id)) is None

    def test_delete_spans_dates(self, store, transfers, clock):
        """Test entries are found on whichever day they were booked."""
        transfer_id, _ = run(transfers.save_transfer(USER, [leg(50, bank("A"))], [leg(50, bank("B"))]))
        clock.advance(3)
        deletion = run(transfers.delete_transfer(USER, transfer_id))
        assert deletion.entries_removed == 2
        assert deletion.dates_touched == [TODAY]

    def test_delete_keeps_other_entries(self, store, transfers):
        """Test only the transfer's own entries are removed."""
        keep = run(store.save_entry(USER, TODAY, expense(30, payment=bank("A"))))
        transfer_id, _ = run(transfers.save_transfer(USER, [leg(50, bank("A"))], [leg(50, bank("B"))]))
        run(transfers.delete_transfer(USER, transfer_id))

        record = run(store.get_day_record(USER, TODAY))
        assert [e.id for e in record.entries] == [keep]
        assert record.list_for(EntrySign.EXPENSE)[0].amount == Decimal("30")

    def test_delete_is_idempotent(self, transfers):
        """Test deleting a missing transfer is a no-op."""
        deletion = run(transfers.delete_transfer(USER, uuid4()))
        assert deletion.entries_removed == 0
        assert deletion.dates_touched == []
        assert deletion.record_deleted is False

    def test_list_transfers(self, transfers):
        """Test transfers are listed per user."""
        run(transfers.save_transfer(USER, [leg(1, bank("A"))], [leg(1, bank("B"))]))
        run(transfers.save_transfer(USER, [leg(2, bank("A"))], [leg(2, bank("B"))]))
        run(transfers.save_transfer("other", [leg(3, bank("A"))], [leg(3, bank("B"))]))
        assert len(run(transfers.list_transfers(USER))) == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
