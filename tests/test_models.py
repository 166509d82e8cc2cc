"""
Tests for ChatLedger models

Test strategy:
1. Unit tests for individual components (models, intent parsing)
2. Integration tests for flows (in-memory storage, fake classifier)
3. No real API calls in tests
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from chatledger.ledger.errors import MalformedIntentError
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
    NewEntriesIntent,
    SearchIntent,
    TransferIntent,
    UpdateField,
    UpdateIntent,
    coerce_amount,
    parse_intent,
    strip_code_fences,
)
from chatledger.models.ledger import (
    DayRecord,
    Entry,
    EntrySign,
    PaymentMethod,
    PaymentMethodRef,
)


class TestPaymentModels:
    """Tests for payment method models."""

    def test_coerce_legacy_integers(self):
        """Test legacy usetype integers map to methods."""
        assert PaymentMethod.coerce(0) == PaymentMethod.CASH
        assert PaymentMethod.coerce(1) == PaymentMethod.CREDIT_CARD
        assert PaymentMethod.coerce(2) == PaymentMethod.BANK

    def test_coerce_string_aliases(self):
        """Test the spellings classifiers produce."""
        assert PaymentMethod.coerce("credit_card") == PaymentMethod.CREDIT_CARD
        assert PaymentMethod.coerce(" Bank ") == PaymentMethod.BANK
        assert PaymentMethod.coerce("creditCard") == PaymentMethod.CREDIT_CARD

    def test_coerce_rejects_unknown(self):
        """Test unknown methods and booleans are rejected."""
        with pytest.raises(ValueError):
            PaymentMethod.coerce("crypto")
        with pytest.raises(ValueError):
            PaymentMethod.coerce(True)
        with pytest.raises(ValueError):
            PaymentMethod.coerce(7)

    def test_cash_has_no_sub_identifier(self):
        """Test cash drops any sub-identifier."""
        ref = PaymentMethodRef(method="cash", sub_identifier="Wallet")
        assert ref.sub_identifier == ""
        assert ref.label() == "cash"

    def test_label_and_equality(self):
        """Test refs are hashable value objects."""
        a = PaymentMethodRef(method=PaymentMethod.BANK, sub_identifier="BankA")
        b = PaymentMethodRef(method="bank", sub_identifier="BankA")
        assert a == b
        assert {a: 1}[b] == 1
        assert a.label() == "bank:BankA"

    def test_sort_key_orders_cash_bank_card(self):
        """Test grouping order is cash, bank, credit card."""
        refs = [
            PaymentMethodRef(method=PaymentMethod.CREDIT_CARD, sub_identifier="Visa"),
            PaymentMethodRef(method=PaymentMethod.BANK, sub_identifier="BankB"),
            PaymentMethodRef.cash(),
            PaymentMethodRef(method=PaymentMethod.BANK, sub_identifier="bankA"),
        ]
        ordered = sorted(refs, key=lambda r: r.sort_key)
        assert [r.label() for r in ordered] == ["cash", "bank:bankA", "bank:BankB", "creditCard:Visa"]


class TestEntryModels:
    """Tests for Entry and DayRecord."""

    def test_entry_rejects_negative_amount(self):
        """Test that negative amounts are rejected."""
        with pytest.raises(ValueError):
            Entry(sign=EntrySign.EXPENSE, amount=Decimal("-100"))

    def test_signed_amount(self):
        """Test the signed contribution of an entry."""
        assert Entry(sign=EntrySign.EXPENSE, amount=Decimal("150")).signed_amount == Decimal("-150")
        assert Entry(sign=EntrySign.INCOME, amount=Decimal("150")).signed_amount == Decimal("150")

    def test_matches_keyword_case_insensitive(self):
        """Test keyword matching across description, category and merchant."""
        entry = Entry(sign=EntrySign.EXPENSE, amount=Decimal("80"), category="food", merchant="Starbucks")
        assert entry.matches_keyword("STAR")
        assert entry.matches_keyword("Foo")
        assert not entry.matches_keyword("rent")

    def test_recompute_totals(self):
        """Test totals are derived from the lists."""
        record = DayRecord(user_id="u", record_date=date(2024, 6, 15))
        record.incomes.append(Entry(sign=EntrySign.INCOME, amount=Decimal("1000")))
        record.expenses.append(Entry(sign=EntrySign.EXPENSE, amount=Decimal("150.50")))
        record.expenses.append(Entry(sign=EntrySign.EXPENSE, amount=Decimal("49.50")))
        assert not record.totals_consistent

        record.recompute_totals()
        assert record.total_income == Decimal("1000")
        assert record.total_expense == Decimal("200.00")
        assert record.totals_consistent

    def test_remove_entry(self):
        """Test removing from whichever list holds the entry."""
        record = DayRecord(user_id="u", record_date=date(2024, 6, 15))
        entry = Entry(sign=EntrySign.INCOME, amount=Decimal("10"))
        record.incomes.append(entry)
        assert record.remove_entry(entry.id) == entry
        assert record.remove_entry(entry.id) is None
        assert record.incomes == []

    def test_find_entry_search_order(self):
        """Test income-first and expense-first lookups."""
        shared = uuid4()
        record = DayRecord(user_id="u", record_date=date(2024, 6, 15))
        record.incomes.append(Entry(id=shared, sign=EntrySign.INCOME, amount=Decimal("1")))
        record.expenses.append(Entry(id=shared, sign=EntrySign.EXPENSE, amount=Decimal("2")))
        assert record.find_entry(shared).is_income
        assert not record.find_entry(shared, income_first=False).is_income


class TestIntentParsing:
    """Tests for parse_intent and the wire formats it accepts."""

    def test_new_entries(self):
        """Test a plain new intent."""
        intent = parse_intent({
            "action": "new",
            "entries": [{
                "amount": 150,
                "type": "expense",
                "category": "food",
                "description": "lunch",
                "paymentMethod": "cash",
            }],
            "message": "Saved!",
        })
        assert isinstance(intent, NewEntriesIntent)
        draft = intent.entries[0]
        assert draft.amount == Decimal("150")
        assert draft.sign == EntrySign.EXPENSE
        assert draft.category == "food"
        assert draft.payment == PaymentMethodRef.cash()
        assert intent.message == "Saved!"

    def test_legacy_transactions_with_usetype(self):
        """Test the transactions/usetype/bankname format."""
        intent = parse_intent({
            "action": "new",
            "transactions": [{
                "amount": "30,000",
                "type": "income",
                "category": "salary",
                "usetype": 2,
                "bankname": "BankA",
            }],
        })
        draft = intent.entries[0]
        assert draft.amount == Decimal("30000")
        assert draft.sign == EntrySign.INCOME
        assert draft.payment == PaymentMethodRef(method=PaymentMethod.BANK, sub_identifier="BankA")

    def test_card_name_implies_method(self):
        """Test a bare card name without a method."""
        draft = EntryDraft.model_validate({"amount": 99, "creditcardname": "Visa"})
        assert draft.payment.method == PaymentMethod.CREDIT_CARD
        assert draft.payment.sub_identifier == "Visa"

    def test_unusable_drafts(self):
        """Test zero, negative and non-numeric amounts are parsed but unusable."""
        intent = parse_intent({
            "action": "new",
            "entries": [{"amount": 0}, {"amount": -5}, {"amount": "abc"}, {"amount": None}, {"amount": 12.5}],
        })
        assert [d.is_usable for d in intent.entries] == [False, False, False, False, True]
        assert intent.entries[2].amount is None

    def test_update_amount_legacy_keys(self):
        """Test update_field/update_value."""
        intent = parse_intent({"action": "update", "update_field": "amount", "update_value": "200"})
        assert isinstance(intent, UpdateIntent)
        assert intent.field == UpdateField.AMOUNT
        assert intent.amount == Decimal("200")
        assert intent.entry_id is None

    def test_update_payment_method(self):
        """Test an update carrying a payment object."""
        intent = parse_intent({
            "action": "update",
            "field": "paymentMethod",
            "value": {"paymentMethod": "bank", "subIdentifier": "BankB"},
        })
        assert intent.field == UpdateField.PAYMENT_METHOD
        assert intent.payment == PaymentMethodRef(method=PaymentMethod.BANK, sub_identifier="BankB")

    def test_update_legacy_usetype_and_bankname(self):
        """Test legacy usetype and bankname update fields."""
        by_usetype = parse_intent({"action": "update", "update_field": "usetype", "update_value": 1})
        assert by_usetype.payment.method == PaymentMethod.CREDIT_CARD

        by_name = parse_intent({"action": "update", "update_field": "bankname", "update_value": "BankC"})
        assert by_name.field == UpdateField.PAYMENT_METHOD
        assert by_name.payment.label() == "bank:BankC"

    def test_update_method_with_flat_bank_name(self):
        """Test a method value combined with a flat bankname key."""
        intent = parse_intent({"action": "update", "field": "paymentMethod", "value": "bank", "bankname": "BankA"})
        assert intent.payment.label() == "bank:BankA"

    def test_update_built_in_code(self):
        """Test constructing update intents directly from typed values."""
        by_amount = UpdateIntent(field=UpdateField.AMOUNT, amount=Decimal("5"))
        assert by_amount.amount == Decimal("5")

        by_method = UpdateIntent(field=UpdateField.PAYMENT_METHOD, payment=PaymentMethodRef.cash())
        assert by_method.payment == PaymentMethodRef.cash()

    def test_update_with_bad_value_is_malformed(self):
        """Test updates that cannot be applied are rejected at parse time."""
        with pytest.raises(MalformedIntentError):
            parse_intent({"action": "update", "field": "amount", "value": "lots"})
        with pytest.raises(MalformedIntentError):
            parse_intent({"action": "update", "field": "paymentMethod"})
        with pytest.raises(MalformedIntentError):
            parse_intent({"action": "update", "field": "category", "value": "food"})

    def test_nested_transfer(self):
        """Test a transfer wrapped in a transfer object."""
        intent = parse_intent({
            "action": "transfer",
            "transfer": {
                "from": [{"amount": 1000, "paymentMethod": "bank", "subIdentifier": "BankA"}],
                "to": {"amount": "1000", "paymentMethod": "bank", "subIdentifier": "BankB"},
                "description": "rent pot",
            },
        })
        assert isinstance(intent, TransferIntent)
        assert intent.from_legs[0].amount == Decimal("1000")
        assert intent.from_legs[0].payment.label() == "bank:BankA"
        assert intent.to_legs[0].payment.label() == "bank:BankB"
        assert intent.description == "rent pot"

    def test_balance_filter(self):
        """Test the optional balance filter, nested or flat."""
        nested = parse_intent({"action": "balance", "filter": {"paymentMethod": "bank", "subIdentifier": "BankA"}})
        assert isinstance(nested, BalanceIntent)
        assert nested.payment_filter.label() == "bank:BankA"

        flat = parse_intent({"action": "balance", "paymentMethod": "creditCard"})
        assert flat.payment_filter.method == PaymentMethod.CREDIT_CARD

        assert parse_intent({"action": "balance"}).payment_filter is None

    def test_search_variants(self):
        """Test keyword aliases, nested query and non-positive defaults."""
        legacy = parse_intent({"action": "query", "search_query": " coffee "})
        assert isinstance(legacy, SearchIntent)
        assert legacy.keyword == "coffee"

        nested = parse_intent({"action": "search", "query": {"categories": "food", "days": "0", "limit": -5}})
        assert nested.categories == ["food"]
        assert nested.days is None
        assert nested.limit is None

    def test_chart_is_analyze(self):
        """Test the chart action alias."""
        intent = parse_intent({"action": "chart", "days": 7, "groupBy": "Date"})
        assert isinstance(intent, AnalyzeIntent)
        assert intent.days == 7
        assert intent.group_by == AnalysisGroupBy.DATE

    def test_budget_and_export(self):
        """Test nested budget and export payloads."""
        budget = parse_intent({"action": "budget", "budget": {"category": "food", "amount": 5000}})
        assert isinstance(budget, BudgetIntent)
        assert budget.amount == Decimal("5000")
        assert budget.delete is False

        export = parse_intent({"action": "export", "export": {"days": 7}})
        assert isinstance(export, ExportIntent)
        assert export.export_format == ExportFormat.EXCEL
        assert export.days == 7

    def test_fenced_json(self):
        """Test Markdown code fences are stripped."""
        raw = '```json\n{"action": "chat", "message": null}\n```'
        assert strip_code_fences(raw) == '{"action": "chat", "message": null}'
        intent = parse_intent(raw)
        assert isinstance(intent, ChatIntent)
        assert intent.message == ""

    def test_action_is_case_insensitive(self):
        """Test action names are normalized."""
        assert isinstance(parse_intent({"action": " Chat ", "message": "hi"}), ChatIntent)

    @pytest.mark.parametrize("raw", [
        "not json",
        "[1, 2]",
        '{"message": "no action"}',
        '{"action": "fly"}',
        {"action": ""},
        {"action": "new", "entries": [{"amount": 5, "merchant": "m" * 201}]},
        {"action": "budget", "budget": {"category": "c" * 101, "amount": 10}},
    ])
    def test_malformed(self, raw):
        """Test unusable classifier output raises MalformedIntentError."""
        with pytest.raises(MalformedIntentError):
            parse_intent(raw)

    def test_coerce_amount(self):
        """Test amount coercion edge cases."""
        assert coerce_amount("1,250.75") == Decimal("1250.75")
        assert coerce_amount(True) is None
        assert coerce_amount("NaN") is None
        assert coerce_amount("") is None


class TestAuditModels:
    """Tests for audit models."""

    def test_audit_event_creation(self):
        """Test basic audit event creation."""
        event = AuditEvent(
            event_type=AuditEventType.ENTRY_SAVED,
            description="Test event",
        )
        assert event.event_type == AuditEventType.ENTRY_SAVED
        assert event.severity == AuditSeverity.INFO
        assert event.event_id is not None

    def test_entry_saved_builder(self):
        """Test the entry_saved builder."""
        entry_id = uuid4()
        event = AuditEventBuilder.entry_saved(
            user_id="u",
            entry_id=entry_id,
            sign=-1,
            amount=Decimal("150"),
            category="food",
        )
        assert event.entity_id == entry_id
        assert event.is_user_action is True
        assert "expense 150.00" in event.description

    def test_intent_malformed_builder(self):
        """Test the intent_malformed builder."""
        event = AuditEventBuilder.intent_malformed(user_id="u", error="bad json")
        assert event.severity == AuditSeverity.WARNING
        assert event.error_message == "bad json"

    def test_to_sheets_row(self):
        """Test conversion to spreadsheet row."""
        event = AuditEventBuilder.budget_set(user_id="u", category="food", amount=Decimal("5000"))
        row = event.to_sheets_row()
        assert len(row) == 12
        assert row[2] == "budget_set"
        assert row[4] == "u"
        assert row[11] == "True"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
