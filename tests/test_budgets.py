"""Tests for the Budget Tracker."""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from chatledger.ledger.budgets import month_bounds
from chatledger.ledger.errors import InvariantViolationError
from chatledger.models.ledger import BudgetAlertLevel

from conftest import TODAY, USER, bank, expense, income, leg, run


@pytest.fixture
def food_budget(budgets):
    run(budgets.set_budget(USER, "food", Decimal("5000")))
    return budgets


class TestMonthBounds:
    """Tests for month_bounds."""

    def test_regular_month(self):
        """Test a 30-day month."""
        assert month_bounds(date(2024, 6, 15)) == (date(2024, 6, 1), date(2024, 6, 30))

    def test_leap_february(self):
        """Test February of a leap year."""
        assert month_bounds(date(2024, 2, 10)) == (date(2024, 2, 1), date(2024, 2, 29))


class TestBudgetCrud:
    """Tests for setting, reading and deleting budgets."""

    def test_set_and_get(self, budgets):
        """Test a budget round trip."""
        run(budgets.set_budget(USER, " food ", Decimal("5000")))
        budget = run(budgets.get_budget(USER, "food"))
        assert budget.category == "food"
        assert budget.amount == Decimal("5000")

    def test_set_replaces_amount(self, budgets):
        """Test setting again overwrites the amount but keeps created_at."""
        first = run(budgets.set_budget(USER, "food", Decimal("5000")))
        second = run(budgets.set_budget(USER, "food", Decimal("6000")))
        assert second.amount == Decimal("6000")
        assert second.created_at == first.created_at
        assert len(run(budgets.list_budgets(USER))) == 1

    @pytest.mark.parametrize("category, amount", [
        ("food", Decimal("0")),
        ("food", Decimal("-10")),
        ("food", None),
        ("  ", Decimal("100")),
        ("c" * 101, Decimal("100")),
    ])
    def test_invalid_budgets_rejected(self, budgets, category, amount):
        """Test non-positive amounts, empty and overlong categories are rejected."""
        with pytest.raises(InvariantViolationError):
            run(budgets.set_budget(USER, category, amount))
        assert run(budgets.list_budgets(USER)) == []

    def test_delete_is_idempotent(self, food_budget):
        """Test deleting twice."""
        assert run(food_budget.delete_budget(USER, "food")) is True
        assert run(food_budget.delete_budget(USER, "food")) is False
        assert run(food_budget.get_budget(USER, "food")) is None


class TestMonthlySpending:
    """Tests for spend-to-date."""

    def test_current_month_only(self, store, budgets):
        """Test last month's expenses and incomes are ignored."""
        run(store.save_entry(USER, TODAY, expense(100)))
        run(store.save_entry(USER, date(2024, 6, 1), expense(50)))
        run(store.save_entry(USER, date(2024, 5, 31), expense(999)))
        run(store.save_entry(USER, TODAY, income(5000, "food")))

        spending = run(budgets.get_monthly_spending_by_category(USER))
        assert spending == {"food": Decimal("150")}

    def test_transfers_excluded(self, store, budgets, transfers):
        """Test transfer entries never count as spending."""
        run(transfers.save_transfer(USER, [leg(700, bank("A"))], [leg(700, bank("B"))]))
        assert run(budgets.get_monthly_spending_by_category(USER)) == {}

    def test_empty_category_is_other(self, store, budgets):
        """Test uncategorized expenses are grouped."""
        run(store.save_entry(USER, TODAY, expense(20, category="")))
        assert run(budgets.get_monthly_spending_by_category(USER)) == {"other": Decimal("20")}

    def test_budget_status(self, store, food_budget):
        """Test the status of each budget."""
        run(food_budget.set_budget(USER, "fun", Decimal("100")))
        run(store.save_entry(USER, TODAY, expense(1000)))
        run(store.save_entry(USER, TODAY, expense(150, "fun")))

        statuses = {s.category: s for s in run(food_budget.get_budget_status(USER))}
        assert statuses["food"].spent == Decimal("1000")
        assert statuses["food"].remaining == Decimal("4000")
        assert statuses["food"].percentage == pytest.approx(20.0)
        assert statuses["food"].is_over_budget is False
        assert statuses["fun"].is_over_budget is True
        assert statuses["fun"].remaining == Decimal("-50")


class TestBudgetAlerts:
    """Tests for check_budget_alert."""

    @pytest.fixture
    def spent_4200(self, store, food_budget):
        run(store.save_entry(USER, TODAY - timedelta(days=3), expense(4200)))
        return food_budget

    def test_warning_band(self, spent_4200):
        """Test 4200 + 300 of 5000 is a warning at 90%."""
        alert = run(spent_4200.check_budget_alert(USER, "food", Decimal("300")))
        assert alert.should_alert is True
        assert alert.level == BudgetAlertLevel.WARNING
        assert alert.projected_spent == Decimal("4500")
        assert alert.percentage == pytest.approx(90.0)
        assert "90%" in alert.message

    def test_over_budget(self, spent_4200):
        """Test 4200 + 900 of 5000 is over budget."""
        alert = run(spent_4200.check_budget_alert(USER, "food", Decimal("900")))
        assert alert.should_alert is True
        assert alert.level == BudgetAlertLevel.OVER
        assert alert.percentage == pytest.approx(102.0)
        assert "Over budget" in alert.message

    def test_small_expense_still_warns(self, spent_4200):
        """Test 4200 + 100 is still in the warning band."""
        alert = run(spent_4200.check_budget_alert(USER, "food", Decimal("100")))
        assert alert.should_alert is True
        assert alert.level == BudgetAlertLevel.WARNING

    def test_below_threshold_is_silent(self, store, food_budget):
        """Test 3000 + 100 of 5000 does not alert."""
        run(store.save_entry(USER, TODAY, expense(3000)))
        alert = run(food_budget.check_budget_alert(USER, "food", Decimal("100")))
        assert alert.should_alert is False
        assert alert.level == BudgetAlertLevel.NONE
        assert alert.message == ""
        assert alert.percentage == pytest.approx(62.0)

    def test_boundaries(self, store, food_budget):
        """Test exactly 80% warns and exactly 100% is not yet over."""
        run(store.save_entry(USER, TODAY, expense(3900)))
        at_threshold = run(food_budget.check_budget_alert(USER, "food", Decimal("100")))
        assert at_threshold.level == BudgetAlertLevel.WARNING

        at_budget = run(food_budget.check_budget_alert(USER, "food", Decimal("1100")))
        assert at_budget.level == BudgetAlertLevel.WARNING

    def test_no_budget(self, budgets):
        """Test categories without a budget never alert."""
        alert = run(budgets.check_budget_alert(USER, "travel", Decimal("1000000")))
        assert alert.should_alert is False
        assert alert.budget is None

    def test_alert_does_not_save(self, store, spent_4200):
        """Test the check is advisory only."""
        run(spent_4200.check_budget_alert(USER, "food", Decimal("900")))
        assert run(spent_4200.get_monthly_spending_by_category(USER)) == {"food": Decimal("4200")}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
