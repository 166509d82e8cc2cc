"""
Budget Tracker

Monthly spending ceilings per (user, category), plus the spend-to-date
views and the advisory alert that runs before an expense is saved.
Alerts never block a save.

"This month" is the calendar month of the store's clock, in the
configured timezone.
"""

import calendar
from datetime import date
from decimal import Decimal
from typing import Optional

import structlog

from chatledger.ledger.errors import InvariantViolationError
from chatledger.ledger.store import LedgerStore
from chatledger.models.ledger import (
    MAX_CATEGORY_LENGTH,
    ZERO,
    Budget,
    BudgetAlert,
    BudgetAlertLevel,
    BudgetStatus,
)


logger = structlog.get_logger(__name__)


def month_bounds(day: date) -> tuple[date, date]:
    """First and last day of the month containing `day`."""
    last = calendar.monthrange(day.year, day.month)[1]
    return day.replace(day=1), day.replace(day=last)


def _percent(part: Decimal, whole: Decimal) -> float:
    if whole <= 0:
        return 0.0
    return float(part / whole * 100)


class BudgetTracker:
    """Budget CRUD and spend-versus-budget reporting."""

    def __init__(self, store: LedgerStore):
        self._store = store
        self._storage = store.storage
        self._settings = store.settings

    async def set_budget(self, user_id: str, category: str, monthly_amount: Optional[Decimal]) -> Budget:
        """
        Create or replace the monthly budget of a category.

        Raises:
            InvariantViolationError: empty or overlong category, or non-positive amount
        """
        category = (category or "").strip()
        if not category:
            raise InvariantViolationError("A budget needs a category")
        if len(category) > MAX_CATEGORY_LENGTH:
            raise InvariantViolationError(
                f"Budget category is longer than {MAX_CATEGORY_LENGTH} characters",
                {"length": len(category)},
            )
        if monthly_amount is None or monthly_amount <= 0:
            raise InvariantViolationError(
                f"Budget amount must be positive, got {monthly_amount}",
                {"category": category},
            )

        budget = await self._storage.upsert_budget(
            Budget(user_id=user_id, category=category, amount=monthly_amount)
        )
        logger.info("budget_set", user_id=user_id, category=category, amount=str(monthly_amount))
        return budget

    async def get_budget(self, user_id: str, category: str) -> Optional[Budget]:
        return await self._storage.get_budget(user_id, category.strip())

    async def list_budgets(self, user_id: str) -> list[Budget]:
        return await self._storage.list_budgets(user_id)

    async def delete_budget(self, user_id: str, category: str) -> bool:
        """Delete a budget. Deleting a missing budget is a no-op; returns whether one existed."""
        existed = await self._storage.delete_budget(user_id, category.strip())
        logger.info("budget_deleted", user_id=user_id, category=category, existed=existed)
        return existed

    async def get_monthly_spending_by_category(self, user_id: str) -> dict[str, Decimal]:
        """This month's expenses per category, transfers excluded."""
        first, last = month_bounds(self._store.today())
        spending: dict[str, Decimal] = {}
        for record in await self._store.list_day_records(user_id, first, last):
            for entry in record.expenses:
                if self._store.is_transfer_entry(entry):
                    continue
                category = entry.category or self._settings.uncategorized_label
                spending[category] = spending.get(category, ZERO) + entry.amount
        return spending

    async def get_budget_status(self, user_id: str) -> list[BudgetStatus]:
        """Every budget joined with this month's spend."""
        spending = await self.get_monthly_spending_by_category(user_id)
        statuses = []
        for budget in await self._storage.list_budgets(user_id):
            spent = spending.get(budget.category, ZERO)
            statuses.append(BudgetStatus(
                category=budget.category,
                budget=budget.amount,
                spent=spent,
                remaining=budget.amount - spent,
                percentage=_percent(spent, budget.amount),
                is_over_budget=spent > budget.amount,
            ))
        return statuses

    async def check_budget_alert(self, user_id: str, category: str, incoming_amount: Decimal) -> BudgetAlert:
        """
        Project an expense that has not been saved yet against its budget.

        Bands:
            over     projected spend above the budget
            warning  projected spend at or above the warning percentage
            none     anything below; no alert
        """
        category = (category or "").strip()
        budget = await self._storage.get_budget(user_id, category) if category else None
        if budget is None:
            return BudgetAlert(category=category)

        spending = await self.get_monthly_spending_by_category(user_id)
        projected = spending.get(category, ZERO) + incoming_amount
        percentage = _percent(projected, budget.amount)
        alert = BudgetAlert(
            category=category,
            budget=budget.amount,
            projected_spent=projected,
            percentage=percentage,
        )

        if projected > budget.amount:
            alert.should_alert = True
            alert.level = BudgetAlertLevel.OVER
            alert.message = (
                f"Over budget for {category}: {projected:,.2f} of {budget.amount:,.2f} "
                f"({percentage:.0f}%), {projected - budget.amount:,.2f} over"
            )
        elif percentage >= self._settings.budget_warning_percent:
            alert.should_alert = True
            alert.level = BudgetAlertLevel.WARNING
            alert.message = (
                f"{category} budget at {percentage:.0f}%: {projected:,.2f} of "
                f"{budget.amount:,.2f}, {budget.amount - projected:,.2f} left"
            )
        return alert
