"""
Query Execution Engine

DESIGN DECISION: Query execution is DETERMINISTIC.
The classifier turns a question into a SearchIntent or AnalyzeIntent.
This engine executes that intent on actual stored data.

At no point does the classifier answer questions itself. Any numbers
shown to the user come from what this engine returns from storage.

All operations are pure reads over the current store state.
"""

from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Optional, Union

from chatledger.ledger.store import LedgerStore
from chatledger.models.intent import AnalysisGroupBy, AnalyzeIntent, SearchIntent
from chatledger.models.ledger import (
    ZERO,
    AnalysisGroup,
    AnalysisResult,
    Entry,
    PaymentMethod,
    QueryResult,
    SearchHit,
)


class QueryExecutionError(Exception):
    """Error during query execution."""
    pass


class QueryExecutor:
    """
    Executes searches and analyses against the ledger.

    GUARANTEES:
    - Only returns real data from storage
    - Never invents or estimates
    - Clear "no data found" if nothing matches
    """

    def __init__(self, store: LedgerStore):
        self._store = store
        self._settings = store.settings

    async def execute(
        self,
        user_id: str,
        intent: Union[SearchIntent, AnalyzeIntent],
    ) -> Union[QueryResult, AnalysisResult]:
        """
        Run a search or analysis intent.

        A search uses the keyword when there is one, else the categories,
        else falls back to the recent entries.
        """
        if isinstance(intent, SearchIntent):
            if intent.keyword:
                hits = await self.search_by_keyword(user_id, intent.keyword, intent.limit)
                return self._build_result(
                    "keyword",
                    f"Entries matching '{intent.keyword}'",
                    hits,
                )
            elif intent.categories:
                date_from, date_to = self.lookback_window(intent.days)
                hits = await self.search_by_categories(user_id, intent.categories, intent.days, intent.limit)
                return self._build_result(
                    "categories",
                    f"Entries in {', '.join(intent.categories)} | {self._date_range_str(date_from, date_to)}",
                    hits,
                    date_from,
                    date_to,
                )
            else:
                date_from, date_to = self.lookback_window(intent.days)
                hits = await self.get_recent_entries(user_id, intent.days, intent.limit)
                return self._build_result(
                    "date_range",
                    f"Recent entries | {self._date_range_str(date_from, date_to)}",
                    hits,
                    date_from,
                    date_to,
                )
        elif isinstance(intent, AnalyzeIntent):
            return await self.analyze(user_id, intent.days, intent.group_by)
        else:
            raise QueryExecutionError(f"Not a query intent: {type(intent).__name__}")

    # =========================================================================
    # SEARCH
    # =========================================================================

    def _clamp_limit(self, limit: Optional[int], default: int) -> int:
        if limit is None or limit <= 0:
            limit = default
        return min(limit, self._settings.max_query_limit)

    def lookback_window(self, days: Optional[int] = None) -> tuple[date, date]:
        """The window covering the last `days` days up to and including today."""
        if days is None or days <= 0:
            days = self._settings.default_lookback_days
        today = self._store.today()
        return today - timedelta(days=days), today

    @staticmethod
    def _collect(records, predicate, limit: int) -> list[SearchHit]:
        # Records come newest first; list order within a day is kept
        hits = []
        for record in records:
            for entry in record.entries:
                if predicate(entry):
                    hits.append(SearchHit(entry=entry, record_date=record.record_date))
                    if len(hits) >= limit:
                        return hits
        return hits

    async def search_by_keyword(self, user_id: str, keyword: str, limit: Optional[int] = None) -> list[SearchHit]:
        """
        Case-insensitive substring search over description, category and merchant.

        Returns:
            Matches, newest date first, at most `limit` of them
        """
        keyword = (keyword or "").strip()
        if not keyword:
            return []
        limit = self._clamp_limit(limit, self._settings.default_search_limit)
        records = await self._store.list_day_records(user_id)
        return self._collect(records, lambda e: e.matches_keyword(keyword), limit)

    async def search_by_date_range(
        self,
        user_id: str,
        start_date: date,
        end_date: date,
        limit: Optional[int] = None,
    ) -> list[SearchHit]:
        """Every entry dated within [start_date, end_date], newest first."""
        if start_date > end_date:
            start_date, end_date = end_date, start_date
        limit = self._clamp_limit(limit, self._settings.default_range_limit)
        records = await self._store.list_day_records(user_id, start_date, end_date)
        return self._collect(records, lambda e: True, limit)

    async def search_by_categories(
        self,
        user_id: str,
        categories: list[str],
        days: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[SearchHit]:
        """Entries of the last `days` days whose category is one of `categories`."""
        wanted = {c.strip().lower() for c in categories if c and c.strip()}
        if not wanted:
            return []
        date_from, date_to = self.lookback_window(days)
        limit = self._clamp_limit(limit, self._settings.default_search_limit)
        records = await self._store.list_day_records(user_id, date_from, date_to)
        return self._collect(records, lambda e: e.category.lower() in wanted, limit)

    async def get_recent_entries(
        self,
        user_id: str,
        days: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[SearchHit]:
        date_from, date_to = self.lookback_window(days)
        return await self.search_by_date_range(
            user_id,
            date_from,
            date_to,
            limit or self._settings.default_search_limit,
        )

    # =========================================================================
    # DISTINCT VALUES (classifier context)
    # =========================================================================

    async def get_distinct_payment_methods(self, user_id: str) -> tuple[list[str], list[str]]:
        """
        Known bank names and credit card names, from entries and day metadata.

        Returns:
            (banks, credit_cards), each sorted case-insensitively
        """
        banks: set[str] = set()
        cards: set[str] = set()
        for record in await self._store.list_day_records(user_id):
            refs = [entry.payment for entry in record.entries]
            if record.default_payment is not None:
                refs.append(record.default_payment)
            for ref in refs:
                if not ref.sub_identifier:
                    continue
                if ref.method == PaymentMethod.BANK:
                    banks.add(ref.sub_identifier)
                elif ref.method == PaymentMethod.CREDIT_CARD:
                    cards.add(ref.sub_identifier)
        return sorted(banks, key=str.lower), sorted(cards, key=str.lower)

    async def get_distinct_categories(self, user_id: str) -> tuple[list[str], list[str]]:
        """
        Categories in use, transfers excluded.

        Returns:
            (income_categories, expense_categories)
        """
        incomes: set[str] = set()
        expenses: set[str] = set()
        for record in await self._store.list_day_records(user_id):
            for entry in record.entries:
                if not entry.category or self._store.is_transfer_entry(entry):
                    continue
                (incomes if entry.is_income else expenses).add(entry.category)
        return sorted(incomes, key=str.lower), sorted(expenses, key=str.lower)

    # =========================================================================
    # ANALYSIS
    # =========================================================================

    def _group_key(self, entry: Entry, record_date: date, group_by: AnalysisGroupBy) -> str:
        if group_by == AnalysisGroupBy.CATEGORY:
            return entry.category or self._settings.uncategorized_label
        elif group_by == AnalysisGroupBy.DATE:
            return record_date.isoformat()
        elif group_by == AnalysisGroupBy.PAYMENT:
            return entry.payment.label()
        else:
            return "all"

    async def analyze(
        self,
        user_id: str,
        days: Optional[int] = None,
        group_by: AnalysisGroupBy = AnalysisGroupBy.CATEGORY,
    ) -> AnalysisResult:
        """
        Totals for the last `days` days, broken down by `group_by`.

        Transfers are excluded. Groups are ordered by expense (largest
        first); date groups are ordered newest first.
        """
        date_from, date_to = self.lookback_window(days)
        result = AnalysisResult(date_from=date_from, date_to=date_to, group_by=group_by.value)
        groups: dict[str, AnalysisGroup] = {}

        for record in await self._store.list_day_records(user_id, date_from, date_to):
            for entry in record.entries:
                if self._store.is_transfer_entry(entry):
                    continue
                key = self._group_key(entry, record.record_date, group_by)
                group = groups.setdefault(key, AnalysisGroup(key=key))
                group.count += 1
                result.entry_count += 1
                if entry.is_income:
                    group.income += entry.amount
                    result.total_income += entry.amount
                else:
                    group.expense += entry.amount
                    result.total_expense += entry.amount

        for group in groups.values():
            if result.total_expense > 0:
                group.expense_share = float(group.expense / result.total_expense * 100)

        if group_by == AnalysisGroupBy.DATE:
            result.groups = sorted(groups.values(), key=lambda g: g.key, reverse=True)
        else:
            result.groups = sorted(groups.values(), key=lambda g: (-g.expense, -g.income, g.key))
        result.net = result.total_income - result.total_expense
        return result

    def summarize(self, hits: list[SearchHit]) -> dict[str, Any]:
        """Count and income/expense totals of a result list, transfers excluded."""
        income = ZERO
        expense = ZERO
        for hit in hits:
            if self._store.is_transfer_entry(hit.entry):
                continue
            if hit.entry.is_income:
                income += hit.entry.amount
            else:
                expense += hit.entry.amount
        return {
            "count": len(hits),
            "total_income": income,
            "total_expense": expense,
            "net": income - expense,
        }

    def _build_result(
        self,
        kind: str,
        description: str,
        hits: list[SearchHit],
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> QueryResult:
        summary = self.summarize(hits)
        return QueryResult(
            kind=kind,
            description=description,
            hits=hits,
            total_income=summary["total_income"],
            total_expense=summary["total_expense"],
            date_from=date_from,
            date_to=date_to,
        )

    def _date_range_str(self, date_from: Optional[date], date_to: Optional[date]) -> str:
        """Format date range for display."""
        if date_from and date_to:
            return f"{date_from} to {date_to}"
        elif date_from:
            return f"from {date_from}"
        elif date_to:
            return f"until {date_to}"
        return "all time"
