"""
Core Ledger Models for ChatLedger

These models define the strict schemas for everything the ledger persists
and reports. They are designed to:
1. Enforce type safety at runtime
2. Keep money as Decimal end to end
3. Be serializable for storage and logging
4. Keep the cached day totals derivable from the entry lists

DESIGN DECISION: A DayRecord's totals are a materialized view.
`recompute_totals()` is the only place they are derived from the lists,
and every structural edit goes through it.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


TRANSFER_CATEGORY = "transfer"

ZERO = Decimal("0")

# Free-text limits shared by the ledger models and the intents that feed them
MAX_CATEGORY_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500
MAX_MERCHANT_LENGTH = 200


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def money_sum(amounts) -> Decimal:
    """Sum Decimals starting from an exact zero."""
    return sum(amounts, ZERO)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class EntrySign(IntEnum):
    """
    Direction of an entry.

    The signed contribution of an entry to any balance is amount * sign.
    There is no zero member.
    """
    INCOME = 1
    EXPENSE = -1


class PaymentMethod(str, Enum):
    """Where the money physically sits."""
    CASH = "cash"
    CREDIT_CARD = "creditCard"
    BANK = "bank"

    @classmethod
    def coerce(cls, value: Any) -> "PaymentMethod":
        """
        Accept the spellings classifiers actually produce.

        Integers follow the legacy wire format: 0 cash, 1 credit card, 2 bank.
        """
        if isinstance(value, PaymentMethod):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Unknown payment method: {value!r}")
        if isinstance(value, (int, float)) and int(value) == value:
            legacy = {0: cls.CASH, 1: cls.CREDIT_CARD, 2: cls.BANK}
            if int(value) in legacy:
                return legacy[int(value)]
        if isinstance(value, str):
            key = value.strip().lower().replace("_", "").replace(" ", "").replace("-", "")
            aliases = {
                "cash": cls.CASH,
                "creditcard": cls.CREDIT_CARD,
                "card": cls.CREDIT_CARD,
                "credit": cls.CREDIT_CARD,
                "bank": cls.BANK,
                "bankaccount": cls.BANK,
                "0": cls.CASH,
                "1": cls.CREDIT_CARD,
                "2": cls.BANK,
            }
            if key in aliases:
                return aliases[key]
        raise ValueError(f"Unknown payment method: {value!r}")


class ChatRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class BudgetAlertLevel(str, Enum):
    """Bands a projected spend falls into."""
    NONE = "none"        # below the warning threshold, silent
    WARNING = "warning"  # at or above the threshold
    OVER = "over"        # projected spend exceeds the budget


# =============================================================================
# LEDGER ENTITIES
# =============================================================================

class PaymentMethodRef(BaseModel):
    """
    A payment method plus the optional named sub-account.

    Cash never carries a sub-identifier. Instances are hashable so they
    can be used directly as grouping keys.
    """
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    method: PaymentMethod = PaymentMethod.CASH
    sub_identifier: str = Field(
        default="",
        max_length=100,
        description="Bank name or card name"
    )

    @model_validator(mode='before')
    @classmethod
    def drop_cash_sub_identifier(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if data.get("method") is not None:
                data["method"] = PaymentMethod.coerce(data["method"])
            if data.get("sub_identifier") is None:
                data["sub_identifier"] = ""
            if data.get("method", PaymentMethod.CASH) == PaymentMethod.CASH:
                data["sub_identifier"] = ""
        return data

    @classmethod
    def cash(cls) -> "PaymentMethodRef":
        return cls(method=PaymentMethod.CASH)

    @property
    def sort_key(self) -> tuple[int, str]:
        order = [PaymentMethod.CASH, PaymentMethod.BANK, PaymentMethod.CREDIT_CARD]
        return order.index(self.method), self.sub_identifier.lower()

    def label(self) -> str:
        """Plain label, e.g. 'bank:BankA' or 'cash'."""
        if self.sub_identifier:
            return f"{self.method.value}:{self.sub_identifier}"
        return self.method.value


class Entry(BaseModel):
    """
    A single income or expense line.

    `id` and `created_at` are assigned at creation and never change.
    Amount and payment method only change through an explicit update
    that is followed by a recalculation of the owning DayRecord.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(
        default_factory=uuid4,
        description="Unique entry ID"
    )
    sign: EntrySign = Field(
        ...,
        description="+1 income, -1 expense"
    )
    amount: Decimal = Field(
        ...,
        ge=0,
        description="Non-negative amount; the sign lives in `sign`"
    )
    category: str = Field(default="", max_length=MAX_CATEGORY_LENGTH)
    description: str = Field(default="", max_length=MAX_DESCRIPTION_LENGTH)
    merchant: str = Field(default="", max_length=MAX_MERCHANT_LENGTH)
    payment: PaymentMethodRef = Field(default_factory=PaymentMethodRef.cash)
    transfer_id: Optional[UUID] = Field(
        default=None,
        description="Set only for entries generated by a transfer"
    )
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator('category', 'description', 'merchant', mode='before')
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @property
    def is_income(self) -> bool:
        return self.sign == EntrySign.INCOME

    @property
    def signed_amount(self) -> Decimal:
        return self.amount * int(self.sign)

    def matches_keyword(self, keyword: str) -> bool:
        """Case-insensitive substring match on description, category and merchant."""
        needle = keyword.lower()
        return (
            needle in self.description.lower()
            or needle in self.category.lower()
            or needle in self.merchant.lower()
        )


class DayRecord(BaseModel):
    """
    Ledger partition: one per (user, calendar date).

    Owns its two entry lists. The cached totals must always equal the sum
    of the corresponding list after `recompute_totals()`.
    """

    user_id: str = Field(..., min_length=1)
    record_date: date
    incomes: list[Entry] = Field(default_factory=list)
    expenses: list[Entry] = Field(default_factory=list)
    total_income: Decimal = ZERO
    total_expense: Decimal = ZERO

    # Day-level payment metadata carried by older records
    default_payment: Optional[PaymentMethodRef] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def entries(self) -> list[Entry]:
        """Incomes first, then expenses, each in list order."""
        return [*self.incomes, *self.expenses]

    def list_for(self, sign: EntrySign) -> list[Entry]:
        return self.incomes if sign == EntrySign.INCOME else self.expenses

    def find_entry(
        self,
        entry_id: UUID,
        income_first: bool = True,
    ) -> Optional[Entry]:
        lists = (self.incomes, self.expenses) if income_first else (self.expenses, self.incomes)
        for entries in lists:
            for entry in entries:
                if entry.id == entry_id:
                    return entry
        return None

    def remove_entry(self, entry_id: UUID) -> Optional[Entry]:
        """Remove an entry from whichever list holds it."""
        for entries in (self.incomes, self.expenses):
            for idx, entry in enumerate(entries):
                if entry.id == entry_id:
                    return entries.pop(idx)
        return None

    def remove_transfer_entries(self, transfer_id: UUID) -> int:
        before = len(self.incomes) + len(self.expenses)
        self.incomes = [e for e in self.incomes if e.transfer_id != transfer_id]
        self.expenses = [e for e in self.expenses if e.transfer_id != transfer_id]
        return before - len(self.incomes) - len(self.expenses)

    def has_transfer(self, transfer_id: UUID) -> bool:
        return any(e.transfer_id == transfer_id for e in self.entries)

    def recompute_totals(self) -> "DayRecord":
        self.total_income = money_sum(e.amount for e in self.incomes)
        self.total_expense = money_sum(e.amount for e in self.expenses)
        self.updated_at = utc_now()
        return self

    @property
    def totals_consistent(self) -> bool:
        return (
            self.total_income == money_sum(e.amount for e in self.incomes)
            and self.total_expense == money_sum(e.amount for e in self.expenses)
        )


class TransferLeg(BaseModel):
    """One source or destination of a transfer."""

    amount: Decimal
    payment: PaymentMethodRef = Field(default_factory=PaymentMethodRef.cash)


class Transfer(BaseModel):
    """
    Money moved between N source legs and M destination legs.

    The Transfer does not own its entries; they reference it through
    `transfer_id` and live in their DayRecord like any other entry.
    """

    id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)
    record_date: date
    description: str = Field(default="", max_length=MAX_DESCRIPTION_LENGTH)
    from_legs: list[TransferLeg] = Field(default_factory=list)
    to_legs: list[TransferLeg] = Field(default_factory=list)
    total_amount: Decimal = ZERO
    created_at: datetime = Field(default_factory=utc_now)


class Budget(BaseModel):
    """Monthly spending ceiling for one (user, category)."""

    user_id: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1, max_length=MAX_CATEGORY_LENGTH)
    amount: Decimal
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class ChatTurn(BaseModel):
    """One message of the rolling conversation history."""

    role: ChatRole
    content: str
    timestamp: datetime = Field(default_factory=utc_now)


# =============================================================================
# REPORT MODELS
# =============================================================================

class BalanceSummary(BaseModel):
    """Income/expense totals with transfers excluded."""

    total_income: Decimal = ZERO
    total_expense: Decimal = ZERO
    balance: Decimal = ZERO
    today_income: Decimal = ZERO
    today_expense: Decimal = ZERO
    today_balance: Decimal = ZERO


class PaymentBalance(BaseModel):
    """Where the money sits: one row per (method, sub-identifier)."""

    payment: PaymentMethodRef
    total_income: Decimal = ZERO
    total_expense: Decimal = ZERO
    net_balance: Decimal = ZERO

    @property
    def method(self) -> PaymentMethod:
        return self.payment.method

    @property
    def sub_identifier(self) -> str:
        return self.payment.sub_identifier


class NetWorth(BaseModel):
    cash: Decimal = ZERO
    bank: Decimal = ZERO
    credit_card: Decimal = ZERO
    net_worth: Decimal = ZERO


class BudgetStatus(BaseModel):
    category: str
    budget: Decimal
    spent: Decimal
    remaining: Decimal
    percentage: float
    is_over_budget: bool


class BudgetAlert(BaseModel):
    """Advisory result of projecting a new expense against its budget."""

    category: str
    should_alert: bool = False
    level: BudgetAlertLevel = BudgetAlertLevel.NONE
    budget: Optional[Decimal] = None
    projected_spent: Optional[Decimal] = None
    percentage: Optional[float] = None
    message: str = ""


class SearchHit(BaseModel):
    """An entry together with the date of the DayRecord holding it."""

    entry: Entry
    record_date: date

    def to_dict(self) -> dict:
        return {
            "id": str(self.entry.id),
            "date": self.record_date.isoformat(),
            "type": "income" if self.entry.is_income else "expense",
            "amount": float(self.entry.amount),
            "category": self.entry.category,
            "description": self.entry.description,
            "merchant": self.entry.merchant,
            "payment": self.entry.payment.label(),
            "transfer_id": str(self.entry.transfer_id) if self.entry.transfer_id else None,
        }


class QueryResult(BaseModel):
    """
    Result of a search over the ledger.

    This is what the presentation layer (or the classifier context)
    renders. It only ever contains stored data.
    """

    query_id: UUID = Field(default_factory=uuid4)
    executed_at: datetime = Field(default_factory=utc_now)
    kind: str
    description: str
    hits: list[SearchHit] = Field(default_factory=list)
    total_income: Decimal = ZERO
    total_expense: Decimal = ZERO
    date_from: Optional[date] = None
    date_to: Optional[date] = None

    @property
    def data_found(self) -> bool:
        return len(self.hits) > 0

    @property
    def result_count(self) -> int:
        return len(self.hits)


class AnalysisGroup(BaseModel):
    key: str
    income: Decimal = ZERO
    expense: Decimal = ZERO
    count: int = 0
    expense_share: float = 0.0


class AnalysisResult(BaseModel):
    """Deterministic breakdown of a period, transfers excluded."""

    query_id: UUID = Field(default_factory=uuid4)
    date_from: date
    date_to: date
    group_by: str
    total_income: Decimal = ZERO
    total_expense: Decimal = ZERO
    net: Decimal = ZERO
    entry_count: int = 0
    groups: list[AnalysisGroup] = Field(default_factory=list)
