"""
Intent Models for ChatLedger

An Intent is the structured output of the classifier: one `action`
discriminator plus an action-specific payload.

DESIGN DECISION: Intents are a pydantic discriminated union.
Classifier output is schema-less and frequently partial, so all the
normalization happens here, once, at the boundary. Everything past
`parse_intent()` works with typed values and the dispatcher can
match exhaustively on the intent class.

The parser also accepts the older wire format still produced by
existing prompts:
- `transactions` instead of `entries`
- `type: "income" | "expense"` instead of `sign`
- integer `usetype` (0 cash, 1 credit card, 2 bank) with
  `bankname` / `creditcardname`
- `update_field` / `update_value`, `search_query`
- nested `transfer`, `budget`, `export` and `query` objects
"""

import json
import re
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Optional, Union
from uuid import UUID

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from chatledger.ledger.errors import MalformedIntentError
from chatledger.models.ledger import (
    MAX_CATEGORY_LENGTH,
    MAX_DESCRIPTION_LENGTH,
    MAX_MERCHANT_LENGTH,
    EntrySign,
    PaymentMethod,
    PaymentMethodRef,
    TransferLeg,
)


class UpdateField(str, Enum):
    AMOUNT = "amount"
    PAYMENT_METHOD = "paymentMethod"


class AnalysisGroupBy(str, Enum):
    CATEGORY = "category"
    DATE = "date"
    PAYMENT = "payment"
    NONE = "none"


class ExportFormat(str, Enum):
    EXCEL = "excel"
    PDF = "pdf"


# =============================================================================
# WIRE NORMALIZATION HELPERS
# =============================================================================

_PAYMENT_KEYS = ("paymentMethod", "payment_method", "method", "usetype")
_SUB_ID_KEYS = ("subIdentifier", "sub_identifier")


def coerce_amount(value: Any) -> Optional[Decimal]:
    """
    Turn whatever the classifier produced into a Decimal.

    Returns None for anything that is not a finite number.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        amount = value
    else:
        text = str(value).strip().replace(",", "")
        if not text:
            return None
        try:
            amount = Decimal(text)
        except (InvalidOperation, ValueError):
            return None
    if not amount.is_finite():
        return None
    return amount


def payment_from_wire(data: dict) -> Optional[PaymentMethodRef]:
    """
    Build a PaymentMethodRef from the flat keys a classifier emits.

    Returns None when the payload names no payment method at all.
    Raises ValueError for a method that cannot be recognized.
    """
    payment = data.get("payment")
    if isinstance(payment, PaymentMethodRef):
        return payment
    if isinstance(payment, dict):
        return PaymentMethodRef(**payment)

    raw_method = next((data[k] for k in _PAYMENT_KEYS if data.get(k) is not None), None)
    sub_id = next((data[k] for k in _SUB_ID_KEYS if data.get(k)), None)
    bank_name = data.get("bankname") or data.get("bank_name") or ""
    card_name = data.get("creditcardname") or data.get("credit_card_name") or ""

    if raw_method is None or raw_method == "":
        # A bare account name still tells us the method
        if bank_name:
            return PaymentMethodRef(method=PaymentMethod.BANK, sub_identifier=bank_name)
        if card_name:
            return PaymentMethodRef(method=PaymentMethod.CREDIT_CARD, sub_identifier=card_name)
        return None

    method = PaymentMethod.coerce(raw_method)
    if not sub_id:
        if method == PaymentMethod.BANK:
            sub_id = bank_name
        elif method == PaymentMethod.CREDIT_CARD:
            sub_id = card_name
    return PaymentMethodRef(method=method, sub_identifier=str(sub_id or ""))


def _sign_from_wire(data: dict) -> EntrySign:
    raw = data.get("sign", data.get("type"))
    if isinstance(raw, EntrySign):
        return raw
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return EntrySign.INCOME if raw > 0 else EntrySign.EXPENSE
    if isinstance(raw, str) and raw.strip().lower() in ("income", "+1", "1", "in"):
        return EntrySign.INCOME
    return EntrySign.EXPENSE


# =============================================================================
# PAYLOAD PIECES
# =============================================================================

class EntryDraft(BaseModel):
    """
    One entry of a `new` intent, before it becomes a ledger Entry.

    `amount` is None when the classifier produced something that is not
    a number; the dispatcher drops such drafts along with non-positive ones.
    """
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    amount: Optional[Decimal] = None
    sign: EntrySign = EntrySign.EXPENSE
    category: str = Field(default="", max_length=MAX_CATEGORY_LENGTH)
    description: str = Field(default="", max_length=MAX_DESCRIPTION_LENGTH)
    merchant: str = Field(default="", max_length=MAX_MERCHANT_LENGTH)
    payment: PaymentMethodRef = Field(default_factory=PaymentMethodRef.cash)

    @model_validator(mode='before')
    @classmethod
    def normalize_wire_format(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        normalized = {
            "amount": coerce_amount(data.get("amount")),
            "sign": _sign_from_wire(data),
            "category": data.get("category") or "",
            "description": data.get("description") or "",
            "merchant": data.get("merchant") or "",
        }
        payment = payment_from_wire(data)
        if payment is not None:
            normalized["payment"] = payment
        return normalized

    @property
    def is_usable(self) -> bool:
        return self.amount is not None and self.amount > 0


def _normalize_leg(leg: Any) -> Any:
    if not isinstance(leg, dict):
        return leg
    normalized = {"amount": coerce_amount(leg.get("amount"))}
    payment = payment_from_wire(leg)
    if payment is not None:
        normalized["payment"] = payment
    return normalized


# =============================================================================
# INTENTS
# =============================================================================

class IntentBase(BaseModel):
    """
    Fields shared by every intent.

    `message` is the classifier's suggested reply; the dispatcher may use
    it verbatim for chat intents and as a fallback elsewhere.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    # Nested object some classifiers wrap the payload in
    payload_key: ClassVar[Optional[str]] = None

    message: str = ""

    @model_validator(mode='before')
    @classmethod
    def lift_nested_payload(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("message") is None:
            data["message"] = ""
        nested = data.get(cls.payload_key) if cls.payload_key else None
        if isinstance(nested, dict):
            for key, value in nested.items():
                data.setdefault(key, value)
        return data


class NewEntriesIntent(IntentBase):
    action: Literal["new"] = "new"
    entries: list[EntryDraft] = Field(
        default_factory=list,
        validation_alias=AliasChoices("entries", "transactions"),
    )


class UpdateIntent(IntentBase):
    """
    Amend one entry of today.

    When `entry_id` is absent the dispatcher targets the most recent
    entry of the day.
    """
    action: Literal["update"] = "update"
    field: UpdateField = Field(
        ...,
        validation_alias=AliasChoices("field", "update_field", "updateField"),
    )
    amount: Optional[Decimal] = None
    payment: Optional[PaymentMethodRef] = None
    entry_id: Optional[UUID] = Field(
        default=None,
        validation_alias=AliasChoices("entry_id", "entryId"),
    )

    @model_validator(mode='before')
    @classmethod
    def normalize_update_value(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        raw_field = next(
            (data[k] for k in ("field", "update_field", "updateField") if data.get(k)),
            None,
        )
        value = next(
            (data[k] for k in ("value", "update_value", "updateValue") if k in data),
            None,
        )
        for key in ("field", "update_field", "updateField", "value", "update_value", "updateValue"):
            data.pop(key, None)

        if isinstance(raw_field, UpdateField):
            raw_field = raw_field.value
        field_name = str(raw_field or "").strip()
        lowered = field_name.lower().replace("_", "")
        if lowered == "amount":
            data["field"] = UpdateField.AMOUNT
            amount = coerce_amount(data.get("amount") if value is None else value)
            if amount is None:
                raise ValueError(f"update amount is not a number: {value!r}")
            data["amount"] = amount
        elif lowered in ("paymentmethod", "usetype", "method"):
            data["field"] = UpdateField.PAYMENT_METHOD
            if isinstance(value, dict):
                data["payment"] = payment_from_wire(value)
            elif value is not None or data.get("payment") is None:
                # Flat bankname / creditcardname keys may name the sub-account
                wire = {k: v for k, v in data.items() if k != "payment"}
                data["payment"] = payment_from_wire({**wire, "paymentMethod": value})
        elif lowered == "bankname":
            data["field"] = UpdateField.PAYMENT_METHOD
            data["payment"] = PaymentMethodRef(method=PaymentMethod.BANK, sub_identifier=str(value or ""))
        elif lowered == "creditcardname":
            data["field"] = UpdateField.PAYMENT_METHOD
            data["payment"] = PaymentMethodRef(method=PaymentMethod.CREDIT_CARD, sub_identifier=str(value or ""))
        elif field_name:
            raise ValueError(f"unsupported update field: {field_name!r}")
        return data

    @model_validator(mode='after')
    def value_matches_field(self) -> 'UpdateIntent':
        if self.field == UpdateField.PAYMENT_METHOD and self.payment is None:
            raise ValueError("payment method update without a method")
        return self


class TransferIntent(IntentBase):
    payload_key: ClassVar[Optional[str]] = "transfer"

    action: Literal["transfer"] = "transfer"
    from_legs: list[TransferLeg] = Field(
        default_factory=list,
        validation_alias=AliasChoices("from", "from_legs", "fromLegs"),
    )
    to_legs: list[TransferLeg] = Field(
        default_factory=list,
        validation_alias=AliasChoices("to", "to_legs", "toLegs"),
    )
    description: str = Field(default="", max_length=MAX_DESCRIPTION_LENGTH)

    @field_validator('from_legs', 'to_legs', mode='before')
    @classmethod
    def normalize_legs(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, dict):
            v = [v]
        if isinstance(v, list):
            return [_normalize_leg(leg) for leg in v]
        return v

    @field_validator('description', mode='before')
    @classmethod
    def none_description(cls, v: Any) -> Any:
        return "" if v is None else v


class BalanceIntent(IntentBase):
    payload_key: ClassVar[Optional[str]] = "filter"

    action: Literal["balance"] = "balance"
    payment_filter: Optional[PaymentMethodRef] = None

    @model_validator(mode='before')
    @classmethod
    def build_filter(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("payment_filter") is None:
            nested = data.get("filter")
            source = {**data, **nested} if isinstance(nested, dict) else data
            data = dict(data)
            data["payment_filter"] = payment_from_wire(source)
        return data


class SearchIntent(IntentBase):
    payload_key: ClassVar[Optional[str]] = "query"

    action: Literal["search"] = "search"
    keyword: str = Field(
        default="",
        validation_alias=AliasChoices("keyword", "search_query", "searchQuery"),
    )
    categories: list[str] = Field(default_factory=list)
    days: Optional[int] = None
    limit: Optional[int] = None

    @field_validator('keyword', mode='before')
    @classmethod
    def none_keyword(cls, v: Any) -> Any:
        return "" if v is None else str(v).strip()

    @field_validator('categories', mode='before')
    @classmethod
    def normalize_categories(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        return [str(c).strip() for c in v if c is not None and str(c).strip()]

    @field_validator('days', 'limit', mode='before')
    @classmethod
    def non_positive_is_default(cls, v: Any) -> Any:
        amount = coerce_amount(v)
        if amount is None or amount <= 0:
            return None
        return int(amount)


class AnalyzeIntent(IntentBase):
    payload_key: ClassVar[Optional[str]] = "query"

    action: Literal["analyze"] = "analyze"
    days: Optional[int] = None
    group_by: AnalysisGroupBy = Field(
        default=AnalysisGroupBy.CATEGORY,
        validation_alias=AliasChoices("group_by", "groupBy"),
    )

    @field_validator('days', mode='before')
    @classmethod
    def non_positive_is_default(cls, v: Any) -> Any:
        amount = coerce_amount(v)
        if amount is None or amount <= 0:
            return None
        return int(amount)

    @field_validator('group_by', mode='before')
    @classmethod
    def default_group_by(cls, v: Any) -> Any:
        if isinstance(v, AnalysisGroupBy):
            return v
        if v is None or v == "":
            return AnalysisGroupBy.CATEGORY
        return str(v).strip().lower()


class BudgetIntent(IntentBase):
    payload_key: ClassVar[Optional[str]] = "budget"

    action: Literal["budget"] = "budget"
    category: str = Field(default="", max_length=MAX_CATEGORY_LENGTH)
    amount: Optional[Decimal] = None
    delete: bool = False

    @field_validator('category', mode='before')
    @classmethod
    def none_category(cls, v: Any) -> Any:
        return "" if v is None else str(v).strip()

    @field_validator('amount', mode='before')
    @classmethod
    def loose_amount(cls, v: Any) -> Any:
        return coerce_amount(v)


class ExportIntent(IntentBase):
    payload_key: ClassVar[Optional[str]] = "export"

    action: Literal["export"] = "export"
    export_format: ExportFormat = Field(
        default=ExportFormat.EXCEL,
        validation_alias=AliasChoices("format", "export_format"),
    )
    days: Optional[int] = None

    @field_validator('export_format', mode='before')
    @classmethod
    def default_format(cls, v: Any) -> Any:
        if isinstance(v, ExportFormat):
            return v
        if v is None or str(v).strip() == "":
            return ExportFormat.EXCEL
        return str(v).strip().lower()

    @field_validator('days', mode='before')
    @classmethod
    def non_positive_is_default(cls, v: Any) -> Any:
        amount = coerce_amount(v)
        if amount is None or amount <= 0:
            return None
        return int(amount)


class ChatIntent(IntentBase):
    action: Literal["chat"] = "chat"


Intent = Annotated[
    Union[
        NewEntriesIntent,
        UpdateIntent,
        TransferIntent,
        BalanceIntent,
        SearchIntent,
        AnalyzeIntent,
        BudgetIntent,
        ExportIntent,
        ChatIntent,
    ],
    Field(discriminator="action"),
]

_intent_adapter = TypeAdapter(Intent)

# Older prompts emit these action names
_ACTION_ALIASES = {
    "chart": "analyze",
    "query": "search",
}

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding Markdown code fence, if any."""
    return _FENCE_RE.sub("", text.strip()).strip()


def parse_intent(raw: Union[str, dict]) -> Intent:
    """
    Parse classifier output into a typed Intent.

    Args:
        raw: JSON text (optionally fenced) or an already-decoded dict

    Returns:
        One of the Intent classes

    Raises:
        MalformedIntentError: output is not JSON, has no known action,
            or its payload does not validate
    """
    if isinstance(raw, str):
        try:
            data = json.loads(strip_code_fences(raw))
        except json.JSONDecodeError as e:
            raise MalformedIntentError(f"Classifier output is not valid JSON: {e}", raw=raw)
    else:
        data = raw

    if not isinstance(data, dict):
        raise MalformedIntentError("Classifier output is not a JSON object", raw=raw)

    action = data.get("action")
    if not isinstance(action, str) or not action.strip():
        raise MalformedIntentError("Classifier output has no action", raw=raw)

    action = action.strip().lower()
    data = {**data, "action": _ACTION_ALIASES.get(action, action)}

    try:
        return _intent_adapter.validate_python(data)
    except ValidationError as e:
        raise MalformedIntentError(
            f"Invalid '{action}' intent: {e.error_count()} validation error(s)",
            raw=raw,
        )
