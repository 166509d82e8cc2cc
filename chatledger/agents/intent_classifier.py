"""
Intent Classifier

DESIGN DECISION: The LLM is a TRANSLATOR, not an ORACLE.
It turns one chat message into one structured Intent and nothing else.
It never writes to the ledger and never computes balances; every number
it may repeat back comes from the LedgerContext built here from storage.

CRITICAL BOUNDARIES:
- CAN: pick the action and extract amounts, categories, payment methods
- CAN: match user-typed account and category names against known ones
- CANNOT: persist anything (the dispatcher does that)
- CANNOT: invent balances (they are supplied in the context)
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Optional

import google.generativeai as genai
import structlog
from pydantic import BaseModel, Field
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from chatledger.config.settings import GeminiSettings, get_settings
from chatledger.ledger.budgets import BudgetTracker
from chatledger.ledger.errors import ClassifierUnavailableError
from chatledger.ledger.store import LedgerStore
from chatledger.models.intent import Intent, parse_intent
from chatledger.models.ledger import (
    BalanceSummary,
    BudgetStatus,
    ChatTurn,
    PaymentBalance,
    SearchHit,
)
from chatledger.queries.executor import QueryExecutor


logger = structlog.get_logger(__name__)


class LedgerContext(BaseModel):
    """Everything the classifier is allowed to know about a user's ledger."""

    today: date
    banks: list[str] = Field(default_factory=list)
    credit_cards: list[str] = Field(default_factory=list)
    income_categories: list[str] = Field(default_factory=list)
    expense_categories: list[str] = Field(default_factory=list)
    balance: Optional[BalanceSummary] = None
    payment_balances: list[PaymentBalance] = Field(default_factory=list)
    budgets: list[BudgetStatus] = Field(default_factory=list)
    recent: list[SearchHit] = Field(default_factory=list)
    history: list[ChatTurn] = Field(default_factory=list)

    def to_prompt(self) -> str:
        """Compact plain-text rendering for the prompt."""
        lines = [f"Today: {self.today.isoformat()}"]
        if self.banks:
            lines.append(f"Known banks: {', '.join(self.banks)}")
        if self.credit_cards:
            lines.append(f"Known credit cards: {', '.join(self.credit_cards)}")
        if self.income_categories:
            lines.append(f"Income categories: {', '.join(self.income_categories)}")
        if self.expense_categories:
            lines.append(f"Expense categories: {', '.join(self.expense_categories)}")
        if self.balance is not None:
            lines.append(
                f"Balance: income {self.balance.total_income}, expense {self.balance.total_expense}, "
                f"net {self.balance.balance}; today net {self.balance.today_balance}"
            )
        if self.payment_balances:
            per_method = ", ".join(f"{b.payment.label()}={b.net_balance}" for b in self.payment_balances)
            lines.append(f"By payment method: {per_method}")
        if self.budgets:
            budgets = ", ".join(f"{b.category} {b.spent}/{b.budget}" for b in self.budgets)
            lines.append(f"Budgets this month: {budgets}")
        if self.recent:
            lines.append("Recent entries:")
            for hit in self.recent:
                entry = hit.entry
                kind = "income" if entry.is_income else "expense"
                lines.append(
                    f"- {hit.record_date.isoformat()} {kind} {entry.amount} "
                    f"{entry.category} {entry.description} [{entry.payment.label()}]".rstrip()
                )
        if self.history:
            lines.append("Conversation so far:")
            for turn in self.history:
                lines.append(f"{turn.role.value}: {turn.content}")
        return "\n".join(lines)


class LedgerContextBuilder:
    """Assembles a LedgerContext from the ledger components."""

    def __init__(
        self,
        store: LedgerStore,
        queries: QueryExecutor,
        budgets: BudgetTracker,
        recent_limit: int = 10,
    ):
        self._store = store
        self._queries = queries
        self._budgets = budgets
        self._recent_limit = recent_limit

    async def build(self, user_id: str) -> LedgerContext:
        settings = self._store.settings
        banks, cards = await self._queries.get_distinct_payment_methods(user_id)
        income_categories, expense_categories = await self._queries.get_distinct_categories(user_id)
        return LedgerContext(
            today=self._store.today(),
            banks=banks,
            credit_cards=cards,
            income_categories=income_categories,
            expense_categories=expense_categories,
            balance=await self._store.get_balance_summary(user_id),
            payment_balances=await self._store.get_balance_by_payment_method(user_id),
            budgets=await self._budgets.get_budget_status(user_id),
            recent=await self._queries.get_recent_entries(user_id, limit=self._recent_limit),
            history=await self._store.storage.get_chat_history(user_id, settings.chat_history_limit),
        )


class IntentClassifier(ABC):
    """
    Contract of the natural-language step.

    Implementations return exactly one Intent per message.
    """

    @abstractmethod
    async def classify(self, text: str, context: LedgerContext) -> Intent:
        """
        Classify one user message.

        Raises:
            MalformedIntentError: the model answered with something unusable
            ClassifierUnavailableError: the model could not be reached
        """
        pass


SYSTEM_PROMPT = """You are the intake step of a personal finance ledger.
Turn the user's message into exactly ONE JSON object and nothing else.

Actions and payloads:
1. new: {"action":"new","entries":[{"amount":150,"type":"expense|income","category":"food","description":"...","merchant":"","paymentMethod":"cash|creditCard|bank","subIdentifier":"bank or card name"}],"message":"..."}
2. update (fix the last entry): {"action":"update","field":"amount|paymentMethod","value":...,"message":"..."}
3. transfer / deposit / withdrawal / card payment: {"action":"transfer","transfer":{"from":[{"amount":1000,"paymentMethod":"bank","subIdentifier":"BankA"}],"to":[{"amount":1000,"paymentMethod":"bank","subIdentifier":"BankB"}],"description":"..."},"message":"..."}
4. balance: {"action":"balance","filter":{"paymentMethod":"bank","subIdentifier":"BankA"},"message":"..."}
5. search: {"action":"search","keyword":"coffee","message":"..."} or {"action":"search","categories":["food"],"days":30,"message":"..."}
6. analyze: {"action":"analyze","days":7,"groupBy":"category|date|payment|none","message":"..."}
7. budget: {"action":"budget","budget":{"category":"food","amount":5000},"message":"..."}
8. export: {"action":"export","export":{"format":"excel|pdf","days":30},"message":"..."}
9. chat: {"action":"chat","message":"..."}

Rules:
- A transfer is never income or expense. Moving money between cash, banks and cards is always "transfer".
- Match bank, card and category names against the known ones in the context; reuse the existing spelling.
- If a name matches nothing known, ask first with a "chat" action instead of inventing a new account.
- Never make up numbers. Balances are in the context; if they are not, say so.
- Keep "message" short and friendly."""


class GeminiIntentClassifier(IntentClassifier):
    """google-generativeai implementation of IntentClassifier."""

    def __init__(self, settings: Optional[GeminiSettings] = None):
        self._settings = settings or get_settings().gemini
        self._configure_genai()

    def _configure_genai(self):
        """Configure Google Generative AI."""
        genai.configure(api_key=self._settings.api_key)
        self._model = genai.GenerativeModel(
            model_name=self._settings.model_name,
            generation_config={
                "temperature": self._settings.temperature,
                "max_output_tokens": self._settings.max_tokens,
                "response_mime_type": "application/json",
            },
            system_instruction=SYSTEM_PROMPT,
        )

    @retry(
        retry=retry_if_exception_type(ClassifierUnavailableError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _generate(self, prompt: str) -> str:
        try:
            response = await self._model.generate_content_async(prompt)
            return response.text
        except Exception as e:
            raise ClassifierUnavailableError(f"Gemini request failed: {e}")

    async def classify(self, text: str, context: LedgerContext) -> Intent:
        prompt = f"{context.to_prompt()}\n\nUser message: {text}"
        raw = await self._generate(prompt)
        logger.debug("classifier_output", raw=raw)
        return parse_intent(raw)
