"""
Shared fixtures for the ChatLedger tests.

Everything runs against the in-memory backend with a fixed clock, so
"today" and "this month" never depend on when the suite runs.
"""

import asyncio
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

import pytest

from chatledger.agents.intent_classifier import IntentClassifier, LedgerContext
from chatledger.config.settings import LedgerSettings, Settings
from chatledger.ledger.budgets import BudgetTracker
from chatledger.ledger.store import LedgerStore
from chatledger.ledger.transfers import TransferEngine
from chatledger.models.intent import parse_intent
from chatledger.models.ledger import (
    Entry,
    EntrySign,
    PaymentMethod,
    PaymentMethodRef,
    TransferLeg,
)
from chatledger.orchestrator import create_app_components
from chatledger.queries.executor import QueryExecutor
from chatledger.services.storage.memory import InMemoryAuditStorage, InMemoryLedgerStorage


TODAY = date(2024, 6, 15)
USER = "user-1"


def run(coro):
    """Run a coroutine to completion."""
    return asyncio.run(coro)


class FixedClock:
    """Callable clock whose date the test controls."""

    def __init__(self, today: date = TODAY):
        self.today = today

    def __call__(self) -> date:
        return self.today

    def advance(self, days: int = 1) -> None:
        self.today = self.today + timedelta(days=days)


class FakeClassifier(IntentClassifier):
    """Replays queued raw classifier outputs through parse_intent."""

    def __init__(self, *outputs):
        self.outputs = list(outputs)
        self.seen: list[tuple[str, LedgerContext]] = []

    def queue(self, *outputs) -> None:
        self.outputs.extend(outputs)

    async def classify(self, text: str, context: LedgerContext):
        self.seen.append((text, context))
        raw = self.outputs.pop(0)
        if isinstance(raw, Exception):
            raise raw
        return parse_intent(raw)


def bank(name: str) -> PaymentMethodRef:
    return PaymentMethodRef(method=PaymentMethod.BANK, sub_identifier=name)


def card(name: str) -> PaymentMethodRef:
    return PaymentMethodRef(method=PaymentMethod.CREDIT_CARD, sub_identifier=name)


def expense(amount, category: str = "food", payment: Optional[PaymentMethodRef] = None, **kwargs) -> Entry:
    return Entry(
        sign=EntrySign.EXPENSE,
        amount=Decimal(str(amount)),
        category=category,
        payment=payment or PaymentMethodRef.cash(),
        **kwargs,
    )


def income(amount, category: str = "salary", payment: Optional[PaymentMethodRef] = None, **kwargs) -> Entry:
    return Entry(
        sign=EntrySign.INCOME,
        amount=Decimal(str(amount)),
        category=category,
        payment=payment or PaymentMethodRef.cash(),
        **kwargs,
    )


def leg(amount, payment: PaymentMethodRef) -> TransferLeg:
    return TransferLeg(amount=Decimal(str(amount)), payment=payment)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def settings():
    return LedgerSettings()


@pytest.fixture
def storage():
    return InMemoryLedgerStorage()


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def store(storage, settings, clock):
    return LedgerStore(storage, settings, clock)


@pytest.fixture
def transfers(store):
    return TransferEngine(store)


@pytest.fixture
def budgets(store):
    return BudgetTracker(store)


@pytest.fixture
def queries(store):
    return QueryExecutor(store)


@pytest.fixture
def classifier():
    return FakeClassifier()


@pytest.fixture
def components(storage, audit_storage, classifier, clock):
    return create_app_components(
        settings=Settings(),
        storage=storage,
        audit_storage=audit_storage,
        classifier=classifier,
        clock=clock,
    )

