"""Tests for the ledger context and the Gemini classifier wrapper."""

from decimal import Decimal

import pytest

from chatledger.agents.intent_classifier import (
    GeminiIntentClassifier,
    LedgerContext,
    LedgerContextBuilder,
)
from chatledger.config.settings import GeminiSettings
from chatledger.ledger.errors import ClassifierUnavailableError, MalformedIntentError
from chatledger.models.intent import NewEntriesIntent
from chatledger.models.ledger import ChatRole, ChatTurn

from conftest import TODAY, USER, bank, card, expense, income, run


class FakeResponse:
    def __init__(self, text):
        self.text = text


class FakeModel:
    """Stands in for genai.GenerativeModel."""

    def __init__(self, text=None, error=None):
        self.text = text
        self.error = error
        self.prompts = []

    async def generate_content_async(self, prompt):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return FakeResponse(self.text)


@pytest.fixture
def gemini(monkeypatch):
    monkeypatch.setattr(GeminiIntentClassifier, "_configure_genai", lambda self: None)
    return GeminiIntentClassifier(GeminiSettings(api_key="test-key"))


class TestLedgerContext:
    """Tests for building and rendering the context."""

    def test_builder_collects_ledger_state(self, store, queries, budgets):
        """Test the context reflects storage and nothing else."""
        run(store.save_entry(USER, TODAY, income(3000, payment=bank("BankA"))))
        run(store.save_entry(USER, TODAY, expense(200, "food", payment=card("Visa"), description="groceries")))
        run(budgets.set_budget(USER, "food", Decimal("1000")))

        context = run(LedgerContextBuilder(store, queries, budgets).build(USER))

        assert context.today == TODAY
        assert context.banks == ["BankA"]
        assert context.credit_cards == ["Visa"]
        assert context.expense_categories == ["food"]
        assert context.balance.balance == Decimal("2800")
        assert context.budgets[0].spent == Decimal("200")
        assert len(context.recent) == 2

    def test_prompt_rendering(self):
        """Test the prompt carries accounts, balances and history."""
        context = LedgerContext(
            today=TODAY,
            banks=["BankA"],
            history=[ChatTurn(role=ChatRole.USER, content="hi")],
        )
        prompt = context.to_prompt()
        assert prompt.splitlines()[0] == "Today: 2024-06-15"
        assert "Known banks: BankA" in prompt
        assert "user: hi" in prompt
        assert "Known credit cards" not in prompt


class TestGeminiIntentClassifier:
    """Tests for GeminiIntentClassifier with the model replaced."""

    def test_classify(self, gemini):
        """Test fenced JSON output becomes an Intent."""
        gemini._model = FakeModel('```json\n{"action": "new", "entries": [{"amount": 150}]}\n```')
        intent = run(gemini.classify("spent 150", LedgerContext(today=TODAY)))

        assert isinstance(intent, NewEntriesIntent)
        assert intent.entries[0].amount == Decimal("150")
        assert gemini._model.prompts[0].endswith("User message: spent 150")

    def test_malformed_output(self, gemini):
        """Test a non-JSON answer is malformed, not retried."""
        gemini._model = FakeModel("Sure! You spent 150.")
        with pytest.raises(MalformedIntentError):
            run(gemini.classify("spent 150", LedgerContext(today=TODAY)))
        assert len(gemini._model.prompts) == 1

    def test_unavailable_after_retries(self, gemini, monkeypatch):
        """Test transport failures are retried, then surfaced."""
        monkeypatch.setattr(GeminiIntentClassifier._generate.retry, "sleep", _no_sleep)
        gemini._model = FakeModel(error=ConnectionError("timeout"))
        with pytest.raises(ClassifierUnavailableError):
            run(gemini.classify("spent 150", LedgerContext(today=TODAY)))
        assert len(gemini._model.prompts) == 3


async def _no_sleep(seconds):
    return None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
