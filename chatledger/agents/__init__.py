"""AI Agents package."""

from chatledger.agents.intent_classifier import (
    GeminiIntentClassifier,
    IntentClassifier,
    LedgerContext,
    LedgerContextBuilder,
)

__all__ = [
    "GeminiIntentClassifier",
    "IntentClassifier",
    "LedgerContext",
    "LedgerContextBuilder",
]
