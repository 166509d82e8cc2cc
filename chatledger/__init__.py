"""
ChatLedger - Source Package

A conversational personal-finance ledger: users describe income,
expenses, transfers and budgets in chat, and the ledger keeps exact,
auditable books of it.

DESIGN PRINCIPLES:
1. AI classifies → Dispatcher applies → Ledger verifies
2. Fail early, fail visibly
3. No silent corrections
4. Every mutation must be auditable
5. Storage layer is swappable
"""

__version__ = "0.1.0"
__author__ = "ChatLedger Team"
