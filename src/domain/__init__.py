"""Domain models and rules for factoid income.

This package holds the in-memory (Pydantic) models for blocks, transactions and
income records, and the pure classification rules that turn a block into income
records. They are independent from persistence models so the rules can be tested
without a database.
"""

__all__ = [
    "classifier",
    "income",
]
