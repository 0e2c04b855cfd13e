"""API routers package."""

from src.routers import pipeline, rules, summary, transactions

__all__ = [
    "pipeline",
    "rules",
    "summary",
    "transactions",
]
