"""Persistence stores over SQLAlchemy sessions."""

from .ledger_store import LedgerStore
from .suggestion_store import SuggestionStore
from .counting_store import CountingStore

__all__ = ["LedgerStore", "SuggestionStore", "CountingStore"]
