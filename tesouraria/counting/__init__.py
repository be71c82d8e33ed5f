"""Counting session workflow and confrontation."""

from .confrontation import ConfrontationEngine, compare_counts
from .session import CountingService, parse_count_values, to_cents

__all__ = [
    "ConfrontationEngine",
    "compare_counts",
    "CountingService",
    "parse_count_values",
    "to_cents",
]
