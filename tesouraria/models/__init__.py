"""Data models for the reconciliation and counting engine."""

from .enums import (
    StatementStatus,
    MatchShape,
    SuggestionStatus,
    SuggestionOrigin,
    SessionStatus,
    CompareLevel,
    AuditAction,
)
from .transaction import (
    StatementLine,
    LedgerTransaction,
)
from .reconciliation import (
    Actor,
    Scope,
    MatchFeatures,
    Suggestion,
    ReconciliationLink,
    ReleaseCounts,
    BulkAcceptResult,
    AuditEntry,
)
from .counting import (
    CountingSession,
    CountSubmission,
    ConfrontationResult,
    SyncWindow,
)

__all__ = [
    # Enums
    "StatementStatus",
    "MatchShape",
    "SuggestionStatus",
    "SuggestionOrigin",
    "SessionStatus",
    "CompareLevel",
    "AuditAction",
    # Ledger
    "StatementLine",
    "LedgerTransaction",
    # Reconciliation
    "Actor",
    "Scope",
    "MatchFeatures",
    "Suggestion",
    "ReconciliationLink",
    "ReleaseCounts",
    "BulkAcceptResult",
    "AuditEntry",
    # Counting
    "CountingSession",
    "CountSubmission",
    "ConfrontationResult",
    "SyncWindow",
]
