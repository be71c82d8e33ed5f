"""Enumerations for the reconciliation and counting engine."""

from enum import Enum


class StatementStatus(str, Enum):
    """
    Reconciliation status of a bank statement line (extrato).

    UNMATCHED: Not linked to any transaction
    MATCHED_1TO1: Linked to exactly one transaction
    MATCHED_BATCH: One of several lines grouped against one transaction (lote)
    MATCHED_SPLIT: Divided across several transactions (divisao)
    """
    UNMATCHED = "unmatched"
    MATCHED_1TO1 = "matched_1to1"
    MATCHED_BATCH = "matched_batch"
    MATCHED_SPLIT = "matched_split"


class MatchShape(str, Enum):
    """Shape of a candidate pairing."""
    ONE_TO_ONE = "one_to_one"
    BATCH = "batch"        # N statement lines -> 1 transaction
    SPLIT = "split"        # 1 statement line -> N transactions

    @property
    def statement_status(self) -> StatementStatus:
        """Status a statement line takes when a suggestion of this shape is accepted."""
        return {
            MatchShape.ONE_TO_ONE: StatementStatus.MATCHED_1TO1,
            MatchShape.BATCH: StatementStatus.MATCHED_BATCH,
            MatchShape.SPLIT: StatementStatus.MATCHED_SPLIT,
        }[self]


class SuggestionStatus(str, Enum):
    """
    Lifecycle of a suggestion.

    PENDING: Awaiting an operator decision
    ACCEPTED: Applied to the ledger
    REJECTED: Discarded by an operator (terminal)
    REVOKED: Accepted and later undone through desconciliar (terminal)
    """
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    REVOKED = "revoked"


class SuggestionOrigin(str, Enum):
    """Who produced the suggestion."""
    RULE = "rule"          # Candidate generator
    MANUAL = "manual"      # Operator-built batch/split/1:1


class SessionStatus(str, Enum):
    """Status of a counting session (sessao de contagem)."""
    OPEN = "open"
    COUNTING = "counting"
    VALIDATED = "validated"
    DIVERGENT = "divergent"
    REJECTED = "rejected"
    CLOSED = "closed"

    @classmethod
    def active(cls) -> tuple:
        """States that hold the session identity key."""
        return (cls.OPEN, cls.COUNTING, cls.VALIDATED, cls.DIVERGENT)


class CompareLevel(str, Enum):
    """Granularity used when confronting two counts."""
    TOTAL = "total"
    CATEGORY = "category"


class AuditAction(str, Enum):
    """Type of audit action."""
    SUGGESTIONS_GENERATED = "suggestions_generated"
    SUGGESTION_ACCEPTED = "suggestion_accepted"
    SUGGESTION_REJECTED = "suggestion_rejected"
    MANUAL_RECONCILIATION = "manual_reconciliation"
    RECONCILIATION_UNDONE = "reconciliation_undone"
    SESSION_OPENED = "session_opened"
    COUNT_SUBMITTED = "count_submitted"
    SESSION_CONFRONTED = "session_confronted"
    SESSION_CLOSED = "session_closed"
    SESSION_OVERRIDDEN = "session_overridden"
    SESSION_REJECTED = "session_rejected"
