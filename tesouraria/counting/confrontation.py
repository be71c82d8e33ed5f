"""
Confrontation of independent counts.

Two counters tally the same cash independently; the session is validated
only when their latest counts agree within the session tolerance. A session
with a single counter is compared against the entries already posted from
it.
"""

from typing import Dict, Mapping, Optional

import structlog
from sqlalchemy.orm import Session

from ..exceptions import InvalidStateError
from ..models import (
    AuditAction,
    AuditEntry,
    CompareLevel,
    ConfrontationResult,
    CountSubmission,
    SessionStatus,
)
from ..stores import CountingStore, LedgerStore
from ..utils.audit_logger import AuditLogger

logger = structlog.get_logger()

EXPECTED_KEY = "expected"
UNCATEGORIZED = "uncategorized"


def _spread(values) -> int:
    values = list(values)
    return max(values) - min(values) if values else 0


def compare_counts(
    session_id: str,
    submissions: Mapping[str, CountSubmission],
    tolerance_cents: int = 0,
    compare_level: CompareLevel = CompareLevel.CATEGORY,
    expected_by_category: Optional[Mapping[str, int]] = None,
) -> ConfrontationResult:
    """
    Compare the latest submission of each counter.

    Args:
        session_id: Session being confronted
        submissions: Latest live submission keyed by counter id
        tolerance_cents: Largest variance still accepted
        compare_level: Compare totals only, or every category too
        expected_by_category: Posted totals used when only one counter exists

    Returns:
        ConfrontationResult with status VALIDATED or DIVERGENT

    Raises:
        InvalidStateError: Fewer than two counters and nothing to compare against
    """
    tallies: Dict[str, Dict[str, int]] = {
        counter: dict(submission.values_by_category)
        for counter, submission in submissions.items()
    }
    against_expected = False
    if len(tallies) < 2:
        if len(tallies) == 1 and expected_by_category:
            tallies[EXPECTED_KEY] = dict(expected_by_category)
            against_expected = True
        else:
            raise InvalidStateError(
                "Confrontation needs two counters or posted entries",
                session_id=session_id,
                counters=len(tallies),
            )

    categories = sorted({category for values in tallies.values() for category in values})
    variance_by_category = {
        category: _spread(values.get(category, 0) for values in tallies.values())
        for category in categories
    }
    totals = {counter: sum(values.values()) for counter, values in tallies.items()}
    variance = _spread(totals.values())

    within = variance <= tolerance_cents
    if compare_level == CompareLevel.CATEGORY:
        within = within and all(v <= tolerance_cents for v in variance_by_category.values())

    return ConfrontationResult(
        session_id=session_id,
        status=SessionStatus.VALIDATED if within else SessionStatus.DIVERGENT,
        variance_cents=variance,
        variance_by_category=variance_by_category,
        counters=sorted(submissions),
        totals_by_counter=totals,
        against_expected=against_expected,
    )


class ConfrontationEngine:
    """Runs a confrontation and records its outcome on the session."""

    CONFRONTABLE = (SessionStatus.COUNTING, SessionStatus.VALIDATED, SessionStatus.DIVERGENT)

    def __init__(self, session: Session):
        self.store = CountingStore(session)
        self.ledger = LedgerStore(session)
        self.audit = AuditLogger(session)

    def expected_totals(self, session_id: str) -> Dict[str, int]:
        """Posted entries of a session summed by category."""
        totals: Dict[str, int] = {}
        for txn in self.ledger.list_session_transactions(session_id):
            key = txn.category or UNCATEGORIZED
            totals[key] = totals.get(key, 0) + abs(txn.amount_cents)
        return totals

    def confrontar(self, session_id: str, actor_id: str = "system") -> ConfrontationResult:
        counting_session = self.store.get(session_id, for_update=True)
        if counting_session.status not in self.CONFRONTABLE:
            raise InvalidStateError(
                f"Session {session_id} cannot be confronted",
                current_state=counting_session.status.value,
                session_id=session_id,
            )

        latest = self.store.latest_per_counter(session_id)
        expected = self.expected_totals(session_id) if len(latest) == 1 else None
        result = compare_counts(
            session_id,
            latest,
            tolerance_cents=counting_session.tolerance_cents,
            compare_level=counting_session.compare_level,
            expected_by_category=expected,
        )

        self.store.update(
            session_id,
            expected=list(self.CONFRONTABLE),
            status=result.status,
            variance_cents=result.variance_cents,
            variance_by_category=result.variance_by_category,
        )
        self.audit.log(AuditEntry(
            action=AuditAction.SESSION_CONFRONTED,
            actor_id=actor_id,
            org_id=counting_session.org_id,
            subject_type="counting_session",
            subject_id=session_id,
            message=f"Confrontation {result.status.value}",
            details=result.to_dict(),
        ))
        logger.info(
            "Counts confronted",
            session_id=session_id,
            status=result.status.value,
            variance_cents=result.variance_cents,
            against_expected=result.against_expected,
        )
        return result
