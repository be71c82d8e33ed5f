"""Counting session models (sessoes de contagem)."""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional, List, Dict, Any
from uuid import uuid4

from ..clock import utc_now
from .enums import SessionStatus, CompareLevel


@dataclass
class CountingSession:
    """
    A bounded period during which physical cash/offerings are counted
    independently by two people before posting.
    """
    id: str = field(default_factory=lambda: str(uuid4()))

    # Identity key
    org_id: str = ""
    branch_id: Optional[str] = None
    service_date: Optional[date] = None
    period: str = ""

    event_id: Optional[str] = None
    status: SessionStatus = SessionStatus.OPEN

    # Confrontation policy
    tolerance_cents: int = 0
    compare_level: CompareLevel = CompareLevel.CATEGORY

    # Last confrontation
    variance_cents: Optional[int] = None
    variance_by_category: Dict[str, int] = field(default_factory=dict)

    # Decision
    closed_at: Optional[datetime] = None
    closed_by: Optional[str] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return self.status in SessionStatus.active()

    @property
    def identity_key(self) -> tuple:
        return (self.org_id, self.branch_id, self.service_date, self.period)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "branch_id": self.branch_id,
            "service_date": self.service_date.isoformat() if self.service_date else None,
            "period": self.period,
            "event_id": self.event_id,
            "status": self.status.value,
            "tolerance_cents": self.tolerance_cents,
            "compare_level": self.compare_level.value,
            "variance_cents": self.variance_cents,
            "variance_by_category": dict(self.variance_by_category),
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "closed_by": self.closed_by,
            "rejection_reason": self.rejection_reason,
        }


@dataclass
class CountSubmission:
    """One counter's tally for a session. Append-only."""
    id: str = field(default_factory=lambda: str(uuid4()))
    session_id: str = ""
    counter_id: str = ""
    sequence: int = 1
    values_by_category: Dict[str, int] = field(default_factory=dict)
    submitted_at: datetime = field(default_factory=utc_now)
    discarded_at: Optional[datetime] = None

    @property
    def total_cents(self) -> int:
        return sum(self.values_by_category.values())


@dataclass(frozen=True)
class ConfrontationResult:
    """Variance between independent counts of a session."""
    session_id: str
    status: SessionStatus
    variance_cents: int
    variance_by_category: Dict[str, int]
    counters: List[str]
    totals_by_counter: Dict[str, int]
    against_expected: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "variance_cents": self.variance_cents,
            "variance_by_category": dict(self.variance_by_category),
            "counters": list(self.counters),
            "totals_by_counter": dict(self.totals_by_counter),
            "against_expected": self.against_expected,
        }


@dataclass(frozen=True)
class SyncWindow:
    """Scan window for the next bank import."""
    start: datetime
    end: datetime
    last_closed_session_id: Optional[str] = None
