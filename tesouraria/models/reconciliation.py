"""Reconciliation models: scopes, suggestions, links and audit entries."""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional, List, Dict, Any, Tuple
from uuid import uuid4

from ..clock import utc_now
from ..exceptions import InvalidScopeError
from .enums import (
    MatchShape,
    SuggestionOrigin,
    SuggestionStatus,
    AuditAction,
)


@dataclass(frozen=True)
class Actor:
    """
    Authenticated user acting on the engine.

    Capabilities are resolved by the identity collaborator; the engine only
    reads them.
    """
    user_id: str
    is_conferente: bool = False

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id="system")


@dataclass(frozen=True)
class Scope:
    """Explicit reconciliation scope threaded through every call."""
    org_id: str
    period_start: date
    period_end: date
    account_id: Optional[str] = None

    def validate(self) -> "Scope":
        if not self.org_id:
            raise InvalidScopeError("Scope requires an org id")
        if self.period_start is None or self.period_end is None:
            raise InvalidScopeError("Scope requires a period start and end", org_id=self.org_id)
        if self.period_start > self.period_end:
            raise InvalidScopeError(
                "Scope period start is after period end",
                org_id=self.org_id,
                period_start=self.period_start.isoformat(),
                period_end=self.period_end.isoformat(),
            )
        return self

    @classmethod
    def resolve(
        cls,
        org_id: Optional[str],
        account_id: Optional[str] = None,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
        lookback_days: int = 90,
        today: Optional[date] = None,
    ) -> "Scope":
        """
        Build a scope, defaulting the period to the last ``lookback_days``.
        """
        if not org_id:
            raise InvalidScopeError("Scope requires an org id")
        end = period_end or today or date.today()
        start = period_start or end - timedelta(days=lookback_days)
        return cls(
            org_id=org_id,
            account_id=account_id,
            period_start=start,
            period_end=end,
        ).validate()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "org_id": self.org_id,
            "account_id": self.account_id,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
        }


@dataclass(frozen=True)
class MatchFeatures:
    """Feature breakdown behind a suggestion score."""
    amount_delta_cents: int = 0
    date_delta_days: float = 0.0
    description_similarity: float = 0.0
    amount_exactness: float = 0.0
    date_proximity: float = 0.0
    shape_factor: float = 0.0
    group_size: int = 1
    date_spread_days: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount_delta_cents": self.amount_delta_cents,
            "date_delta_days": self.date_delta_days,
            "description_similarity": self.description_similarity,
            "amount_exactness": self.amount_exactness,
            "date_proximity": self.date_proximity,
            "shape_factor": self.shape_factor,
            "group_size": self.group_size,
            "date_spread_days": self.date_spread_days,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MatchFeatures":
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


@dataclass
class Suggestion:
    """A scored candidate pairing between statement lines and transactions."""
    id: str = field(default_factory=lambda: str(uuid4()))

    # Scope
    org_id: str = ""
    account_id: Optional[str] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None

    # Pairing
    shape: MatchShape = MatchShape.ONE_TO_ONE
    statement_ids: List[str] = field(default_factory=list)
    transaction_ids: List[str] = field(default_factory=list)

    # Quality
    score: float = 0.0
    features: MatchFeatures = field(default_factory=MatchFeatures)

    # Lifecycle
    status: SuggestionStatus = SuggestionStatus.PENDING
    origin: SuggestionOrigin = SuggestionOrigin.RULE
    model_version: str = "v1"
    created_at: datetime = field(default_factory=utc_now)
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    decision_reason: Optional[str] = None

    @property
    def signature(self) -> Tuple[str, Tuple[str, ...], Tuple[str, ...]]:
        """Order-independent identity of the pairing."""
        return (
            self.shape.value,
            tuple(sorted(self.statement_ids)),
            tuple(sorted(self.transaction_ids)),
        )

    @property
    def row_count(self) -> int:
        return len(self.statement_ids) + len(self.transaction_ids)

    def overlaps(self, other: "Suggestion") -> bool:
        return bool(
            set(self.statement_ids) & set(other.statement_ids)
            or set(self.transaction_ids) & set(other.transaction_ids)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "account_id": self.account_id,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "shape": self.shape.value,
            "statement_ids": list(self.statement_ids),
            "transaction_ids": list(self.transaction_ids),
            "score": self.score,
            "features": self.features.to_dict(),
            "status": self.status.value,
            "origin": self.origin.value,
            "model_version": self.model_version,
        }


@dataclass
class ReconciliationLink:
    """One (statement line, transaction) edge of an accepted suggestion."""
    id: str = field(default_factory=lambda: str(uuid4()))
    suggestion_id: str = ""
    shape: MatchShape = MatchShape.ONE_TO_ONE
    statement_line_id: str = ""
    transaction_id: str = ""
    amount_cents: int = 0
    created_at: datetime = field(default_factory=utc_now)
    created_by: Optional[str] = None


@dataclass
class ReleaseCounts:
    """Breakdown returned by desconciliar."""
    one_to_one_released: int = 0
    batch_lines_released: int = 0
    split_lines_released: int = 0
    batches_removed: int = 0
    splits_removed: int = 0

    @property
    def total_lines_released(self) -> int:
        return self.one_to_one_released + self.batch_lines_released + self.split_lines_released

    def to_dict(self) -> Dict[str, int]:
        return {
            "one_to_one_released": self.one_to_one_released,
            "batch_lines_released": self.batch_lines_released,
            "split_lines_released": self.split_lines_released,
            "batches_removed": self.batches_removed,
            "splits_removed": self.splits_removed,
        }


@dataclass
class BulkAcceptResult:
    """Outcome of accepting every high-confidence suggestion in a scope."""
    attempted: int = 0
    accepted_ids: List[str] = field(default_factory=list)
    conflicted_ids: List[str] = field(default_factory=list)

    @property
    def accepted(self) -> int:
        return len(self.accepted_ids)

    @property
    def conflicts(self) -> int:
        return len(self.conflicted_ids)


@dataclass
class AuditEntry:
    """An entry in the audit log."""
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=utc_now)

    # Action
    action: AuditAction = AuditAction.SUGGESTION_ACCEPTED
    actor_id: str = "system"
    reason: Optional[str] = None

    # Context
    org_id: Optional[str] = None
    subject_type: str = ""
    subject_id: str = ""

    # Details
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
