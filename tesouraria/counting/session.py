"""
Counting session workflow (sessoes de contagem).

State machine:

    OPEN -> COUNTING -> VALIDATED -> CLOSED
                     -> DIVERGENT -> (recount) COUNTING
    COUNTING / VALIDATED / DIVERGENT -> REJECTED

A conferente finalizes or rejects; a finalized session's close time starts
the scan window of the next bank import.
"""

from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Mapping, Optional, TypeVar

import structlog
from sqlalchemy.orm import Session, sessionmaker

from ..clock import utc_now
from ..config import Settings, get_settings
from ..db import get_session_factory, run_in_transaction, session_scope
from ..exceptions import (
    InvalidScopeError,
    InvalidStateError,
    PermissionDeniedError,
    ValidationError,
)
from ..models import (
    Actor,
    AuditAction,
    AuditEntry,
    CompareLevel,
    ConfrontationResult,
    CountingSession,
    CountSubmission,
    SessionStatus,
    SyncWindow,
)
from ..stores import CountingStore
from ..utils.audit_logger import AuditLogger
from .confrontation import ConfrontationEngine

logger = structlog.get_logger()

T = TypeVar("T")

_CENT = Decimal("0.01")

SUBMITTABLE = (
    SessionStatus.OPEN,
    SessionStatus.COUNTING,
    SessionStatus.VALIDATED,
    SessionStatus.DIVERGENT,
)
REJECTABLE = (SessionStatus.COUNTING, SessionStatus.VALIDATED, SessionStatus.DIVERGENT)


def to_cents(value: Any, field: str = "value") -> int:
    """
    Convert a counted amount in currency units to integer cents.

    Rejects booleans, non-numeric text, NaN/infinity, negatives and
    fractions of a cent.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number", field=field)
    try:
        amount = Decimal(str(value).strip()) if isinstance(value, str) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", field=field, value=str(value))
    if not amount.is_finite():
        raise ValidationError(f"{field} must be finite", field=field, value=str(value))
    if amount < 0:
        raise ValidationError(f"{field} must not be negative", field=field, value=str(value))
    if amount != amount.quantize(_CENT):
        raise ValidationError(f"{field} has fractions of a cent", field=field, value=str(value))
    return int(amount * 100)


def parse_count_values(values_by_category: Mapping[str, Any]) -> Dict[str, int]:
    """Validate a per-category tally and convert it to cents."""
    if not values_by_category:
        raise ValidationError("A count needs at least one category", field="values_by_category")
    parsed: Dict[str, int] = {}
    for category, value in values_by_category.items():
        name = (category or "").strip() if isinstance(category, str) else ""
        if not name:
            raise ValidationError("Category names must be non-empty text", field="values_by_category")
        parsed[name] = to_cents(value, field=name)
    return parsed


class CountingService:
    """Operations over counting sessions, one transaction each."""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        settings: Optional[Settings] = None,
    ):
        self._session_factory = session_factory
        self.settings = settings or get_settings()

    @property
    def session_factory(self) -> sessionmaker:
        return self._session_factory or get_session_factory()

    def _run(self, work: Callable[[Session], T]) -> T:
        return run_in_transaction(
            work,
            session_factory=self.session_factory,
            attempts=self.settings.transaction_retry_attempts,
        )

    def get_session(self, session_id: str) -> CountingSession:
        with session_scope(self.session_factory) as session:
            return CountingStore(session).get(session_id)

    def open_sessao_contagem(
        self,
        org_id: str,
        service_date: date,
        period: str,
        actor: Optional[Actor] = None,
        branch_id: Optional[str] = None,
        event_id: Optional[str] = None,
        tolerance_cents: Optional[int] = None,
        compare_level: Optional[CompareLevel] = None,
    ) -> CountingSession:
        """
        Open the session for (org, branch, service date, period), or return
        the one already active for that key.
        """
        actor = actor or Actor.system()
        if not org_id:
            raise InvalidScopeError("Counting session requires an org id")
        if service_date is None or not (period or "").strip():
            raise ValidationError("Counting session requires a service date and period", field="period")
        tolerance = self.settings.counting_tolerance_cents if tolerance_cents is None else tolerance_cents
        if tolerance < 0:
            raise ValidationError("Tolerance must not be negative", field="tolerance_cents")
        level = CompareLevel(compare_level or self.settings.counting_compare_level)

        def work(session: Session) -> CountingSession:
            store = CountingStore(session)
            existing = store.find_active(org_id, branch_id, service_date, period.strip())
            if existing is not None:
                return existing

            candidate = CountingSession(
                org_id=org_id,
                branch_id=branch_id,
                service_date=service_date,
                period=period.strip(),
                event_id=event_id,
                tolerance_cents=tolerance,
                compare_level=level,
            )
            opened = store.create(candidate)
            if opened.id == candidate.id:
                AuditLogger(session).log(AuditEntry(
                    action=AuditAction.SESSION_OPENED,
                    actor_id=actor.user_id,
                    org_id=org_id,
                    subject_type="counting_session",
                    subject_id=opened.id,
                    message="Counting session opened",
                    details={
                        "branch_id": branch_id,
                        "service_date": service_date.isoformat(),
                        "period": opened.period,
                        "event_id": event_id,
                    },
                ))
            return opened

        return self._run(work)

    def submit_contagem(
        self,
        session_id: str,
        counter_id: str,
        values_by_category: Mapping[str, Any],
    ) -> CountSubmission:
        """
        Append a counter's tally. A submission after a confrontation starts
        a recount.
        """
        if not counter_id:
            raise ValidationError("Counter id is required", field="counter_id")
        values = parse_count_values(values_by_category)

        def work(session: Session) -> CountSubmission:
            store = CountingStore(session)
            counting_session = store.get(session_id, for_update=True)
            if counting_session.status not in SUBMITTABLE:
                raise InvalidStateError(
                    f"Session {session_id} does not accept counts",
                    current_state=counting_session.status.value,
                    session_id=session_id,
                )
            if counting_session.status != SessionStatus.COUNTING:
                store.update(session_id, expected=list(SUBMITTABLE), status=SessionStatus.COUNTING)

            submission = store.add_submission(session_id, counter_id, values)
            AuditLogger(session).log(AuditEntry(
                action=AuditAction.COUNT_SUBMITTED,
                actor_id=counter_id,
                org_id=counting_session.org_id,
                subject_type="counting_session",
                subject_id=session_id,
                message=f"Count #{submission.sequence} submitted",
                details={
                    "sequence": submission.sequence,
                    "total_cents": submission.total_cents,
                    "recount": counting_session.status in (
                        SessionStatus.VALIDATED, SessionStatus.DIVERGENT
                    ),
                },
            ))
            return submission

        return self._run(work)

    def confrontar_contagens(self, session_id: str, actor: Optional[Actor] = None) -> ConfrontationResult:
        actor = actor or Actor.system()
        return self._run(
            lambda session: ConfrontationEngine(session).confrontar(session_id, actor.user_id)
        )

    def _check_reviewer(self, store: CountingStore, counting_session: CountingSession, actor: Actor) -> None:
        if not actor.is_conferente:
            raise PermissionDeniedError(actor.user_id, "conferente")
        if self.settings.require_independent_reviewer:
            counters = {s.counter_id for s in store.list_submissions(counting_session.id)}
            if actor.user_id in counters:
                raise PermissionDeniedError(actor.user_id, "independent_reviewer")

    def finalizar_sessao(
        self,
        session_id: str,
        actor: Actor,
        override_reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CountingSession:
        """
        Close a validated session.

        A divergent session can only be closed when overrides are enabled
        and a reason is given.
        """

        def work(session: Session) -> CountingSession:
            store = CountingStore(session)
            counting_session = store.get(session_id, for_update=True)
            self._check_reviewer(store, counting_session, actor)

            action = AuditAction.SESSION_CLOSED
            if counting_session.status == SessionStatus.DIVERGENT:
                if not self.settings.allow_divergent_override:
                    raise InvalidStateError(
                        f"Session {session_id} is divergent",
                        current_state=counting_session.status.value,
                        session_id=session_id,
                    )
                if not (override_reason or "").strip():
                    raise ValidationError(
                        "Closing a divergent session requires a reason",
                        field="override_reason",
                    )
                action = AuditAction.SESSION_OVERRIDDEN
            elif counting_session.status != SessionStatus.VALIDATED:
                raise InvalidStateError(
                    f"Session {session_id} is not validated",
                    current_state=counting_session.status.value,
                    session_id=session_id,
                )

            closed_at = now or utc_now()
            if not store.update(
                session_id,
                expected=[counting_session.status],
                status=SessionStatus.CLOSED,
                closed_at=closed_at,
                closed_by=actor.user_id,
            ):
                raise InvalidStateError(
                    f"Session {session_id} changed concurrently",
                    session_id=session_id,
                )

            AuditLogger(session).log(AuditEntry(
                action=action,
                actor_id=actor.user_id,
                reason=override_reason,
                org_id=counting_session.org_id,
                subject_type="counting_session",
                subject_id=session_id,
                message="Counting session closed",
                details={
                    "previous_status": counting_session.status.value,
                    "variance_cents": counting_session.variance_cents,
                },
            ))
            return store.get(session_id)

        return self._run(work)

    def rejeitar_sessao(self, session_id: str, actor: Actor, reason: str) -> CountingSession:
        """Reject a session and discard its counts. A reason is mandatory."""
        if not (reason or "").strip():
            raise ValidationError("Rejecting a session requires a reason", field="reason")

        def work(session: Session) -> CountingSession:
            store = CountingStore(session)
            counting_session = store.get(session_id, for_update=True)
            self._check_reviewer(store, counting_session, actor)
            if counting_session.status not in REJECTABLE or not store.update(
                session_id,
                expected=list(REJECTABLE),
                status=SessionStatus.REJECTED,
                rejected_by=actor.user_id,
                rejection_reason=reason,
            ):
                raise InvalidStateError(
                    f"Session {session_id} cannot be rejected",
                    current_state=counting_session.status.value,
                    session_id=session_id,
                )

            discarded = store.discard_submissions(session_id)
            AuditLogger(session).log(AuditEntry(
                action=AuditAction.SESSION_REJECTED,
                actor_id=actor.user_id,
                reason=reason,
                org_id=counting_session.org_id,
                subject_type="counting_session",
                subject_id=session_id,
                message="Counting session rejected",
                details={"discarded_submissions": discarded},
            ))
            return store.get(session_id)

        return self._run(work)

    def sync_window(
        self,
        org_id: str,
        branch_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SyncWindow:
        """Scan window for the next bank import of an org (and branch)."""
        if not org_id:
            raise InvalidScopeError("Sync window requires an org id")
        end = now or utc_now()
        with session_scope(self.session_factory) as session:
            last = CountingStore(session).latest_closed(org_id, branch_id)
        if last is not None and last.closed_at is not None:
            return SyncWindow(start=last.closed_at, end=end, last_closed_session_id=last.id)
        return SyncWindow(start=end - timedelta(days=self.settings.sync_lookback_days), end=end)
