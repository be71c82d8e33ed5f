"""
Counting store: counting sessions and their append-only submissions.
"""

from typing import Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..clock import utc_now
from ..db.tables import CountingSessionRow, CountSubmissionRow
from ..exceptions import NotFoundError
from ..models import (
    CompareLevel,
    CountingSession,
    CountSubmission,
    SessionStatus,
)

logger = structlog.get_logger()


def _session_from_row(row: CountingSessionRow) -> CountingSession:
    return CountingSession(
        id=row.id,
        org_id=row.org_id,
        branch_id=row.branch_id,
        service_date=row.service_date,
        period=row.period,
        event_id=row.event_id,
        status=SessionStatus(row.status),
        tolerance_cents=row.tolerance_cents,
        compare_level=CompareLevel(row.compare_level),
        variance_cents=row.variance_cents,
        variance_by_category=dict(row.variance_by_category or {}),
        closed_at=row.closed_at,
        closed_by=row.closed_by,
        rejected_by=row.rejected_by,
        rejection_reason=row.rejection_reason,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _submission_from_row(row: CountSubmissionRow) -> CountSubmission:
    return CountSubmission(
        id=row.id,
        session_id=row.session_id,
        counter_id=row.counter_id,
        sequence=row.sequence,
        values_by_category=dict(row.values_by_category or {}),
        submitted_at=row.submitted_at,
        discarded_at=row.discarded_at,
    )


class CountingStore:
    """Session-bound access to counting sessions and submissions."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, session_id: str, for_update: bool = False) -> CountingSession:
        stmt = select(CountingSessionRow).where(CountingSessionRow.id == session_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = self.session.scalars(stmt).first()
        if row is None:
            raise NotFoundError("CountingSession", session_id)
        return _session_from_row(row)

    def find_active(
        self,
        org_id: str,
        branch_id: Optional[str],
        service_date,
        period: str,
    ) -> Optional[CountingSession]:
        stmt = select(CountingSessionRow).where(
            CountingSessionRow.org_id == org_id,
            func.coalesce(CountingSessionRow.branch_id, "") == (branch_id or ""),
            CountingSessionRow.service_date == service_date,
            CountingSessionRow.period == period,
            CountingSessionRow.status.in_([s.value for s in SessionStatus.active()]),
        )
        row = self.session.scalars(stmt).first()
        return _session_from_row(row) if row is not None else None

    def create(self, counting_session: CountingSession) -> CountingSession:
        """
        Insert a new active session, or return the one that won the race
        for the same identity key.
        """
        row = CountingSessionRow(
            id=counting_session.id,
            org_id=counting_session.org_id,
            branch_id=counting_session.branch_id,
            service_date=counting_session.service_date,
            period=counting_session.period,
            event_id=counting_session.event_id,
            status=counting_session.status.value,
            tolerance_cents=counting_session.tolerance_cents,
            compare_level=counting_session.compare_level.value,
            variance_by_category={},
            created_at=counting_session.created_at,
            updated_at=counting_session.updated_at,
        )
        try:
            with self.session.begin_nested():
                self.session.add(row)
        except IntegrityError:
            existing = self.find_active(
                counting_session.org_id,
                counting_session.branch_id,
                counting_session.service_date,
                counting_session.period,
            )
            if existing is None:
                raise
            logger.info(
                "Counting session already open",
                session_id=existing.id,
                org_id=existing.org_id,
            )
            return existing
        return counting_session

    def update(self, session_id: str, expected: List[SessionStatus], **values) -> bool:
        """Compare-and-set on status; False when the session left ``expected``."""
        if "status" in values and isinstance(values["status"], SessionStatus):
            values["status"] = values["status"].value
        if "compare_level" in values and isinstance(values["compare_level"], CompareLevel):
            values["compare_level"] = values["compare_level"].value
        values["updated_at"] = utc_now()
        result = self.session.execute(
            update(CountingSessionRow)
            .where(
                CountingSessionRow.id == session_id,
                CountingSessionRow.status.in_([s.value for s in expected]),
            )
            .values(**values)
        )
        return result.rowcount == 1

    def latest_closed(self, org_id: str, branch_id: Optional[str] = None) -> Optional[CountingSession]:
        stmt = (
            select(CountingSessionRow)
            .where(
                CountingSessionRow.org_id == org_id,
                CountingSessionRow.status == SessionStatus.CLOSED.value,
                CountingSessionRow.closed_at.is_not(None),
            )
            .order_by(CountingSessionRow.closed_at.desc())
        )
        if branch_id is not None:
            stmt = stmt.where(CountingSessionRow.branch_id == branch_id)
        row = self.session.scalars(stmt).first()
        return _session_from_row(row) if row is not None else None

    # Submissions

    def add_submission(
        self,
        session_id: str,
        counter_id: str,
        values_by_category: Dict[str, int],
    ) -> CountSubmission:
        """Append a submission; its sequence is one past the counter's last."""
        last = self.session.scalar(
            select(func.max(CountSubmissionRow.sequence)).where(
                CountSubmissionRow.session_id == session_id,
                CountSubmissionRow.counter_id == counter_id,
            )
        )
        submission = CountSubmission(
            session_id=session_id,
            counter_id=counter_id,
            sequence=(last or 0) + 1,
            values_by_category=dict(values_by_category),
        )
        self.session.add(CountSubmissionRow(
            id=submission.id,
            session_id=session_id,
            counter_id=counter_id,
            sequence=submission.sequence,
            values_by_category=submission.values_by_category,
            total_cents=submission.total_cents,
            submitted_at=submission.submitted_at,
        ))
        self.session.flush()
        return submission

    def list_submissions(self, session_id: str, include_discarded: bool = False) -> List[CountSubmission]:
        stmt = (
            select(CountSubmissionRow)
            .where(CountSubmissionRow.session_id == session_id)
            .order_by(CountSubmissionRow.counter_id, CountSubmissionRow.sequence)
        )
        if not include_discarded:
            stmt = stmt.where(CountSubmissionRow.discarded_at.is_(None))
        return [_submission_from_row(row) for row in self.session.scalars(stmt)]

    def latest_per_counter(self, session_id: str) -> Dict[str, CountSubmission]:
        """Most recent live submission of each counter."""
        latest: Dict[str, CountSubmission] = {}
        for submission in self.list_submissions(session_id):
            current = latest.get(submission.counter_id)
            if current is None or submission.sequence > current.sequence:
                latest[submission.counter_id] = submission
        return latest

    def discard_submissions(self, session_id: str) -> int:
        result = self.session.execute(
            update(CountSubmissionRow)
            .where(
                CountSubmissionRow.session_id == session_id,
                CountSubmissionRow.discarded_at.is_(None),
            )
            .values(discarded_at=utc_now())
        )
        return result.rowcount or 0
