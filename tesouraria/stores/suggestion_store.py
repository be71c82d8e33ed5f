"""
Suggestion store: persisted suggestions and the links of accepted ones.
"""

from typing import Iterable, List, Optional, Set, Tuple

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from ..clock import utc_now
from ..db.tables import ReconciliationLinkRow, SuggestionRow
from ..exceptions import NotFoundError
from ..models import (
    MatchFeatures,
    MatchShape,
    ReconciliationLink,
    Scope,
    Suggestion,
    SuggestionOrigin,
    SuggestionStatus,
)


def _suggestion_from_row(row: SuggestionRow) -> Suggestion:
    return Suggestion(
        id=row.id,
        org_id=row.org_id,
        account_id=row.account_id,
        period_start=row.period_start,
        period_end=row.period_end,
        shape=MatchShape(row.shape),
        statement_ids=list(row.statement_ids or []),
        transaction_ids=list(row.transaction_ids or []),
        score=row.score,
        features=MatchFeatures.from_dict(row.features),
        status=SuggestionStatus(row.status),
        origin=SuggestionOrigin(row.origin),
        model_version=row.model_version,
        created_at=row.created_at,
        decided_at=row.decided_at,
        decided_by=row.decided_by,
        decision_reason=row.decision_reason,
    )


def _row_from_suggestion(suggestion: Suggestion) -> SuggestionRow:
    return SuggestionRow(
        id=suggestion.id,
        org_id=suggestion.org_id,
        account_id=suggestion.account_id,
        period_start=suggestion.period_start,
        period_end=suggestion.period_end,
        shape=suggestion.shape.value,
        statement_ids=list(suggestion.statement_ids),
        transaction_ids=list(suggestion.transaction_ids),
        score=suggestion.score,
        features=suggestion.features.to_dict(),
        status=suggestion.status.value,
        origin=suggestion.origin.value,
        model_version=suggestion.model_version,
        created_at=suggestion.created_at,
        decided_at=suggestion.decided_at,
        decided_by=suggestion.decided_by,
        decision_reason=suggestion.decision_reason,
    )


def _link_from_row(row: ReconciliationLinkRow) -> ReconciliationLink:
    return ReconciliationLink(
        id=row.id,
        suggestion_id=row.suggestion_id,
        shape=MatchShape(row.shape),
        statement_line_id=row.statement_line_id,
        transaction_id=row.transaction_id,
        amount_cents=row.amount_cents,
        created_at=row.created_at,
        created_by=row.created_by,
    )


class SuggestionStore:
    """Session-bound access to suggestions and reconciliation links."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, suggestion_id: str, for_update: bool = False) -> Suggestion:
        stmt = select(SuggestionRow).where(SuggestionRow.id == suggestion_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = self.session.scalars(stmt).first()
        if row is None:
            raise NotFoundError("Suggestion", suggestion_id)
        return _suggestion_from_row(row)

    def add(self, suggestion: Suggestion) -> Suggestion:
        self.session.add(_row_from_suggestion(suggestion))
        self.session.flush()
        return suggestion

    def bulk_insert(self, suggestions: Iterable[Suggestion]) -> int:
        rows = [_row_from_suggestion(s) for s in suggestions]
        self.session.add_all(rows)
        self.session.flush()
        return len(rows)

    def _pending_in_scope(self, scope: Scope):
        """Pending rows of the org whose period overlaps the scope period."""
        conditions = [
            SuggestionRow.org_id == scope.org_id,
            SuggestionRow.status == SuggestionStatus.PENDING.value,
            or_(SuggestionRow.period_start.is_(None), SuggestionRow.period_start <= scope.period_end),
            or_(SuggestionRow.period_end.is_(None), SuggestionRow.period_end >= scope.period_start),
        ]
        if scope.account_id:
            conditions.append(SuggestionRow.account_id == scope.account_id)
        return conditions

    def list_pending(self, scope: Scope, min_score: Optional[float] = None) -> List[Suggestion]:
        stmt = (
            select(SuggestionRow)
            .where(*self._pending_in_scope(scope))
            .order_by(SuggestionRow.score.desc(), SuggestionRow.id)
        )
        if min_score is not None:
            stmt = stmt.where(SuggestionRow.score >= min_score)
        return [_suggestion_from_row(row) for row in self.session.scalars(stmt)]

    def delete_pending(self, scope: Scope) -> int:
        """Drop pending suggestions for a scope; decided ones are history and stay."""
        result = self.session.execute(
            delete(SuggestionRow)
            .where(*self._pending_in_scope(scope))
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    def set_status(
        self,
        suggestion_id: str,
        status: SuggestionStatus,
        expected: SuggestionStatus,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """Move a suggestion from ``expected`` to ``status``; False if it had moved on."""
        result = self.session.execute(
            update(SuggestionRow)
            .where(
                SuggestionRow.id == suggestion_id,
                SuggestionRow.status == expected.value,
            )
            .values(
                status=status.value,
                decided_at=utc_now(),
                decided_by=actor_id,
                decision_reason=reason,
            )
        )
        return result.rowcount == 1

    def accepted_row_ids(self, org_id: str) -> Tuple[Set[str], Set[str]]:
        """Statement line and transaction ids already carrying an active link."""
        rows = self.session.execute(
            select(ReconciliationLinkRow.statement_line_id, ReconciliationLinkRow.transaction_id)
            .join(SuggestionRow, SuggestionRow.id == ReconciliationLinkRow.suggestion_id)
            .where(
                SuggestionRow.org_id == org_id,
                SuggestionRow.status == SuggestionStatus.ACCEPTED.value,
            )
        ).all()
        return {line_id for line_id, _ in rows}, {txn_id for _, txn_id in rows}

    def rejected_signatures(self, org_id: str) -> Set[tuple]:
        rows = self.session.scalars(
            select(SuggestionRow).where(
                SuggestionRow.org_id == org_id,
                SuggestionRow.status == SuggestionStatus.REJECTED.value,
            )
        )
        return {_suggestion_from_row(row).signature for row in rows}

    # Links

    def add_links(self, links: Iterable[ReconciliationLink]) -> int:
        rows = [
            ReconciliationLinkRow(
                id=link.id,
                suggestion_id=link.suggestion_id,
                shape=link.shape.value,
                statement_line_id=link.statement_line_id,
                transaction_id=link.transaction_id,
                amount_cents=link.amount_cents,
                created_at=link.created_at,
                created_by=link.created_by,
            )
            for link in links
        ]
        self.session.add_all(rows)
        self.session.flush()
        return len(rows)

    def links_for_transaction(self, transaction_id: str) -> List[ReconciliationLink]:
        rows = self.session.scalars(
            select(ReconciliationLinkRow)
            .where(ReconciliationLinkRow.transaction_id == transaction_id)
            .order_by(ReconciliationLinkRow.created_at, ReconciliationLinkRow.id)
        )
        return [_link_from_row(row) for row in rows]

    def links_for_suggestion(self, suggestion_id: str) -> List[ReconciliationLink]:
        rows = self.session.scalars(
            select(ReconciliationLinkRow)
            .where(ReconciliationLinkRow.suggestion_id == suggestion_id)
            .order_by(ReconciliationLinkRow.statement_line_id, ReconciliationLinkRow.transaction_id)
        )
        return [_link_from_row(row) for row in rows]

    def delete_links(self, suggestion_id: str) -> int:
        result = self.session.execute(
            delete(ReconciliationLinkRow)
            .where(ReconciliationLinkRow.suggestion_id == suggestion_id)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0
