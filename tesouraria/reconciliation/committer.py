"""
Reconciliation committer: applies and reverses operator decisions.

Every method works inside the caller's session and either completes or
raises; the surrounding transaction is what makes each decision atomic.
"""

from collections import OrderedDict
from typing import Iterable, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..exceptions import (
    ConflictError,
    InvalidScopeError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from ..models import (
    Actor,
    AuditAction,
    AuditEntry,
    MatchShape,
    ReconciliationLink,
    ReleaseCounts,
    Suggestion,
    SuggestionOrigin,
    SuggestionStatus,
)
from ..stores import LedgerStore, SuggestionStore
from ..utils.audit_logger import AuditLogger
from .scoring import SimilarityScorer

logger = structlog.get_logger()


class ReconciliationCommitter:
    """Accept, reject and undo suggestions against the ledger."""

    def __init__(self, session: Session, settings: Optional[Settings] = None):
        self.session = session
        self.settings = settings or get_settings()
        self.ledger = LedgerStore(session)
        self.suggestions = SuggestionStore(session)
        self.audit = AuditLogger(session)

    def accept(self, suggestion_id: str, actor: Actor) -> Suggestion:
        """
        Apply a pending suggestion to the ledger.

        Raises:
            NotFoundError: Unknown suggestion or ledger row
            InvalidStateError: Suggestion is not pending
            ConflictError: A row was linked by someone else in the meantime
        """
        suggestion = self.suggestions.get(suggestion_id, for_update=True)
        return self._accept(suggestion, actor, AuditAction.SUGGESTION_ACCEPTED)

    def _accept(self, suggestion: Suggestion, actor: Actor, action: AuditAction) -> Suggestion:
        if suggestion.status != SuggestionStatus.PENDING:
            raise InvalidStateError(
                f"Suggestion {suggestion.id} is not pending",
                current_state=suggestion.status.value,
                suggestion_id=suggestion.id,
            )

        lines = self.ledger.get_statement_lines(suggestion.statement_ids)
        transactions = self.ledger.get_transactions(suggestion.transaction_ids)
        for line_id in suggestion.statement_ids:
            if line_id not in lines:
                raise NotFoundError("StatementLine", line_id)
        for txn_id in suggestion.transaction_ids:
            if txn_id not in transactions:
                raise NotFoundError("Transaction", txn_id)

        if not self.suggestions.set_status(
            suggestion.id,
            SuggestionStatus.ACCEPTED,
            expected=SuggestionStatus.PENDING,
            actor_id=actor.user_id,
        ):
            raise InvalidStateError(
                f"Suggestion {suggestion.id} was decided concurrently",
                suggestion_id=suggestion.id,
            )

        line_status = suggestion.shape.statement_status
        taken_lines = [
            line_id for line_id in suggestion.statement_ids
            if not self.ledger.claim_statement_line(line_id, line_status)
        ]
        taken_txns = [
            txn_id for txn_id in suggestion.transaction_ids
            if not self.ledger.claim_transaction(txn_id, suggestion.id)
        ]
        if taken_lines or taken_txns:
            logger.warning(
                "Suggestion conflicts with existing reconciliation",
                suggestion_id=suggestion.id,
                statement_ids=taken_lines,
                transaction_ids=taken_txns,
            )
            raise ConflictError(suggestion.id, taken_lines, taken_txns)

        links = self._build_links(suggestion, lines, transactions, actor)
        self.suggestions.add_links(links)

        self.audit.log(AuditEntry(
            action=action,
            actor_id=actor.user_id,
            org_id=suggestion.org_id,
            subject_type="suggestion",
            subject_id=suggestion.id,
            message=f"Accepted {suggestion.shape.value} reconciliation",
            details={
                "shape": suggestion.shape.value,
                "statement_ids": list(suggestion.statement_ids),
                "transaction_ids": list(suggestion.transaction_ids),
                "score": suggestion.score,
                "origin": suggestion.origin.value,
            },
        ))

        suggestion.status = SuggestionStatus.ACCEPTED
        suggestion.decided_by = actor.user_id
        return suggestion

    @staticmethod
    def _build_links(suggestion, lines, transactions, actor) -> List[ReconciliationLink]:
        links = []
        for line_id in suggestion.statement_ids:
            for txn_id in suggestion.transaction_ids:
                if suggestion.shape == MatchShape.SPLIT:
                    amount = abs(transactions[txn_id].amount_cents)
                else:
                    amount = abs(lines[line_id].amount_cents)
                links.append(ReconciliationLink(
                    suggestion_id=suggestion.id,
                    shape=suggestion.shape,
                    statement_line_id=line_id,
                    transaction_id=txn_id,
                    amount_cents=amount,
                    created_by=actor.user_id,
                ))
        return links

    def reject(self, suggestion_id: str, actor: Actor, reason: Optional[str] = None) -> Suggestion:
        """Mark a pending suggestion rejected and record the pairing as feedback."""
        suggestion = self.suggestions.get(suggestion_id, for_update=True)
        if suggestion.status != SuggestionStatus.PENDING or not self.suggestions.set_status(
            suggestion.id,
            SuggestionStatus.REJECTED,
            expected=SuggestionStatus.PENDING,
            actor_id=actor.user_id,
            reason=reason,
        ):
            raise InvalidStateError(
                f"Suggestion {suggestion.id} is not pending",
                current_state=suggestion.status.value,
                suggestion_id=suggestion.id,
            )

        self.audit.log(AuditEntry(
            action=AuditAction.SUGGESTION_REJECTED,
            actor_id=actor.user_id,
            reason=reason,
            org_id=suggestion.org_id,
            subject_type="suggestion",
            subject_id=suggestion.id,
            message="Rejected reconciliation suggestion",
            details={
                "shape": suggestion.shape.value,
                "statement_ids": list(suggestion.statement_ids),
                "transaction_ids": list(suggestion.transaction_ids),
                "score": suggestion.score,
                "features": suggestion.features.to_dict(),
                "model_version": suggestion.model_version,
            },
        ))

        suggestion.status = SuggestionStatus.REJECTED
        suggestion.decided_by = actor.user_id
        suggestion.decision_reason = reason
        return suggestion

    def desconciliar(
        self,
        transaction_id: str,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> ReleaseCounts:
        """
        Undo every accepted reconciliation touching a transaction.

        Each accepted suggestion is released as a whole: its lines return to
        unmatched, its links are deleted, every transaction it references is
        cleared, and it ends revoked.

        Raises:
            NotFoundError: Unknown transaction
            InvalidStateError: Transaction has no accepted reconciliation
        """
        txn = self.ledger.get_transaction(transaction_id, for_update=True)

        suggestion_ids: "OrderedDict[str, None]" = OrderedDict()
        for link in self.suggestions.links_for_transaction(transaction_id):
            suggestion_ids[link.suggestion_id] = None
        if txn.reconciled_suggestion_id:
            suggestion_ids[txn.reconciled_suggestion_id] = None

        accepted = [
            suggestion for suggestion in (
                self.suggestions.get(sid, for_update=True) for sid in suggestion_ids
            )
            if suggestion.status == SuggestionStatus.ACCEPTED
        ]
        if not accepted:
            raise InvalidStateError(
                f"Transaction {transaction_id} is not reconciled",
                current_state=txn.reconciliation_status,
                transaction_id=transaction_id,
            )

        counts = ReleaseCounts()
        for suggestion in accepted:
            self._release(suggestion, actor, reason, transaction_id)
            released = len(suggestion.statement_ids)
            if suggestion.shape == MatchShape.ONE_TO_ONE:
                counts.one_to_one_released += released
            elif suggestion.shape == MatchShape.BATCH:
                counts.batch_lines_released += released
                counts.batches_removed += 1
            else:
                counts.split_lines_released += released
                counts.splits_removed += 1

        logger.info(
            "Reconciliation undone",
            transaction_id=transaction_id,
            actor_id=actor.user_id,
            **counts.to_dict(),
        )
        return counts

    def _release(self, suggestion: Suggestion, actor: Actor, reason: Optional[str], via: str) -> None:
        line_status = suggestion.shape.statement_status
        for line_id in suggestion.statement_ids:
            if not self.ledger.release_statement_line(line_id, line_status):
                raise InvalidStateError(
                    f"Statement line {line_id} is not linked by suggestion {suggestion.id}",
                    suggestion_id=suggestion.id,
                )
        for txn_id in suggestion.transaction_ids:
            if not self.ledger.release_transaction(txn_id, suggestion.id):
                raise InvalidStateError(
                    f"Transaction {txn_id} is not linked by suggestion {suggestion.id}",
                    suggestion_id=suggestion.id,
                )
        removed_links = self.suggestions.delete_links(suggestion.id)
        self.suggestions.set_status(
            suggestion.id,
            SuggestionStatus.REVOKED,
            expected=SuggestionStatus.ACCEPTED,
            actor_id=actor.user_id,
            reason=reason,
        )
        self.audit.log(AuditEntry(
            action=AuditAction.RECONCILIATION_UNDONE,
            actor_id=actor.user_id,
            reason=reason,
            org_id=suggestion.org_id,
            subject_type="suggestion",
            subject_id=suggestion.id,
            message=f"Undid {suggestion.shape.value} reconciliation",
            details={
                "requested_for_transaction": via,
                "shape": suggestion.shape.value,
                "statement_ids": list(suggestion.statement_ids),
                "transaction_ids": list(suggestion.transaction_ids),
                "links_removed": removed_links,
            },
        ))

    def reconcile_manual(
        self,
        org_id: str,
        shape: MatchShape,
        statement_ids: Iterable[str],
        transaction_ids: Iterable[str],
        actor: Actor,
        account_id: Optional[str] = None,
    ) -> Suggestion:
        """
        Link operator-chosen rows directly.

        The pairing is stored as a manual suggestion and accepted through the
        same path as generated ones.

        Raises:
            ValidationError: Wrong cardinality for the shape, mixed signs, or
                amounts that do not agree within tolerance
            InvalidScopeError: A row belongs to another org
        """
        line_ids = list(statement_ids)
        txn_ids = list(transaction_ids)
        self._check_cardinality(shape, line_ids, txn_ids)

        lines = self.ledger.get_statement_lines(line_ids)
        transactions = self.ledger.get_transactions(txn_ids)
        for line_id in line_ids:
            if line_id not in lines:
                raise NotFoundError("StatementLine", line_id)
        for txn_id in txn_ids:
            if txn_id not in transactions:
                raise NotFoundError("Transaction", txn_id)

        rows = list(lines.values()) + list(transactions.values())
        if any(row.org_id != org_id for row in rows):
            raise InvalidScopeError("Rows belong to a different org", org_id=org_id)
        signs = {row.amount_cents > 0 for row in rows}
        if len(signs) != 1 or any(row.amount_cents == 0 for row in rows):
            raise ValidationError("Rows must share the same non-zero sign", field="amount_cents")

        line_total = sum(abs(lines[i].amount_cents) for i in line_ids)
        txn_total = sum(abs(transactions[i].amount_cents) for i in txn_ids)
        if abs(line_total - txn_total) > self.settings.amount_tolerance_cents:
            raise ValidationError(
                "Statement and transaction totals differ",
                field="amount_cents",
                statement_total_cents=line_total,
                transaction_total_cents=txn_total,
            )

        if shape == MatchShape.SPLIT:
            anchor = lines[line_ids[0]]
            members = [transactions[i] for i in txn_ids]
        else:
            anchor = transactions[txn_ids[0]]
            members = [lines[i] for i in line_ids]
        score, features = SimilarityScorer(self.settings).score(
            shape,
            abs(anchor.amount_cents),
            anchor.transaction_date,
            anchor.description,
            [(abs(m.amount_cents), m.transaction_date, m.description) for m in members],
        )

        dates = [row.transaction_date for row in rows]
        suggestion = Suggestion(
            org_id=org_id,
            account_id=account_id,
            period_start=min(dates),
            period_end=max(dates),
            shape=shape,
            statement_ids=line_ids,
            transaction_ids=txn_ids,
            score=score,
            features=features,
            origin=SuggestionOrigin.MANUAL,
            model_version=self.settings.model_version,
        )
        self.suggestions.add(suggestion)
        return self._accept(suggestion, actor, AuditAction.MANUAL_RECONCILIATION)

    @staticmethod
    def _check_cardinality(shape: MatchShape, line_ids: List[str], txn_ids: List[str]) -> None:
        if len(set(line_ids)) != len(line_ids) or len(set(txn_ids)) != len(txn_ids):
            raise ValidationError("Duplicate row ids in manual reconciliation")
        expected = {
            MatchShape.ONE_TO_ONE: len(line_ids) == 1 and len(txn_ids) == 1,
            MatchShape.BATCH: len(line_ids) >= 2 and len(txn_ids) == 1,
            MatchShape.SPLIT: len(line_ids) == 1 and len(txn_ids) >= 2,
        }[shape]
        if not expected:
            raise ValidationError(
                f"Invalid row counts for a {shape.value} reconciliation",
                field="shape",
                statement_count=len(line_ids),
                transaction_count=len(txn_ids),
            )
