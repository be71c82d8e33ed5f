"""
Reconciliation Orchestrator - operation-level coordinator.

Each public method is one unit of work:
1. Open a session (retrying transient database errors)
2. Bind the stores and committer to it
3. Run the operation
4. Commit, or roll back everything on any error
"""

import time
from typing import Callable, Iterable, List, Optional, TypeVar

import structlog
from sqlalchemy.orm import Session, sessionmaker

from ..config import Settings, get_settings
from ..db import get_session_factory, run_in_transaction, session_scope
from ..exceptions import ConflictError, InvalidStateError, ValidationError
from ..models import (
    Actor,
    AuditAction,
    AuditEntry,
    BulkAcceptResult,
    MatchShape,
    ReleaseCounts,
    Scope,
    Suggestion,
)
from ..stores import LedgerStore, SuggestionStore
from ..utils.audit_logger import AuditLogger
from .candidates import CandidateGenerator
from .committer import ReconciliationCommitter

logger = structlog.get_logger()

T = TypeVar("T")


class ReconciliationOrchestrator:
    """
    Entry point for reconciliation operations.

    Generation is read-only; every other operation runs in its own
    transaction.
    """

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

    def _generator(self, session: Session) -> CandidateGenerator:
        return CandidateGenerator(
            ledger=LedgerStore(session),
            suggestions=SuggestionStore(session),
            settings=self.settings,
        )

    def resolve_scope(self, org_id, account_id=None, period_start=None, period_end=None) -> Scope:
        """Scope with the period defaulted to the configured lookback."""
        return Scope.resolve(
            org_id,
            account_id=account_id,
            period_start=period_start,
            period_end=period_end,
            lookback_days=self.settings.default_lookback_days,
        )

    def generate_candidates(self, scope: Scope, score_min: Optional[float] = None) -> List[Suggestion]:
        """Compute suggestions without persisting anything."""
        with session_scope(self.session_factory) as session:
            return self._generator(session).generate(scope, score_min)

    def regenerate(
        self,
        scope: Scope,
        score_min: Optional[float] = None,
        actor: Optional[Actor] = None,
    ) -> List[Suggestion]:
        """
        Replace the pending suggestions of a scope with a fresh generation.

        Accepted, rejected and revoked suggestions are kept as history.

        Returns:
            The newly stored pending suggestions
        """
        actor = actor or Actor.system()
        scope.validate()

        def work(session: Session) -> List[Suggestion]:
            start_time = time.time()
            store = SuggestionStore(session)
            removed = store.delete_pending(scope)
            suggestions = self._generator(session).generate(scope, score_min)
            store.bulk_insert(suggestions)

            AuditLogger(session).log(AuditEntry(
                action=AuditAction.SUGGESTIONS_GENERATED,
                actor_id=actor.user_id,
                org_id=scope.org_id,
                subject_type="scope",
                subject_id=scope.account_id or scope.org_id,
                message=f"Generated {len(suggestions)} suggestions",
                details={
                    **scope.to_dict(),
                    "removed_pending": removed,
                    "generated": len(suggestions),
                    "score_min": self.settings.score_min if score_min is None else score_min,
                    "model_version": self.settings.model_version,
                    "elapsed_seconds": round(time.time() - start_time, 3),
                },
            ))
            return suggestions

        return self._run(work)

    def list_suggestions(self, scope: Scope, min_score: Optional[float] = None) -> List[Suggestion]:
        scope.validate()
        with session_scope(self.session_factory) as session:
            return SuggestionStore(session).list_pending(scope, min_score=min_score)

    def accept_suggestion(self, suggestion_id: str, actor: Actor) -> Suggestion:
        return self._run(
            lambda session: ReconciliationCommitter(session, self.settings).accept(suggestion_id, actor)
        )

    def reject_suggestion(
        self,
        suggestion_id: str,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> Suggestion:
        return self._run(
            lambda session: ReconciliationCommitter(session, self.settings).reject(
                suggestion_id, actor, reason
            )
        )

    def desconciliar_transacao(
        self,
        transaction_id: str,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> ReleaseCounts:
        """Undo the reconciliation of a transaction and every row grouped with it."""
        return self._run(
            lambda session: ReconciliationCommitter(session, self.settings).desconciliar(
                transaction_id, actor, reason
            )
        )

    def accept_high_confidence(
        self,
        scope: Scope,
        actor: Actor,
        threshold: Optional[float] = None,
    ) -> BulkAcceptResult:
        """
        Accept every pending suggestion at or above ``threshold``.

        Each accept commits on its own, so one conflict does not undo the
        others.
        """
        threshold = self.settings.high_confidence_score if threshold is None else threshold
        if not 0.0 <= threshold <= 1.0:
            raise ValidationError("threshold must be within [0, 1]", field="threshold", value=threshold)

        candidates = self.list_suggestions(scope, min_score=threshold)
        result = BulkAcceptResult(attempted=len(candidates))
        for suggestion in candidates:
            try:
                self.accept_suggestion(suggestion.id, actor)
                result.accepted_ids.append(suggestion.id)
            except (ConflictError, InvalidStateError) as exc:
                logger.info(
                    "Skipping suggestion during bulk accept",
                    suggestion_id=suggestion.id,
                    error=exc.code,
                )
                result.conflicted_ids.append(suggestion.id)

        logger.info(
            "Bulk accept complete",
            org_id=scope.org_id,
            threshold=threshold,
            attempted=result.attempted,
            accepted=result.accepted,
            conflicts=result.conflicts,
        )
        return result

    def reconcile_manual(
        self,
        org_id: str,
        shape: MatchShape,
        statement_ids: Iterable[str],
        transaction_ids: Iterable[str],
        actor: Actor,
        account_id: Optional[str] = None,
    ) -> Suggestion:
        line_ids = list(statement_ids)
        txn_ids = list(transaction_ids)
        return self._run(
            lambda session: ReconciliationCommitter(session, self.settings).reconcile_manual(
                org_id, shape, line_ids, txn_ids, actor, account_id=account_id
            )
        )
