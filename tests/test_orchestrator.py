"""
Tests for regeneration and bulk operations through the orchestrator.
"""

from datetime import date, timedelta

import pytest

from tesouraria.db import session_scope
from tesouraria.models import Actor, AuditAction, MatchShape, SuggestionStatus
from tesouraria.stores import SuggestionStore
from tesouraria.utils.audit_logger import AuditLogger

DAY = date(2024, 3, 10)
OPERATOR = Actor(user_id="op-1")


@pytest.fixture
def ledger(seed, make_line, make_txn):
    seed(
        lines=[
            make_line("pix", 15000, DAY, "PIX JOAO"),
            make_line("d1", 5000, DAY, "DEPOSITO OFERTA"),
            make_line("d2", 5000, DAY, "DEPOSITO OFERTA"),
            make_line("d3", 10000, DAY, "DEPOSITO OFERTA"),
            make_line("tarifa", -990, DAY, "TARIFA CONTAMAX"),
        ],
        transactions=[
            make_txn("dizimo", 15000, DAY - timedelta(days=1), "Dízimo João Silva"),
            make_txn("oferta", 20000, DAY, "Oferta culto"),
            make_txn("tarifa-txn", -990, DAY, "Tarifa bancaria"),
        ],
    )


class TestRegenerate:
    """Test suite for regeneration."""

    def test_preview_persists_nothing(self, orchestrator, ledger, scope):
        suggestions = orchestrator.generate_candidates(scope)

        assert {s.shape for s in suggestions} == {MatchShape.ONE_TO_ONE, MatchShape.BATCH}
        assert orchestrator.list_suggestions(scope) == []

    def test_regenerate_stores_pending(self, orchestrator, ledger, scope, session_factory):
        generated = orchestrator.regenerate(scope, actor=OPERATOR)

        pending = orchestrator.list_suggestions(scope)
        assert {s.id for s in pending} == {s.id for s in generated}
        assert all(s.status == SuggestionStatus.PENDING for s in pending)
        with session_scope(session_factory) as session:
            entries = AuditLogger(session).get_entries(AuditAction.SUGGESTIONS_GENERATED)
        assert entries[0].details["generated"] == len(generated)

    def test_regenerate_replaces_pending(self, orchestrator, ledger, scope):
        first = orchestrator.regenerate(scope)
        second = orchestrator.regenerate(scope)

        pending = orchestrator.list_suggestions(scope)
        assert len(pending) == len(second) == len(first)
        assert {s.id for s in pending} == {s.id for s in second}

    def test_regenerate_keeps_decided_history(self, orchestrator, ledger, scope, session_factory):
        generated = orchestrator.regenerate(scope)
        batch = next(s for s in generated if s.shape == MatchShape.BATCH)
        orchestrator.accept_suggestion(batch.id, OPERATOR)

        regenerated = orchestrator.regenerate(scope)

        assert all("oferta" not in s.transaction_ids for s in regenerated)
        with session_scope(session_factory) as session:
            assert SuggestionStore(session).get(batch.id).status == SuggestionStatus.ACCEPTED

    def test_rejected_pairing_not_proposed_again(self, orchestrator, ledger, scope):
        generated = orchestrator.regenerate(scope)
        pix = next(s for s in generated if s.shape == MatchShape.ONE_TO_ONE)
        orchestrator.reject_suggestion(pix.id, OPERATOR, "not the same person")

        regenerated = orchestrator.regenerate(scope)

        assert all(s.signature != pix.signature for s in regenerated)

    def test_undone_rows_become_candidates_again(self, orchestrator, ledger, scope):
        generated = orchestrator.regenerate(scope)
        batch = next(s for s in generated if s.shape == MatchShape.BATCH)
        orchestrator.accept_suggestion(batch.id, OPERATOR)
        orchestrator.desconciliar_transacao("oferta", OPERATOR)

        regenerated = orchestrator.regenerate(scope)

        assert any(s.signature == batch.signature for s in regenerated)


class TestAcceptHighConfidence:
    """Bulk accept of strong suggestions."""

    def test_accepts_only_above_threshold(self, orchestrator, ledger, scope):
        generated = orchestrator.regenerate(scope)

        result = orchestrator.accept_high_confidence(scope, OPERATOR, threshold=0.9)

        expected = {s.id for s in generated if s.score >= 0.9}
        assert set(result.accepted_ids) == expected
        assert result.conflicts == 0
        remaining = orchestrator.list_suggestions(scope)
        assert all(s.score < 0.9 for s in remaining)

    def test_conflicts_are_counted(self, orchestrator, seed, make_line, make_txn, scope, session_factory):
        from tesouraria.models import Suggestion

        seed(lines=[make_line("s1", 10000, DAY)], transactions=[make_txn("t1", 10000, DAY)])
        overlapping = [
            Suggestion(
                org_id="org-1",
                account_id="acc-1",
                period_start=scope.period_start,
                period_end=scope.period_end,
                shape=MatchShape.ONE_TO_ONE,
                statement_ids=["s1"],
                transaction_ids=["t1"],
                score=score,
            )
            for score in (0.99, 0.95)
        ]
        with session_scope(session_factory) as session:
            SuggestionStore(session).bulk_insert(overlapping)

        result = orchestrator.accept_high_confidence(scope, OPERATOR)

        assert result.attempted == 2
        assert result.accepted_ids == [overlapping[0].id]
        assert result.conflicted_ids == [overlapping[1].id]
